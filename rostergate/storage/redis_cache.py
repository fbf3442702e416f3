from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from rostergate.logging import get_logger
from rostergate.storage.errors import GuardStoreUnavailable
from rostergate.storage.models import AttemptRecord, DeviceTrustRecord

logger = get_logger(__name__)


def _to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _from_ms(raw: Optional[str]) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    return datetime.fromtimestamp(int(float(raw)) / 1000, tz=timezone.utc)


class RedisGuardStore:
    """Redis-backed attempt and device-trust records shared across processes."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic failure bookkeeping: mirrors AttemptRecord.register_failure.
    # Timestamps are epoch milliseconds, returned as strings so Lua does not
    # truncate them.
    _FAILURE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local max_attempts = tonumber(ARGV[2])
local lockout = tonumber(ARGV[3])
local window = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'count', 'first', 'last', 'locked_until')
local count = tonumber(data[1])
local first = tonumber(data[2])
local last = tonumber(data[3])
local locked_until = tonumber(data[4])

if locked_until ~= nil and locked_until > now then
  return {tostring(count), tostring(first), tostring(last), tostring(locked_until)}
end

if count == nil or locked_until ~= nil or (now - last) >= window then
  count = 0
  first = now
end

count = math.min(count + 1, max_attempts)
redis.call('DEL', key)
if count >= max_attempts then
  locked_until = now + lockout
  redis.call('HSET', key, 'count', count, 'first', first, 'last', now, 'locked_until', locked_until)
  redis.call('PEXPIRE', key, lockout)
  return {tostring(count), tostring(first), tostring(now), tostring(locked_until)}
end

redis.call('HSET', key, 'count', count, 'first', first, 'last', now)
redis.call('PEXPIRE', key, window)
return {tostring(count), tostring(first), tostring(now), ''}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        key_prefix: str = "rostergate",
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._failure_script = self.client.register_script(self._FAILURE_SCRIPT)

    def _attempt_key(self, identifier: str) -> str:
        return f"{self.key_prefix}:attempts:{identifier}"

    def _device_key(self, identifier: str) -> str:
        return f"{self.key_prefix}:device:{identifier}"

    async def ping(self) -> None:
        """Assert connectivity before enabling the store."""
        try:
            await self.client.ping()
        except RedisError as exc:
            raise GuardStoreUnavailable("redis ping failed", {"error": str(exc)}) from exc

    async def get_attempt(self, identifier: str) -> Optional[AttemptRecord]:
        try:
            data = await self.client.hgetall(self._attempt_key(identifier))
        except RedisError as exc:
            raise GuardStoreUnavailable("attempt lookup failed", {"error": str(exc)}) from exc
        if not data or "count" not in data:
            return None
        return AttemptRecord(
            identifier=identifier,
            failure_count=int(data["count"]),
            first_failure_at=_from_ms(data.get("first")),
            last_failure_at=_from_ms(data.get("last")),
            locked_until=_from_ms(data.get("locked_until")),
        )

    async def delete_attempt(self, identifier: str) -> None:
        try:
            await self.client.delete(self._attempt_key(identifier))
        except RedisError as exc:
            raise GuardStoreUnavailable("attempt delete failed", {"error": str(exc)}) from exc

    async def increment_failure(
        self,
        identifier: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout: timedelta,
        window: timedelta,
    ) -> AttemptRecord:
        try:
            count, first, last, locked_until = await self._failure_script(
                keys=[self._attempt_key(identifier)],
                args=[
                    _to_ms(now),
                    max_attempts,
                    int(lockout.total_seconds() * 1000),
                    int(window.total_seconds() * 1000),
                ],
            )
        except RedisError as exc:
            raise GuardStoreUnavailable("failure increment failed", {"error": str(exc)}) from exc
        return AttemptRecord(
            identifier=identifier,
            failure_count=int(count),
            first_failure_at=_from_ms(first),
            last_failure_at=_from_ms(last),
            locked_until=_from_ms(locked_until),
        )

    async def get_device(self, identifier: str) -> Optional[DeviceTrustRecord]:
        try:
            raw = await self.client.get(self._device_key(identifier))
        except RedisError as exc:
            raise GuardStoreUnavailable("device lookup failed", {"error": str(exc)}) from exc
        return DeviceTrustRecord.from_dict(json.loads(raw)) if raw else None

    async def update_device(
        self,
        identifier: str,
        mutate: Callable[[Optional[DeviceTrustRecord]], DeviceTrustRecord],
    ) -> Tuple[Optional[DeviceTrustRecord], DeviceTrustRecord]:
        """Optimistic WATCH/MULTI read-modify-write; ``mutate`` may run more than once."""
        key = self._device_key(identifier)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        current = DeviceTrustRecord.from_dict(json.loads(raw)) if raw else None
                        updated = mutate(current)
                        pipe.multi()
                        pipe.set(key, json.dumps(updated.to_dict()))
                        await pipe.execute()
                        return current, updated
                    except WatchError:
                        logger.debug("device_record_contention", identifier=identifier)
                        continue
        except RedisError as exc:
            raise GuardStoreUnavailable("device update failed", {"error": str(exc)}) from exc

    async def close(self) -> None:
        await self.client.aclose()
