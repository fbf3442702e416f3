from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from rostergate.config import ProviderMode, Settings
from rostergate.logging import get_logger, sanitize_error_message
from rostergate.service.errors import ProviderMisconfiguredError
from rostergate.service.identity import (
    AuthStateCallback,
    AuthStatePublisher,
    ProviderAccount,
    ProviderError,
    ProviderErrorKind,
    Unsubscribe,
)
from rostergate.storage.models import ProfileDocument

logger = get_logger(__name__)


@dataclass
class _MemoryAccount:
    account_id: str
    secret: str
    disabled: bool = False


class MemoryIdentityProvider:
    """In-process identity provider for development and tests.

    Enforces one account per login key. With ``enumeration_protection`` a
    wrong secret is reported the same way as an unknown account, which is
    how hosted providers behave when email enumeration protection is on.
    """

    OPERATIONS = ("create_account", "sign_in", "get_profile", "put_profile")

    def __init__(self, *, enumeration_protection: bool = False, latency: float = 0.0) -> None:
        self.enumeration_protection = enumeration_protection
        self.latency = latency
        self.accounts: Dict[str, _MemoryAccount] = {}
        self.profiles: Dict[str, ProfileDocument] = {}
        self.calls: Dict[str, int] = {name: 0 for name in self.OPERATIONS}
        self._faults: Dict[str, List[BaseException]] = {name: [] for name in self.OPERATIONS}
        self._publisher = AuthStatePublisher()

    @property
    def current_account_id(self) -> Optional[str]:
        return self._publisher.current

    def inject_fault(
        self,
        operation: str,
        kind: ProviderErrorKind = ProviderErrorKind.OTHER,
        code: str = "INJECTED_FAULT",
        *,
        error: Optional[BaseException] = None,
    ) -> None:
        """Make the next call to ``operation`` fail."""
        if operation not in self._faults:
            raise ValueError(f"unknown provider operation {operation!r}")
        self._faults[operation].append(error or ProviderError(kind, code))

    async def _remote(self, operation: str) -> None:
        self.calls[operation] += 1
        # Always yield so concurrent callers interleave as they would over a network
        await asyncio.sleep(self.latency)
        if self._faults[operation]:
            raise self._faults[operation].pop(0)

    async def create_account(self, login_key: str, secret: str) -> ProviderAccount:
        await self._remote("create_account")
        if login_key in self.accounts:
            raise ProviderError(ProviderErrorKind.ACCOUNT_EXISTS, "EMAIL_EXISTS")
        account = _MemoryAccount(account_id=uuid.uuid4().hex[:28], secret=secret)
        self.accounts[login_key] = account
        self._publisher.publish(account.account_id)
        return ProviderAccount(account_id=account.account_id, login_key=login_key)

    async def sign_in(self, login_key: str, secret: str) -> ProviderAccount:
        await self._remote("sign_in")
        account = self.accounts.get(login_key)
        if account is None:
            raise ProviderError(ProviderErrorKind.NOT_FOUND, "EMAIL_NOT_FOUND")
        if account.secret != secret:
            if self.enumeration_protection:
                raise ProviderError(ProviderErrorKind.NOT_FOUND, "INVALID_LOGIN_CREDENTIALS")
            raise ProviderError(ProviderErrorKind.WRONG_SECRET, "INVALID_PASSWORD")
        if account.disabled:
            raise ProviderError(ProviderErrorKind.WRONG_SECRET, "USER_DISABLED")
        self._publisher.publish(account.account_id)
        return ProviderAccount(account_id=account.account_id, login_key=login_key)

    async def sign_out(self) -> None:
        self._publisher.publish(None)

    async def get_profile(self, account_id: str) -> Optional[ProfileDocument]:
        await self._remote("get_profile")
        return self.profiles.get(account_id)

    async def put_profile(
        self, account_id: str, profile: ProfileDocument, *, merge_fields: Optional[List[str]] = None
    ) -> None:
        await self._remote("put_profile")
        existing = self.profiles.get(account_id)
        if merge_fields and existing is not None:
            merged = existing.to_dict()
            incoming = profile.to_dict()
            for name in merge_fields:
                merged[name] = incoming[name]
            profile = ProfileDocument.from_dict(merged)
        self.profiles[account_id] = profile

    def subscribe_auth_state(self, callback: AuthStateCallback) -> Unsubscribe:
        return self._publisher.subscribe(callback)

    def revoke_current(self) -> None:
        """Simulate the provider ending the session on its side."""
        self._publisher.publish(None)

    async def close(self) -> None:
        return None


# Identity Toolkit error message -> failure class
_AUTH_ERROR_KINDS: Dict[str, ProviderErrorKind] = {
    "EMAIL_NOT_FOUND": ProviderErrorKind.NOT_FOUND,
    "INVALID_LOGIN_CREDENTIALS": ProviderErrorKind.NOT_FOUND,
    "INVALID_PASSWORD": ProviderErrorKind.WRONG_SECRET,
    "USER_DISABLED": ProviderErrorKind.WRONG_SECRET,
    "EMAIL_EXISTS": ProviderErrorKind.ACCOUNT_EXISTS,
    "TOO_MANY_ATTEMPTS_TRY_LATER": ProviderErrorKind.RATE_LIMITED,
    "QUOTA_EXCEEDED": ProviderErrorKind.RATE_LIMITED,
    "CONFIGURATION_NOT_FOUND": ProviderErrorKind.CONFIGURATION,
    "OPERATION_NOT_ALLOWED": ProviderErrorKind.CONFIGURATION,
    "PROJECT_NOT_FOUND": ProviderErrorKind.CONFIGURATION,
    "API_KEY_INVALID": ProviderErrorKind.CONFIGURATION,
    "ADMIN_ONLY_OPERATION": ProviderErrorKind.CONFIGURATION,
    # Roster secrets or identifiers the provider refuses are a deployment problem
    "WEAK_PASSWORD": ProviderErrorKind.CONFIGURATION,
    "INVALID_EMAIL": ProviderErrorKind.CONFIGURATION,
}


def classify_auth_error(status_code: int, body: Any) -> ProviderError:
    """Turn an Identity Toolkit error response into a ProviderError."""
    message = ""
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        message = str(body["error"].get("message") or "")
    code = message.split(" : ", 1)[0].strip()
    if code.startswith("API key not valid"):
        code = "API_KEY_INVALID"
    if not code:
        code = f"HTTP_{status_code}"
    kind = _AUTH_ERROR_KINDS.get(code)
    if kind is None:
        if status_code == 429:
            kind = ProviderErrorKind.RATE_LIMITED
        elif status_code in (401, 403):
            kind = ProviderErrorKind.CONFIGURATION
        else:
            kind = ProviderErrorKind.OTHER
    return ProviderError(kind, code, sanitize_error_message(message or code))


def _encode_value(value: Any) -> Dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        stamp = value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        return {"timestampValue": stamp}
    return {"stringValue": str(value)}


def _decode_value(value: Dict[str, Any]) -> Any:
    if "stringValue" in value:
        return value["stringValue"]
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "timestampValue" in value:
        return value["timestampValue"]
    return None


def encode_document(data: Dict[str, Any]) -> Dict[str, Any]:
    return {"fields": {key: _encode_value(val) for key, val in data.items()}}


def decode_document(document: Dict[str, Any]) -> Dict[str, Any]:
    fields = document.get("fields") or {}
    return {key: _decode_value(val) for key, val in fields.items()}


class FirebaseIdentityProvider:
    """Firebase Authentication + Firestore over their REST APIs.

    Accounts are created/signed in with email+password against the Identity
    Toolkit; profile documents live in a Firestore collection keyed by the
    account id and are read/written with the signed-in user's ID token.
    """

    AUTH_API_BASE = "https://identitytoolkit.googleapis.com/v1"
    FIRESTORE_API_BASE = "https://firestore.googleapis.com/v1"

    def __init__(
        self,
        *,
        api_key: Optional[str],
        project_id: Optional[str],
        auth_domain: Optional[str] = None,
        collection: str = "students",
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not api_key or not project_id:
            raise ProviderMisconfiguredError(
                "Firebase API key and project id are required",
                detail={"api_key": bool(api_key), "project_id": bool(project_id)},
            )
        if auth_domain and not auth_domain.startswith(f"{project_id}."):
            # Two project configs mixed together; refuse rather than pick one
            raise ProviderMisconfiguredError(
                "Firebase auth domain does not belong to the configured project",
                detail={"auth_domain": auth_domain, "project_id": project_id},
            )
        self.api_key = api_key
        self.project_id = project_id
        self.collection = collection
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._id_token: Optional[str] = None
        self._publisher = AuthStatePublisher()

    @property
    def current_account_id(self) -> Optional[str]:
        return self._publisher.current

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 10.0)),
            )
        return self._client

    def _document_url(self, account_id: str) -> str:
        return (
            f"{self.FIRESTORE_API_BASE}/projects/{self.project_id}"
            f"/databases/(default)/documents/{self.collection}/{account_id}"
        )

    async def _send(self, operation: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.error("identity_provider_timeout", operation=operation, error=str(exc))
            raise ProviderError(ProviderErrorKind.OTHER, "TIMEOUT", "provider request timed out") from exc
        except httpx.HTTPError as exc:
            logger.error(
                "identity_provider_connect_error",
                operation=operation,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise ProviderError(
                ProviderErrorKind.OTHER, "NETWORK_ERROR", "provider unreachable"
            ) from exc

    async def _password_call(self, endpoint: str, login_key: str, secret: str) -> ProviderAccount:
        response = await self._send(
            endpoint,
            "POST",
            f"{self.AUTH_API_BASE}/accounts:{endpoint}",
            params={"key": self.api_key},
            json={"email": login_key, "password": secret, "returnSecureToken": True},
        )
        try:
            body = response.json()
        except ValueError:
            body = None
        if response.status_code >= 400:
            error = classify_auth_error(response.status_code, body)
            logger.info(
                "identity_provider_auth_error",
                operation=endpoint,
                status_code=response.status_code,
                code=error.code,
                kind=error.kind.value,
            )
            raise error
        if not isinstance(body, dict) or not body.get("localId"):
            raise ProviderError(ProviderErrorKind.OTHER, "MALFORMED_RESPONSE")
        self._id_token = body.get("idToken")
        self._publisher.publish(body["localId"])
        return ProviderAccount(account_id=body["localId"], login_key=login_key)

    async def create_account(self, login_key: str, secret: str) -> ProviderAccount:
        return await self._password_call("signUp", login_key, secret)

    async def sign_in(self, login_key: str, secret: str) -> ProviderAccount:
        return await self._password_call("signInWithPassword", login_key, secret)

    async def sign_out(self) -> None:
        # ID tokens are bearer tokens; dropping ours ends the client session
        self._id_token = None
        self._publisher.publish(None)

    def _auth_headers(self) -> Dict[str, str]:
        if not self._id_token:
            raise ProviderError(ProviderErrorKind.OTHER, "NOT_SIGNED_IN")
        return {"Authorization": f"Bearer {self._id_token}"}

    def _raise_for_document_error(self, operation: str, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        if response.status_code == 429:
            kind = ProviderErrorKind.RATE_LIMITED
        elif response.status_code in (401, 403):
            kind = ProviderErrorKind.CONFIGURATION
        else:
            kind = ProviderErrorKind.OTHER
        logger.error(
            "profile_store_error",
            operation=operation,
            status_code=response.status_code,
            body=sanitize_error_message(response.text),
        )
        raise ProviderError(kind, f"HTTP_{response.status_code}")

    async def get_profile(self, account_id: str) -> Optional[ProfileDocument]:
        response = await self._send(
            "get_profile", "GET", self._document_url(account_id), headers=self._auth_headers()
        )
        if response.status_code == 404:
            return None
        self._raise_for_document_error("get_profile", response)
        try:
            return ProfileDocument.from_dict(decode_document(response.json()))
        except (ValueError, TypeError, AttributeError) as exc:
            logger.error(
                "profile_document_malformed",
                account_id=account_id,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise ProviderError(ProviderErrorKind.OTHER, "MALFORMED_RESPONSE") from exc

    async def put_profile(
        self, account_id: str, profile: ProfileDocument, *, merge_fields: Optional[List[str]] = None
    ) -> None:
        data = profile.to_dict()
        params: List[Tuple[str, str]] = []
        if merge_fields:
            data = {name: data[name] for name in merge_fields}
            params = [("updateMask.fieldPaths", name) for name in merge_fields]
        response = await self._send(
            "put_profile",
            "PATCH",
            self._document_url(account_id),
            params=params,
            json=encode_document(data),
            headers=self._auth_headers(),
        )
        self._raise_for_document_error("put_profile", response)

    def subscribe_auth_state(self, callback: AuthStateCallback) -> Unsubscribe:
        return self._publisher.subscribe(callback)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


def build_identity_provider(settings: Settings):
    """Construct the single configured identity provider."""
    if settings.provider_mode == ProviderMode.FIREBASE:
        return FirebaseIdentityProvider(
            api_key=settings.firebase_api_key,
            project_id=settings.firebase_project_id,
            auth_domain=settings.firebase_auth_domain,
            collection=settings.profile_collection,
            timeout=settings.provider_timeout_seconds or 15.0,
        )
    return MemoryIdentityProvider()
