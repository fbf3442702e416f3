from __future__ import annotations

import hmac
import json
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from rostergate.logging import get_logger
from rostergate.storage.models import EnrollmentRecord

logger = get_logger(__name__)

# Enrollment exports use either the neutral keys or the registry's own ones
_IDENTIFIER_KEYS = ("identifier", "matricNumber")
_SECRET_KEYS = ("secret", "password")


def _first_present(entry: Dict[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, (str, int)) and str(value) != "":
            return str(value)
    return None


class CredentialRoster:
    """Read-only lookup over the static enrollment source.

    Loaded once at startup. ``lookup`` returns ``None`` both for an unknown
    identifier and for a wrong secret, so callers cannot enumerate
    identifiers through it.
    """

    def __init__(self, records: Iterable[EnrollmentRecord]) -> None:
        self._index: Dict[str, EnrollmentRecord] = {}
        for record in records:
            if record.identifier in self._index:
                logger.warning("roster_duplicate_identifier", identifier=record.identifier)
                continue
            self._index[record.identifier] = record

    @classmethod
    def from_entries(cls, entries: Iterable[Dict[str, Any]]) -> "CredentialRoster":
        records: List[EnrollmentRecord] = []
        for position, entry in enumerate(entries):
            if not isinstance(entry, dict):
                logger.warning("roster_entry_invalid", position=position)
                continue
            identifier = _first_present(entry, _IDENTIFIER_KEYS)
            secret = _first_present(entry, _SECRET_KEYS)
            if identifier is None or secret is None:
                logger.warning("roster_entry_incomplete", position=position)
                continue
            records.append(EnrollmentRecord(identifier=identifier, secret=secret))
        return cls(records)

    @classmethod
    def from_file(cls, path: str | Path) -> "CredentialRoster":
        source = Path(path)
        payload = json.loads(source.read_text(encoding="utf-8"))
        if not isinstance(payload, list):
            raise ValueError(f"enrollment file {source} must contain a JSON array")
        roster = cls.from_entries(payload)
        logger.info("roster_loaded", path=str(source), records=len(roster))
        return roster

    def lookup(self, identifier: str, secret: str) -> Optional[EnrollmentRecord]:
        record = self._index.get(identifier)
        if record is None:
            return None
        if not hmac.compare_digest(record.secret.encode("utf-8"), secret.encode("utf-8")):
            return None
        return record

    def contains(self, identifier: str) -> bool:
        return identifier in self._index

    def __iter__(self) -> Iterator[EnrollmentRecord]:
        return iter(self._index.values())

    def __len__(self) -> int:
        return len(self._index)
