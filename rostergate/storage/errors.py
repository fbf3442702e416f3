from __future__ import annotations

from typing import Any, Dict, Optional


class GuardStoreUnavailable(Exception):
    """Raised when the attempt/device record backend cannot be reached."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["GuardStoreUnavailable"]
