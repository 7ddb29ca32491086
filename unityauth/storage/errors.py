from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class UnknownTerritory(LookupError):
    """Raised when a territory code is malformed or not on the allow-list."""

    def __init__(self, code: str):
        super().__init__(f"unknown territory: {code!r}")
        self.code = code


__all__ = ["ConstraintViolation", "UnknownTerritory"]
