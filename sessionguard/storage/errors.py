from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailableError(Exception):
    """Raised when a backing store cannot be reached or times out."""

    def __init__(self, message: str, *, store: str = "store", timed_out: bool = False):
        super().__init__(message)
        self.message = message
        self.store = store
        self.timed_out = timed_out


__all__ = ["ConstraintViolation", "StoreUnavailableError"]
