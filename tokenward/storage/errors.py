from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or existence constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """The authoritative token store could not complete a call."""


class IndexUnavailable(Exception):
    """The secondary secret index could not answer a lookup."""


__all__ = ["ConstraintViolation", "StoreUnavailable", "IndexUnavailable"]
