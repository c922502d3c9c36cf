from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Raised when a storage backend fails for reasons other than a constraint."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a storage-layer uniqueness constraint is violated."""


class RecordNotFound(StorageError):
    """Raised when an update targets a record that does not exist."""


__all__ = ["StorageError", "ConstraintViolation", "RecordNotFound"]
