from __future__ import annotations

from typing import Any, Dict, Optional

from profileauth.service.errors import InfrastructureError


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(InfrastructureError):
    """Raised when the storage engine cannot complete an operation."""

    def __init__(self, message: str = "Storage is unavailable.", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = ["ConstraintViolation", "StorageUnavailable"]
