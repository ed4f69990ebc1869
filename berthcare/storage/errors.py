from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateToken(ConstraintViolation):
    """A refresh record with the same token fingerprint already exists.

    Fingerprints are SHA-256 digests of freshly signed tokens, so a collision
    points at a bug or tampering rather than bad luck and is never retried.
    """


class StoreUnavailable(Exception):
    """A backing store could not be reached or did not answer in time."""

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        store: str = "unknown",
    ):
        super().__init__(message)
        self.message = message
        self.store = store
        self.detail = {"store": store, **(detail or {})}


__all__ = ["ConstraintViolation", "DuplicateToken", "StoreUnavailable"]
