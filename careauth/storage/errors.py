from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConcurrencyConflict(Exception):
    """Raised when a versioned update finds the row changed underneath it."""

    def __init__(self, entity: str, entity_id: str, expected_version: int):
        super().__init__(
            f"{entity} {entity_id} no longer at version {expected_version}"
        )
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version


__all__ = ["ConstraintViolation", "ConcurrencyConflict"]
