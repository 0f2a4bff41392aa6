from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures raised by the persistence backends."""


class ConstraintViolation(StorageError):
    """A uniqueness or foreign-key rule rejected the write.

    ``detail`` names the offending field (``{"field": "email"}``) so the API
    layer can surface it without parsing driver messages.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class SchemaError(StorageError):
    """The database is missing tables or columns the store depends on."""


__all__ = ["StorageError", "ConstraintViolation", "SchemaError"]
