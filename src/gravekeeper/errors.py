from __future__ import annotations

from typing import Optional


class PersistenceError(Exception):
    """Base exception for gravekeeper capture/save/load errors."""


class InvalidTypeError(PersistenceError, TypeError):
    """Raised when a type is not an Entity subclass."""


class UnknownFieldError(PersistenceError, LookupError):
    """Raised when a named property does not exist on a type or record."""


class CaptureError(PersistenceError):
    """Raised when reading a durable property off a live entity fails."""

    def __init__(self, type_name: str, field_name: str, reason: str = "") -> None:
        self.type_name = type_name
        self.field_name = field_name
        message = f"Failed to capture {type_name}.{field_name}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class DecodeError(PersistenceError, ValueError):
    """Raised when save data is malformed or cannot be resolved."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        self.key = key
        if key is not None:
            message = f"{message} (key={key!r})"
        super().__init__(message)


class NotFoundError(PersistenceError, FileNotFoundError):
    """Raised when no save exists at the requested location."""


class NoPriorSaveError(PersistenceError, LookupError):
    """Raised when loading the latest save before any save has happened."""


class UnsupportedValueError(PersistenceError, ValueError):
    """Raised when a value has no valid wire representation."""
