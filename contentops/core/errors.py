"""Error taxonomy shared by the coordination core."""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError


class ErrorClass(Enum):
    """How the failure policy treats an error."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    INTERNAL = "internal"


class CoreError(Exception):
    """Base class for classified coordination errors."""

    error_class = ErrorClass.PERMANENT

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    @property
    def code(self) -> str:
        return type(self).__name__

    @property
    def transient(self) -> bool:
        return self.error_class is ErrorClass.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        """Serialise the error for dead-letter records and replies."""
        data: Dict[str, Any] = {
            "code": self.code,
            "class": self.error_class.value,
            "message": self.message,
        }
        if self.context:
            data["context"] = self.context
        return data


class ConfigError(CoreError):
    """Invalid configuration or dependency graph."""


class AlreadyRegistered(CoreError):
    """A name was registered twice."""


class CapabilityMissing(CoreError):
    """A capability was resolved before being registered or initialised."""


class CapabilityInitFailed(CoreError):
    """A capability factory raised during initialisation."""


class CapabilityUnavailable(CoreError):
    """A capability is temporarily unusable (circuit open, transport down)."""

    error_class = ErrorClass.TRANSIENT


class ValidationError(CoreError):
    """A payload or request failed validation."""


class NotFound(CoreError):
    """A referenced record does not exist."""


class Conflict(CoreError):
    """A write collided with an existing record."""


class Timeout(CoreError):
    """An operation exceeded its deadline."""

    error_class = ErrorClass.TRANSIENT


class RetryExhausted(CoreError):
    """A transient failure persisted past the retry budget."""


class InternalError(CoreError):
    """An unexpected programming error."""

    error_class = ErrorClass.INTERNAL


_BY_CODE = {
    cls.__name__: cls
    for cls in (
        ConfigError,
        AlreadyRegistered,
        CapabilityMissing,
        CapabilityInitFailed,
        CapabilityUnavailable,
        ValidationError,
        NotFound,
        Conflict,
        Timeout,
        RetryExhausted,
        InternalError,
    )
}


def as_core_error(exc: BaseException) -> CoreError:
    """Map any exception onto the taxonomy."""
    if isinstance(exc, CoreError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return Timeout(str(exc) or "operation timed out")
    if isinstance(exc, PydanticValidationError):
        return ValidationError(
            f"validation failed: {exc.error_count()} error(s)",
            context={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
        )
    return InternalError(f"{type(exc).__name__}: {exc}")


def classify(exc: BaseException) -> ErrorClass:
    return as_core_error(exc).error_class


def from_dict(data: Dict[str, Any]) -> CoreError:
    """Rebuild an error serialised with ``CoreError.to_dict``."""
    cls = _BY_CODE.get(data.get("code", ""), InternalError)
    return cls(data.get("message", ""), context=data.get("context"))
