"""Exceptions raised by the decisioning engines.

Only definition-time problems and caller mistakes raise. Anything that goes
wrong while evaluating a context degrades to a conservative result instead.
"""

from __future__ import annotations

from pydantic import ValidationError


class EngineError(Exception):
    """Base exception for engine errors."""


class DefinitionError(EngineError):
    """A segment, experiment, flow or step definition is invalid."""

    def __init__(
        self,
        message: str,
        entity_type: str,
        entity_id: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.errors = errors or [message]

    def __str__(self) -> str:
        label = f"{self.entity_type} {self.entity_id!r}" if self.entity_id else self.entity_type
        return f"Invalid {label}: {self.args[0]}"


class UnknownEntityError(EngineError):
    """An operation referenced an id that was never defined."""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        super().__init__(f"{entity_type} {entity_id!r} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


def format_validation_errors(error: ValidationError) -> list[str]:
    """Render pydantic errors as 'path: message' strings."""
    messages = []
    for err in error.errors():
        path = ".".join(str(part) for part in err["loc"]) or "root"
        messages.append(f"{path}: {err['msg']}")
    return messages
