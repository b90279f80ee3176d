"""Exception taxonomy surfaced by the engine to its callers."""
from __future__ import annotations

from typing import Optional


class RecEngineError(Exception):
    """Base class for every failure the engine propagates."""


class ValidationError(RecEngineError):
    """Input rejected synchronously; never silently corrected."""

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"[{self.kind}] {self.message}"


class NotFoundError(RecEngineError):
    """An entity referenced by id does not exist."""

    def __init__(self, entity: str, entity_id: Optional[str]):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


__all__ = ["RecEngineError", "ValidationError", "NotFoundError"]
