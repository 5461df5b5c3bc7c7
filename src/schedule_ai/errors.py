"""Typed errors raised by the import, conversion and optimization pipeline.

Per-record problems (``ValidationError``, ``CollaboratorError``) are recorded
on the record and in the owning batch's error log; they never abort sibling
records. ``ConflictError`` means a conditional update lost its race and is
reported as ``skipped``. ``StorageError`` aborts the current step.
"""

from __future__ import annotations

from typing import Literal, Optional

CollaboratorErrorKind = Literal["timeout", "bad_response", "rate_limited", "unknown"]


class ScheduleError(Exception):
    """Base exception for all pipeline errors."""

    kind: str = "unknown"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ScheduleError):
    """Malformed input row or task (e.g. missing title)."""

    kind = "validation"

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class CollaboratorError(ScheduleError):
    """The AI collaborator failed, timed out or returned an unusable payload."""

    def __init__(self, kind: CollaboratorErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    def __str__(self) -> str:
        return f"[{self.kind}] {self.message}"


class ConflictError(ScheduleError):
    """A conditional update observed a state it did not expect."""

    kind = "conflict"


class StorageError(ScheduleError):
    """Underlying persistence failure."""

    kind = "storage"


class NotFoundError(ScheduleError):
    """Resource was not found."""

    kind = "not_found"

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} not found: {identifier}")
        self.resource_type = resource_type
        self.identifier = identifier
