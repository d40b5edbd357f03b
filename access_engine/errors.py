"""
Error taxonomy for the access-control engine.

Callers branch on ``exc.kind`` rather than on the concrete class, so every
error carries an :class:`ErrorKind`. Access *decisions* are never raised; they
are returned as :class:`access_engine.security.decision.Decision` values.
"""

from __future__ import annotations

import enum
from typing import Any


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION"
    CONFLICT = "CONFLICT"
    FORBIDDEN = "FORBIDDEN"
    LAST_ADMIN_PROTECTED = "LAST_ADMIN_PROTECTED"
    IMMUTABLE_ROLE = "IMMUTABLE_ROLE"
    ROLE_IN_USE = "ROLE_IN_USE"
    STORAGE_ERROR = "STORAGE_ERROR"


class AccessControlError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "details": dict(self.details)}


class NotFoundError(AccessControlError):
    kind = ErrorKind.NOT_FOUND


class ValidationFailed(AccessControlError):
    kind = ErrorKind.VALIDATION


class RoleKindMismatchError(ValidationFailed):
    """Role definition's user kind does not match the target principal."""


class ConflictError(AccessControlError):
    kind = ErrorKind.CONFLICT


class ForbiddenError(AccessControlError):
    kind = ErrorKind.FORBIDDEN


class LastAdminProtectedError(ForbiddenError):
    """Removal would leave the system without an active system admin. Not overridable."""

    kind = ErrorKind.LAST_ADMIN_PROTECTED


class ImmutableRoleError(ForbiddenError):
    kind = ErrorKind.IMMUTABLE_ROLE


class RoleInUseError(AccessControlError):
    kind = ErrorKind.ROLE_IN_USE


class StorageError(AccessControlError):
    """Persistence failed; the policy could not be evaluated or applied."""

    kind = ErrorKind.STORAGE_ERROR
