from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone


class UserKind(str, enum.Enum):
    STAFF = "staff"
    LEARNER = "learner"
    GLOBAL_ADMIN = "global-admin"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything we store is UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Membership:
    """
    Read-only view of one department membership.

    Built from the organization store once per request and never mutated, so
    the resolver can be called concurrently without locks.
    """

    id: int
    department_id: int
    roles: frozenset[str]
    is_primary: bool = False
    is_active: bool = True
    joined_at: datetime | None = None
    expires_at: datetime | None = None

    def is_current(self, at: datetime) -> bool:
        if not self.is_active:
            return False
        if self.expires_at is None:
            return True
        return as_utc(self.expires_at) > as_utc(at)


@dataclass(frozen=True)
class GlobalAdminGrant:
    """Read-only view of a global-admin membership (always in the master department)."""

    id: int
    department_id: int
    roles: frozenset[str]
    is_active: bool = True


@dataclass(frozen=True)
class Principal:
    """
    Authenticated user plus everything the decision functions need about them.

    Immutable per request.
    """

    user_id: int
    user_kind: UserKind
    memberships: tuple[Membership, ...] = field(default_factory=tuple)
    global_admin: GlobalAdminGrant | None = None

    def current_memberships(self, at: datetime) -> tuple[Membership, ...]:
        return tuple(m for m in self.memberships if m.is_current(at))

    def active_membership_in(self, department_id: int, at: datetime) -> Membership | None:
        for membership in self.memberships:
            if membership.department_id == department_id and membership.is_current(at):
                return membership
        return None
