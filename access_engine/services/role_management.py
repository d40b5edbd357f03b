"""
Role management service.

CRUD and bulk mutation of role memberships and custom role definitions.
Every operation validates the data-model invariants before persisting:

- a role may only be assigned to a principal of the role's user kind;
- a membership's role set is a true set (re-assigning a held role is a
  CONFLICT, so caller bugs surface instead of being absorbed);
- at least one active ``system-admin`` global admin always exists;
- built-in roles are immutable.

Writes are serialized per row with SQLAlchemy optimistic concurrency
(``version_id_col``). A write that loses a race is retried a bounded number
of times, then reported as CONFLICT. Each bulk item runs in its own
transaction, so one item's contention never blocks or rolls back another.

Audit events are emitted after commit and are best-effort.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime
import logging
import threading
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from access_engine.db.queries import (
    count_role_holders,
    department_exists,
    load_custom_roles,
    load_hierarchy,
    load_principal,
    load_user,
    role_holders,
    to_membership,
    to_role_definition,
    user_kind_of,
)
from access_engine.db.session import SessionFactory, storage_errors
from access_engine.errors import (
    AccessControlError,
    ConflictError,
    ForbiddenError,
    ImmutableRoleError,
    LastAdminProtectedError,
    NotFoundError,
    RoleInUseError,
    RoleKindMismatchError,
    ValidationFailed,
)
from access_engine.models.org import Department, DepartmentMembership, GlobalAdminMembership, User
from access_engine.models.security import CustomRole
from access_engine.schemas.bulk import BulkAssignItem, BulkItemResult, BulkItemStatus, BulkRemoveItem, BulkResult
from access_engine.schemas.security import (
    AccessRightOut,
    CustomRoleDeletedOut,
    GlobalAdminOut,
    MembershipOut,
    RoleAccessRightsOut,
    RoleDefinitionOut,
    UserRolesOut,
)
from access_engine.security.context import UserKind, as_utc, utcnow
from access_engine.security.registry import (
    ROLE_NAME_RE,
    CapabilityRegistry,
    SYSTEM_ADMIN_ROLE,
    SYSTEM_WILDCARD,
    RegistryProvider,
    RoleDefinition,
    is_valid_capability_key,
)
from access_engine.security.resolver import CapabilityResolver
from access_engine.services.audit import AuditEvent, AuditSink, emit_best_effort
from access_engine.settings import Settings, get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

UNSET: Any = object()


# ---- Audit state snapshots -----------------------------------------------------------


def _membership_state(record: DepartmentMembership) -> dict[str, Any]:
    return {
        "membership_id": record.id,
        "department_id": record.department_id,
        "roles": list(record.roles or ()),
        "is_primary": record.is_primary,
        "is_active": record.is_active,
        "expires_at": record.expires_at.isoformat() if record.expires_at else None,
    }


def _grant_state(record: GlobalAdminMembership) -> dict[str, Any]:
    return {
        "membership_id": record.id,
        "department_id": record.department_id,
        "roles": list(record.roles or ()),
        "is_active": record.is_active,
    }


def _role_state(role: RoleDefinition | CustomRole) -> dict[str, Any]:
    return {
        "name": role.name,
        "user_kind": role.user_kind.value if isinstance(role.user_kind, UserKind) else role.user_kind,
        "capabilities": sorted(role.capabilities or ()),
    }


def _role_out(role: RoleDefinition, user_count: int | None = None) -> RoleDefinitionOut:
    return RoleDefinitionOut(
        name=role.name,
        user_kind=role.user_kind.value,
        capabilities=sorted(role.capabilities),
        is_built_in=role.is_built_in,
        description=role.description,
        user_count=user_count,
    )


class RoleManagementService:
    def __init__(
        self,
        session_factory: SessionFactory,
        registry_provider: RegistryProvider,
        audit_sink: AuditSink | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._registry_provider = registry_provider
        self._audit_sink = audit_sink
        self._settings = settings or get_settings()

    # ---- Plumbing ---------------------------------------------------------------------

    @property
    def _registry(self) -> CapabilityRegistry:
        return self._registry_provider.current

    def _write(self, operation: str, work: Callable[[Session, list[AuditEvent]], T]) -> T:
        """
        Run ``work`` in its own transaction, retrying on write conflicts.

        A conflict is either an optimistic-lock miss on UPDATE or a unique
        constraint hit on INSERT (a concurrent writer created the row first);
        the retry re-reads and sees the winner's row. Audit events collected
        by ``work`` are emitted only after the commit.
        """

        attempts = max(self._settings.max_write_retries, 0) + 1
        with storage_errors(operation):
            for attempt in range(1, attempts + 1):
                events: list[AuditEvent] = []
                try:
                    with self._session_factory() as db, db.begin():
                        result = work(db, events)
                except (StaleDataError, IntegrityError) as exc:
                    logger.warning(
                        "Concurrent modification during %s (attempt %d/%d): %s",
                        operation,
                        attempt,
                        attempts,
                        type(exc).__name__,
                    )
                    continue
                for event in events:
                    emit_best_effort(self._audit_sink, event)
                return result

        raise ConflictError(
            f"{operation} lost to a concurrent modification after {attempts} attempts",
            details={"operation": operation, "attempts": attempts},
        )

    def _read(self, operation: str, work: Callable[[Session], T]) -> T:
        with storage_errors(operation), self._session_factory() as db:
            return work(db)

    def sync_registry(self) -> None:
        """Reload custom role definitions from the store into the registry snapshot."""
        custom = self._read("load custom roles", load_custom_roles)
        self._registry_provider.refresh_custom_roles(custom)

    def _master_department(self, db: Session) -> Department:
        code = self._settings.master_department_code
        dept = db.scalars(select(Department).where(Department.code == code)).first()
        if dept is None:
            raise NotFoundError(f"Master department {code!r} not found", details={"code": code})
        return dept

    def _require_role_for(self, role_name: str, kind: UserKind) -> RoleDefinition:
        role = self._registry.require(role_name)
        if role.user_kind != kind:
            raise RoleKindMismatchError(
                f"Role {role_name!r} is for {role.user_kind.value} users, not {kind.value}",
                details={"role": role_name, "role_kind": role.user_kind.value, "user_kind": kind.value},
            )
        return role

    def _count_other_system_admins(self, db: Session, excluding_membership_id: int) -> int:
        stmt = (
            select(GlobalAdminMembership)
            .join(User, User.id == GlobalAdminMembership.user_id)
            .where(
                GlobalAdminMembership.is_active.is_(True),
                GlobalAdminMembership.id != excluding_membership_id,
                User.is_active.is_(True),
                User.user_kind == UserKind.GLOBAL_ADMIN.value,
            )
            .with_for_update()
        )
        return sum(1 for grant in db.scalars(stmt).all() if SYSTEM_ADMIN_ROLE in (grant.roles or ()))

    def _guard_last_admin(self, db: Session, grant: GlobalAdminMembership, remaining_roles: Iterable[str]) -> None:
        """Refuse a change that would leave no active system admin."""

        holds_now = grant.is_active and SYSTEM_ADMIN_ROLE in (grant.roles or ())
        keeps = SYSTEM_ADMIN_ROLE in set(remaining_roles)
        if not holds_now or keeps:
            return
        if self._count_other_system_admins(db, grant.id) == 0:
            logger.warning("Blocked removal of the last active system admin user=%s", grant.user_id)
            raise LastAdminProtectedError(
                "Cannot remove the last active system-admin",
                details={"user_id": grant.user_id, "membership_id": grant.id},
            )

    def _require_wildcard_author(self, db: Session, actor_id: int, capabilities: Iterable[str]) -> None:
        if SYSTEM_WILDCARD not in set(capabilities):
            return
        author = load_principal(db, actor_id)
        resolver = CapabilityResolver(self._registry, load_hierarchy(db, self._settings.max_hierarchy_depth))
        if SYSTEM_WILDCARD not in resolver.resolve(author):
            logger.warning("User %s attempted to author a role granting %s", actor_id, SYSTEM_WILDCARD)
            raise ForbiddenError(
                f"Only holders of {SYSTEM_WILDCARD!r} may grant it",
                details={"actor_id": actor_id},
            )

    def _validate_capabilities(self, capabilities: Iterable[str]) -> list[str]:
        if isinstance(capabilities, str):
            raise ValidationFailed("capabilities must be a list of capability keys")
        caps = list(dict.fromkeys(capabilities))
        if not caps:
            raise ValidationFailed("At least one capability is required")
        for key in caps:
            if not is_valid_capability_key(key):
                raise ValidationFailed(
                    f"Invalid capability {key!r}; expected domain:resource:action",
                    details={"capability": key},
                )
            if not self._registry.is_known_capability(key):
                raise ValidationFailed(f"Unknown capability {key!r}", details={"capability": key})
        return sorted(caps)

    def _load_custom_role(self, db: Session, name: str) -> CustomRole:
        role = self._registry.get(name)
        if role is not None and role.is_built_in:
            raise ImmutableRoleError(f"Built-in role {name!r} cannot be modified", details={"role": name})
        record = db.scalars(select(CustomRole).where(CustomRole.name == name)).first()
        if record is None:
            raise NotFoundError(f"Role {name!r} not found", details={"role": name})
        return record

    # ---- Membership assignment --------------------------------------------------------

    def assign_role(
        self,
        user_id: int,
        department_id: int,
        role_name: str,
        assigned_by: int,
        *,
        is_primary: bool = False,
        expires_at: datetime | None = None,
    ) -> MembershipOut | GlobalAdminOut:
        """
        Grant ``role_name`` to ``user_id`` in ``department_id``.

        Creates the membership when none exists, reactivates an inactive or
        expired one rather than duplicating it, and rejects re-assignment of a
        held role.
        For global-admin users the department must be the master department
        and the role lands on their global-admin membership.
        """

        if expires_at is not None and as_utc(expires_at) <= utcnow():
            raise ValidationFailed("expires_at must be in the future")

        def work(db: Session, events: list[AuditEvent]) -> MembershipOut | GlobalAdminOut:
            user = load_user(db, user_id)
            kind = user_kind_of(user)
            self._require_role_for(role_name, kind)

            if kind == UserKind.GLOBAL_ADMIN:
                return self._assign_global_role(db, events, user, department_id, role_name, assigned_by)

            if not department_exists(db, department_id):
                raise NotFoundError(f"Department {department_id} not found", details={"department_id": department_id})

            # One row per (user, department); reactivation reuses it.
            record = db.scalars(
                select(DepartmentMembership).where(
                    DepartmentMembership.user_id == user_id,
                    DepartmentMembership.department_id == department_id,
                )
            ).first()
            before = _membership_state(record) if record is not None else None

            if record is not None and to_membership(record).is_current(utcnow()):
                if role_name in (record.roles or ()):
                    raise ConflictError(
                        f"User {user_id} already holds {role_name!r} in department {department_id}",
                        details={"user_id": user_id, "department_id": department_id, "role": role_name},
                    )
                record.roles = sorted({*record.roles, role_name})
                if expires_at is not None:
                    record.expires_at = expires_at
            elif record is not None:
                # Soft-deleted or expired: start over with just this role.
                record.roles = [role_name]
                record.is_active = True
                record.expires_at = expires_at
            else:
                record = DepartmentMembership(
                    user_id=user_id,
                    department_id=department_id,
                    roles=[role_name],
                    is_primary=False,
                    is_active=True,
                    joined_at=utcnow(),
                    expires_at=expires_at,
                )
                db.add(record)

            if is_primary:
                self._make_primary(db, user_id, record)
            db.flush()

            events.append(
                AuditEvent(
                    action="role.assign",
                    actor_id=assigned_by,
                    target_id=str(user_id),
                    before=before,
                    after=_membership_state(record),
                )
            )
            logger.info("Assigned role=%s user=%s department=%s by=%s", role_name, user_id, department_id, assigned_by)
            return MembershipOut.model_validate(record)

        return self._write("assign role", work)

    def _assign_global_role(
        self,
        db: Session,
        events: list[AuditEvent],
        user: User,
        department_id: int,
        role_name: str,
        assigned_by: int,
    ) -> GlobalAdminOut:
        master = self._master_department(db)
        if department_id != master.id:
            raise ValidationFailed(
                "Global admin roles are scoped to the master department",
                details={"department_id": department_id, "master_department_id": master.id},
            )
        grant = user.global_admin
        before = _grant_state(grant) if grant is not None else None
        if grant is None:
            grant = GlobalAdminMembership(user_id=user.id, department_id=master.id, roles=[role_name], is_active=True)
            db.add(grant)
        elif grant.is_active:
            if role_name in (grant.roles or ()):
                raise ConflictError(
                    f"User {user.id} already holds global role {role_name!r}",
                    details={"user_id": user.id, "role": role_name},
                )
            grant.roles = sorted({*grant.roles, role_name})
        else:
            grant.roles = [role_name]
            grant.is_active = True
        db.flush()

        events.append(
            AuditEvent(
                action="global_admin.role.assign",
                actor_id=assigned_by,
                target_id=str(user.id),
                before=before,
                after=_grant_state(grant),
            )
        )
        logger.info("Assigned global role=%s user=%s by=%s", role_name, user.id, assigned_by)
        return GlobalAdminOut.model_validate(grant)

    def _make_primary(self, db: Session, user_id: int, record: DepartmentMembership) -> None:
        others = db.scalars(
            select(DepartmentMembership).where(
                DepartmentMembership.user_id == user_id,
                DepartmentMembership.is_primary.is_(True),
            )
        ).all()
        for other in others:
            if other is not record:
                other.is_primary = False
        record.is_primary = True

    def remove_role(
        self,
        user_id: int,
        membership_id: int,
        role_name: str,
        removed_by: int,
    ) -> MembershipOut | GlobalAdminOut:
        """
        Remove ``role_name`` from one membership.

        ``membership_id`` names a department membership for staff/learners and
        the global-admin membership for global admins. A membership left with
        no roles is deactivated, never deleted.
        """

        def work(db: Session, events: list[AuditEvent]) -> MembershipOut | GlobalAdminOut:
            user = load_user(db, user_id)
            kind = user_kind_of(user)

            if kind == UserKind.GLOBAL_ADMIN:
                grant = user.global_admin
                if grant is None or grant.id != membership_id:
                    raise NotFoundError(
                        f"Membership {membership_id} not found for user {user_id}",
                        details={"user_id": user_id, "membership_id": membership_id},
                    )
                if not grant.is_active or role_name not in (grant.roles or ()):
                    raise NotFoundError(
                        f"User {user_id} does not hold {role_name!r}",
                        details={"user_id": user_id, "role": role_name},
                    )
                remaining = [r for r in grant.roles if r != role_name]
                self._guard_last_admin(db, grant, remaining)

                before = _grant_state(grant)
                grant.roles = remaining
                if not remaining:
                    grant.is_active = False
                db.flush()
                events.append(
                    AuditEvent(
                        action="global_admin.role.remove",
                        actor_id=removed_by,
                        target_id=str(user_id),
                        before=before,
                        after=_grant_state(grant),
                    )
                )
                logger.info("Removed global role=%s user=%s by=%s", role_name, user_id, removed_by)
                return GlobalAdminOut.model_validate(grant)

            record = db.get(DepartmentMembership, membership_id)
            if record is None or record.user_id != user_id:
                raise NotFoundError(
                    f"Membership {membership_id} not found for user {user_id}",
                    details={"user_id": user_id, "membership_id": membership_id},
                )
            if not record.is_active or role_name not in (record.roles or ()):
                raise NotFoundError(
                    f"User {user_id} does not hold {role_name!r} in membership {membership_id}",
                    details={"user_id": user_id, "membership_id": membership_id, "role": role_name},
                )

            before = _membership_state(record)
            remaining = [r for r in record.roles if r != role_name]
            record.roles = remaining
            if not remaining:
                record.is_active = False
                record.is_primary = False
            db.flush()

            events.append(
                AuditEvent(
                    action="role.remove",
                    actor_id=removed_by,
                    target_id=str(user_id),
                    before=before,
                    after=_membership_state(record),
                )
            )
            logger.info("Removed role=%s user=%s membership=%s by=%s", role_name, user_id, membership_id, removed_by)
            return MembershipOut.model_validate(record)

        return self._write("remove role", work)

    def update_role_membership(
        self,
        user_id: int,
        membership_id: int,
        updated_by: int,
        *,
        is_primary: bool | None = None,
        expires_at: datetime | None = UNSET,
    ) -> MembershipOut:
        """Change non-role fields. Pass ``expires_at=None`` to clear the expiry."""

        if expires_at is not UNSET and expires_at is not None and as_utc(expires_at) <= utcnow():
            raise ValidationFailed("expires_at must be in the future")

        def work(db: Session, events: list[AuditEvent]) -> MembershipOut:
            record = db.get(DepartmentMembership, membership_id)
            if record is None or record.user_id != user_id:
                raise NotFoundError(
                    f"Membership {membership_id} not found for user {user_id}",
                    details={"user_id": user_id, "membership_id": membership_id},
                )
            before = _membership_state(record)

            # Expiry first, so extending an expired membership can make it primary in one call.
            if expires_at is not UNSET:
                record.expires_at = expires_at
            if is_primary is True:
                if not to_membership(record).is_current(utcnow()):
                    raise ValidationFailed("An inactive or expired membership cannot be primary")
                self._make_primary(db, user_id, record)
            elif is_primary is False:
                record.is_primary = False
            db.flush()

            events.append(
                AuditEvent(
                    action="role.membership.update",
                    actor_id=updated_by,
                    target_id=str(user_id),
                    before=before,
                    after=_membership_state(record),
                )
            )
            return MembershipOut.model_validate(record)

        return self._write("update role membership", work)

    # ---- Global admins ----------------------------------------------------------------

    def _validate_global_roles(self, roles: Iterable[str]) -> list[str]:
        if isinstance(roles, str):
            raise ValidationFailed("roles must be a list of role names")
        names = sorted(set(roles))
        if not names:
            raise ValidationFailed("At least one global admin role is required")
        for name in names:
            self._require_role_for(name, UserKind.GLOBAL_ADMIN)
        return names

    def create_global_admin(self, user_id: int, roles: Iterable[str], created_by: int) -> GlobalAdminOut:
        names = self._validate_global_roles(roles)

        def work(db: Session, events: list[AuditEvent]) -> GlobalAdminOut:
            user = load_user(db, user_id)
            kind = user_kind_of(user)
            if kind != UserKind.GLOBAL_ADMIN:
                raise RoleKindMismatchError(
                    f"User {user_id} is a {kind.value} user, not a global admin",
                    details={"user_id": user_id, "user_kind": kind.value},
                )
            master = self._master_department(db)
            grant = user.global_admin
            before = _grant_state(grant) if grant is not None else None
            if grant is not None and grant.is_active:
                raise ConflictError(f"User {user_id} is already a global admin", details={"user_id": user_id})
            if grant is None:
                grant = GlobalAdminMembership(user_id=user_id, department_id=master.id, roles=names, is_active=True)
                db.add(grant)
            else:
                grant.roles = names
                grant.department_id = master.id
                grant.is_active = True
            db.flush()

            events.append(
                AuditEvent(
                    action="global_admin.create",
                    actor_id=created_by,
                    target_id=str(user_id),
                    before=before,
                    after=_grant_state(grant),
                )
            )
            return GlobalAdminOut.model_validate(grant)

        return self._write("create global admin", work)

    def update_global_admin_roles(self, user_id: int, roles: Iterable[str], updated_by: int) -> GlobalAdminOut:
        names = self._validate_global_roles(roles)

        def work(db: Session, events: list[AuditEvent]) -> GlobalAdminOut:
            user = load_user(db, user_id)
            grant = user.global_admin
            if grant is None or not grant.is_active:
                raise NotFoundError(f"User {user_id} is not an active global admin", details={"user_id": user_id})
            self._guard_last_admin(db, grant, names)

            before = _grant_state(grant)
            grant.roles = names
            db.flush()
            events.append(
                AuditEvent(
                    action="global_admin.roles.update",
                    actor_id=updated_by,
                    target_id=str(user_id),
                    before=before,
                    after=_grant_state(grant),
                )
            )
            return GlobalAdminOut.model_validate(grant)

        return self._write("update global admin roles", work)

    def remove_global_admin(self, user_id: int, removed_by: int) -> GlobalAdminOut:
        def work(db: Session, events: list[AuditEvent]) -> GlobalAdminOut:
            user = load_user(db, user_id)
            grant = user.global_admin
            if grant is None or not grant.is_active:
                raise NotFoundError(f"User {user_id} is not an active global admin", details={"user_id": user_id})
            self._guard_last_admin(db, grant, ())

            before = _grant_state(grant)
            grant.is_active = False
            db.flush()
            events.append(
                AuditEvent(
                    action="global_admin.remove",
                    actor_id=removed_by,
                    target_id=str(user_id),
                    before=before,
                    after=_grant_state(grant),
                )
            )
            return GlobalAdminOut.model_validate(grant)

        return self._write("remove global admin", work)

    def list_global_admins(self) -> list[GlobalAdminOut]:
        def work(db: Session) -> list[GlobalAdminOut]:
            grants = db.scalars(
                select(GlobalAdminMembership)
                .where(GlobalAdminMembership.is_active.is_(True))
                .order_by(GlobalAdminMembership.user_id)
            ).all()
            return [GlobalAdminOut.model_validate(g) for g in grants]

        return self._read("list global admins", work)

    def get_user_roles(self, user_id: int) -> UserRolesOut:
        def work(db: Session) -> UserRolesOut:
            user = load_user(db, user_id)
            principal = load_principal(db, user_id)
            resolver = CapabilityResolver(self._registry, load_hierarchy(db, self._settings.max_hierarchy_depth))
            return UserRolesOut(
                user_id=user.id,
                user_kind=user.user_kind,
                memberships=[MembershipOut.model_validate(m) for m in user.memberships],
                global_admin=GlobalAdminOut.model_validate(user.global_admin) if user.global_admin else None,
                calculated_capabilities=sorted(resolver.resolve(principal)),
            )

        return self._read("get user roles", work)

    # ---- Role definitions -------------------------------------------------------------

    def list_role_definitions(self, user_kind: UserKind | str | None = None) -> list[RoleDefinitionOut]:
        try:
            kind = UserKind(user_kind) if user_kind is not None else None
        except ValueError as exc:
            raise ValidationFailed(f"Unknown user kind {user_kind!r}") from exc
        return [_role_out(role) for role in self._registry.roles(kind)]

    def get_role_definition(self, name: str) -> RoleDefinitionOut:
        role = self._registry.require(name)
        count = self._read("count role holders", lambda db: count_role_holders(db, name))
        return _role_out(role, user_count=count)

    # ---- Access right catalogue -------------------------------------------------------

    def _access_right(self, key: str) -> AccessRightOut:
        return AccessRightOut(key=key, domain=key.split(":", 1)[0], description=self._registry.describe(key))

    def list_access_rights(self, domain: str | None = None) -> list[AccessRightOut]:
        """Catalogued capability keys, optionally narrowed to one domain (the key's first segment)."""

        keys = sorted(self._registry.capability_catalogue)
        if domain is not None:
            domains = {key.split(":", 1)[0] for key in keys}
            if domain not in domains:
                raise ValidationFailed(
                    f"Unknown access right domain {domain!r}",
                    details={"domain": domain, "domains": sorted(domains)},
                )
            keys = [key for key in keys if key.split(":", 1)[0] == domain]
        return [self._access_right(key) for key in keys]

    def get_access_rights_for_role(self, name: str) -> RoleAccessRightsOut:
        role = self._registry.require(name)
        return RoleAccessRightsOut(
            name=role.name,
            user_kind=role.user_kind.value,
            is_built_in=role.is_built_in,
            access_rights=[self._access_right(key) for key in sorted(role.capabilities)],
        )

    def create_custom_role(
        self,
        name: str,
        user_kind: UserKind | str,
        capabilities: Iterable[str],
        created_by: int,
        description: str | None = None,
    ) -> RoleDefinitionOut:
        if not isinstance(name, str) or not ROLE_NAME_RE.match(name):
            raise ValidationFailed(
                "Role name must be 3-50 characters of lowercase letters, digits and hyphens",
                details={"name": name},
            )
        try:
            kind = UserKind(user_kind)
        except ValueError as exc:
            raise ValidationFailed(f"Unknown user kind {user_kind!r}") from exc
        caps = self._validate_capabilities(capabilities)
        if self._registry.get(name) is not None:
            raise ConflictError(f"Role {name!r} already exists", details={"name": name})

        def work(db: Session, events: list[AuditEvent]) -> RoleDefinition:
            if db.scalars(select(CustomRole.id).where(CustomRole.name == name)).first() is not None:
                raise ConflictError(f"Role {name!r} already exists", details={"name": name})
            self._require_wildcard_author(db, created_by, caps)

            record = CustomRole(
                name=name,
                user_kind=kind.value,
                capabilities=caps,
                description=description,
                created_by=created_by,
            )
            db.add(record)
            db.flush()
            events.append(
                AuditEvent(action="role.create", actor_id=created_by, target_id=name, before=None, after=_role_state(record))
            )
            return to_role_definition(record)

        role = self._write("create custom role", work)
        self.sync_registry()
        logger.info("Created custom role=%s kind=%s by=%s", name, kind.value, created_by)
        return _role_out(role)

    def _mutate_capabilities(
        self,
        operation: str,
        action: str,
        name: str,
        updated_by: int,
        change: Callable[[list[str]], list[str]],
    ) -> RoleDefinitionOut:
        # Built-in check first so immutability wins over any other validation.
        existing = self._registry.get(name)
        if existing is not None and existing.is_built_in:
            raise ImmutableRoleError(f"Built-in role {name!r} cannot be modified", details={"role": name})

        def work(db: Session, events: list[AuditEvent]) -> RoleDefinition:
            record = self._load_custom_role(db, name)
            before = _role_state(record)
            caps = self._validate_capabilities(change(list(record.capabilities or ())))
            added = set(caps) - set(record.capabilities or ())
            self._require_wildcard_author(db, updated_by, added)
            record.capabilities = caps
            db.flush()
            events.append(AuditEvent(action=action, actor_id=updated_by, target_id=name, before=before, after=_role_state(record)))
            return to_role_definition(record)

        role = self._write(operation, work)
        self.sync_registry()
        return _role_out(role)

    def update_role_access_rights(self, name: str, capabilities: Iterable[str], updated_by: int) -> RoleDefinitionOut:
        replacement = list(capabilities) if not isinstance(capabilities, str) else capabilities
        return self._mutate_capabilities(
            "update role access rights",
            "role.access_rights.update",
            name,
            updated_by,
            lambda _current: replacement,
        )

    def add_access_right(self, name: str, capability: str, updated_by: int) -> RoleDefinitionOut:
        def change(current: list[str]) -> list[str]:
            if capability in current:
                raise ConflictError(
                    f"Role {name!r} already grants {capability!r}",
                    details={"role": name, "capability": capability},
                )
            return [*current, capability]

        return self._mutate_capabilities("add access right", "role.access_right.add", name, updated_by, change)

    def remove_access_right(self, name: str, capability: str, updated_by: int) -> RoleDefinitionOut:
        def change(current: list[str]) -> list[str]:
            if capability not in current:
                raise NotFoundError(
                    f"Role {name!r} does not grant {capability!r}",
                    details={"role": name, "capability": capability},
                )
            return [c for c in current if c != capability]

        return self._mutate_capabilities("remove access right", "role.access_right.remove", name, updated_by, change)

    def delete_custom_role(self, name: str, deleted_by: int, *, force: bool = False) -> CustomRoleDeletedOut:
        """
        Delete a custom role.

        Without ``force`` a role still referenced by an active membership is
        ROLE_IN_USE. With ``force`` the role is stripped from every membership
        that lists it (memberships left empty are deactivated) before the
        definition is removed; this is destructive and audited as such.
        """

        def work(db: Session, events: list[AuditEvent]) -> CustomRoleDeletedOut:
            record = self._load_custom_role(db, name)
            in_use = count_role_holders(db, name)
            if in_use and not force:
                raise RoleInUseError(
                    f"Role {name!r} is assigned to {in_use} active membership(s)",
                    details={"role": name, "memberships": in_use},
                )

            stripped: list[int] = []
            deactivated: list[int] = []
            if force:
                for model in (DepartmentMembership, GlobalAdminMembership):
                    for membership in role_holders(db, model, name, active_only=False):
                        membership.roles = [r for r in membership.roles if r != name]
                        stripped.append(membership.id)
                        if not membership.roles and membership.is_active:
                            membership.is_active = False
                            deactivated.append(membership.id)
                            if isinstance(membership, DepartmentMembership):
                                membership.is_primary = False

            before = _role_state(record)
            db.delete(record)
            db.flush()

            events.append(
                AuditEvent(
                    action="role.delete.forced" if force and stripped else "role.delete",
                    actor_id=deleted_by,
                    target_id=name,
                    before=before,
                    after={"stripped_memberships": stripped, "deactivated_memberships": deactivated},
                )
            )
            if stripped:
                logger.warning(
                    "Force-deleted role=%s stripped=%d deactivated=%d by=%s",
                    name,
                    len(stripped),
                    len(deactivated),
                    deleted_by,
                )
            return CustomRoleDeletedOut(
                name=name,
                forced=force,
                stripped_memberships=stripped,
                deactivated_memberships=deactivated,
            )

        result = self._write("delete custom role", work)
        self.sync_registry()
        return result

    # ---- Bulk -------------------------------------------------------------------------

    def _run_bulk(
        self,
        operation: str,
        items: Sequence[Any],
        item_model: type[BaseModel],
        apply: Callable[[Any], BaseModel],
        cancel_event: threading.Event | None,
    ) -> BulkResult:
        result = BulkResult()
        for index, raw in enumerate(items or ()):
            if cancel_event is not None and cancel_event.is_set():
                result.add(BulkItemResult(index=index, status=BulkItemStatus.CANCELLED, detail="Operation cancelled"))
                continue
            try:
                item = raw if isinstance(raw, item_model) else item_model.model_validate(
                    raw if isinstance(raw, Mapping) else dict(raw)
                )
                out = apply(item)
            except ValidationError as exc:
                result.add(
                    BulkItemResult(
                        index=index,
                        status=BulkItemStatus.ERROR,
                        detail=str(exc),
                        error_kind=ValidationFailed.kind.value,
                    )
                )
            except (TypeError, ValueError) as exc:
                result.add(
                    BulkItemResult(
                        index=index,
                        status=BulkItemStatus.ERROR,
                        detail=f"Malformed item: {exc}",
                        error_kind=ValidationFailed.kind.value,
                    )
                )
            except AccessControlError as exc:
                result.add(
                    BulkItemResult(index=index, status=BulkItemStatus.ERROR, detail=exc.message, error_kind=exc.kind.value)
                )
            else:
                result.add(BulkItemResult(index=index, status=BulkItemStatus.SUCCESS, data=out.model_dump(mode="json")))

        logger.info(
            "%s finished successful=%d failed=%d cancelled=%d",
            operation,
            result.successful,
            result.failed,
            result.cancelled,
        )
        return result

    def bulk_assign_roles(
        self,
        items: Sequence[BulkAssignItem | Mapping[str, Any]],
        assigned_by: int,
        cancel_event: threading.Event | None = None,
    ) -> BulkResult:
        return self._run_bulk(
            "bulk assign roles",
            items,
            BulkAssignItem,
            lambda item: self.assign_role(
                item.user_id,
                item.department_id,
                item.role_name,
                assigned_by,
                is_primary=item.is_primary,
                expires_at=item.expires_at,
            ),
            cancel_event,
        )

    def bulk_remove_roles(
        self,
        items: Sequence[BulkRemoveItem | Mapping[str, Any]],
        removed_by: int,
        cancel_event: threading.Event | None = None,
    ) -> BulkResult:
        return self._run_bulk(
            "bulk remove roles",
            items,
            BulkRemoveItem,
            lambda item: self.remove_role(item.user_id, item.membership_id, item.role_name, removed_by),
            cancel_event,
        )
