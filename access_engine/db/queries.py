"""Read-side queries that build the immutable snapshots the decision functions consume."""

from __future__ import annotations

from sqlalchemy import String, cast, func, select
from sqlalchemy.orm import Session, selectinload

from access_engine.errors import NotFoundError, ValidationFailed
from access_engine.models.org import Department, DepartmentMembership, GlobalAdminMembership, User
from access_engine.models.security import CustomRole
from access_engine.security.context import GlobalAdminGrant, Membership, Principal, UserKind
from access_engine.security.hierarchy import DEFAULT_MAX_DEPTH, DepartmentHierarchy
from access_engine.security.registry import RoleDefinition


def to_membership(record: DepartmentMembership) -> Membership:
    return Membership(
        id=record.id,
        department_id=record.department_id,
        roles=frozenset(record.roles or ()),
        is_primary=record.is_primary,
        is_active=record.is_active,
        joined_at=record.joined_at,
        expires_at=record.expires_at,
    )


def to_grant(record: GlobalAdminMembership) -> GlobalAdminGrant:
    return GlobalAdminGrant(
        id=record.id,
        department_id=record.department_id,
        roles=frozenset(record.roles or ()),
        is_active=record.is_active,
    )


def user_kind_of(user: User) -> UserKind:
    try:
        return UserKind(user.user_kind)
    except ValueError as exc:
        raise ValidationFailed(f"User {user.id} has unknown user kind {user.user_kind!r}") from exc


def load_user(db: Session, user_id: int) -> User:
    user = db.execute(
        select(User)
        .where(User.id == user_id)
        .options(
            selectinload(User.memberships),
            selectinload(User.global_admin),
        )
    ).scalar_one_or_none()

    if user is None or not user.is_active:
        raise NotFoundError(f"User {user_id} not found", details={"user_id": user_id})

    return user


def load_principal(db: Session, user_id: int) -> Principal:
    user = load_user(db, user_id)
    kind = user_kind_of(user)

    grant = None
    if kind == UserKind.GLOBAL_ADMIN and user.global_admin is not None:
        grant = to_grant(user.global_admin)

    return Principal(
        user_id=user.id,
        user_kind=kind,
        memberships=tuple(to_membership(m) for m in user.memberships),
        global_admin=grant,
    )


def load_hierarchy(db: Session, max_depth: int = DEFAULT_MAX_DEPTH) -> DepartmentHierarchy:
    rows = db.execute(select(Department.id, Department.parent_id)).all()
    return DepartmentHierarchy.from_edges(((row.id, row.parent_id) for row in rows), max_depth=max_depth)


def load_custom_roles(db: Session) -> list[RoleDefinition]:
    records = db.scalars(select(CustomRole).order_by(CustomRole.name)).all()
    return [to_role_definition(r) for r in records]


def to_role_definition(record: CustomRole) -> RoleDefinition:
    return RoleDefinition(
        name=record.name,
        user_kind=UserKind(record.user_kind),
        capabilities=frozenset(record.capabilities or ()),
        is_built_in=False,
        description=record.description,
    )


MembershipModel = type[DepartmentMembership] | type[GlobalAdminMembership]


def role_holders(
    db: Session,
    model: MembershipModel,
    role_name: str,
    *,
    active_only: bool = True,
) -> list[DepartmentMembership | GlobalAdminMembership]:
    """
    Membership rows of ``model`` whose role set lists ``role_name``.

    The JSON text is prefiltered in SQL with LIKE on the quoted name, so only
    candidate rows are loaded; the exact set check runs on those rows.
    """

    stmt = select(model).where(cast(model.roles, String).like(f'%"{role_name}"%')).order_by(model.id)
    if active_only:
        stmt = stmt.where(model.is_active.is_(True))
    return [row for row in db.scalars(stmt).all() if role_name in (row.roles or ())]


def count_role_holders(db: Session, role_name: str) -> int:
    """Active memberships (department and global-admin) currently listing ``role_name``."""
    return sum(len(role_holders(db, model, role_name)) for model in (DepartmentMembership, GlobalAdminMembership))


def department_exists(db: Session, department_id: int) -> bool:
    return db.execute(select(func.count(Department.id)).where(Department.id == department_id)).scalar_one() > 0
