"""
Tests for organization data access (ORM).

Uses db_session fixture: in-memory SQLite, rolled back after each test.
"""
from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from access_engine.db.queries import count_role_holders, load_hierarchy, load_principal, load_user
from access_engine.errors import NotFoundError
from access_engine.models.org import Department, DepartmentMembership, GlobalAdminMembership, User
from access_engine.security.context import UserKind


def _dept(db, code: str, parent: Department | None = None) -> Department:
    dept = Department(name=code, code=code, parent_id=parent.id if parent else None)
    db.add(dept)
    db.flush()
    return dept


def _user(db, username: str, kind: UserKind, is_active: bool = True) -> User:
    user = User(username=username, email=f"{username}@example.com", user_kind=kind.value, is_active=is_active)
    db.add(user)
    db.flush()
    return user


def test_load_principal_snapshots_memberships(db_session):
    # Arrange: a root department with a child and a staff member in each
    root = _dept(db_session, "A")
    child = _dept(db_session, "B", root)
    user = _user(db_session, "tutor", UserKind.STAFF)
    db_session.add_all(
        [
            DepartmentMembership(user_id=user.id, department_id=root.id, roles=["department-admin"], is_primary=True),
            DepartmentMembership(user_id=user.id, department_id=child.id, roles=["instructor"], is_active=False),
        ]
    )
    db_session.commit()

    # Act
    principal = load_principal(db_session, user.id)

    # Assert
    assert principal.user_kind == UserKind.STAFF
    assert principal.global_admin is None
    assert [m.roles for m in principal.memberships] == [frozenset({"department-admin"}), frozenset({"instructor"})]
    assert principal.memberships[0].is_primary
    assert not principal.memberships[1].is_active


def test_load_principal_global_admin(db_session):
    master = _dept(db_session, "MASTER")
    user = _user(db_session, "root", UserKind.GLOBAL_ADMIN)
    db_session.add(GlobalAdminMembership(user_id=user.id, department_id=master.id, roles=["system-admin"]))
    db_session.commit()

    principal = load_principal(db_session, user.id)

    assert principal.global_admin is not None
    assert principal.global_admin.roles == {"system-admin"}
    assert principal.global_admin.department_id == master.id


def test_load_user_raises_when_not_found(db_session):
    with pytest.raises(NotFoundError):
        load_user(db_session, 99999)


def test_load_user_raises_when_inactive(db_session):
    user = _user(db_session, "inactive", UserKind.STAFF, is_active=False)
    db_session.commit()

    with pytest.raises(NotFoundError):
        load_user(db_session, user.id)


def test_load_hierarchy(db_session):
    a = _dept(db_session, "A")
    b = _dept(db_session, "B", a)
    c = _dept(db_session, "C", b)
    db_session.commit()

    hierarchy = load_hierarchy(db_session)

    assert hierarchy.is_root(a.id)
    assert hierarchy.descendants(a.id) == {a.id, b.id, c.id}


def test_count_role_holders_ignores_inactive(db_session):
    dept = _dept(db_session, "A")
    u1 = _user(db_session, "one", UserKind.STAFF)
    u2 = _user(db_session, "two", UserKind.STAFF)
    db_session.add_all(
        [
            DepartmentMembership(user_id=u1.id, department_id=dept.id, roles=["instructor"]),
            DepartmentMembership(user_id=u2.id, department_id=dept.id, roles=["instructor"], is_active=False),
        ]
    )
    db_session.commit()

    assert count_role_holders(db_session, "instructor") == 1
    assert count_role_holders(db_session, "content-admin") == 0


def test_membership_version_detects_concurrent_update(session_factory):
    with session_factory() as db:
        dept = _dept(db, "A")
        user = _user(db, "racer", UserKind.STAFF)
        membership = DepartmentMembership(user_id=user.id, department_id=dept.id, roles=["instructor"])
        db.add(membership)
        db.commit()
        membership_id = membership.id
        assert membership.version == 1

    first = session_factory()
    second = session_factory()
    try:
        stale = second.get(DepartmentMembership, membership_id)
        fresh = first.get(DepartmentMembership, membership_id)

        fresh.roles = ["instructor", "content-admin"]
        first.commit()

        stale.roles = ["billing-admin"]
        with pytest.raises(StaleDataError):
            second.commit()
    finally:
        first.close()
        second.close()

    with session_factory() as db:
        record = db.scalars(select(DepartmentMembership).where(DepartmentMembership.id == membership_id)).one()
        assert record.roles == ["instructor", "content-admin"]
        assert record.version == 2


def test_one_membership_row_per_user_and_department(db_session):
    dept = _dept(db_session, "A")
    user = _user(db_session, "twice", UserKind.STAFF)
    db_session.add(DepartmentMembership(user_id=user.id, department_id=dept.id, roles=["instructor"], is_active=False))
    db_session.flush()

    db_session.add(DepartmentMembership(user_id=user.id, department_id=dept.id, roles=["content-admin"]))
    with pytest.raises(IntegrityError):
        db_session.flush()


def test_count_role_holders_matches_whole_role_names(db_session):
    dept = _dept(db_session, "A")
    other = _dept(db_session, "B")
    user = _user(db_session, "admin-ish", UserKind.STAFF)
    db_session.add_all(
        [
            DepartmentMembership(user_id=user.id, department_id=dept.id, roles=["department-admin"]),
            DepartmentMembership(user_id=user.id, department_id=other.id, roles=["content-admin", "instructor"]),
        ]
    )
    db_session.commit()

    assert count_role_holders(db_session, "admin") == 0
    assert count_role_holders(db_session, "department-admin") == 1
    assert count_role_holders(db_session, "instructor") == 1
