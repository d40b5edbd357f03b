"""
Pytest fixtures for the test suite.

Database tests use an in-memory SQLite engine shared by every session of a
test (StaticPool), so the service's short-lived sessions see each other's
commits. Each test gets a fresh engine and fresh tables.
"""
from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from access_engine.models.org import Department, DepartmentMembership, GlobalAdminMembership, User
from access_engine.security.config import load_access_config
from access_engine.security.context import UserKind
from access_engine.security.engine import AccessEngine
from access_engine.security.registry import CapabilityRegistry, RegistryProvider
from access_engine.services.role_management import RoleManagementService
from access_engine.settings import Settings


TEST_DB_URL = "sqlite://"
CONFIG_PATH = Path(__file__).resolve().parents[1] / "config" / "access_control.yaml"


class RecordingSink:
    """Audit sink that keeps events in memory."""

    def __init__(self) -> None:
        self.events = []

    def emit(self, event) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [e.action for e in self.events]


@pytest.fixture
def settings():
    return Settings(db_url=TEST_DB_URL, max_write_retries=2)


@pytest.fixture
def engine():
    """Create a fresh in-memory SQLite engine for each test."""
    return create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )


@pytest.fixture
def tables(engine):
    """Create all ORM tables on the test engine."""
    from access_engine.db.base import Base
    import access_engine.models.org  # noqa: F401
    import access_engine.models.security  # noqa: F401

    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(tables):
    return sessionmaker(bind=tables, autocommit=False, autoflush=False, class_=Session)


@pytest.fixture
def db_session(tables):
    """
    Provide a Session bound to the test DB; roll back after each test.

    For data-layer tests that do not go through the service.
    """
    connection = tables.connect()
    transaction = connection.begin()
    TestSession = sessionmaker(
        bind=connection,
        autocommit=False,
        autoflush=False,
        class_=Session,
    )
    session = TestSession()
    yield session
    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(scope="session")
def access_config():
    return load_access_config(CONFIG_PATH)


@pytest.fixture
def registry(access_config):
    return CapabilityRegistry.from_config(access_config)


@pytest.fixture
def registry_provider(registry):
    return RegistryProvider(registry)


@pytest.fixture
def audit_sink():
    return RecordingSink()


@pytest.fixture
def org(session_factory):
    """
    Seed a small organization:

        MASTER (root)
        A (root) -> B -> C
        D (root)

    Users:
      admin       global-admin, system-admin
      dept_admin  staff, department-admin in A (top-level)
      instructor  staff, instructor in B
      learner     learner, course-taker in C
      other_staff staff, content-admin in D
      fresh_staff staff, no memberships
    """

    with session_factory() as db:
        master = Department(name="Master", code="MASTER")
        a = Department(name="Academy", code="A")
        d = Department(name="Distance", code="D")
        db.add_all([master, a, d])
        db.flush()
        b = Department(name="Business", code="B", parent_id=a.id)
        db.add(b)
        db.flush()
        c = Department(name="Commerce", code="C", parent_id=b.id)
        db.add(c)
        db.flush()

        def user(username: str, kind: UserKind, last_name: str = "Smith") -> User:
            u = User(
                username=username,
                email=f"{username}@example.com",
                first_name=username.title(),
                last_name=last_name,
                user_kind=kind.value,
                is_active=True,
            )
            db.add(u)
            db.flush()
            return u

        admin = user("admin", UserKind.GLOBAL_ADMIN)
        dept_admin = user("dept_admin", UserKind.STAFF)
        instructor = user("instructor", UserKind.STAFF)
        learner = user("learner", UserKind.LEARNER, last_name="Doe")
        other_staff = user("other_staff", UserKind.STAFF)
        fresh_staff = user("fresh_staff", UserKind.STAFF)

        admin_grant = GlobalAdminMembership(user_id=admin.id, department_id=master.id, roles=["system-admin"])
        m_dept_admin = DepartmentMembership(user_id=dept_admin.id, department_id=a.id, roles=["department-admin"], is_primary=True)
        m_instructor = DepartmentMembership(user_id=instructor.id, department_id=b.id, roles=["instructor"], is_primary=True)
        m_learner = DepartmentMembership(user_id=learner.id, department_id=c.id, roles=["course-taker"], is_primary=True)
        m_other = DepartmentMembership(user_id=other_staff.id, department_id=d.id, roles=["content-admin"])
        db.add_all([admin_grant, m_dept_admin, m_instructor, m_learner, m_other])
        db.commit()

        return SimpleNamespace(
            master=master.id,
            a=a.id,
            b=b.id,
            c=c.id,
            d=d.id,
            admin=admin.id,
            admin_grant=admin_grant.id,
            dept_admin=dept_admin.id,
            dept_admin_membership=m_dept_admin.id,
            instructor=instructor.id,
            instructor_membership=m_instructor.id,
            learner=learner.id,
            learner_membership=m_learner.id,
            other_staff=other_staff.id,
            other_membership=m_other.id,
            fresh_staff=fresh_staff.id,
        )


@pytest.fixture
def service(session_factory, registry_provider, audit_sink, settings, org):
    return RoleManagementService(session_factory, registry_provider, audit_sink, settings)


@pytest.fixture
def access_engine(access_config, session_factory, settings, org):
    return AccessEngine.from_config(access_config, session_factory, settings)
