from __future__ import annotations

import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from access_engine.db.base import Base
from access_engine.db.session import SessionFactory, SessionLocal, engine
from access_engine.models.org import Department, GlobalAdminMembership, User
from access_engine.models.security import AuditEventRecord, CustomRole  # noqa: F401  (register tables)
from access_engine.security.context import UserKind
from access_engine.security.registry import SYSTEM_ADMIN_ROLE
from access_engine.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def init_db(
    bind: Engine | None = None,
    session_factory: SessionFactory | None = None,
    settings: Settings | None = None,
) -> None:
    """
    Create tables + seed the minimum the engine needs to run.

    Seeds the master department (the anchor for global-admin memberships) and
    one bootstrap ``system-admin`` so the last-admin invariant holds from the
    first request. Does nothing beyond table creation when data exists.
    """

    settings = settings or get_settings()
    Base.metadata.create_all(bind=bind or engine)

    with (session_factory or SessionLocal)() as db:
        if _has_seed_data(db, settings):
            return
        _seed(db, settings)


def _has_seed_data(db: Session, settings: Settings) -> bool:
    return (
        db.execute(select(Department.id).where(Department.code == settings.master_department_code).limit(1)).first()
        is not None
    )


def _seed(db: Session, settings: Settings) -> None:
    master = Department(
        name="Master",
        code=settings.master_department_code,
        description="Organization root; anchors global admin memberships",
    )
    db.add(master)
    db.flush()

    admin = User(
        username="system_admin",
        email="system.admin@example.com",
        first_name="System",
        last_name="Administrator",
        user_kind=UserKind.GLOBAL_ADMIN.value,
        is_active=True,
    )
    db.add(admin)
    db.flush()

    db.add(GlobalAdminMembership(user_id=admin.id, department_id=master.id, roles=[SYSTEM_ADMIN_ROLE], is_active=True))
    db.commit()
    logger.info("Seeded master department %r and bootstrap system admin user=%s", master.code, admin.id)
