from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from access_engine.db.init_db import init_db
from access_engine.logging_config import configure_logging
from access_engine.routers import admin_roles, me
from access_engine.security.dependencies import install_error_handlers
from access_engine.security.engine import AccessEngine
from access_engine.settings import get_settings

logger = logging.getLogger(__name__)


def create_app(engine: AccessEngine | None = None) -> FastAPI:
    """
    Build the admin API.

    Authentication is the embedding application's job: a middleware in front
    of these routes must set ``request.state.principal_id`` (and
    ``request.state.escalation_verified`` after a step-up).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if engine is None:
            settings = get_settings()
            configure_logging(settings.log_level)
            logger.info("Access engine startup beginning")
            init_db(settings=settings)
            logger.info("Database initialized (tables ensured + seed if needed)")
            app.state.access_engine = AccessEngine.from_settings(settings)
        else:
            app.state.access_engine = engine
        yield

    app = FastAPI(lifespan=lifespan)
    install_error_handlers(app)
    app.include_router(admin_roles.router)
    app.include_router(me.router)
    return app
