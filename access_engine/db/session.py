from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
import logging

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from access_engine.errors import AccessControlError, StorageError
from access_engine.settings import get_settings

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


_settings = get_settings()

engine = create_engine(
    _settings.resolved_db_url(),
    connect_args={"check_same_thread": False} if _settings.resolved_db_url().startswith("sqlite") else {},
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, class_=Session)


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """
    Translate persistence-layer failures into :class:`StorageError`.

    Policy errors pass through untouched, so callers can tell "denied" from
    "couldn't evaluate".
    """

    try:
        yield
    except AccessControlError:
        raise
    except SQLAlchemyError as exc:
        logger.exception("Storage failure during %s", operation)
        raise StorageError(f"Storage failure during {operation}", details={"operation": operation}) from exc
