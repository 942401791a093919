from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager
import logging
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from attendance_engine.errors import PersistenceTimeoutError
from attendance_engine.settings import get_settings

logger = logging.getLogger("attendance_engine.db")


class Base(DeclarativeBase):
    pass


def _engine_kwargs(database_url: str) -> dict[str, Any]:
    settings = get_settings()
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if make_url(database_url).get_backend_name() == "postgresql":
        kwargs["pool_timeout"] = settings.db_pool_timeout_seconds
        kwargs["connect_args"] = {
            "connect_timeout": max(1, settings.db_pool_timeout_seconds),
            "options": (
                f"-c statement_timeout={settings.db_statement_timeout_ms} "
                f"-c lock_timeout={settings.db_lock_timeout_ms}"
            ),
        }
    return kwargs


engine = create_engine(get_settings().database_url, **_engine_kwargs(get_settings().database_url))
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def guard_persistence(db: Session, *, operation: str) -> Iterator[None]:
    """Turn driver timeouts and lock waits into a retryable error for the caller."""
    try:
        yield
    except (OperationalError, PoolTimeoutError) as exc:
        db.rollback()
        logger.warning(
            "persistence_timeout",
            extra={"operation": operation, "error": str(exc)[:500]},
        )
        raise PersistenceTimeoutError() from exc
