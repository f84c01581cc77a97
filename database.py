import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from config import get_settings
from errors import ConflictExceeded, StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    from sqlalchemy import create_engine

    eng = create_engine(settings.database_url, connect_args=connect_args)
    if settings.database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def run_atomic(
    session: Session,
    work: Callable[[Session], T],
    *,
    max_attempts: Optional[int] = None,
    label: str = "atomic",
) -> T:
    """Run ``work`` and commit it as one unit, re-running it on write conflicts.

    ``work`` must read everything it depends on through ``session`` and must
    not touch anything outside of it: after a conflict the session is rolled
    back (expiring every loaded row) and ``work`` is executed again from
    scratch. Versioned rows make a stale UPDATE/DELETE raise
    ``StaleDataError`` during the flush, which is what counts as a conflict.
    """
    attempts = max_attempts or get_settings().txn_max_attempts
    last_conflict: Optional[StaleDataError] = None
    for attempt in range(1, attempts + 1):
        try:
            result = work(session)
            session.commit()
            return result
        except StaleDataError as exc:
            session.rollback()
            last_conflict = exc
            logger.warning(
                f"{label}: write conflict attempt={attempt} max_attempts={attempts}"
            )
        except OperationalError as exc:
            session.rollback()
            logger.error(f"{label}: store unavailable error={exc.orig!r}")
            raise StoreUnavailable("Database is unavailable") from exc
        except Exception:
            session.rollback()
            raise
    logger.error(f"{label}: giving up after {attempts} conflicting attempts")
    raise ConflictExceeded(
        f"Gave up after {attempts} conflicting attempts"
    ) from last_conflict
