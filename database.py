import functools
import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from config import Settings, get_settings
from errors import ConflictError


logger = logging.getLogger(__name__)

DEFAULT_CONFLICT_RETRIES = 5

T = TypeVar("T")


class Base(DeclarativeBase):
    pass


def _create_engine(settings: Settings) -> Engine:
    url = settings.database_url
    connect_args: dict[str, object] = {}
    engine_kwargs: dict[str, object] = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = settings.db_timeout_secs
    else:
        engine_kwargs["pool_timeout"] = settings.db_timeout_secs
        if url.startswith("postgresql"):
            timeout_ms = int(settings.db_timeout_secs * 1000)
            connect_args["options"] = f"-c statement_timeout={timeout_ms}"

    eng = create_engine(url, connect_args=connect_args, **engine_kwargs)
    if url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
        event.listen(eng, "begin", _begin_immediate)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    # pysqlite must not emit its own BEGIN; _begin_immediate owns that
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _begin_immediate(conn):
    # writers take the database write lock up front so budget updates serialize
    conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """Storage handle created once per process and handed to request scopes."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.engine = _create_engine(self.settings)
        self.SessionLocal = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def session(self) -> Session:
        return self.SessionLocal()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        session: Session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


_TRANSIENT_MARKERS = (
    "locked",
    "busy",
    "timeout",
    "deadlock",
    "could not serialize",
    "canceling statement",
)

# unique keys two writers can race to create: one budget per user, one row per
# budget category
_RACE_MARKERS = (
    "unique constraint failed: budgets.user_id",
    "budgets_user_id_key",
    "unique constraint failed: category_budgets.budget_id, category_budgets.category",
    "uq_category_budget_category",
)


def is_transient_error(exc: Exception) -> bool:
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, IntegrityError):
        text = str(exc.orig or exc).lower()
        return any(marker in text for marker in _RACE_MARKERS)
    if isinstance(exc, OperationalError):
        text = str(exc.orig or exc).lower()
        return any(marker in text for marker in _TRANSIENT_MARKERS)
    return False


def retry_on_conflict(method: Callable[..., T]) -> Callable[..., T]:
    """Re-run a service unit of work after a write conflict.

    The wrapped method must own its transaction (read, write, commit) through
    ``self.session``. On a conflict the session is rolled back, so every
    attempt starts from committed state and deltas are never applied twice.
    """

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        attempts = max(1, getattr(self, "conflict_retries", DEFAULT_CONFLICT_RETRIES))
        for attempt in range(1, attempts + 1):
            try:
                return method(self, *args, **kwargs)
            except (IntegrityError, OperationalError, StaleDataError) as exc:
                self.session.rollback()
                if not is_transient_error(exc):
                    raise
                logger.warning(
                    f"write_conflict: op={method.__name__} attempt={attempt}/{attempts} "
                    f"error={exc.__class__.__name__}"
                )
                if attempt == attempts:
                    raise ConflictError(
                        "The budget is being updated by another request, please retry"
                    ) from exc
                time.sleep(0.05 * attempt)
            except Exception:
                self.session.rollback()
                raise
        raise AssertionError("unreachable")

    return wrapper
