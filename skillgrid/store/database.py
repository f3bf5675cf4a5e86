"""
Backing store access — engine/session factory, deadlines and error classification.

Every component that touches the database goes through ``Database``:

- ``session()`` opens a transaction with the per-request deadline applied
  (``SET LOCAL statement_timeout`` on PostgreSQL)
- ``Deadline`` reports BackendUnavailable once a request overruns, so a
  slow sync is rolled back instead of committed
- ``classify_db_error`` maps SQLAlchemy exceptions onto the typed taxonomy
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.exc import (
    DataError,
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from skillgrid.contracts.errors import (
    BackendUnavailable,
    Conflict,
    GatewayError,
    Malformed,
    NotFound,
)
from skillgrid.store.models import Base

logger = logging.getLogger(__name__)


class Deadline:
    """Wall-clock budget for one request."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self.started = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started

    @property
    def elapsed_ms(self) -> float:
        return round(self.elapsed * 1000, 3)

    def check(self, what: str = "query") -> None:
        """Raise BackendUnavailable if the budget is spent."""
        if self.seconds > 0 and self.elapsed > self.seconds:
            raise BackendUnavailable(
                f"{what} exceeded the {self.seconds:g}s deadline",
                details={"elapsedMs": self.elapsed_ms},
            )


def classify_db_error(exc: BaseException) -> GatewayError:
    """Translate a backing-store exception into the typed error taxonomy."""
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, OperationalError) and "no such " in _short(exc).lower():
        return NotFound(f"Backing store object not found: {_short(exc)}")
    if isinstance(exc, (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)):
        return BackendUnavailable(f"Backing store unavailable: {_short(exc)}")
    if isinstance(exc, IntegrityError):
        return Conflict(f"Concurrent write violated a constraint: {_short(exc)}")
    if isinstance(exc, DataError):
        return Malformed(f"Backing store rejected a value: {_short(exc)}")
    if isinstance(exc, ProgrammingError):
        message = _short(exc).lower()
        # a parameter of the wrong type, not a missing object
        if "operator does not exist" in message:
            return Malformed(f"Backing store rejected a parameter type: {_short(exc)}")
        if "does not exist" in message or "no such" in message or "undefined" in message:
            return NotFound(f"Backing store object not found: {_short(exc)}")
        return Malformed(f"Backing store rejected the query: {_short(exc)}")
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return BackendUnavailable(f"Backing store connection lost: {_short(exc)}")
    return BackendUnavailable(f"Backing store error: {type(exc).__name__}")


def _short(exc: BaseException) -> str:
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        return str(exc.orig).splitlines()[0]
    return str(exc).splitlines()[0] if str(exc) else type(exc).__name__


class Database:
    """
    Engine and session factory for the skill hierarchy store.

    Usage:
        db = Database("postgresql+psycopg2://...", query_timeout_seconds=10)
        db.initialize()
        with db.session() as session:
            ...
    """

    def __init__(self, database_url: str, query_timeout_seconds: float = 10.0) -> None:
        """
        Args:
            database_url: SQLAlchemy URL (sync driver). In-memory SQLite URLs
                share one connection so every session sees the same data.
            query_timeout_seconds: Per-request deadline; 0 disables it.
        """
        kwargs: dict = {"echo": False}
        if database_url.startswith("sqlite") and (
            database_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in database_url
        ):
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        self.engine = create_engine(database_url, **kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.query_timeout_seconds = query_timeout_seconds

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def initialize(self) -> None:
        """Create the schema if it does not exist."""
        Base.metadata.create_all(self.engine)
        logger.info("Schema ready on %s backend", self.dialect)

    def deadline(self) -> Deadline:
        return Deadline(self.query_timeout_seconds)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """
        Transactional session: commit on clean exit, roll back on any error.

        SQLAlchemy errors are re-raised as typed GatewayErrors.
        """
        session = self.SessionLocal()
        try:
            self._apply_statement_timeout(session)
            yield session
            session.commit()
        except GatewayError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            raise classify_db_error(exc) from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def _apply_statement_timeout(self, session: Session) -> None:
        if self.dialect != "postgresql" or self.query_timeout_seconds <= 0:
            return
        timeout_ms = int(self.query_timeout_seconds * 1000)
        session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))
