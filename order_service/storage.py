import logging
import time
from contextlib import contextmanager

from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError

from order_service.errors import AppError, PersistenceError, PersistenceTimeoutError

logger = logging.getLogger(__name__)

# query_canceled, lock_not_available
PG_TIMEOUT_CODES = {"57014", "55P03"}


def configure_engine(engine, timeout):
    """Per-dialect setup that has to happen before the first connection."""
    if engine.dialect.name != "sqlite":
        return

    # SQLite has no row locks. BEGIN IMMEDIATE takes the database write lock
    # up front, so two writers never interleave their read-check-write steps.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA busy_timeout = {int(timeout * 1000)}")
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def is_timeout(error):
    orig = getattr(error, "orig", None)
    if getattr(orig, "pgcode", None) in PG_TIMEOUT_CODES:
        return True
    return isinstance(error, OperationalError) and "database is locked" in str(orig)


class Gateway:
    def __init__(self, db, timeout=5.0, clock=time.monotonic):
        self.db = db
        self.timeout = timeout
        self.clock = clock

    @property
    def session(self):
        return self.db.session

    @contextmanager
    def transaction(self, timeout=None):
        """
        Run a block inside one transaction.

        Yields the session. Commits when the block finishes, unless the
        deadline has already passed, in which case the work is rolled back
        and :class:`PersistenceTimeoutError` is raised. Any exception rolls
        the transaction back before propagating; SQLAlchemy errors are
        translated to :class:`PersistenceError`.
        """
        timeout = self.timeout if timeout is None else timeout
        deadline = self.clock() + timeout
        session = self.session
        try:
            self._apply_timeout(session, timeout)
            yield session
            if self.clock() > deadline:
                raise PersistenceTimeoutError(f"transaction exceeded {timeout}s")
            session.commit()
        except AppError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            if is_timeout(e):
                raise PersistenceTimeoutError(str(e)) from e
            raise PersistenceError(str(e)) from e
        except BaseException:
            # cancellation included: nothing half-done may survive
            session.rollback()
            raise

    def _apply_timeout(self, session, timeout):
        if session.get_bind().dialect.name != "postgresql":
            return
        ms = max(int(timeout * 1000), 1)
        session.execute(text(f"SET LOCAL statement_timeout = {ms}"))
        session.execute(text(f"SET LOCAL lock_timeout = {ms}"))


def describe(error):
    """Operator-facing description of a persistence failure."""
    cause = error.__cause__
    if isinstance(cause, DBAPIError) and cause.orig is not None:
        return f"{type(cause.orig).__name__}: {cause.orig}"
    return error.detail or repr(error)
