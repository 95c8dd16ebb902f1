import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import NamedTuple, Optional, Sequence

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import CompileError, NoSuchTableError, SQLAlchemyError
from sqlalchemy.orm import declarative_base

from mvckit import codec
from mvckit.errors import ConfigurationError, QueryExecutionError, QueryTimeoutError, SchemaIntrospectionError

logger = logging.getLogger(__name__)

# Base class for bootstrap tables (see mvckit.tables)
Base = declarative_base()

DEFAULT_WRITE_TIMEOUT = 3.0


class WriteResult(NamedTuple):
    rowcount: int
    lastrowid: Optional[int]


class _PendingWrite:
    """
    Settles the race between a write's commit and its caller's deadline.

    Exactly one side wins: the worker claims the commit, or the caller
    abandons the write and the worker rolls it back.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._committing = False
        self._abandoned = False

    def claim_commit(self) -> bool:
        with self._lock:
            if self._abandoned:
                return False
            self._committing = True
            return True

    def abandon(self) -> bool:
        with self._lock:
            if self._committing:
                return False
            self._abandoned = True
            return True


def _placeholder_parts(statement: str) -> list[str]:
    """Split on ``?`` outside single- or double-quoted spans."""
    parts = []
    start = 0
    quote = None
    for i, ch in enumerate(statement):
        if quote:
            if ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
        elif ch == "?":
            parts.append(statement[start:i])
            start = i + 1
    parts.append(statement[start:])
    return parts


class Database:
    """
    Live database handle shared by every model.

    Wraps a SQLAlchemy engine (which owns the connection pool) and runs
    compiled ``?``-placeholder statements against it. Reads run on the
    caller's thread. Writes run on a small worker pool so the caller can
    give up on a stalled statement after ``write_timeout`` seconds.
    """

    def __init__(self, engine: Engine, write_timeout: float = DEFAULT_WRITE_TIMEOUT, max_writers: int = 10):
        self.engine = engine
        self.write_timeout = write_timeout
        self._writer = ThreadPoolExecutor(max_workers=max_writers, thread_name_prefix="mvckit-write")
        self._columns: dict[str, list[tuple[str, str]]] = {}
        self._columns_lock = threading.Lock()

    @staticmethod
    def bind(statement: str, params: Sequence = ()):
        """
        Rewrite positional ``?`` placeholders as SQLAlchemy named binds.

        This lets the same compiled text run on any dialect regardless of
        the driver's own paramstyle. A ``?`` inside a quoted literal or
        identifier is text, not a placeholder.
        """
        parts = _placeholder_parts(statement)
        if len(parts) - 1 != len(params):
            raise QueryExecutionError(statement, f"{len(parts) - 1} placeholders for {len(params)} values")

        sql = parts[0].replace(":", "\\:")
        binds = {}
        for i, (value, part) in enumerate(zip(params, parts[1:])):
            name = f"p{i}"
            binds[name] = codec.encode(value)
            sql += f":{name}" + part.replace(":", "\\:")
        return text(sql), binds

    def column_types(self, table: str) -> list[tuple[str, str]]:
        """
        Ordered ``(column, type name)`` pairs for a table, read once and cached.
        """
        with self._columns_lock:
            cached = self._columns.get(table)
        if cached is not None:
            return list(cached)

        try:
            columns = inspect(self.engine).get_columns(table)
        except NoSuchTableError as exc:
            raise SchemaIntrospectionError(table, "no such table") from exc
        except SQLAlchemyError as exc:
            raise SchemaIntrospectionError(table, str(exc)) from exc

        if not columns:
            raise SchemaIntrospectionError(table, "no such table")

        pairs = [(c["name"], self._type_name(c["type"])) for c in columns]
        with self._columns_lock:
            self._columns[table] = pairs
        return list(pairs)

    def _type_name(self, type_) -> str:
        try:
            name = type_.compile(dialect=self.engine.dialect)
        except CompileError:
            # untyped SQLite columns reflect as NullType
            return getattr(type_, "__visit_name__", "").upper()

        # SQLite stores every integer column as 64-bit
        if self.engine.dialect.name == "sqlite" and codec.normalize_type_name(name) in codec.INT32_TYPES:
            return "BIGINT"
        return name

    def query(self, statement: str, params: Sequence = ()):
        """Run a read statement and return ``(column names, rows)``."""
        clause, binds = self.bind(statement, params)
        try:
            with self.engine.connect() as conn:
                result = conn.execute(clause, binds)
                keys = list(result.keys())
                rows = [tuple(row) for row in result]
        except SQLAlchemyError as exc:
            logger.error("Query failed: %s", statement)
            raise QueryExecutionError(statement) from exc
        return keys, rows

    def _write(self, clause, binds, pending: "_PendingWrite") -> Optional[WriteResult]:
        with self.engine.connect() as conn:
            trans = conn.begin()
            try:
                result = conn.execute(clause, binds)
                outcome = WriteResult(result.rowcount, result.lastrowid)
            except BaseException:
                trans.rollback()
                raise

            if not pending.claim_commit():
                trans.rollback()
                logger.info("Rolled back statement abandoned by its caller")
                return None
            trans.commit()
            return outcome

    def execute_write(self, statement: str, params: Sequence = (), timeout: Optional[float] = None) -> WriteResult:
        """
        Run an INSERT/UPDATE/DELETE in its own transaction.

        Raises QueryTimeoutError when the statement has not reached its
        commit within the deadline. The transaction is then rolled back
        once the backend answers, so a timed-out write never lands. A write
        that was already committing when the deadline passed is waited for
        and reported normally.
        """
        clause, binds = self.bind(statement, params)
        deadline = self.write_timeout if timeout is None else timeout
        pending = _PendingWrite()
        future = self._writer.submit(self._write, clause, binds, pending)
        try:
            try:
                return future.result(timeout=deadline)
            except FuturesTimeout as exc:
                if pending.abandon():
                    logger.error("Statement timed out after %gs: %s", deadline, statement)
                    raise QueryTimeoutError(statement, deadline) from exc
                return future.result()
        except SQLAlchemyError as exc:
            logger.error("Statement failed: %s", statement)
            raise QueryExecutionError(statement) from exc

    def close(self):
        self._writer.shutdown(wait=True, cancel_futures=True)
        self.engine.dispose()


def connect_database(
    database_url: str,
    pool_size: int = 10,
    pool_recycle: int = 180,
    write_timeout: float = DEFAULT_WRITE_TIMEOUT,
    echo: bool = False,
) -> Database:
    """
    Create the engine, check the connection and wrap it in a Database.

    check_same_thread=False is needed for SQLite because statements run on
    request and writer threads. Server backends get a bounded pool whose
    connections are recycled and pinged before use.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(database_url, connect_args={"check_same_thread": False}, echo=echo)
    else:
        engine = create_engine(
            database_url,
            pool_size=pool_size,
            max_overflow=0,
            pool_recycle=pool_recycle,
            pool_pre_ping=True,
            echo=echo,
        )

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        engine.dispose()
        raise ConfigurationError(f"database connection failed: {exc}") from exc

    return Database(engine, write_timeout=write_timeout, max_writers=pool_size)


def init_db(engine: Engine):
    """
    Create bootstrap tables that do not exist yet.

    Call this on application startup.
    """
    # register table classes on Base.metadata
    from mvckit import tables  # noqa: F401

    Base.metadata.create_all(bind=engine)
