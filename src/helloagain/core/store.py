"""Durable key-value store.

The store has no query language and no secondary indices: callers get, put
and delete single values by (partition, key). Anything that looks like
listing is done by reading one aggregate value and filtering in memory.

Two partitions exist:
- ``uploads``: large binary blobs (the raw export archive), stored as bytes
- ``settings``: small structured values (API key, job array), stored as JSON

SQLiteStore backs the protocol with SQLAlchemy Core. SQLAlchemy is
synchronous, so each call runs in a worker thread via asyncio.to_thread;
the event loop only ever suspends at these boundaries.

``modify`` is the one read-modify-write primitive. It runs inside a single
``BEGIN IMMEDIATE`` transaction, so writers in other processes sharing the
database file wait on SQLite's write lock instead of overwriting each
other.
"""

from __future__ import annotations

import asyncio
import json
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, Self

from sqlalchemy import Column, LargeBinary, MetaData, String, Table, create_engine, delete, event, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.pool import StaticPool

UPLOADS = "uploads"
SETTINGS = "settings"

PARTITIONS: frozenset[str] = frozenset({UPLOADS, SETTINGS})
BINARY_PARTITIONS: frozenset[str] = frozenset({UPLOADS})


class UnknownPartitionError(ValueError):
    """Raised when a caller names a partition the store does not have."""


class DurableStore(Protocol):
    """Async key-value store organized into named partitions."""

    async def get(self, store_name: str, key: str) -> Any | None: ...

    async def put(self, store_name: str, key: str, value: Any) -> None: ...

    async def delete(self, store_name: str, key: str) -> None: ...

    async def modify(self, store_name: str, key: str, edit: Callable[[Any | None], Any]) -> Any: ...


metadata = MetaData()

kv_table = Table(
    "kv",
    metadata,
    Column("store_name", String(64), primary_key=True),
    Column("key", String(255), primary_key=True),
    Column("value", LargeBinary, nullable=False),
)


def _check_partition(store_name: str) -> None:
    if store_name not in PARTITIONS:
        raise UnknownPartitionError(f"Unknown store partition {store_name!r}; expected one of {sorted(PARTITIONS)}")


def _encode(store_name: str, value: Any) -> bytes:
    if store_name in BINARY_PARTITIONS:
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError(f"Partition {store_name!r} holds bytes, got {type(value).__name__}")
        return bytes(value)
    return json.dumps(value, sort_keys=True).encode("utf-8")


def _decode(store_name: str, raw: bytes) -> Any:
    if store_name in BINARY_PARTITIONS:
        return bytes(raw)
    return json.loads(raw.decode("utf-8"))


def _select_value(conn: Connection, store_name: str, key: str) -> bytes | None:
    query = select(kv_table.c.value).where(kv_table.c.store_name == store_name, kv_table.c.key == key)
    raw: bytes | None = conn.execute(query).scalar_one_or_none()
    return raw


def _write_value(conn: Connection, store_name: str, key: str, encoded: bytes) -> None:
    result = conn.execute(update(kv_table).where(kv_table.c.store_name == store_name, kv_table.c.key == key).values(value=encoded))
    if result.rowcount == 0:
        conn.execute(insert(kv_table).values(store_name=store_name, key=key, value=encoded))


class SQLiteStore:
    """DurableStore on a single SQLAlchemy table.

    Each put is one transaction (update-or-insert), so a single key is
    replaced atomically. ``modify`` reads, edits and writes one key in one
    transaction. Nothing spans keys.
    """

    def __init__(self, connection_string: str) -> None:
        """Open (and create if needed) the store.

        Args:
            connection_string: SQLAlchemy connection string,
                e.g. "sqlite:///./.helloagain/state.db"
        """
        self.connection_string = connection_string
        self._ensure_parent_dir(connection_string)
        self._engine: Engine | None = create_engine(connection_string, echo=False)
        if connection_string.startswith("sqlite"):
            SQLiteStore._configure_sqlite(self._engine)
            SQLiteStore._configure_transactions(self._engine)
        self._lock = threading.Lock()
        metadata.create_all(self._engine)

    @staticmethod
    def _ensure_parent_dir(connection_string: str) -> None:
        url = make_url(connection_string)
        if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _configure_sqlite(engine: Engine) -> None:
        """Set WAL mode and a busy timeout on every new connection."""

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection: object, connection_record: object) -> None:
            cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]  # DBAPI connection typed as object
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    @staticmethod
    def _configure_transactions(engine: Engine) -> None:
        """Open every transaction with BEGIN IMMEDIATE.

        pysqlite's own transaction handling is switched off so SQLAlchemy
        emits BEGIN itself; IMMEDIATE takes the write lock up front, so a
        read-modify-write cannot interleave with another writer.
        """

        @event.listens_for(engine, "connect")
        def disable_pysqlite_transactions(dbapi_connection: object, connection_record: object) -> None:
            dbapi_connection.isolation_level = None  # type: ignore[attr-defined]  # DBAPI connection typed as object

        @event.listens_for(engine, "begin")
        def begin_immediate(conn: Connection) -> None:
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    @classmethod
    def in_memory(cls) -> Self:
        """Create an in-memory store for testing.

        StaticPool keeps one connection alive so worker threads all see the
        same in-memory database; the store lock keeps them from using that
        connection at the same time.
        """
        engine = create_engine(
            "sqlite://",
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        cls._configure_transactions(engine)
        metadata.create_all(engine)
        instance = cls.__new__(cls)
        instance.connection_string = "sqlite://"
        instance._engine = engine
        instance._lock = threading.Lock()
        return instance

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Store has been closed")
        return self._engine

    async def get(self, store_name: str, key: str) -> Any | None:
        """Return the value stored under key, or None if absent."""
        _check_partition(store_name)
        return await asyncio.to_thread(self._get_sync, store_name, key)

    async def put(self, store_name: str, key: str, value: Any) -> None:
        """Replace the value stored under key."""
        _check_partition(store_name)
        encoded = _encode(store_name, value)
        await asyncio.to_thread(self._put_sync, store_name, key, encoded)

    async def delete(self, store_name: str, key: str) -> None:
        """Remove key. Deleting an absent key is a no-op."""
        _check_partition(store_name)
        await asyncio.to_thread(self._delete_sync, store_name, key)

    async def modify(self, store_name: str, key: str, edit: Callable[[Any | None], Any]) -> Any:
        """Atomically replace the value under key with ``edit(current)``.

        ``current`` is None when the key is absent. If edit raises, nothing
        is written.

        Returns:
            The value written
        """
        _check_partition(store_name)
        return await asyncio.to_thread(self._modify_sync, store_name, key, edit)

    def _get_sync(self, store_name: str, key: str) -> Any | None:
        with self._lock, self.engine.connect() as conn:
            raw = _select_value(conn, store_name, key)
        if raw is None:
            return None
        return _decode(store_name, raw)

    def _put_sync(self, store_name: str, key: str, encoded: bytes) -> None:
        with self._lock, self.engine.begin() as conn:
            _write_value(conn, store_name, key, encoded)

    def _modify_sync(self, store_name: str, key: str, edit: Callable[[Any | None], Any]) -> Any:
        with self._lock, self.engine.begin() as conn:
            raw = _select_value(conn, store_name, key)
            updated = edit(_decode(store_name, raw) if raw is not None else None)
            _write_value(conn, store_name, key, _encode(store_name, updated))
        return updated

    def _delete_sync(self, store_name: str, key: str) -> None:
        with self._lock, self.engine.begin() as conn:
            conn.execute(delete(kv_table).where(kv_table.c.store_name == store_name, kv_table.c.key == key))

    def close(self) -> None:
        """Dispose of the engine's connection pool."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()
