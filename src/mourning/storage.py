"""SQLite storage backend for the append-only message store.

The store is a single ``messages`` table keyed by an auto-incrementing
integer id with ``approved`` / ``deleted_at`` filter columns.  All public
methods are async-friendly, wrapping synchronous sqlite3 calls via
:func:`anyio.to_thread.run_sync`.

Connection strategy:
    - A single ``threading.Lock`` serialises write operations.
    - Thread-local persistent connections -- each thread pool worker keeps one
      long-lived connection open, eliminating per-call open/close overhead.
    - WAL mode lets the engine read while intake writes.

This layer knows nothing about visibility rules; the
:class:`~mourning.gateway.StoreGateway` adds the filters and retries.

Usage::

    from mourning.storage import Storage

    store = Storage(config.db_path)
    await store.initialize()
    rows = await store.execute("SELECT MAX(id) FROM messages")
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path

import anyio

from mourning.config import get_config

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content TEXT NOT NULL CHECK(length(content) BETWEEN 1 AND 280),
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now')),
    approved INTEGER NOT NULL DEFAULT 0,
    deleted_at TEXT DEFAULT NULL
);

-- Historical traversal (descending) and new-message polling (ascending)
-- both scan visible ids only.
CREATE INDEX IF NOT EXISTS idx_messages_visible_id
    ON messages(id) WHERE approved = 1 AND deleted_at IS NULL;

CREATE INDEX IF NOT EXISTS idx_messages_visible_created
    ON messages(created_at) WHERE approved = 1 AND deleted_at IS NULL;
"""


# ---------------------------------------------------------------------------
# Storage class
# ---------------------------------------------------------------------------


class Storage:
    """Async-friendly SQLite storage backend.

    Parameters
    ----------
    db_path:
        Filesystem path for the SQLite database file.  Parent directories
        are created automatically during :meth:`initialize`.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path: Path = Path(db_path) if db_path else get_config().db_path
        self._write_lock = threading.Lock()
        self._local = threading.local()  # thread-local persistent connections
        self._all_connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()  # guards _all_connections
        self._initialized = False

    @property
    def db_path(self) -> Path:
        """Filesystem path of the SQLite database."""
        return self._db_path

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Prepare the database for use.

        Idempotent: creates the parent directory, the ``messages`` table and
        its partial indexes if they do not already exist.
        """
        await anyio.to_thread.run_sync(self._initialize_sync)
        self._initialized = True
        log.info("Storage initialised at %s", self._db_path)

    def _initialize_sync(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # Use a dedicated one-time connection for schema setup (not thread-local).
        conn = self._open_connection()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Connection factory
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Return the thread-local persistent :class:`sqlite3.Connection`."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open_connection()
            self._local.conn = conn
            with self._connections_lock:
                self._all_connections.append(conn)
        return conn

    def _open_connection(self) -> sqlite3.Connection:
        """Open a connection with WAL mode and :class:`sqlite3.Row` rows."""
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=30.0,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=5000")

        return conn

    # ------------------------------------------------------------------
    # Query execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Execute a read-only query and return all rows."""
        return await anyio.to_thread.run_sync(
            lambda: self._execute_sync(sql, params),
        )

    def _execute_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        conn = self._get_connection()
        cursor = conn.execute(sql, params)
        return cursor.fetchall()

    async def execute_write(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        """Execute a write query under the write lock.

        Returns
        -------
        int
            The ``lastrowid`` of the executed statement.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_write_sync(sql, params),
        )

    def _execute_write_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor.lastrowid or 0
            except Exception:
                conn.rollback()
                raise

    async def execute_write_returning(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Execute a write query with a ``RETURNING`` clause under the write lock."""
        return await anyio.to_thread.run_sync(
            lambda: self._execute_write_returning_sync(sql, params),
        )

    def _execute_write_returning_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                rows = cursor.fetchall()
                conn.commit()
                return rows
            except Exception:
                conn.rollback()
                raise

    async def execute_many(
        self,
        sql: str,
        params_list: list[tuple | dict],
    ) -> None:
        """Execute a statement for each set of parameters in one transaction."""
        await anyio.to_thread.run_sync(
            lambda: self._execute_many_sync(sql, params_list),
        )

    def _execute_many_sync(
        self,
        sql: str,
        params_list: list[tuple | dict],
    ) -> None:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.executemany(sql, params_list)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close all persistent connections opened across all threads."""
        with self._connections_lock:
            conns = list(self._all_connections)
            self._all_connections.clear()

        for conn in conns:
            try:
                conn.close()
            except sqlite3.Error as exc:
                log.warning("Failed to close connection: %s", exc)

        self._local.conn = None
        self._initialized = False
        log.debug("Storage closed (%d connections released)", len(conns))

    async def __aenter__(self) -> Storage:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
