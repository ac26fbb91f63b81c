"""Pooled SQLite connections for the practice store."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator, List

logger = logging.getLogger(__name__)


class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool.

    Connections are created lazily up to ``max_connections`` and shared across
    threads, so the session timer and attempt submitter can use the store
    alongside request handlers.
    """

    def __init__(self, database: str, max_connections: int = 5):
        if max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        self.database = database
        self.max_connections = max_connections
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created: List[sqlite3.Connection] = []

    @property
    def created_connections(self) -> int:
        with self._lock:
            return len(self._created)

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection, creating one if the pool is not yet full."""
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if len(self._created) < self.max_connections:
                    connection = self._create_connection()
                    self._created.append(connection)
                    logger.debug("Created new connection (total: %d)", len(self._created))
            if connection is None:
                # Pool exhausted; wait for a connection to be returned
                connection = self._pool.get(block=True)

        try:
            yield connection
        finally:
            try:
                # Discard anything the caller did not commit
                connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as exc:
                logger.error("Error returning connection to pool: %s", exc)
                self._discard(connection)

    def _discard(self, connection: sqlite3.Connection) -> None:
        try:
            connection.close()
        except sqlite3.Error:
            logger.debug("Connection already unusable while discarding")
        with self._lock:
            if connection in self._created:
                self._created.remove(connection)

    def close_all(self) -> None:
        """Close every idle connection and forget the ones handed out."""
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            try:
                connection.close()
            except sqlite3.Error:
                logger.debug("Ignoring error while closing pooled connection")
        with self._lock:
            self._created.clear()
