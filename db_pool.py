"""SQLite connection pool shared by the progress store."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator

logger = logging.getLogger(__name__)

class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool.

    Connections are handed out per request and may be returned from a
    different worker thread than the one that opened them.
    """

    def __init__(self, database: str, max_connections: int = 5, timeout: float = 5.0):
        self.database = database
        self.max_connections = max_connections
        self.timeout = timeout
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @property
    def created_connections(self) -> int:
        return self._created_connections

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection, opening a new one while under ``max_connections``."""
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if self._created_connections < self.max_connections:
                    connection = self._create_connection()
                    self._created_connections += 1
                    logger.debug("Opened SQLite connection %s/%s for %s",
                                 self._created_connections, self.max_connections, self.database)
            if connection is None:
                try:
                    connection = self._pool.get(block=True, timeout=self.timeout)
                except Empty:
                    raise sqlite3.OperationalError(
                        f"connection pool for {self.database} exhausted"
                    ) from None

        try:
            yield connection
        finally:
            self._release(connection)

    def _release(self, connection: sqlite3.Connection) -> None:
        try:
            # discard anything the borrower left uncommitted
            connection.rollback()
            self._pool.put(connection, block=False)
        except Exception as exc:
            logger.error("Error returning connection to pool: %s", exc)
            try:
                connection.close()
            except sqlite3.Error:
                pass
            with self._lock:
                self._created_connections -= 1

    def close_all(self) -> None:
        """Close every idle connection; borrowed ones are closed on return."""
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            try:
                connection.close()
            finally:
                with self._lock:
                    self._created_connections -= 1
