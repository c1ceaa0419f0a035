"""
Database Abstraction Layer.

Owns the local SQLite connection that backs the Credential Store.  The
backend API is the authoritative store for user data; SQLite only keeps
the encrypted credential pair, the cached user record and biometric flags
so a session survives process restarts and offline starts.

This module only manages the raw database *connection*; it contains no
query logic.

Usage (dependency injection at app startup)::

    from dentalization.database import DatabaseManager
    from dentalization.logger import StructuredLogger

    db = DatabaseManager(
        sqlite_path=Path("dentalization_local.db"),
        logger=StructuredLogger(name="database"),
    )
    # Inject `db` into the services that need it.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Union

from dentalization.exceptions import StorageError
from dentalization.logger import StructuredLogger


class DatabaseManager:
    """Manages the connection to the local SQLite database.

    Fully configured at construction time via dependency injection.

    Parameters
    ----------
    sqlite_path:
        Filesystem path for the local SQLite database file, or
        ``":memory:"``.  Parent directories must already exist.
    logger:
        A ``StructuredLogger`` instance for structured JSON log output.
    """

    def __init__(
        self,
        sqlite_path: Union[Path, str],
        logger: StructuredLogger,
    ) -> None:
        self._logger: StructuredLogger = logger
        self._write_lock: threading.RLock = threading.RLock()
        self._in_transaction: bool = False
        self._closed: bool = False
        self._sqlite_conn: sqlite3.Connection = self._connect_sqlite(sqlite_path)

    # ------------------------------------------------------------------
    # Public properties
    # ------------------------------------------------------------------

    @property
    def sqlite(self) -> sqlite3.Connection:
        """Return the initialised SQLite connection."""
        return self._sqlite_conn

    @property
    def write_lock(self) -> threading.RLock:
        """Return the lock serialising every SQLite access.

        Credential reads take it too, so a reader never observes a pair
        that is halfway through a ``transaction()``::

            with db.write_lock:
                db.sqlite.execute("INSERT ...")
                db.sqlite.commit()
        """
        return self._write_lock

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run a block of statements as one atomic SQLite transaction.

        Holds the write lock for the whole block.  On normal exit a single
        ``commit()`` is issued; on exception the transaction is rolled back
        and the error re-raised.  Re-entrant: a nested call joins the outer
        transaction.

        Example::

            with db.transaction() as conn:
                conn.execute("INSERT ...")
                conn.execute("INSERT ...")
            # single commit happens here
        """
        with self._write_lock:
            if self._in_transaction:
                yield self._sqlite_conn
                return

            self._in_transaction = True
            try:
                yield self._sqlite_conn
                self._sqlite_conn.commit()
            except Exception:
                try:
                    self._sqlite_conn.rollback()
                except sqlite3.Error:
                    self._logger.error("Rollback failed.", exc_info=True)
                self._logger.error(
                    "Transaction rolled back due to exception.", exc_info=True,
                )
                raise
            finally:
                self._in_transaction = False

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the local SQLite connection.

        Safe to call multiple times; subsequent calls are no-ops.
        """
        with self._write_lock:
            if self._closed:
                return
            try:
                self._sqlite_conn.close()
                self._logger.info("SQLite connection closed.")
            except sqlite3.ProgrammingError:
                pass
            self._closed = True

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _connect_sqlite(self, path: Union[Path, str]) -> sqlite3.Connection:
        """Open (or create) a SQLite database.

        Raises
        ------
        StorageError
            If the OS denies access to the database file or SQLite cannot
            open it.
        """
        try:
            conn = sqlite3.connect(str(path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            self._logger.info("SQLite database opened at %s", path)
            return conn
        except (PermissionError, sqlite3.Error) as exc:
            msg = (
                f"Cannot open the local database at '{path}'. "
                "The file or its directory may be read-only or locked by "
                "another process."
            )
            self._logger.error(msg)
            raise StorageError(msg) from exc
