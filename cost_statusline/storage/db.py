"""
Database connection management.

Provides short-lived SQLite connections configured for concurrent use by
many statusline processes at once.
"""

import logging
import sqlite3
import time
from pathlib import Path
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

BUSY_TIMEOUT_MS = 5000
MAX_ATTEMPTS = 3


def _is_locked(error: sqlite3.Error) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


def with_retry(operation: Callable[[], T], attempts: int = MAX_ATTEMPTS) -> T:
    """Run an operation, retrying with linear backoff while the database is locked."""
    attempt = 0
    while True:
        try:
            return operation()
        except sqlite3.OperationalError as e:
            attempt += 1
            if not _is_locked(e) or attempt >= attempts:
                raise
            logger.debug(f"Database locked, retry {attempt}/{attempts - 1}")
            time.sleep(0.1 * attempt)


def get_connection(db_path: str) -> sqlite3.Connection:
    """Create and return a SQLite connection in WAL mode.

    WAL lets readers proceed while one writer commits; the busy timeout makes
    concurrent writers queue instead of failing immediately. Autocommit mode
    is used so callers control transactions with explicit ``BEGIN IMMEDIATE``.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    def connect() -> sqlite3.Connection:
        conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_MS / 1000, isolation_level=None)
        try:
            conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    return with_retry(connect)
