"""
Repository pattern for the persistent cache.

A SQLite file shared by every statusline process: per-transcript daily
contributions validated by file mtime, and remote API responses validated
by age. Every operation opens its own short-lived connection.
"""

import json
import logging
import os
import sqlite3
import time
from pathlib import Path
from typing import Callable, List, Optional

from .db import get_connection, with_retry
from .models import DailyContribution

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1"
DEFAULT_API_TTL_SECONDS = 60

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS daily_contribution (
        transcript_path TEXT PRIMARY KEY,
        transcript_mtime_ns INTEGER NOT NULL,
        day TEXT NOT NULL,
        cost REAL NOT NULL,
        tokens INTEGER NOT NULL,
        entry_count INTEGER NOT NULL,
        updated_at REAL NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_daily_contribution_day ON daily_contribution(day);
    CREATE TABLE IF NOT EXISTS api_cache (
        cache_key TEXT PRIMARY KEY,
        data TEXT NOT NULL,
        fetched_at REAL NOT NULL,
        expires_at REAL NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_api_cache_expires_at ON api_cache(expires_at);
"""

ComputeContribution = Callable[[Path, int], DailyContribution]
FetchResponse = Callable[[], Optional[dict]]


def _row_to_contribution(row) -> DailyContribution:
    return DailyContribution(
        path=row[0],
        mtime_ns=row[1],
        day=row[2],
        cost=float(row[3]),
        tokens=int(row[4]),
        entry_count=int(row[5]),
    )


class PersistentCache:
    """Cross-process cache backed by a single SQLite file.

    When disabled (explicitly, or because the file can't be opened) every
    call computes or fetches directly; callers never see a store error.
    """

    def __init__(
        self,
        db_path: str,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the cache with a database path.

        Args:
            db_path: Path to SQLite database file
            enabled: False bypasses the store entirely
            clock: Source of POSIX time, used for response age
        """
        self.db_path = str(db_path)
        self.enabled = enabled
        self.clock = clock
        self._schema_ready = False

    def _connect(self) -> Optional[sqlite3.Connection]:
        if not self.enabled:
            return None
        try:
            conn = get_connection(self.db_path)
        except (sqlite3.Error, OSError) as e:
            logger.warning(f"Persistent cache unavailable at {self.db_path}, falling back to full scans: {e}")
            self.enabled = False
            return None
        if not self._schema_ready:
            try:
                with_retry(lambda: _ensure_schema(conn))
            except sqlite3.Error as e:
                conn.close()
                logger.warning(f"Could not initialize persistent cache schema: {e}")
                self.enabled = False
                return None
            self._schema_ready = True
        return conn

    def initialize_schema(self) -> bool:
        """Create the cache tables if needed; returns whether the store is usable."""
        conn = self._connect()
        if conn is None:
            return False
        conn.close()
        return True

    # ── Daily contributions (mtime-validated) ───────────────────────────────

    def get_or_compute(
        self,
        path: Path,
        compute: ComputeContribution,
        day: str,
    ) -> Optional[DailyContribution]:
        """Return a transcript's daily contribution, recomputing when stale.

        A stored entry is used only if its mtime equals the file's current
        mtime exactly and it was computed for ``day``. The scan itself runs
        with no connection open.

        Args:
            path: Transcript file
            compute: Called with (path, observed mtime_ns) on a miss
            day: ISO date the contribution must belong to

        Returns:
            The contribution, or None if the file can't be stat'ed
        """
        try:
            mtime_ns = os.stat(path).st_mtime_ns
        except OSError as e:
            logger.debug(f"Cannot stat transcript {path}: {e}")
            return None

        cached = self._read_contribution(str(path))
        if cached is not None and cached.mtime_ns == mtime_ns and cached.day == day:
            return cached

        contribution = compute(Path(path), mtime_ns)
        self._write_contribution(contribution)
        return contribution

    def _read_contribution(self, path: str) -> Optional[DailyContribution]:
        conn = self._connect()
        if conn is None:
            return None
        try:
            row = with_retry(lambda: conn.execute(
                """
                SELECT transcript_path, transcript_mtime_ns, day, cost, tokens, entry_count
                FROM daily_contribution WHERE transcript_path = ?
                """,
                (path,),
            ).fetchone())
        except sqlite3.Error as e:
            logger.debug(f"Daily contribution read failed for {path}: {e}")
            return None
        finally:
            conn.close()
        return _row_to_contribution(row) if row else None

    def _write_contribution(self, contribution: DailyContribution) -> None:
        conn = self._connect()
        if conn is None:
            return

        def upsert():
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    """
                    INSERT INTO daily_contribution
                    (transcript_path, transcript_mtime_ns, day, cost, tokens, entry_count, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(transcript_path) DO UPDATE SET
                        transcript_mtime_ns = excluded.transcript_mtime_ns,
                        day = excluded.day,
                        cost = excluded.cost,
                        tokens = excluded.tokens,
                        entry_count = excluded.entry_count,
                        updated_at = excluded.updated_at
                    """,
                    (
                        contribution.path,
                        contribution.mtime_ns,
                        contribution.day,
                        contribution.cost,
                        contribution.tokens,
                        contribution.entry_count,
                        self.clock(),
                    ),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        try:
            with_retry(upsert)
        except sqlite3.Error as e:
            logger.debug(f"Daily contribution write failed for {contribution.path}: {e}")
        finally:
            conn.close()

    def today_rows(self, day: str) -> List[DailyContribution]:
        """All stored contributions for ``day``, most expensive first."""
        conn = self._connect()
        if conn is None:
            return []
        try:
            rows = conn.execute(
                """
                SELECT transcript_path, transcript_mtime_ns, day, cost, tokens, entry_count
                FROM daily_contribution WHERE day = ? ORDER BY cost DESC
                """,
                (day,),
            ).fetchall()
        except sqlite3.Error as e:
            logger.debug(f"Daily contribution listing failed: {e}")
            return []
        finally:
            conn.close()
        return [_row_to_contribution(row) for row in rows]

    # ── Remote responses (age-validated) ────────────────────────────────────

    def get_or_fetch(
        self,
        key: str,
        fetch: FetchResponse,
        ttl: int = DEFAULT_API_TTL_SECONDS,
    ) -> Optional[dict]:
        """Return a cached response younger than ``ttl`` seconds, else fetch it.

        A fetch that returns None is passed through and not stored.
        """
        cached = self._read_response(key, ttl)
        if cached is not None:
            return cached

        result = fetch()
        if result is not None:
            self._write_response(key, result, ttl)
        return result

    def _read_response(self, key: str, ttl: int) -> Optional[dict]:
        conn = self._connect()
        if conn is None:
            return None
        try:
            row = with_retry(lambda: conn.execute(
                "SELECT data, fetched_at FROM api_cache WHERE cache_key = ?",
                (key,),
            ).fetchone())
        except sqlite3.Error as e:
            logger.debug(f"API cache read failed for {key}: {e}")
            return None
        finally:
            conn.close()

        if row is None:
            return None
        age = self.clock() - float(row[1])
        if not 0 <= age <= ttl:
            return None
        try:
            data = json.loads(row[0])
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    def _write_response(self, key: str, data: dict, ttl: int) -> None:
        conn = self._connect()
        if conn is None:
            return
        now = self.clock()

        def upsert():
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    """
                    INSERT INTO api_cache (cache_key, data, fetched_at, expires_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(cache_key) DO UPDATE SET
                        data = excluded.data,
                        fetched_at = excluded.fetched_at,
                        expires_at = excluded.expires_at
                    """,
                    (key, json.dumps(data), now, now + ttl),
                )
                conn.execute("DELETE FROM api_cache WHERE expires_at < ?", (now,))
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        try:
            with_retry(upsert)
        except sqlite3.Error as e:
            logger.debug(f"API cache write failed for {key}: {e}")
        finally:
            conn.close()

    # ── Housekeeping ────────────────────────────────────────────────────────

    def prune(self, day: str) -> None:
        """Drop contributions from other days and expired API responses."""
        conn = self._connect()
        if conn is None:
            return
        now = self.clock()

        def delete():
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute("DELETE FROM daily_contribution WHERE day != ?", (day,))
                conn.execute("DELETE FROM api_cache WHERE expires_at < ?", (now,))
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        try:
            with_retry(delete)
        except sqlite3.Error as e:
            logger.debug(f"Cache prune failed: {e}")
        finally:
            conn.close()

    def get_metadata(self, key: str) -> Optional[str]:
        conn = self._connect()
        if conn is None:
            return None
        try:
            row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            logger.debug(f"Metadata read failed for {key}: {e}")
            return None
        finally:
            conn.close()
        return row[0] if row else None

    def set_metadata(self, key: str, value: str) -> None:
        conn = self._connect()
        if conn is None:
            return
        try:
            with_retry(lambda: conn.execute(
                """
                INSERT INTO metadata (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, self.clock()),
            ))
        except sqlite3.Error as e:
            logger.debug(f"Metadata write failed for {key}: {e}")
        finally:
            conn.close()


def _ensure_schema(conn: sqlite3.Connection) -> None:
    """Create tables, rebuilding the cache tables if the schema version changed.

    Everything stored is derived data, so a version mismatch simply discards it.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS metadata (key TEXT PRIMARY KEY, value TEXT NOT NULL, updated_at REAL)"
        )
        row = conn.execute("SELECT value FROM metadata WHERE key = 'schema_version'").fetchone()
        if row is not None and row[0] != SCHEMA_VERSION:
            logger.info(f"Cache schema {row[0]} != {SCHEMA_VERSION}, rebuilding")
            conn.execute("DROP TABLE IF EXISTS daily_contribution")
            conn.execute("DROP TABLE IF EXISTS api_cache")
        for statement in _SCHEMA.split(";"):
            if statement.strip():
                conn.execute(statement)
        conn.execute(
            """
            INSERT INTO metadata (key, value, updated_at) VALUES ('schema_version', ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (SCHEMA_VERSION, time.time()),
        )
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise
