"""
SQLite snapshot store for Needle.

Schema:
- schema_version: Migration bookkeeping
- prs: Last-seen attention state per PR, keyed by "owner/repo#number"

The table mirrors the most recent attention set: every successful refresh
upserts the included PRs and prunes everything else in one transaction.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Generator, Iterable

from loguru import logger

from .config import DB_FILENAME, get_needle_dir
from .model import (
    Category,
    CiState,
    PersistedRecord,
    PullRequestIdentity,
    ReviewState,
    checks_from_json,
    checks_to_json,
    format_timestamp,
    parse_timestamp,
    utcnow,
)


CURRENT_SCHEMA_VERSION = 2

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

-- Last-seen attention state per PR
CREATE TABLE IF NOT EXISTS prs (
    pr_key TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    repo TEXT NOT NULL,
    number INTEGER NOT NULL,
    title TEXT NOT NULL,
    url TEXT NOT NULL,
    last_commit_sha TEXT,
    last_ci_state TEXT NOT NULL DEFAULT 'none',
    last_review_state TEXT NOT NULL DEFAULT 'none',
    last_seen_at TEXT,
    last_opened_at TEXT
);
"""

_V2_COLUMNS = (
    ("author", "TEXT"),
    ("updated_at", "TEXT"),
    ("is_draft", "INTEGER NOT NULL DEFAULT 0"),
    ("last_category", "TEXT"),
    ("ci_checks_json", "TEXT"),
)

_UPSERT_SQL = """
INSERT INTO prs
    (pr_key, owner, repo, number, title, url, author, updated_at, is_draft,
     last_commit_sha, last_ci_state, last_review_state, last_category,
     ci_checks_json, last_seen_at, last_opened_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(pr_key) DO UPDATE SET
    title = excluded.title,
    url = excluded.url,
    author = excluded.author,
    updated_at = excluded.updated_at,
    is_draft = excluded.is_draft,
    last_commit_sha = excluded.last_commit_sha,
    last_ci_state = excluded.last_ci_state,
    last_review_state = excluded.last_review_state,
    last_category = excluded.last_category,
    ci_checks_json = excluded.ci_checks_json,
    last_seen_at = excluded.last_seen_at
"""


class StoreError(Exception):
    """Read or write failure on the snapshot store."""


class SnapshotStore:
    """SQLite storage for last-seen PR state.

    Every public operation runs inside one critical section, so a
    record_opened from the UI never interleaves with a refresh cycle's writes.
    """

    def __init__(self, db_path: Path | None = None):
        if db_path is None:
            db_path = get_needle_dir() / DB_FILENAME
        self.db_path = db_path
        self._lock = threading.Lock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Ensure database schema exists."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                conn.executescript(SCHEMA)
                self._run_migrations(conn)
        except (sqlite3.Error, OSError) as e:
            raise StoreError(f"Cannot open snapshot store {self.db_path}: {e}") from e

    def _get_schema_version(self, conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT version FROM schema_version ORDER BY version DESC LIMIT 1").fetchone()
        if row is None:
            return 0
        value = row[0]
        return int(value) if value is not None else 0

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute("DELETE FROM schema_version")
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))

    def _column_exists(self, conn: sqlite3.Connection, table: str, column: str) -> bool:
        rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
        return any(str(row[1]) == column for row in rows)

    def _run_migrations(self, conn: sqlite3.Connection) -> None:
        current = self._get_schema_version(conn)
        if current >= CURRENT_SCHEMA_VERSION:
            return

        # v1 -> v2: cold-start rendering and category tracking
        if current < 2:
            for column, sql_type in _V2_COLUMNS:
                if not self._column_exists(conn, "prs", column):
                    conn.execute(f"ALTER TABLE prs ADD COLUMN {column} {sql_type}")
            current = 2

        self._set_schema_version(conn, current)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connection."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, operation: str) -> Generator[sqlite3.Connection, None, None]:
        with self._lock:
            try:
                with self._connect() as conn:
                    yield conn
            except sqlite3.Error as e:
                raise StoreError(f"{operation} failed: {e}") from e

    def _row_to_record(self, row: sqlite3.Row) -> PersistedRecord:
        category = None
        if row["last_category"]:
            try:
                category = Category(row["last_category"])
            except ValueError:
                category = None
        return PersistedRecord(
            identity=PullRequestIdentity(row["owner"], row["repo"], int(row["number"])),
            title=row["title"],
            url=row["url"],
            author=row["author"],
            updated_at=parse_timestamp(row["updated_at"]),
            is_draft=bool(row["is_draft"]),
            last_commit_sha=row["last_commit_sha"],
            ci_state=CiState.from_db(row["last_ci_state"]),
            review_state=ReviewState.from_db(row["last_review_state"]),
            last_category=category,
            checks=checks_from_json(row["ci_checks_json"]),
            last_seen_at=parse_timestamp(row["last_seen_at"]),
            last_opened_at=parse_timestamp(row["last_opened_at"]),
        )

    def _upsert(self, conn: sqlite3.Connection, record: PersistedRecord) -> None:
        identity = record.identity
        conn.execute(
            _UPSERT_SQL,
            (
                identity.key,
                identity.owner,
                identity.repo,
                identity.number,
                record.title,
                record.url,
                record.author,
                format_timestamp(record.updated_at),
                int(record.is_draft),
                record.last_commit_sha,
                record.ci_state.value,
                record.review_state.value,
                record.last_category.value if record.last_category else None,
                checks_to_json(record.checks),
                format_timestamp(record.last_seen_at or utcnow()),
                format_timestamp(record.last_opened_at),
            ),
        )

    def _prune_except(self, conn: sqlite3.Connection, keys: Iterable[str]) -> int:
        keep = set(keys)
        rows = conn.execute("SELECT pr_key FROM prs").fetchall()
        stale = [row["pr_key"] for row in rows if row["pr_key"] not in keep]
        conn.executemany("DELETE FROM prs WHERE pr_key = ?", [(key,) for key in stale])
        return len(stale)

    # =========================================================================
    # Records
    # =========================================================================

    def load_all(self) -> list[PersistedRecord]:
        """Load every record for the cold-start seed. Never raises."""
        try:
            with self._transaction("load_all") as conn:
                rows = conn.execute("SELECT * FROM prs ORDER BY pr_key").fetchall()
                return [self._row_to_record(row) for row in rows]
        except (StoreError, KeyError, ValueError, TypeError) as e:
            logger.warning(f"Snapshot store unreadable, starting without cache: {e}")
            return []

    def get(self, identity: PullRequestIdentity) -> PersistedRecord | None:
        with self._transaction("get") as conn:
            row = conn.execute("SELECT * FROM prs WHERE pr_key = ?", (identity.key,)).fetchone()
            return self._row_to_record(row) if row else None

    def upsert(self, record: PersistedRecord) -> None:
        """Insert or update one record. An existing last_opened_at is never overwritten."""
        with self._transaction("upsert") as conn:
            self._upsert(conn, record)

    def prune_except(self, keys: Iterable[str]) -> int:
        """Delete every record whose key is not in `keys`. Returns the number removed."""
        with self._transaction("prune") as conn:
            return self._prune_except(conn, keys)

    def commit_cycle(self, records: Iterable[PersistedRecord], keep: Iterable[str]) -> int:
        """Upsert a refresh cycle's records and prune the rest, atomically."""
        with self._transaction("commit_cycle") as conn:
            for record in records:
                self._upsert(conn, record)
            removed = self._prune_except(conn, keep)
        logger.debug(f"Snapshot store committed cycle, pruned {removed} record(s)")
        return removed

    def record_opened(self, identity: PullRequestIdentity, when: datetime | None = None) -> bool:
        """Set last_opened_at only. Returns False if the PR has no record."""
        stamp = format_timestamp(when or utcnow())
        with self._transaction("record_opened") as conn:
            cursor = conn.execute(
                "UPDATE prs SET last_opened_at = ? WHERE pr_key = ?",
                (stamp, identity.key),
            )
            return cursor.rowcount > 0

    def clear(self) -> None:
        with self._transaction("clear") as conn:
            conn.execute("DELETE FROM prs")

    def count(self) -> int:
        with self._transaction("count") as conn:
            row = conn.execute("SELECT COUNT(*) FROM prs").fetchone()
            return int(row[0])


def purge(db_path: Path) -> bool:
    """Delete the store file. Returns True if a file was removed."""
    removed = False
    for path in (db_path, db_path.with_name(db_path.name + "-journal")):
        try:
            path.unlink()
            removed = removed or path == db_path
        except FileNotFoundError:
            continue
        except OSError as e:
            raise StoreError(f"Cannot delete {path}: {e}") from e
    return removed
