"""
SQLite connection and schema management for the learning store.

The learning store is the only state the engine persists. One table holds a
row per (domain, persona) pair with its outcome counters.

Location: .guidance/learning.db (project root)
Fallback: ~/.guidance/learning.db (user-level)
"""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = "1.0.0"


def get_default_db_path(project_root: Path | None = None) -> Path:
    """Get the default database path.

    Path resolution:
    1. If project_root provided: .guidance/learning.db (project-local)
    2. Otherwise: ~/.guidance/learning.db (user-level fallback)

    Args:
        project_root: If provided, uses project-local database.

    Returns:
        Path to learning.db
    """
    if project_root:
        return Path(project_root) / ".guidance" / "learning.db"
    return Path.home() / ".guidance" / "learning.db"


SCHEMA = """
-- Schema metadata
CREATE TABLE IF NOT EXISTS schema_info (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- Outcome counters per (domain, persona)
CREATE TABLE IF NOT EXISTS learning_records (
    domain TEXT NOT NULL,
    persona TEXT NOT NULL,
    success_count INTEGER NOT NULL DEFAULT 0,
    total_count INTEGER NOT NULL DEFAULT 0,
    last_updated TEXT,
    PRIMARY KEY (domain, persona),
    CHECK (success_count >= 0 AND success_count <= total_count)
);

CREATE INDEX IF NOT EXISTS idx_learning_records_domain ON learning_records(domain);
"""


class LearningDatabase:
    """SQLite database backing the persistent learning store."""

    def __init__(
        self, db_path: Path | str | None = None, project_root: Path | None = None
    ):
        """Initialize database connection.

        Args:
            db_path: Explicit path to database file.
            project_root: Project root for project-local database.
                         Ignored if db_path is provided.
        """
        if db_path:
            self.db_path = Path(db_path)
        else:
            self.db_path = get_default_db_path(project_root)

        self._ensure_db_exists()

    def _ensure_db_exists(self) -> None:
        """Create database and schema if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self.connection() as conn:
            conn.executescript(SCHEMA)
            conn.execute(
                "INSERT OR REPLACE INTO schema_info (key, value) VALUES (?, ?)",
                ("schema_version", SCHEMA_VERSION),
            )
            conn.execute(
                "INSERT OR IGNORE INTO schema_info (key, value) VALUES (?, ?)",
                ("schema_created_at", datetime.now().isoformat()),
            )

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections.

        Commits on success, rolls back on any exception and always closes.

        Yields:
            sqlite3.Connection with row_factory set to sqlite3.Row
        """
        conn = sqlite3.connect(self.db_path, timeout=10.0)
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode = WAL")  # Better concurrent access
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def execute(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        """Execute SQL and return all results."""
        with self.connection() as conn:
            cursor = conn.execute(sql, params)
            return cursor.fetchall()

    def execute_one(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        """Execute SQL and return first result."""
        with self.connection() as conn:
            cursor = conn.execute(sql, params)
            return cursor.fetchone()

    def get_schema_version(self) -> str:
        """Get current schema version."""
        result = self.execute_one(
            "SELECT value FROM schema_info WHERE key = ?", ("schema_version",)
        )
        return result["value"] if result else "unknown"

    def get_stats(self) -> dict:
        """Get database statistics for diagnostics."""
        stats = {
            "schema_version": self.get_schema_version(),
            "database_path": str(self.db_path),
            "database_exists": self.db_path.exists(),
        }

        try:
            result = self.execute_one(
                """
                SELECT COUNT(*) AS records,
                       COALESCE(SUM(total_count), 0) AS outcomes,
                       COUNT(DISTINCT domain) AS domains
                FROM learning_records
                """
            )
            stats["learning_records_count"] = result["records"] if result else 0
            stats["outcome_count"] = result["outcomes"] if result else 0
            stats["domain_count"] = result["domains"] if result else 0
            stats["database_size_bytes"] = self.db_path.stat().st_size
        except sqlite3.OperationalError as e:
            stats["error"] = str(e)

        return stats
