"""Unit tests for the learning database."""

import sqlite3
from pathlib import Path

import pytest

from guidance_engine.database import (
    SCHEMA_VERSION,
    LearningDatabase,
    get_default_db_path,
)


class TestDefaultPath:
    """Tests for get_default_db_path."""

    def test_project_local(self, tmp_path):
        """A project root puts the database under .guidance/."""
        assert get_default_db_path(tmp_path) == tmp_path / ".guidance" / "learning.db"

    def test_user_level_fallback(self, tmp_path, monkeypatch):
        """Without a project root the home directory is used."""
        monkeypatch.setattr(Path, "home", classmethod(lambda cls: tmp_path))
        assert get_default_db_path() == tmp_path / ".guidance" / "learning.db"


class TestLearningDatabase:
    """Tests for schema creation and queries."""

    def test_creates_parent_and_schema(self, learning_db_path):
        """Initialization creates the directory and tables."""
        db = LearningDatabase(db_path=learning_db_path)

        assert learning_db_path.exists()
        tables = {row["name"] for row in db.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
        assert {"schema_info", "learning_records"} <= tables
        assert db.get_schema_version() == SCHEMA_VERSION

    def test_project_root(self, tmp_path):
        """project_root selects the project-local path."""
        db = LearningDatabase(project_root=tmp_path)
        assert db.db_path == tmp_path / ".guidance" / "learning.db"

    def test_reopen_keeps_created_at(self, learning_db_path):
        """Reopening does not reset the creation timestamp."""
        first = LearningDatabase(db_path=learning_db_path).execute_one(
            "SELECT value FROM schema_info WHERE key = 'schema_created_at'"
        )["value"]
        second = LearningDatabase(db_path=learning_db_path).execute_one(
            "SELECT value FROM schema_info WHERE key = 'schema_created_at'"
        )["value"]
        assert first == second

    def test_rollback_on_error(self, learning_db_path):
        """A failing block leaves no partial writes."""
        db = LearningDatabase(db_path=learning_db_path)

        with pytest.raises(sqlite3.IntegrityError):
            with db.connection() as conn:
                conn.execute(
                    "INSERT INTO learning_records (domain, persona, success_count, total_count) "
                    "VALUES ('d', 'p', 1, 1)"
                )
                # success_count above total_count violates the CHECK constraint
                conn.execute(
                    "INSERT INTO learning_records (domain, persona, success_count, total_count) "
                    "VALUES ('d', 'q', 2, 1)"
                )

        assert db.execute("SELECT * FROM learning_records") == []

    def test_stats_empty(self, learning_db_path):
        """Stats on a fresh database."""
        stats = LearningDatabase(db_path=learning_db_path).get_stats()

        assert stats["schema_version"] == SCHEMA_VERSION
        assert stats["database_exists"] is True
        assert stats["learning_records_count"] == 0
        assert stats["outcome_count"] == 0
        assert stats["domain_count"] == 0
        assert stats["database_size_bytes"] > 0

    def test_stats_counts(self, learning_db_path):
        """Stats count records, outcomes and domains."""
        db = LearningDatabase(db_path=learning_db_path)
        with db.connection() as conn:
            conn.executemany(
                "INSERT INTO learning_records (domain, persona, success_count, total_count) "
                "VALUES (?, ?, ?, ?)",
                [("security", "a", 1, 3), ("security", "b", 2, 2), ("testing", "c", 0, 4)],
            )

        stats = db.get_stats()

        assert stats["learning_records_count"] == 3
        assert stats["outcome_count"] == 9
        assert stats["domain_count"] == 2
