"""Test automatic schema bootstrap / dev DB reset logic."""
import os
import sqlite3
from pathlib import Path
from unittest import mock

import pytest

from backend.app.db import check_schema, ensure_schema, stale_tables, Base, REQUIRED_SCHEMA


def _create_old_schema_db(path: Path):
    """Create a SQLite DB from an older build: form_analytics without the
    split counters and average, submissions without idempotency keys."""
    conn = sqlite3.connect(str(path))
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE form_analytics (
            id INTEGER PRIMARY KEY,
            form_id TEXT NOT NULL UNIQUE,
            views INTEGER NOT NULL,
            total_submissions INTEGER NOT NULL,
            updated_ts_utc TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE TABLE submissions (
            id INTEGER PRIMARY KEY,
            submission_id TEXT NOT NULL UNIQUE,
            form_id TEXT NOT NULL,
            answers_json TEXT NOT NULL,
            metadata_json TEXT NOT NULL,
            status TEXT NOT NULL,
            completion_time_ms INTEGER,
            created_ts_utc TEXT NOT NULL
        )
    """)

    # Insert a row so we know the DB has data
    cursor.execute(
        "INSERT INTO form_analytics "
        "(form_id, views, total_submissions, updated_ts_utc) "
        "VALUES (?, ?, ?, ?)",
        ("form-old", 12, 3, "2024-01-01T00:00:00Z"),
    )

    conn.commit()
    conn.close()


class TestCheckSchema:
    """Tests for the pure check_schema() function."""

    def test_detects_missing_columns_on_old_db(self, tmp_path):
        db_path = tmp_path / "old.db"
        _create_old_schema_db(db_path)

        missing = check_schema(db_path)

        assert "form_analytics" in missing
        assert "completed_submissions" in missing["form_analytics"]
        assert "average_completion_time_ms" in missing["form_analytics"]
        assert "views" not in missing["form_analytics"]

        assert missing["submissions"] == ["idempotency_key"]

        # forms table doesn't exist at all
        assert missing["forms"] == REQUIRED_SCHEMA["forms"]

    def test_returns_empty_for_up_to_date_db(self, tmp_path):
        """A freshly-created DB (via create_all) should pass the check."""
        db_path = tmp_path / "fresh.db"
        fresh_engine = _make_engine(f"sqlite:///{db_path}")
        Base.metadata.create_all(bind=fresh_engine)
        fresh_engine.dispose()

        missing = check_schema(db_path)
        assert missing == {}

    def test_stale_tables_ignores_absent_tables(self, tmp_path):
        db_path = tmp_path / "old.db"
        _create_old_schema_db(db_path)

        stale = stale_tables(check_schema(db_path))

        assert set(stale) == {"form_analytics", "submissions"}
        assert stale["submissions"] == ["idempotency_key"]

    def test_detects_missing_table(self, tmp_path):
        """A DB with no tables at all should report everything missing."""
        db_path = tmp_path / "empty.db"
        conn = sqlite3.connect(str(db_path))
        conn.close()

        missing = check_schema(db_path)
        for table in REQUIRED_SCHEMA:
            assert table in missing


class TestEnsureSchema:
    """Tests for the ensure_schema() startup logic."""

    def test_dev_reset_backs_up_and_recreates(self, tmp_path):
        """ALLOW_DEV_DB_RESET=1 should back up the stale DB and create a
        fresh one that passes schema checks."""
        db_path = tmp_path / "forms.db"
        _create_old_schema_db(db_path)

        db_url = f"sqlite:///{db_path}"

        with mock.patch("backend.app.db.DATABASE_URL", db_url), \
             mock.patch("backend.app.db.engine", _make_engine(db_url)), \
             mock.patch.dict(os.environ, {"ALLOW_DEV_DB_RESET": "1"}):
            ensure_schema()

        # Old file should be renamed to .bak-*
        bak_files = list(tmp_path.glob("forms.db.bak-*"))
        assert len(bak_files) == 1

        # New file should exist and pass the schema check
        assert db_path.exists()
        assert check_schema(db_path) == {}

        # Backup should still have the old data
        conn = sqlite3.connect(str(bak_files[0]))
        cursor = conn.cursor()
        cursor.execute("SELECT form_id, views FROM form_analytics")
        rows = cursor.fetchall()
        conn.close()
        assert ("form-old", 12) in rows

    def test_no_reset_raises_clear_error(self, tmp_path):
        """Without ALLOW_DEV_DB_RESET, ensure_schema must raise RuntimeError
        listing the missing columns and how to reset."""
        db_path = tmp_path / "forms.db"
        _create_old_schema_db(db_path)

        db_url = f"sqlite:///{db_path}"

        with mock.patch("backend.app.db.DATABASE_URL", db_url), \
             mock.patch("backend.app.db.engine", _make_engine(db_url)), \
             mock.patch.dict(os.environ, {}, clear=False):
            os.environ.pop("ALLOW_DEV_DB_RESET", None)
            with pytest.raises(RuntimeError) as exc_info:
                ensure_schema()

        msg = str(exc_info.value)
        assert "completed_submissions" in msg
        assert "idempotency_key" in msg
        assert "ALLOW_DEV_DB_RESET=1" in msg
        # Whole missing tables are not stale, only incomplete ones
        assert "forms:" not in msg

    def test_missing_tables_are_added_without_reset(self, tmp_path):
        """An older DB that only lacks whole tables is upgraded in place."""
        db_path = tmp_path / "forms.db"
        conn = sqlite3.connect(str(db_path))
        conn.execute("CREATE TABLE unrelated (id INTEGER PRIMARY KEY)")
        conn.commit()
        conn.close()

        db_url = f"sqlite:///{db_path}"
        with mock.patch("backend.app.db.DATABASE_URL", db_url), \
             mock.patch("backend.app.db.engine", _make_engine(db_url)):
            ensure_schema()

        assert check_schema(db_path) == {}
        assert list(tmp_path.glob("forms.db.bak-*")) == []

    def test_fresh_db_creates_cleanly(self, tmp_path):
        """If the DB file doesn't exist, ensure_schema creates it."""
        db_path = tmp_path / "forms.db"
        assert not db_path.exists()

        db_url = f"sqlite:///{db_path}"

        with mock.patch("backend.app.db.DATABASE_URL", db_url), \
             mock.patch("backend.app.db.engine", _make_engine(db_url)):
            ensure_schema()

        assert db_path.exists()
        assert check_schema(db_path) == {}

    def test_in_memory_always_works(self):
        """In-memory DBs (test path) should always succeed."""
        db_url = "sqlite:///:memory:"
        eng = _make_engine(db_url)

        with mock.patch("backend.app.db.DATABASE_URL", db_url), \
             mock.patch("backend.app.db.engine", eng):
            ensure_schema()

        eng.dispose()


def _make_engine(db_url: str):
    """Helper to create a disposable engine for testing."""
    from sqlalchemy import create_engine as ce
    return ce(db_url, connect_args={"check_same_thread": False})
