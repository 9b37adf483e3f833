"""Engine, sessions and startup schema verification for the forms database."""
import logging
import os
import shutil
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from .settings import DATABASE_URL, SQLITE_BUSY_TIMEOUT

logger = logging.getLogger(__name__)

if DATABASE_URL.startswith("sqlite"):
    # Concurrent intake writers wait on each other's locks instead of failing
    _connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}
else:
    _connect_args = {}
engine = create_engine(DATABASE_URL, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

# Columns every table must carry.  Counters, timeline and idempotency keys
# were added over time; a table missing any of them predates this build.
REQUIRED_SCHEMA = {
    "forms": [
        "form_id", "owner_id", "title", "short_id",
        "required_question_ids_json", "created_ts_utc",
    ],
    "owner_accounts": [
        "owner_id", "subscription_tier", "subscription_status",
        "cancel_at_period_end", "current_period_end", "created_ts_utc",
    ],
    "form_analytics": [
        "form_id", "views", "total_submissions", "completed_submissions",
        "partial_submissions", "completion_rate",
        "average_completion_time_ms", "updated_ts_utc",
    ],
    "submission_timeline": ["form_id", "day", "count"],
    "submissions": [
        "submission_id", "form_id", "answers_json", "metadata_json", "status",
        "completion_time_ms", "idempotency_key", "created_ts_utc",
    ],
}


def _sqlite_file() -> Path | None:
    """Path of the SQLite file behind DATABASE_URL, or None for in-memory
    and server databases."""
    prefix = "sqlite:///"
    if not DATABASE_URL.startswith(prefix):
        return None
    raw = DATABASE_URL[len(prefix):]
    if raw in ("", ":memory:"):
        return None
    return Path(raw)


def check_schema(db_path: Path) -> dict[str, list[str]]:
    """Map each table that is absent or incomplete to the required columns
    it lacks.  Absent tables list every required column."""
    conn = sqlite3.connect(str(db_path))
    try:
        tables = {
            name for (name,) in
            conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        missing: dict[str, list[str]] = {}
        for table, required in REQUIRED_SCHEMA.items():
            if table not in tables:
                missing[table] = list(required)
                continue
            present = {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
            lacking = [col for col in required if col not in present]
            if lacking:
                missing[table] = lacking
    finally:
        conn.close()
    return missing


def stale_tables(missing: dict[str, list[str]]) -> dict[str, list[str]]:
    """Tables that exist but lack columns.  Absent tables are not stale;
    ``create_all`` adds them in place."""
    return {
        table: cols for table, cols in missing.items()
        if cols != REQUIRED_SCHEMA[table]
    }


def _backup_and_recreate(db_path: Path) -> Path:
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    backup_path = db_path.with_suffix(f".db.bak-{ts}")
    shutil.move(str(db_path), str(backup_path))
    logger.warning("Stale forms database moved to %s; recreating", backup_path)
    Base.metadata.create_all(bind=engine)
    return backup_path


def ensure_schema():
    """Called when the API module is imported.

    New databases are created.  An existing SQLite file gains any absent
    tables.  When a table is stale the file is backed up and recreated if
    ALLOW_DEV_DB_RESET=1, otherwise startup stops with a RuntimeError
    naming the missing columns.
    """
    db_path = _sqlite_file()

    if db_path is None or not db_path.exists():
        Base.metadata.create_all(bind=engine)
        if db_path is not None:
            logger.info("Created forms database at %s", db_path)
        return

    stale = stale_tables(check_schema(db_path))
    if not stale:
        Base.metadata.create_all(bind=engine)
        return

    if os.getenv("ALLOW_DEV_DB_RESET", "") == "1":
        _backup_and_recreate(db_path)
        return

    lines = ["Forms database predates this build.  Missing columns:"]
    lines.extend(f"  {table}: {', '.join(cols)}" for table, cols in sorted(stale.items()))
    lines.append("")
    lines.append("Set ALLOW_DEV_DB_RESET=1 to auto-backup and recreate the DB.")
    raise RuntimeError("\n".join(lines))


def get_db():
    """Dependency that provides a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
