"""
Database helpers for SQLite (local) and Postgres (Supabase).
"""

from __future__ import annotations

import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional

from case_agent.config import get_settings

try:
    import psycopg
    from psycopg.rows import dict_row
except Exception:  # pragma: no cover - optional dependency for Postgres
    psycopg = None
    dict_row = None


@dataclass(frozen=True)
class DbInfo:
    dialect: str  # "sqlite" or "postgres"
    database_url: Optional[str]
    db_path: str


def _database_url() -> Optional[str]:
    return os.getenv("DATABASE_URL") or os.getenv("SUPABASE_DATABASE_URL")


def get_db_info() -> DbInfo:
    database_url = _database_url()
    db_path = get_settings().db_path
    if database_url:
        return DbInfo(dialect="postgres", database_url=database_url, db_path=db_path)
    return DbInfo(dialect="sqlite", database_url=None, db_path=db_path)


def is_postgres() -> bool:
    return get_db_info().dialect == "postgres"


def connect() -> Any:
    info = get_db_info()
    if info.dialect == "postgres":
        if psycopg is None:
            raise RuntimeError("psycopg is required for Postgres connections")
        return psycopg.connect(info.database_url, row_factory=dict_row)
    conn = sqlite3.connect(info.db_path, timeout=5.0)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction() -> Iterator[Any]:
    """One connection per operation: commit on success, roll back on error, always close."""
    conn = connect()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def sql(query: str) -> str:
    """
    Convert parameter placeholders for the active dialect.
    SQLite uses '?', Postgres uses '%s'.
    """
    if is_postgres():
        return query.replace("?", "%s")
    return query


# Serial primary key column, per dialect.
_SERIAL_PK = {
    "sqlite": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "postgres": "BIGSERIAL PRIMARY KEY",
}

_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS cases (
        id TEXT PRIMARY KEY,
        client_name TEXT,
        client_code TEXT,
        status TEXT,
        current_stage TEXT,
        processing_mode TEXT,
        country TEXT,
        kpi_tasks_total INTEGER,
        kpi_tasks_completed INTEGER,
        kpi_docs_percentage REAL,
        poa_approved INTEGER,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS intake_data (
        id TEXT PRIMARY KEY,
        case_id TEXT NOT NULL REFERENCES cases(id),
        data TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS master_table (
        id TEXT PRIMARY KEY,
        case_id TEXT NOT NULL UNIQUE REFERENCES cases(id),
        data TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS documents (
        id TEXT PRIMARY KEY,
        case_id TEXT NOT NULL REFERENCES cases(id),
        name TEXT,
        type TEXT,
        category TEXT,
        person_type TEXT,
        is_verified INTEGER NOT NULL DEFAULT 0,
        needs_translation INTEGER NOT NULL DEFAULT 0,
        ocr_data TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        case_id TEXT NOT NULL REFERENCES cases(id),
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        priority TEXT NOT NULL,
        category TEXT NOT NULL DEFAULT 'general',
        due_date TEXT,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS poa (
        id TEXT PRIMARY KEY,
        case_id TEXT NOT NULL REFERENCES cases(id),
        poa_type TEXT NOT NULL,
        status TEXT NOT NULL,
        pdf_url TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oby_forms (
        id TEXT PRIMARY KEY,
        case_id TEXT NOT NULL UNIQUE REFERENCES cases(id),
        status TEXT NOT NULL,
        form_data TEXT NOT NULL,
        auto_populated_fields TEXT NOT NULL,
        hac_approved INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS wsc_letters (
        id TEXT PRIMARY KEY,
        case_id TEXT NOT NULL REFERENCES cases(id),
        letter_date TEXT,
        deadline TEXT,
        reference_number TEXT,
        strategy TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS archive_searches (
        id TEXT PRIMARY KEY,
        case_id TEXT NOT NULL REFERENCES cases(id),
        person_type TEXT NOT NULL,
        document_types TEXT NOT NULL,
        archive_name TEXT NOT NULL,
        search_type TEXT NOT NULL,
        status TEXT NOT NULL,
        priority TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hac_logs (
        id {serial_pk},
        case_id TEXT NOT NULL,
        action_type TEXT NOT NULL,
        action_details TEXT NOT NULL,
        performed_by TEXT NOT NULL,
        related_wsc_id TEXT,
        metadata TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_conversations (
        id TEXT PRIMARY KEY,
        case_id TEXT,
        agent_type TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_conversation_messages (
        seq {serial_pk},
        id TEXT NOT NULL UNIQUE,
        conversation_id TEXT NOT NULL REFERENCES ai_conversations(id),
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        tool_calls TEXT,
        created_at TEXT NOT NULL
    )
    """,
]

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON ai_conversation_messages (conversation_id, seq)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_case ON tasks (case_id)",
    "CREATE INDEX IF NOT EXISTS idx_documents_case ON documents (case_id)",
    "CREATE INDEX IF NOT EXISTS idx_hac_logs_case ON hac_logs (case_id)",
]


_initialized: set = set()


def utc_timestamp() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def new_id() -> str:
    return str(uuid.uuid4())


def ensure_db() -> None:
    """Run init_db once per database target; stores call this before each operation."""
    info = get_db_info()
    target = (info.dialect, info.database_url or info.db_path)
    if target in _initialized:
        return
    init_db()
    _initialized.add(target)


def _ensure_sqlite_dir() -> None:
    if is_postgres():
        return
    Path(get_settings().db_path).parent.mkdir(parents=True, exist_ok=True)


def init_db() -> None:
    """
    Create tables and set PRAGMAs. Idempotent.
    Call at app startup (lifespan) and before first use from stores.
    """
    _ensure_sqlite_dir()
    dialect = get_db_info().dialect
    with transaction() as conn:
        if dialect == "sqlite":
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA busy_timeout=3000")
        for ddl in _TABLES:
            conn.execute(ddl.format(serial_pk=_SERIAL_PK[dialect]))
        for ddl in _INDEXES:
            conn.execute(ddl)
