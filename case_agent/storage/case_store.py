"""
Case records: the case row and its related tables, plus the writes tool calls perform.

Tables: cases, intake_data, master_table, documents, tasks, poa, oby_forms,
wsc_letters, archive_searches, hac_logs (append-only audit log).
Free-form payloads (intake/master data, OCR output, form snapshots) are stored as JSON text.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from case_agent.storage.db import ensure_db, new_id, sql, transaction, utc_timestamp

logger = logging.getLogger("case-agent")

# Columns a caller may never overwrite through a master data update.
RESERVED_MASTER_FIELDS = frozenset({"id", "case_id", "created_at", "updated_at"})

_CASE_COLUMNS = (
    "client_name",
    "client_code",
    "status",
    "current_stage",
    "processing_mode",
    "country",
    "kpi_tasks_total",
    "kpi_tasks_completed",
    "kpi_docs_percentage",
    "poa_approved",
)


class CaseNotFound(LookupError):
    """Raised when a case (or a record the operation requires) does not exist."""


def _loads(raw: Any, default: Any) -> Any:
    if raw is None or raw == "":
        return default
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return default


def _rows(conn: Any, query: str, params: Iterable[Any]) -> List[Dict[str, Any]]:
    return [dict(r) for r in conn.execute(sql(query), tuple(params)).fetchall()]


def _master_record(row: Dict[str, Any]) -> Dict[str, Any]:
    record = dict(_loads(row["data"], {}))
    record.update({"id": row["id"], "case_id": row["case_id"], "updated_at": row["updated_at"]})
    return record


### Reads ######################################################################


def fetch_case(case_id: str) -> Dict[str, Any]:
    """
    Return the case row with its related records nested under the table names
    (intake_data, master_table, documents, tasks, poa, oby_forms, wsc_letters).
    Raises CaseNotFound when the case does not exist.
    """
    ensure_db()
    with transaction() as conn:
        row = conn.execute(sql("SELECT * FROM cases WHERE id = ?"), (case_id,)).fetchone()
        if row is None:
            raise CaseNotFound(f"Case not found: {case_id}")
        case = dict(row)
        case["poa_approved"] = bool(case.get("poa_approved"))

        intake = _rows(conn, "SELECT * FROM intake_data WHERE case_id = ? ORDER BY created_at", (case_id,))
        case["intake_data"] = [
            {"id": r["id"], "case_id": r["case_id"], "created_at": r["created_at"], **_loads(r["data"], {})}
            for r in intake
        ]
        case["master_table"] = [
            _master_record(r) for r in _rows(conn, "SELECT * FROM master_table WHERE case_id = ?", (case_id,))
        ]

        documents = _rows(conn, "SELECT * FROM documents WHERE case_id = ? ORDER BY created_at", (case_id,))
        for doc in documents:
            doc["is_verified"] = bool(doc["is_verified"])
            doc["needs_translation"] = bool(doc["needs_translation"])
            doc["ocr_data"] = _loads(doc["ocr_data"], None)
        case["documents"] = documents

        case["tasks"] = _rows(conn, "SELECT * FROM tasks WHERE case_id = ? ORDER BY created_at", (case_id,))
        case["poa"] = _rows(conn, "SELECT * FROM poa WHERE case_id = ? ORDER BY created_at", (case_id,))

        oby_forms = _rows(conn, "SELECT * FROM oby_forms WHERE case_id = ?", (case_id,))
        for form in oby_forms:
            form["form_data"] = _loads(form["form_data"], {})
            form["auto_populated_fields"] = _loads(form["auto_populated_fields"], [])
            form["hac_approved"] = bool(form["hac_approved"])
        case["oby_forms"] = oby_forms

        case["wsc_letters"] = _rows(
            conn, "SELECT * FROM wsc_letters WHERE case_id = ? ORDER BY created_at", (case_id,)
        )
    return case


def get_master_data(case_id: str) -> Optional[Dict[str, Any]]:
    ensure_db()
    with transaction() as conn:
        row = conn.execute(sql("SELECT * FROM master_table WHERE case_id = ?"), (case_id,)).fetchone()
    return _master_record(dict(row)) if row is not None else None


def get_oby_draft(case_id: str) -> Optional[Dict[str, Any]]:
    ensure_db()
    with transaction() as conn:
        row = conn.execute(sql("SELECT * FROM oby_forms WHERE case_id = ?"), (case_id,)).fetchone()
    if row is None:
        return None
    form = dict(row)
    form["form_data"] = _loads(form["form_data"], {})
    form["auto_populated_fields"] = _loads(form["auto_populated_fields"], [])
    form["hac_approved"] = bool(form["hac_approved"])
    return form


def count_oby_drafts(case_id: str) -> int:
    ensure_db()
    with transaction() as conn:
        row = conn.execute(sql("SELECT COUNT(*) AS n FROM oby_forms WHERE case_id = ?"), (case_id,)).fetchone()
    return int(row["n"])


def list_tasks(case_id: str) -> List[Dict[str, Any]]:
    ensure_db()
    with transaction() as conn:
        return _rows(conn, "SELECT * FROM tasks WHERE case_id = ? ORDER BY created_at, title", (case_id,))


def list_archive_searches(case_id: str) -> List[Dict[str, Any]]:
    ensure_db()
    with transaction() as conn:
        rows = _rows(conn, "SELECT * FROM archive_searches WHERE case_id = ?", (case_id,))
    for r in rows:
        r["document_types"] = _loads(r["document_types"], [])
    return rows


def list_audit_logs(case_id: str) -> List[Dict[str, Any]]:
    ensure_db()
    with transaction() as conn:
        rows = _rows(conn, "SELECT * FROM hac_logs WHERE case_id = ? ORDER BY id", (case_id,))
    for r in rows:
        r["metadata"] = _loads(r["metadata"], None)
    return rows


### Writes #####################################################################


def insert_case(fields: Dict[str, Any], case_id: Optional[str] = None) -> str:
    """Insert a case row; unknown keys are ignored. Returns the case id."""
    ensure_db()
    case_id = case_id or new_id()
    values = [fields.get(col) for col in _CASE_COLUMNS]
    values[_CASE_COLUMNS.index("poa_approved")] = 1 if fields.get("poa_approved") else 0
    placeholders = ", ".join("?" for _ in range(len(_CASE_COLUMNS) + 2))
    with transaction() as conn:
        conn.execute(
            sql(f"INSERT INTO cases (id, {', '.join(_CASE_COLUMNS)}, created_at) VALUES ({placeholders})"),
            (case_id, *values, utc_timestamp()),
        )
    return case_id


def insert_intake(case_id: str, data: Dict[str, Any]) -> str:
    ensure_db()
    record_id = new_id()
    with transaction() as conn:
        conn.execute(
            sql("INSERT INTO intake_data (id, case_id, data, created_at) VALUES (?, ?, ?, ?)"),
            (record_id, case_id, json.dumps(data), utc_timestamp()),
        )
    return record_id


def insert_master_data(case_id: str, data: Dict[str, Any]) -> str:
    ensure_db()
    record_id = new_id()
    clean = {k: v for k, v in data.items() if k not in RESERVED_MASTER_FIELDS}
    with transaction() as conn:
        conn.execute(
            sql("INSERT INTO master_table (id, case_id, data, updated_at) VALUES (?, ?, ?, ?)"),
            (record_id, case_id, json.dumps(clean), utc_timestamp()),
        )
    return record_id


def update_master_data(case_id: str, fields: Dict[str, Any]) -> List[str]:
    """
    Merge `fields` into the case's master record. Reserved keys are dropped.
    Returns the names of the fields written. Raises CaseNotFound without a master record.
    """
    ensure_db()
    updates = {k: v for k, v in fields.items() if k not in RESERVED_MASTER_FIELDS}
    with transaction() as conn:
        row = conn.execute(sql("SELECT id, data FROM master_table WHERE case_id = ?"), (case_id,)).fetchone()
        if row is None:
            raise CaseNotFound(f"Master data not found for case: {case_id}")
        if not updates:
            return []
        data = _loads(row["data"], {})
        data.update(updates)
        conn.execute(
            sql("UPDATE master_table SET data = ?, updated_at = ? WHERE id = ?"),
            (json.dumps(data), utc_timestamp(), row["id"]),
        )
    return list(updates.keys())


def insert_document(case_id: str, document: Dict[str, Any]) -> str:
    ensure_db()
    record_id = document.get("id") or new_id()
    ocr_data = document.get("ocr_data")
    with transaction() as conn:
        conn.execute(
            sql(
                "INSERT INTO documents (id, case_id, name, type, category, person_type, is_verified, "
                "needs_translation, ocr_data, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
            ),
            (
                record_id,
                case_id,
                document.get("name"),
                document.get("type"),
                document.get("category"),
                document.get("person_type"),
                1 if document.get("is_verified") else 0,
                1 if document.get("needs_translation") else 0,
                json.dumps(ocr_data) if ocr_data is not None else None,
                utc_timestamp(),
            ),
        )
    return record_id


def insert_task(
    case_id: str,
    *,
    title: str,
    priority: str,
    description: str = "",
    category: str = "general",
    due_date: Optional[str] = None,
    status: str = "pending",
) -> str:
    ensure_db()
    task_id = new_id()
    with transaction() as conn:
        conn.execute(
            sql(
                "INSERT INTO tasks (id, case_id, title, description, priority, category, due_date, status, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)"
            ),
            (task_id, case_id, title, description, priority, category, due_date, status, utc_timestamp()),
        )
    return task_id


def insert_wsc_letter(case_id: str, letter: Dict[str, Any]) -> str:
    ensure_db()
    letter_id = letter.get("id") or new_id()
    with transaction() as conn:
        conn.execute(
            sql(
                "INSERT INTO wsc_letters (id, case_id, letter_date, deadline, reference_number, strategy, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)"
            ),
            (
                letter_id,
                case_id,
                letter.get("letter_date"),
                letter.get("deadline"),
                letter.get("reference_number"),
                letter.get("strategy"),
                utc_timestamp(),
            ),
        )
    return letter_id


def insert_poa(case_id: str, poa_type: str, pdf_url: Optional[str], status: str = "generated") -> str:
    ensure_db()
    poa_id = new_id()
    with transaction() as conn:
        conn.execute(
            sql("INSERT INTO poa (id, case_id, poa_type, status, pdf_url, created_at) VALUES (?, ?, ?, ?, ?, ?)"),
            (poa_id, case_id, poa_type, status, pdf_url, utc_timestamp()),
        )
    return poa_id


def insert_archive_search(
    case_id: str,
    *,
    person_type: str,
    document_types: List[str],
    archive_name: str,
    search_type: str = "international",
    status: str = "pending",
    priority: str = "medium",
) -> str:
    ensure_db()
    search_id = new_id()
    with transaction() as conn:
        conn.execute(
            sql(
                "INSERT INTO archive_searches (id, case_id, person_type, document_types, archive_name, "
                "search_type, status, priority, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)"
            ),
            (
                search_id,
                case_id,
                person_type,
                json.dumps(document_types),
                archive_name,
                search_type,
                status,
                priority,
                utc_timestamp(),
            ),
        )
    return search_id


def upsert_oby_draft(case_id: str, form_data: Dict[str, Any], auto_populated_fields: List[str]) -> bool:
    """
    Create or refresh the single OBY draft of a case.
    Returns True when an existing draft was updated, False when one was created.
    """
    ensure_db()
    with transaction() as conn:
        existing = conn.execute(sql("SELECT id FROM oby_forms WHERE case_id = ?"), (case_id,)).fetchone()
        conn.execute(
            sql(
                "INSERT INTO oby_forms (id, case_id, status, form_data, auto_populated_fields, hac_approved, updated_at) "
                "VALUES (?, ?, 'draft', ?, ?, 0, ?) "
                "ON CONFLICT (case_id) DO UPDATE SET status = excluded.status, form_data = excluded.form_data, "
                "auto_populated_fields = excluded.auto_populated_fields, hac_approved = excluded.hac_approved, "
                "updated_at = excluded.updated_at"
            ),
            (new_id(), case_id, json.dumps(form_data), json.dumps(auto_populated_fields), utc_timestamp()),
        )
    return existing is not None


def insert_audit_log(
    case_id: str,
    *,
    action_type: str,
    action_details: str,
    performed_by: str,
    metadata: Optional[Dict[str, Any]] = None,
    related_wsc_id: Optional[str] = None,
) -> None:
    """Append one entry to the HAC audit log."""
    ensure_db()
    with transaction() as conn:
        conn.execute(
            sql(
                "INSERT INTO hac_logs (case_id, action_type, action_details, performed_by, related_wsc_id, "
                "metadata, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)"
            ),
            (
                case_id,
                action_type,
                action_details,
                performed_by,
                related_wsc_id,
                json.dumps(metadata) if metadata is not None else None,
                utc_timestamp(),
            ),
        )
    logger.debug("audit case_id=%s action_type=%s", case_id, action_type)
