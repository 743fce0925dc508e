"""Action-specific case snapshots embedded into the model prompt."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

SECURITY_AUDIT = "security_audit"

_INTAKE_ACTIONS = frozenset({"eligibility_analysis", "comprehensive", "auto_populate_forms"})
_DOCUMENT_ACTIONS = frozenset({"document_check", "comprehensive", "document_intelligence"})
_TASK_ACTIONS = frozenset({"task_suggest", "comprehensive"})
_WSC_ACTIONS = frozenset({"wsc_strategy", "comprehensive"})


def _audit_context() -> Dict[str, Any]:
    return {
        "system_audit": True,
        "tables_with_rls": ["cases", "intake_data", "master_table", "documents", "tasks"],
        "sensitive_tables": ["master_table", "intake_data", "poa", "documents"],
        "edge_functions": ["ai-agent", "generate-poa", "fill-pdf", "ocr-passport"],
    }


def _first(records: Optional[List[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
    return records[0] if records else None


def build_agent_context(case: Optional[Dict[str, Any]], action: str) -> Dict[str, Any]:
    """
    Build the prompt context for `action` from a fetched case.

    `security_audit` ignores the case and returns the static platform inventory.
    Every other action requires case data (ValueError otherwise).
    """
    if action == SECURITY_AUDIT:
        return _audit_context()

    if not case:
        raise ValueError("Case data required")

    context: Dict[str, Any] = {
        "client_name": case.get("client_name"),
        "client_code": case.get("client_code"),
        "status": case.get("status"),
        "current_stage": case.get("current_stage"),
        "processing_mode": case.get("processing_mode"),
        "country": case.get("country"),
    }

    if action in _INTAKE_ACTIONS:
        context["intake"] = _first(case.get("intake_data"))
        context["master_data"] = _first(case.get("master_table"))

    if action in _DOCUMENT_ACTIONS:
        # Storage paths and uploader details stay out of the prompt.
        context["documents"] = [
            {
                "id": d.get("id"),
                "name": d.get("name"),
                "type": d.get("type"),
                "category": d.get("category"),
                "person_type": d.get("person_type"),
                "is_verified": d.get("is_verified"),
                "needs_translation": d.get("needs_translation"),
                "ocr_data": d.get("ocr_data"),
            }
            for d in case.get("documents") or []
        ]

    if action in _TASK_ACTIONS:
        context["tasks"] = [
            {
                "title": t.get("title"),
                "status": t.get("status"),
                "priority": t.get("priority"),
                "due_date": t.get("due_date"),
            }
            for t in case.get("tasks") or []
        ]

    if action in _WSC_ACTIONS:
        context["wsc_letters"] = [
            {
                "letter_date": w.get("letter_date"),
                "deadline": w.get("deadline"),
                "reference_number": w.get("reference_number"),
                "strategy": w.get("strategy"),
            }
            for w in case.get("wsc_letters") or []
        ]

    context["kpi"] = {
        "tasks_total": case.get("kpi_tasks_total"),
        "tasks_completed": case.get("kpi_tasks_completed"),
        "docs_percentage": case.get("kpi_docs_percentage"),
        "poa_approved": case.get("poa_approved"),
    }

    return context
