"""
Side effects behind each advertised tool.

Every handler receives the validated argument object and the request-scoped
ToolContext, performs its backend writes and returns
`{"success": bool, "message": str, ...payload}`. Handlers raise on failure; the
executor turns the exception into a failed result for that call only.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .functions_client import GENERATE_POA, OCR_DOCUMENT, FunctionsClient
from .storage import case_store

logger = logging.getLogger("case-agent")

ToolHandler = Callable[[Dict[str, Any], "ToolContext"], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class ToolContext:
    case_id: str
    actor: str
    functions: FunctionsClient


async def _audit(
    ctx: ToolContext,
    action_type: str,
    details: str,
    *,
    metadata: Optional[Dict[str, Any]] = None,
    related_wsc_id: Optional[str] = None,
) -> None:
    """Best-effort audit entry; the tool outcome does not depend on it."""
    try:
        await asyncio.to_thread(
            case_store.insert_audit_log,
            ctx.case_id,
            action_type=action_type,
            action_details=details,
            performed_by=ctx.actor,
            metadata=metadata,
            related_wsc_id=related_wsc_id,
        )
    except Exception as exc:
        logger.warning("audit write failed case_id=%s action_type=%s: %s", ctx.case_id, action_type, exc)


async def generate_poa_pdf(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    poa_type = args["poaType"]
    data = await ctx.functions.invoke(GENERATE_POA, {"caseId": ctx.case_id, "poaType": poa_type})
    await _audit(ctx, "poa_generated", f"AI auto-generated {poa_type} POA: {args.get('reason') or ''}")
    return {"success": True, "message": f"✅ POA ({poa_type}) generated", "pdfUrl": data.get("pdfUrl")}


async def create_task(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    task_id = await asyncio.to_thread(
        case_store.insert_task,
        ctx.case_id,
        title=args["title"],
        priority=args["priority"],
        description=args.get("description") or "",
        category=args.get("category") or "general",
        due_date=args.get("dueDate"),
        status="pending",
    )
    return {"success": True, "message": f"✅ Task created: {args['title']}", "taskId": task_id}


async def trigger_ocr(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    await ctx.functions.invoke(
        OCR_DOCUMENT,
        {"documentId": args["documentId"], "expectedType": args.get("expectedType")},
    )
    return {"success": True, "message": "✅ OCR triggered"}


async def update_master_data(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    fields: Dict[str, Any] = args["fields"]
    updated = await asyncio.to_thread(case_store.update_master_data, ctx.case_id, fields)
    if not updated:
        raise ValueError("No updatable fields supplied")
    await _audit(
        ctx,
        "master_data_updated",
        f"AI updated: {', '.join(updated)}. {args.get('reason') or ''}",
        metadata={"updated_fields": {name: fields[name] for name in updated}},
    )
    return {"success": True, "message": f"✅ Updated {len(updated)} fields"}


async def generate_archive_request(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    person_type = args["personType"]
    document_types = list(args["documentTypes"])
    search_id = await asyncio.to_thread(
        case_store.insert_archive_search,
        ctx.case_id,
        person_type=person_type,
        document_types=document_types,
        archive_name=args.get("archiveLocation") or "To be determined",
        search_type="international",
        status="pending",
        priority="medium",
    )
    await _audit(ctx, "archive_request_created", f"AI created archive request for {person_type} documents")
    return {
        "success": True,
        "message": f"✅ Archive request created for {person_type}: {', '.join(document_types)}",
        "archiveSearchId": search_id,
    }


async def create_oby_draft(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    master = await asyncio.to_thread(case_store.get_master_data, ctx.case_id)
    if master is None:
        raise case_store.CaseNotFound("Master data not found")

    fields = list(args.get("autoPopulatedFields") or [])
    updated = await asyncio.to_thread(case_store.upsert_oby_draft, ctx.case_id, master, fields)
    verb = "updated" if updated else "created"
    await _audit(ctx, "oby_draft_created", f"AI {verb} OBY draft skeleton")
    return {"success": True, "message": f"✅ OBY draft {verb} with {len(fields)} auto-populated fields"}


async def draft_wsc_response(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    strategy = args["strategy"]
    key_points = args.get("keyPoints") or []
    strategy_details = "; ".join(key_points) or "Strategy drafted by AI"
    letter_id = args.get("wscLetterId")

    if letter_id:
        await asyncio.to_thread(
            case_store.update_master_data,
            ctx.case_id,
            {"family_notes": f"WSC Strategy ({strategy}): {strategy_details}"},
        )

    await _audit(
        ctx,
        f"wsc_response_{strategy.lower()}",
        f"AI drafted {strategy} strategy: {strategy_details}",
        metadata={"strategy": strategy, "key_points": key_points},
        related_wsc_id=letter_id,
    )

    return {"success": True, "message": f"✅ WSC {strategy} response strategy drafted"}


async def generate_civil_acts_request(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    act_type = args["actType"]
    task_id = await asyncio.to_thread(
        case_store.insert_task,
        ctx.case_id,
        title=f"Submit Polish {act_type} certificate application",
        description=(
            f"AI-generated task: Apply for Polish civil {act_type} certificate "
            f"for {args.get('personType') or 'applicant'}"
        ),
        priority="high",
        category="civil_acts",
        status="pending",
    )
    await _audit(ctx, "civil_acts_request", f"AI created {act_type} certificate application task")
    return {"success": True, "message": f"✅ Civil acts {act_type} request created", "taskId": task_id}


HANDLERS: Dict[str, ToolHandler] = {
    "generate_poa_pdf": generate_poa_pdf,
    "create_task": create_task,
    "trigger_ocr": trigger_ocr,
    "update_master_data": update_master_data,
    "generate_archive_request": generate_archive_request,
    "create_oby_draft": create_oby_draft,
    "draft_wsc_response": draft_wsc_response,
    "generate_civil_acts_request": generate_civil_acts_request,
}
