"""
Conversation transcript API: GET /conversations/{id}.

Contract: 200 + conversation dict with its ordered messages, or a 404 error envelope.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from case_agent.engine import build_error_envelope, new_request_id
from case_agent.storage import conversation_store

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _conversation_error(status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    _, body = build_error_envelope(
        request_id=new_request_id(),
        action=None,
        status_code=status_code,
        code=code,
        message=message,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body)


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str) -> JSONResponse:
    """
    Get a conversation by id. Returns 200 with { id, case_id, agent_type, created_at, messages } or 404.
    """
    conversation = conversation_store.get_transcript(conversation_id)
    if conversation is None:
        return _conversation_error(404, "CONVERSATION_NOT_FOUND", f"Conversation not found: {conversation_id}")
    return JSONResponse(status_code=200, content=conversation)
