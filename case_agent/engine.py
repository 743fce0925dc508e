from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from fastapi import Request
from jsonschema import Draft7Validator

from .catalog_loader import get_system_prompt, is_tool_enabled, tool_declarations
from .config import get_settings
from .context import SECURITY_AUDIT, build_agent_context
from .functions_client import FunctionsClient
from .models import AGENT_REQUEST_SCHEMA, AgentRequest, ToolCall, ToolResult
from .providers import BaseProvider, ModelStream, ProviderError
from .storage import case_store, conversation_store
from .streaming import DONE_EVENT, StreamRelay, format_event
from .tool_executor import ToolExecutor

logger = logging.getLogger("case-agent")

DEFAULT_ACTOR = "system"
ACTOR_HEADER = "x-user-id"
RESPONSE_PREVIEW_CHARS = 500


class ErrorEnvelope(Exception):
    """
    Custom exception used internally to simplify control flow.

    `process_agent_request` converts this into the standardized error envelope.
    """

    def __init__(self, status_code: int, code: str, message: str, details: Any = None):
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_error_envelope(
    *,
    request_id: str,
    action: str | None,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> Tuple[int, Dict[str, Any]]:
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details,
        },
        "meta": {
            "request_id": request_id,
            "action": action or "unknown",
        },
    }
    return status_code, body


def _validate_with_schema(instance: Any, schema: Dict[str, Any]) -> List[Dict[str, Any]]:
    validator = Draft7Validator(schema)
    errors: List[Dict[str, Any]] = []
    for err in validator.iter_errors(instance):
        errors.append(
            {
                "path": list(err.path),
                "message": err.message,
            }
        )
    return errors


async def _read_payload(request: Request) -> Dict[str, Any]:
    try:
        body_bytes = await request.body()
    except Exception:
        raise ErrorEnvelope(
            status_code=400,
            code="MALFORMED_REQUEST",
            message="Failed to read request body",
        )

    try:
        payload = json.loads(body_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ErrorEnvelope(
            status_code=400,
            code="MALFORMED_REQUEST",
            message="Request body must be valid JSON",
            details={"message": str(exc)},
        ) from exc

    if not isinstance(payload, dict):
        raise ErrorEnvelope(
            status_code=400,
            code="MALFORMED_REQUEST",
            message="Request body must be a JSON object",
        )
    return payload


def _resolve_conversation(agent_request: AgentRequest) -> Tuple[Optional[str], bool]:
    """Return (conversation_id, created). A given id must already exist."""
    if agent_request.conversation_id:
        if conversation_store.get_conversation(agent_request.conversation_id) is None:
            raise ErrorEnvelope(
                status_code=404,
                code="CONVERSATION_NOT_FOUND",
                message=f"Conversation not found: {agent_request.conversation_id}",
            )
        return agent_request.conversation_id, False

    if agent_request.case_id:
        return conversation_store.create_conversation(agent_request.case_id, agent_request.action), True
    return None, False


async def _load_context(agent_request: AgentRequest) -> Dict[str, Any]:
    if agent_request.action == SECURITY_AUDIT:
        return build_agent_context(None, SECURITY_AUDIT)
    if not agent_request.case_id:
        return {}

    try:
        case = await asyncio.to_thread(case_store.fetch_case, agent_request.case_id)
    except case_store.CaseNotFound as exc:
        raise ErrorEnvelope(status_code=500, code="CASE_FETCH_FAILED", message=str(exc)) from exc
    except Exception as exc:
        logger.exception("case fetch failed case_id=%s", agent_request.case_id)
        raise ErrorEnvelope(
            status_code=500,
            code="CASE_FETCH_FAILED",
            message="Failed to fetch case data",
            details={"message": str(exc)},
        ) from exc
    return build_agent_context(case, agent_request.action)


def build_messages(
    system_prompt: str,
    history: List[Dict[str, Any]],
    context: Dict[str, Any],
    prompt: str,
) -> List[Dict[str, Any]]:
    """System prompt, replayed history, then the context-bearing user turn."""
    messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for item in history:
        message: Dict[str, Any] = {"role": item["role"], "content": item.get("content") or ""}
        if item.get("tool_calls"):
            message["tool_calls"] = item["tool_calls"]
        messages.append(message)
    messages.append(
        {
            "role": "user",
            "content": f"Case Context:\n{json.dumps(context, indent=2)}\n\nUser Request: {prompt}",
        }
    )
    return messages


def build_model_body(action: str, messages: List[Dict[str, Any]], stream: bool) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "model": get_settings().ai_model,
        "messages": messages,
        "stream": stream,
    }
    if is_tool_enabled(action):
        body["tools"] = tool_declarations()
        body["tool_choice"] = "auto"
    return body


def _extract_completion(completion: Dict[str, Any]) -> Tuple[str, List[ToolCall]]:
    choices = completion.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        raise ProviderError("AI Gateway returned no choices")
    message = choices[0].get("message") or {}
    content = message.get("content") or ""
    raw_calls = [raw for raw in message.get("tool_calls") or [] if isinstance(raw, dict)]
    calls = [ToolCall.from_wire(raw, index) for index, raw in enumerate(raw_calls)]
    return content, calls


async def _persist_turn(
    conversation_id: Optional[str],
    prompt: str,
    content: str,
    calls: List[ToolCall],
) -> None:
    """Append the user prompt and the assistant reply. Failures are logged only."""
    if not conversation_id:
        return
    messages = [
        {"role": "user", "content": prompt},
        {"role": "assistant", "content": content, "tool_calls": [c.to_wire() for c in calls] or None},
    ]
    try:
        await asyncio.to_thread(conversation_store.append_messages, conversation_id, messages)
    except Exception as exc:
        logger.warning("append_messages failed for conversation_id=%s: %s", conversation_id, exc)


async def _run_tools(
    agent_request: AgentRequest,
    actor: str,
    functions: FunctionsClient,
    calls: List[ToolCall],
) -> List[ToolResult]:
    if not calls or not agent_request.case_id:
        return []
    executor = ToolExecutor(case_id=agent_request.case_id, actor=actor, functions=functions)
    return await executor.execute_all(calls)


async def _write_request_audit(
    agent_request: AgentRequest,
    actor: str,
    conversation_id: Optional[str],
    content: str,
    calls: List[ToolCall],
) -> None:
    if not agent_request.case_id:
        return
    metadata = {
        "response_preview": content[:RESPONSE_PREVIEW_CHARS],
        "conversation_id": conversation_id,
        "tools_used": len(calls),
    }
    try:
        await asyncio.to_thread(
            case_store.insert_audit_log,
            agent_request.case_id,
            action_type=f"ai_agent_{agent_request.action}",
            action_details=agent_request.prompt,
            performed_by=actor,
            metadata=metadata,
        )
    except Exception as exc:
        logger.warning("request audit failed case_id=%s: %s", agent_request.case_id, exc)


async def process_agent_request(
    *,
    request: Request,
    provider: BaseProvider,
    functions: FunctionsClient,
) -> Dict[str, Any]:
    """
    Core /ai-agent processing pipeline.

    Returns `{"status_code", "body"}` for JSON replies, or `{"status_code", "stream"}`
    where `stream` is an async iterator of SSE-framed strings. This function is
    free of FastAPI Response types so it is straightforward to test.
    """
    request_id = new_request_id()
    start = time.monotonic()
    action: str | None = None
    case_id: str | None = None

    try:
        # 1) Parse and validate before any side effect.
        payload = await _read_payload(request)
        if isinstance(payload.get("action"), str):
            action = payload["action"]
        input_errors = _validate_with_schema(payload, AGENT_REQUEST_SCHEMA)
        if input_errors:
            raise ErrorEnvelope(
                status_code=422,
                code="INPUT_VALIDATION_ERROR",
                message="Request failed validation against the agent request schema",
                details=input_errors,
            )
        agent_request = AgentRequest.from_payload(payload)
        case_id = agent_request.case_id
        actor = request.headers.get(ACTOR_HEADER) or DEFAULT_ACTOR

        # 2) Conversation and history.
        conversation_id, created = await asyncio.to_thread(_resolve_conversation, agent_request)
        history: List[Dict[str, Any]] = []
        if conversation_id:
            history = await asyncio.to_thread(
                conversation_store.list_recent_messages, conversation_id, get_settings().history_limit
            )

        # 3) Context, prompt and model request.
        context = await _load_context(agent_request)
        messages = build_messages(get_system_prompt(agent_request.action), history, context, agent_request.prompt)
        body = build_model_body(agent_request.action, messages, agent_request.stream)

        if agent_request.stream:
            try:
                model_stream = await provider.open_stream(body)
            except ProviderError as exc:
                raise ErrorEnvelope(
                    status_code=500,
                    code="MODEL_ERROR",
                    message=str(exc),
                    details={"upstream_status": exc.status_code},
                ) from exc
            _log_request(
                request_id=request_id,
                action=action,
                case_id=case_id,
                status_code=200,
                latency_ms=(time.monotonic() - start) * 1000.0,
                streamed=True,
            )
            return {
                "status_code": 200,
                "stream": relay_agent_stream(
                    model_stream,
                    agent_request=agent_request,
                    actor=actor,
                    functions=functions,
                    conversation_id=conversation_id,
                    announce_conversation=created,
                    request_id=request_id,
                ),
                "close": model_stream.aclose,
            }

        # 4) Single-shot completion.
        try:
            completion = await provider.complete(body)
            content, calls = _extract_completion(completion)
        except ProviderError as exc:
            raise ErrorEnvelope(
                status_code=500,
                code="MODEL_ERROR",
                message=str(exc),
                details={"upstream_status": exc.status_code},
            ) from exc

        await _persist_turn(conversation_id, agent_request.prompt, content, calls)
        results = await _run_tools(agent_request, actor, functions, calls)
        await _write_request_audit(agent_request, actor, conversation_id, content, calls)

        status_code = 200
        _log_request(
            request_id=request_id,
            action=action,
            case_id=case_id,
            status_code=status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        return {
            "status_code": status_code,
            "body": {
                "response": content,
                "conversationId": conversation_id,
                "toolResults": [r.to_wire() for r in results],
            },
        }

    except ErrorEnvelope as exc:
        status_code, body = build_error_envelope(
            request_id=request_id,
            action=action,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
    except Exception as exc:
        logger.exception("agent request_id=%s failed", request_id)
        status_code, body = build_error_envelope(
            request_id=request_id,
            action=action,
            status_code=500,
            code="INTERNAL_ERROR",
            message="Internal error",
            details={"message": str(exc)},
        )

    _log_request(
        request_id=request_id,
        action=action,
        case_id=case_id,
        status_code=status_code,
        latency_ms=(time.monotonic() - start) * 1000.0,
    )
    return {"status_code": status_code, "body": body}


async def relay_agent_stream(
    model_stream: ModelStream,
    *,
    agent_request: AgentRequest,
    actor: str,
    functions: FunctionsClient,
    conversation_id: Optional[str],
    announce_conversation: bool,
    request_id: str,
) -> AsyncIterator[str]:
    """
    Forward the model stream as SSE events, then persist and run tools.

    Event order: `{conversationId}` (new conversations only), `{delta}` per content
    fragment, `{toolResults}` when tools ran, then `[DONE]`. A transport failure
    ends the stream without `[DONE]`. The upstream is closed in every case.
    """
    relay = StreamRelay(model_stream.chunks)
    try:
        if announce_conversation and conversation_id:
            yield format_event({"conversationId": conversation_id})

        try:
            async for delta in relay.deltas():
                yield format_event({"delta": delta})
        except Exception:
            logger.exception("stream request_id=%s aborted by upstream", request_id)
            raise

        content = relay.content
        calls = [ToolCall.from_wire(raw, index) for index, raw in enumerate(relay.tool_calls)]
        await _persist_turn(conversation_id, agent_request.prompt, content, calls)

        results = await _run_tools(agent_request, actor, functions, calls)
        if results:
            yield format_event({"toolResults": [r.to_wire() for r in results]})

        await _write_request_audit(agent_request, actor, conversation_id, content, calls)
        logger.info(
            "stream request_id=%s frames=%d chars=%d tool_calls=%d",
            request_id,
            relay.frames,
            len(content),
            len(calls),
        )
        yield DONE_EVENT
    finally:
        await model_stream.aclose()


def _log_request(
    *,
    request_id: str,
    action: str | None,
    case_id: str | None,
    status_code: int,
    latency_ms: float,
    streamed: bool = False,
) -> None:
    logger.info(
        "agent request_id=%s action=%s case_id=%s status=%s stream=%s latency_ms=%.2f",
        request_id,
        action or "unknown",
        case_id or "-",
        status_code,
        streamed,
        latency_ms,
    )
