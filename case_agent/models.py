"""
Data models for the agent core.

Defines AgentRequest (with its JSON Schema), ToolCall and ToolResult.
Do not duplicate these definitions elsewhere.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pydantic import BaseModel

# Draft-07 schema gating every /ai-agent request body before any side effect.
AGENT_REQUEST_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["prompt", "action"],
    "additionalProperties": False,
    "properties": {
        "caseId": {"type": "string", "minLength": 1, "maxLength": 64},
        "prompt": {"type": "string", "minLength": 1, "maxLength": 20000},
        "action": {"type": "string", "pattern": "^[a-z][a-z0-9_]{0,63}$"},
        "conversationId": {"type": "string", "minLength": 1, "maxLength": 64},
        "stream": {"type": "boolean"},
    },
}


class AgentRequest(BaseModel):
    """Validated /ai-agent request body."""

    prompt: str
    action: str
    case_id: Optional[str] = None
    conversation_id: Optional[str] = None
    stream: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AgentRequest":
        return cls(
            prompt=payload["prompt"],
            action=payload["action"],
            case_id=payload.get("caseId"),
            conversation_id=payload.get("conversationId"),
            stream=bool(payload.get("stream", False)),
        )


@dataclass
class ToolCall:
    """A tool invocation emitted by the model; `arguments` is the raw JSON text."""

    id: str
    name: str
    arguments: str
    type: str = "function"

    @classmethod
    def from_wire(cls, raw: Dict[str, Any], index: int = 0) -> "ToolCall":
        """Build from a wire call; a call without an id gets `call_<index>`."""
        function = raw.get("function")
        if not isinstance(function, dict):
            function = {}
        arguments = function.get("arguments")
        if arguments is None:
            arguments = ""
        elif not isinstance(arguments, str):
            # Some gateways send arguments already decoded.
            arguments = json.dumps(arguments)
        return cls(
            id=str(raw.get("id") or f"call_{index}"),
            name=str(function.get("name") or ""),
            arguments=arguments,
            type=str(raw.get("type") or "function"),
        )

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ToolResult:
    """Outcome of one tool call, correlated to it by `tool_call_id`."""

    tool_call_id: str
    name: str
    success: bool
    message: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failed(cls, call: ToolCall, message: str) -> "ToolResult":
        return cls(tool_call_id=call.id, name=call.name, success=False, message=message)

    def to_wire(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success, "message": self.message}
        result.update(self.payload)
        return {"tool_call_id": self.tool_call_id, "name": self.name, "result": result}
