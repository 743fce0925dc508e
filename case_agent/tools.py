"""Tool registry: tool name -> (argument validator, handler)."""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Mapping

from jsonschema import Draft7Validator

from .catalog_loader import CatalogLoadError, load_tool_catalog, tool_parameters
from .tool_handlers import HANDLERS, ToolHandler


class ToolError(Exception):
    """Per-call failure that becomes a failed ToolResult."""

    code = "tool_error"


class UnknownToolError(ToolError):
    code = "unknown_tool"


class ToolArgumentError(ToolError):
    code = "invalid_arguments"


@dataclass(frozen=True)
class RegisteredTool:
    name: str
    validator: Draft7Validator
    handler: ToolHandler

    def parse_arguments(self, raw: str) -> Dict[str, Any]:
        """Decode and validate the model-supplied argument text."""
        try:
            args = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as exc:
            raise ToolArgumentError(f"Invalid arguments for {self.name}: {exc.msg}") from exc
        if not isinstance(args, dict):
            raise ToolArgumentError(f"Arguments for {self.name} must be a JSON object")

        errors = sorted(self.validator.iter_errors(args), key=lambda e: list(e.path))
        if errors:
            summary = "; ".join(e.message for e in errors)
            raise ToolArgumentError(f"Invalid arguments for {self.name}: {summary}")
        return args


class ToolRegistry:
    def __init__(self, tools: Mapping[str, RegisteredTool]):
        self._tools = dict(tools)

    def get(self, name: str) -> RegisteredTool:
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(f"Unknown tool: {name}")
        return tool

    @property
    def names(self) -> List[str]:
        return sorted(self._tools)


def build_tool_registry(handlers: Mapping[str, ToolHandler] = HANDLERS) -> ToolRegistry:
    """
    Pair each declared tool with its handler.

    Declarations and handlers must name exactly the same tools.
    """
    declared = load_tool_catalog().names
    implemented = frozenset(handlers)
    if declared != implemented:
        missing = sorted(declared - implemented)
        undeclared = sorted(implemented - declared)
        raise CatalogLoadError(
            f"Tool catalog and handlers disagree: missing handlers={missing}, undeclared handlers={undeclared}"
        )

    return ToolRegistry(
        {
            name: RegisteredTool(
                name=name,
                validator=Draft7Validator(tool_parameters(name)),
                handler=handlers[name],
            )
            for name in declared
        }
    )


@lru_cache(maxsize=1)
def get_tool_registry() -> ToolRegistry:
    return build_tool_registry()
