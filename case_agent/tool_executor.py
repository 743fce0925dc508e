from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence

from .functions_client import FunctionsClient
from .models import ToolCall, ToolResult
from .tool_handlers import ToolContext
from .tools import ToolError, ToolRegistry, get_tool_registry

logger = logging.getLogger("case-agent")


class ToolExecutor:
    """
    Runs one batch of tool calls for a case.

    All calls run concurrently and are joined before returning. Result i always
    answers call i; a failure in one call never affects its siblings.
    """

    def __init__(
        self,
        case_id: str,
        actor: str,
        functions: FunctionsClient,
        registry: Optional[ToolRegistry] = None,
    ) -> None:
        self.context = ToolContext(case_id=case_id, actor=actor, functions=functions)
        self.registry = registry or get_tool_registry()

    async def execute_all(self, calls: Sequence[ToolCall]) -> List[ToolResult]:
        if not calls:
            return []
        outcomes = await asyncio.gather(*(self.execute(call) for call in calls), return_exceptions=True)

        results: List[ToolResult] = []
        for call, outcome in zip(calls, outcomes):
            if isinstance(outcome, ToolResult):
                results.append(outcome)
            else:
                logger.error("tool %s id=%s crashed: %r", call.name, call.id, outcome)
                results.append(ToolResult.failed(call, f"Failed: {outcome}"))
        logger.info(
            "tools case_id=%s executed=%d failed=%d",
            self.context.case_id,
            len(results),
            sum(1 for r in results if not r.success),
        )
        return results

    async def execute(self, call: ToolCall) -> ToolResult:
        try:
            tool = self.registry.get(call.name)
            args = tool.parse_arguments(call.arguments)
            target_case = args.get("caseId")
            if target_case is not None and target_case != self.context.case_id:
                raise ToolError(f"{call.name} targets case {target_case}, not {self.context.case_id}")
        except ToolError as exc:
            logger.warning("tool %s id=%s rejected: %s", call.name, call.id, exc)
            result = ToolResult.failed(call, str(exc))
            result.payload["error"] = exc.code
            return result

        try:
            outcome = dict(await tool.handler(args, self.context))
        except Exception as exc:
            logger.warning("tool %s id=%s failed: %s", call.name, call.id, exc)
            result = ToolResult.failed(call, f"Failed: {exc}")
            result.payload["error"] = "execution_failed"
            return result

        success = bool(outcome.pop("success", True))
        message = str(outcome.pop("message", ""))
        return ToolResult(tool_call_id=call.id, name=call.name, success=success, message=message, payload=outcome)
