"""
Stream relay for chunked chat-completions responses.

Upstream framing is newline-delimited Server-Sent-Events (`data: <json>`),
terminated by `data: [DONE]` or the end of the byte stream. Content fragments
are forwarded one by one as they arrive; tool-call fragments are merged per
index and only handed out once the stream has ended.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

logger = logging.getLogger("case-agent")

DONE = "[DONE]"
DONE_EVENT = f"data: {DONE}\n\n"

# Returned by parse_sse_line for the terminal sentinel.
SENTINEL = object()


def format_event(payload: Dict[str, Any]) -> str:
    """Frame one outbound SSE event."""
    return f"data: {json.dumps(payload)}\n\n"


class SSEDecoder:
    """
    Incremental byte-to-line decoder.

    `feed` returns only complete lines; the trailing partial line (and any
    partial UTF-8 sequence) is held back until the next chunk or `flush`.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        residue, self._buffer = self._buffer, ""
        residue = residue.rstrip("\r")
        return [residue] if residue else []


def parse_sse_line(line: str) -> Any:
    """
    Decode one SSE line.

    Returns the parsed JSON payload, SENTINEL for `[DONE]`, or None for lines to
    skip: blanks, `:` comments, non-data fields and malformed JSON.
    """
    if not line.strip() or line.startswith(":"):
        return None
    if not line.startswith("data: "):
        return None
    data = line[6:].strip()
    if data == DONE:
        return SENTINEL
    try:
        return json.loads(data)
    except json.JSONDecodeError:
        logger.debug("skipping malformed SSE frame: %.200s", data)
        return None


class ToolCallAccumulator:
    """
    Merges streamed tool-call fragments into complete calls.

    Each fragment merges into the slot named by its `index`. A fragment without
    an index joins the slot whose id matches, or opens a new slot after the
    highest index seen. `id` and `type` keep the latest non-empty value;
    `function.name` and `function.arguments` are concatenated verbatim in
    arrival order and never parsed here.
    """

    def __init__(self) -> None:
        self._slots: Dict[int, Dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._slots)

    def _slot_for(self, fragment: Dict[str, Any]) -> Dict[str, Any]:
        index = fragment.get("index")
        if not isinstance(index, int):
            frag_id = fragment.get("id")
            index = next(
                (i for i, slot in self._slots.items() if frag_id and slot["id"] == frag_id),
                max(self._slots) + 1 if self._slots else 0,
            )
        if index not in self._slots:
            self._slots[index] = {"id": "", "type": "function", "function": {"name": "", "arguments": ""}}
        return self._slots[index]

    def add(self, fragment: Dict[str, Any]) -> None:
        if not isinstance(fragment, dict):
            return
        slot = self._slot_for(fragment)
        if fragment.get("id"):
            slot["id"] = fragment["id"]
        if fragment.get("type"):
            slot["type"] = fragment["type"]

        function = fragment.get("function")
        if not isinstance(function, dict):
            function = {}
        name = function.get("name")
        if isinstance(name, str) and name:
            slot["function"]["name"] += name
        arguments = function.get("arguments")
        if arguments:
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments)
            slot["function"]["arguments"] += arguments

    def result(self) -> List[Dict[str, Any]]:
        """Merged calls ordered by index; calls without an id get `call_<index>`."""
        calls = []
        for index in sorted(self._slots):
            slot = self._slots[index]
            calls.append(
                {
                    "id": slot["id"] or f"call_{index}",
                    "type": slot["type"],
                    "function": dict(slot["function"]),
                }
            )
        return calls


def _frame_delta(parsed: Any) -> Optional[Dict[str, Any]]:
    """
    The first choice's delta, or None when the frame has the wrong shape.

    Frames without choices (usage or keep-alive payloads) yield an empty delta.
    """
    if not isinstance(parsed, dict):
        return None
    choices = parsed.get("choices")
    if choices is None or choices == []:
        return {}
    if not isinstance(choices, list) or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    if delta is None:
        return {}
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if content is not None and not isinstance(content, str):
        return None
    tool_calls = delta.get("tool_calls")
    if tool_calls is not None and not isinstance(tool_calls, list):
        return None
    return delta


class StreamRelay:
    """
    Consumes upstream byte chunks and yields content deltas in arrival order.

    After iteration, `content` holds the full text and `tool_calls` the merged
    calls. Once `[DONE]` is seen nothing more is yielded, but the upstream is
    drained to its end. Errors from the upstream iterator propagate unchanged.
    """

    def __init__(self, chunks: AsyncIterator[bytes]) -> None:
        self._chunks = chunks
        self._decoder = SSEDecoder()
        self._parts: List[str] = []
        self._tool_calls = ToolCallAccumulator()
        self.done = False
        self.frames = 0
        self.skipped = 0

    @property
    def content(self) -> str:
        return "".join(self._parts)

    @property
    def tool_calls(self) -> List[Dict[str, Any]]:
        return self._tool_calls.result()

    def _handle_line(self, line: str) -> Optional[List[str]]:
        if self.done:
            return None
        parsed = parse_sse_line(line)
        if parsed is SENTINEL:
            self.done = True
            return None
        if parsed is None:
            if line.startswith("data: "):
                self.skipped += 1
            return None
        self.frames += 1

        delta = _frame_delta(parsed)
        if delta is None:
            self.skipped += 1
            return None

        deltas: List[str] = []
        content = delta.get("content")
        if content:
            self._parts.append(content)
            deltas.append(content)
        for fragment in delta.get("tool_calls") or []:
            self._tool_calls.add(fragment)
        return deltas

    async def deltas(self) -> AsyncIterator[str]:
        async for chunk in self._chunks:
            for line in self._decoder.feed(chunk):
                for delta in self._handle_line(line) or ():
                    yield delta
        for line in self._decoder.flush():
            for delta in self._handle_line(line) or ():
                yield delta
        if self.skipped:
            logger.warning("stream relay skipped %d malformed frames", self.skipped)
