import asyncio
import json
from typing import Any, AsyncIterator, Dict, List

import pytest

from case_agent.streaming import (
    DONE_EVENT,
    SENTINEL,
    SSEDecoder,
    StreamRelay,
    ToolCallAccumulator,
    format_event,
    parse_sse_line,
)


def _frame(delta: Dict[str, Any]) -> bytes:
    return ("data: " + json.dumps({"choices": [{"index": 0, "delta": delta}]}) + "\n\n").encode("utf-8")


async def _iterate(chunks: List[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


def _relay(chunks: List[bytes]):
    relay = StreamRelay(_iterate(chunks))

    async def collect() -> List[str]:
        return [delta async for delta in relay.deltas()]

    return relay, asyncio.run(collect())


def test_decoder_holds_back_partial_line():
    decoder = SSEDecoder()
    assert decoder.feed(b"data: {\"a\"") == []
    assert decoder.feed(b": 1}\r\ndata: x") == ['data: {"a": 1}']
    assert decoder.flush() == ["data: x"]
    assert decoder.flush() == []


def test_decoder_joins_multibyte_character_split_across_chunks():
    encoded = "data: żółw\n".encode("utf-8")
    decoder = SSEDecoder()
    lines: List[str] = []
    for i in range(len(encoded)):
        lines.extend(decoder.feed(encoded[i:i + 1]))
    assert lines == ["data: żółw"]


@pytest.mark.parametrize("line", ["", "   ", ": ping", "event: message", "id: 4", "data: {oops"])
def test_parse_sse_line_skips_non_payload_lines(line):
    assert parse_sse_line(line) is None


def test_parse_sse_line_recognises_done_and_payload():
    assert parse_sse_line("data: [DONE]") is SENTINEL
    assert parse_sse_line('data: {"x": 1}') == {"x": 1}


def test_format_event_framing():
    assert format_event({"delta": "hi"}) == 'data: {"delta": "hi"}\n\n'
    assert DONE_EVENT == "data: [DONE]\n\n"


def test_relay_forwards_deltas_across_record_splits():
    raw = _frame({"content": "Hello"}) + _frame({"content": ", "}) + _frame({"content": "world"}) + b"data: [DONE]\n\n"
    chunks = [raw[:9], raw[9:40], raw[40:41], raw[41:]]

    relay, deltas = _relay(chunks)

    assert deltas == ["Hello", ", ", "world"]
    assert relay.content == "Hello, world"
    assert relay.done is True
    assert relay.tool_calls == []


def test_malformed_frame_does_not_abort_later_deltas():
    raw = _frame({"content": "a"}) + b"data: {\"choices\": [\n\n" + _frame({"content": "b"})

    relay, deltas = _relay([raw])

    assert deltas == ["a", "b"]
    assert relay.skipped == 1


@pytest.mark.parametrize(
    "frame",
    [
        b'data: {"choices": [{"delta": "oops"}]}\n\n',
        b'data: {"choices": {"0": {"delta": {"content": "x"}}}}\n\n',
        b'data: {"choices": [{"delta": {"content": 42}}]}\n\n',
        b'data: {"choices": [{"delta": {"tool_calls": {"index": 0}}}]}\n\n',
        b'data: {"choices": ["text"]}\n\n',
        b"data: [1, 2]\n\n",
    ],
)
def test_wrongly_shaped_frame_is_skipped(frame):
    relay, deltas = _relay([_frame({"content": "a"}) + frame + _frame({"content": "b"}) + b"data: [DONE]\n\n"])

    assert deltas == ["a", "b"]
    assert relay.content == "ab"
    assert relay.skipped == 1
    assert relay.done is True


def test_frame_without_choices_is_not_counted_as_malformed():
    relay, deltas = _relay([b'data: {"usage": {"total_tokens": 3}}\n\n' + _frame({"content": "a"})])

    assert deltas == ["a"]
    assert relay.skipped == 0


def test_accumulator_ignores_malformed_function_field():
    acc = ToolCallAccumulator()
    acc.add({"index": 0, "id": "c", "function": "create_task"})
    acc.add({"index": 0, "function": {"name": "create_task", "arguments": "{}"}})

    assert acc.result()[0]["function"] == {"name": "create_task", "arguments": "{}"}


def test_done_stops_forwarding_but_drains_upstream():
    consumed: List[int] = []

    async def upstream() -> AsyncIterator[bytes]:
        for i, chunk in enumerate([_frame({"content": "kept"}), b"data: [DONE]\n\n", _frame({"content": "late"})]):
            consumed.append(i)
            yield chunk

    relay = StreamRelay(upstream())

    async def collect() -> List[str]:
        return [delta async for delta in relay.deltas()]

    assert asyncio.run(collect()) == ["kept"]
    assert consumed == [0, 1, 2]
    assert relay.content == "kept"


def test_stream_without_done_flushes_residue():
    raw = _frame({"content": "one"}) + b'data: {"choices": [{"delta": {"content": "two"}}]}'

    relay, deltas = _relay([raw])

    assert deltas == ["one", "two"]
    assert relay.done is False


def test_transport_error_propagates():
    async def upstream() -> AsyncIterator[bytes]:
        yield _frame({"content": "partial"})
        raise ConnectionError("reset by peer")

    relay = StreamRelay(upstream())
    seen: List[str] = []

    async def collect() -> None:
        async for delta in relay.deltas():
            seen.append(delta)

    with pytest.raises(ConnectionError):
        asyncio.run(collect())
    assert seen == ["partial"]


def test_accumulator_merges_interleaved_indices():
    acc = ToolCallAccumulator()
    acc.add({"index": 1, "id": "call_b", "type": "function", "function": {"name": "trigger_ocr", "arguments": ""}})
    acc.add({"index": 0, "id": "call_a", "type": "function", "function": {"name": "create_", "arguments": '{"ti'}})
    acc.add({"index": 1, "function": {"arguments": '{"documentId": "d1"}'}})
    acc.add({"index": 0, "function": {"name": "task", "arguments": 'tle": "x"}'}})

    assert acc.result() == [
        {"id": "call_a", "type": "function", "function": {"name": "create_task", "arguments": '{"title": "x"}'}},
        {"id": "call_b", "type": "function", "function": {"name": "trigger_ocr", "arguments": '{"documentId": "d1"}'}},
    ]


def test_accumulator_without_index_matches_by_id_or_opens_slot():
    acc = ToolCallAccumulator()
    acc.add({"id": "call_x", "function": {"name": "create_task", "arguments": "{"}})
    acc.add({"id": "call_x", "function": {"arguments": "}"}})
    acc.add({"function": {"name": "trigger_ocr", "arguments": "{}"}})

    calls = acc.result()
    assert len(acc) == 2
    assert calls[0]["function"] == {"name": "create_task", "arguments": "{}"}
    assert calls[1]["id"] == "call_1"


def test_accumulator_keeps_arguments_verbatim():
    acc = ToolCallAccumulator()
    acc.add({"index": 0, "id": "c", "function": {"name": "create_task", "arguments": "{not"}})
    acc.add({"index": 0, "function": {"arguments": " json"}})
    assert acc.result()[0]["function"]["arguments"] == "{not json"


def test_relay_collects_tool_calls_from_deltas():
    raw = _frame({"tool_calls": [{"index": 0, "id": "call_1", "type": "function", "function": {"name": "create_task", "arguments": "{}"}}]})

    relay, deltas = _relay([raw, b"data: [DONE]\n\n"])

    assert deltas == []
    assert relay.tool_calls[0]["id"] == "call_1"
