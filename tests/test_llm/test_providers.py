import json

import pytest

from codehelm.exceptions import LLMAPIError, LLMError
from codehelm.llm import Message, ToolCall, ToolDefinition
from codehelm.llm.providers import (
    AnthropicProvider,
    OpenAIProvider,
    detect_provider,
    map_stop_reason,
    parse_duration,
)


async def _lines(text: str):
    for line in text.splitlines():
        yield line


def test_detect_provider_prefers_explicit_name():
    assert isinstance(detect_provider("anthropic", "gpt-4o"), AnthropicProvider)
    assert isinstance(detect_provider("ollama", "claude-3-opus"), OpenAIProvider)
    assert isinstance(detect_provider("", "claude-sonnet-4"), AnthropicProvider)
    assert isinstance(detect_provider("", "some-model", "sk-ant-abc"), AnthropicProvider)
    assert isinstance(detect_provider("", "gpt-4o-mini", "sk-abc"), OpenAIProvider)


def test_parse_duration_handles_compound_units():
    assert parse_duration("1s") == 1.0
    assert parse_duration("6m0s") == 360.0
    assert parse_duration("250ms") == pytest.approx(0.25)
    assert parse_duration("1h2m") == 3720.0
    assert parse_duration("") is None
    assert parse_duration("soon") is None


def test_openai_rate_limit_headers():
    limits = OpenAIProvider().parse_rate_limits({
        "x-ratelimit-remaining-requests": "99",
        "x-ratelimit-remaining-tokens": "not-a-number",
        "x-ratelimit-reset-requests": "6m0s",
    })
    assert limits.remaining_requests == 99
    assert limits.remaining_tokens is None
    assert limits.reset_requests is not None
    assert limits.reset_tokens is None


def test_openai_request_body_carries_tool_calls_and_results():
    messages = [
        Message(role="system", content="be brief"),
        Message(role="user", content="read it"),
        Message(role="assistant", tool_calls=[ToolCall(id="c1", name="read_file", arguments='{"path": "a"}')]),
        Message(role="tool", content="A", tool_call_id="c1"),
    ]
    body = json.loads(OpenAIProvider().build_request_body("m", messages, None, 0.2, None, 100, stream=False))

    assert "tools" not in body
    assert body["temperature"] == 0.2
    assert "top_p" not in body
    assert body["messages"][2]["tool_calls"][0]["function"] == {"name": "read_file", "arguments": '{"path": "a"}'}
    assert body["messages"][3] == {"role": "tool", "content": "A", "tool_call_id": "c1"}


def test_openai_error_body_raises():
    with pytest.raises(LLMAPIError, match="quota exceeded"):
        OpenAIProvider().parse_response_body(b'{"error": {"message": "quota exceeded"}}')


@pytest.mark.asyncio
async def test_openai_malformed_frame_raises():
    with pytest.raises(LLMError, match="malformed SSE frame"):
        await OpenAIProvider().parse_sse_stream(_lines("data: {not json\n"), None)


def test_anthropic_messages_merge_roles_and_lift_system():
    messages = [
        Message(role="system", content="rules"),
        Message(role="user", content="run ls"),
        Message(role="assistant", content="ok", tool_calls=[ToolCall(id="t1", name="shell", arguments='{"command": "ls"}')]),
        Message(role="tool", content="a.txt", tool_call_id="t1"),
        Message(role="user", content="thanks"),
    ]
    tools = [ToolDefinition(name="shell", description="Run", parameters={"type": "object"})]
    body = json.loads(AnthropicProvider().build_request_body("claude", messages, tools, None, None, None, stream=True))

    assert body["system"] == "rules"
    assert body["max_tokens"] == 4096
    assert body["tools"][0]["input_schema"] == {"type": "object"}
    assert [m["role"] for m in body["messages"]] == ["user", "assistant", "user"]
    assert body["messages"][1]["content"][1] == {
        "type": "tool_use",
        "id": "t1",
        "name": "shell",
        "input": {"command": "ls"},
    }
    assert body["messages"][2]["content"][0] == {"type": "tool_result", "tool_use_id": "t1", "content": "a.txt"}
    assert body["messages"][2]["content"][1] == {"type": "text", "text": "thanks"}


@pytest.mark.asyncio
async def test_anthropic_stream_assembles_text_thinking_and_tool_input():
    events = [
        ("message_start", {"type": "message_start", "message": {"id": "msg1", "model": "claude", "usage": {"input_tokens": 12}}}),
        ("content_block_start", {"type": "content_block_start", "index": 0, "content_block": {"type": "thinking"}}),
        ("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": "plan"}}),
        ("content_block_delta", {"type": "content_block_delta", "index": 1, "delta": {"type": "text_delta", "text": "Reading"}}),
        ("content_block_start", {"type": "content_block_start", "index": 2, "content_block": {"type": "tool_use", "id": "t1", "name": "read_file"}}),
        ("content_block_delta", {"type": "content_block_delta", "index": 2, "delta": {"type": "input_json_delta", "partial_json": '{"path":'}}),
        ("content_block_delta", {"type": "content_block_delta", "index": 2, "delta": {"type": "input_json_delta", "partial_json": ' "a.py"}'}}),
        ("message_delta", {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 7}}),
        ("message_stop", {"type": "message_stop"}),
    ]
    text = "".join(f"event: {name}\ndata: {json.dumps(payload)}\n\n" for name, payload in events)
    received: list[tuple[str, str, bool]] = []

    result = await AnthropicProvider().parse_sse_stream(
        _lines(text), lambda content, thinking, done: received.append((content, thinking, done))
    )

    assert result.id == "msg1"
    assert result.content == "Reading"
    assert result.thinking == "plan"
    assert result.finish_reason == "tool_calls"
    assert result.tool_calls[0].arguments == '{"path": "a.py"}'
    assert result.usage.total_tokens == 19
    assert received == [("", "plan", False), ("Reading", "", False), ("", "", True)]


@pytest.mark.asyncio
async def test_anthropic_stream_error_event_raises():
    text = 'event: error\ndata: {"type": "error", "error": {"type": "overloaded_error", "message": "busy"}}\n'
    with pytest.raises(LLMAPIError, match="overloaded_error"):
        await AnthropicProvider().parse_sse_stream(_lines(text), None)


def test_anthropic_stop_reasons():
    assert map_stop_reason("end_turn") == "stop"
    assert map_stop_reason("stop_sequence") == "stop"
    assert map_stop_reason("max_tokens") == "length"
    assert map_stop_reason("tool_use") == "tool_calls"
    assert map_stop_reason(None) == "stop"
