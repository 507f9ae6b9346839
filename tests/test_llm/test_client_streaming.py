import asyncio
import json

import httpx
import pytest

from codehelm.exceptions import LLMAPIError, LLMError, RequestCancelledError
from codehelm.llm import Message, ToolDefinition
from codehelm.llm.client import LLMClient, is_context_length_error, is_rate_limit_error, parse_api_error


def _sse(*frames: dict | str) -> bytes:
    lines = []
    for frame in frames:
        data = frame if isinstance(frame, str) else json.dumps(frame)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode("utf-8")


def _client(handler, **kwargs) -> LLMClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LLMClient(
        model=kwargs.pop("model", "gpt-4o-mini"),
        base_url="https://llm.test/v1",
        api_key="sk-test",
        http_client=http,
        **kwargs,
    )


class StreamRecorder:
    def __init__(self):
        self.events: list[tuple[str, str, bool]] = []

    def __call__(self, content: str, thinking: str, done: bool) -> None:
        self.events.append((content, thinking, done))

    @property
    def done_count(self) -> int:
        return sum(1 for _, _, done in self.events if done)


@pytest.mark.asyncio
async def test_stream_reassembles_tool_call_fragments():
    body = _sse(
        {"id": "r1", "model": "gpt-4o-mini", "choices": [{"delta": {"content": "Let me "}}]},
        {"choices": [{"delta": {"content": "look.", "reasoning_content": "hmm"}}]},
        {"choices": [{"delta": {"tool_calls": [
            {"id": "c1", "type": "function", "function": {"name": "read_file", "arguments": '{"pa'}}
        ]}}]},
        {"choices": [{"delta": {"tool_calls": [{"id": "", "function": {"arguments": 'th": "foo'}}]}}]},
        {"choices": [{"delta": {"tool_calls": [{"function": {"arguments": '.txt"}'}}]}}]},
        {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        "[DONE]",
    )

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        payload = json.loads(request.content)
        assert payload["stream"] is True
        assert payload["tool_choice"] == "auto"
        return httpx.Response(200, content=body, headers={"x-ratelimit-remaining-requests": "42"})

    client = _client(handler)
    recorder = StreamRecorder()
    tools = [ToolDefinition(name="read_file", description="Read", parameters={"type": "object"})]

    result = await client.chat_with_streaming([Message(role="user", content="hi")], tools, callback=recorder)

    assert result.content == "Let me look."
    assert result.thinking == "hmm"
    assert result.finish_reason == "tool_calls"
    assert len(result.tool_calls) == 1
    assert result.tool_calls[0].id == "c1"
    assert result.tool_calls[0].name == "read_file"
    assert result.tool_calls[0].arguments == '{"path": "foo.txt"}'
    assert result.tool_calls[0].parse_arguments() == {"path": "foo.txt"}
    assert recorder.done_count == 1
    assert recorder.events[0] == ("Let me ", "", False)
    assert client.last_rate_limits.remaining_requests == 42
    await client.close()


@pytest.mark.asyncio
async def test_stream_without_finish_reason_defaults_to_stop():
    body = _sse({"choices": [{"delta": {"content": "hi"}}]}, "[DONE]")
    client = _client(lambda request: httpx.Response(200, content=body))
    recorder = StreamRecorder()

    result = await client.chat_with_streaming([Message(role="user", content="x")], callback=recorder)

    assert result.finish_reason == "stop"
    assert recorder.done_count == 1


@pytest.mark.asyncio
async def test_stream_error_still_delivers_done_once():
    client = _client(lambda request: httpx.Response(401, json={"error": {"message": "bad key", "type": "auth"}}))
    recorder = StreamRecorder()

    with pytest.raises(LLMAPIError) as excinfo:
        await client.chat_with_streaming([Message(role="user", content="x")], callback=recorder)

    assert excinfo.value.status_code == 401
    assert "auth: bad key" in str(excinfo.value)
    assert recorder.done_count == 1


@pytest.mark.asyncio
async def test_cancel_event_aborts_stream():
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(10)
        return httpx.Response(200, content=_sse("[DONE]"))

    client = _client(handler)
    recorder = StreamRecorder()
    cancel_event = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancel_event.set)

    with pytest.raises(RequestCancelledError):
        await client.chat_with_streaming(
            [Message(role="user", content="x")],
            callback=recorder,
            cancel_event=cancel_event,
        )

    assert recorder.done_count == 1


@pytest.mark.asyncio
async def test_fallback_model_used_after_primary_fails():
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        model = json.loads(request.content)["model"]
        seen.append(model)
        if model == "primary":
            return httpx.Response(503, text="overloaded")
        return httpx.Response(200, json={
            "id": "r2",
            "model": model,
            "choices": [{"message": {"content": "from fallback"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
        })

    client = _client(handler, model="primary", max_retries=0)
    client.set_fallback_models(["backup"], timeout=5)

    result = await client.chat([Message(role="user", content="x")])

    assert seen == ["primary", "backup"]
    assert result.content == "from fallback"
    assert result.usage.total_tokens == 5


@pytest.mark.asyncio
async def test_stream_restarts_on_fallback_model():
    seen: list[str] = []
    fallback_body = _sse(
        {"model": "backup", "choices": [{"delta": {"content": "from "}}]},
        {"choices": [{"delta": {"content": "fallback"}, "finish_reason": "stop"}]},
        "[DONE]",
    )

    def handler(request: httpx.Request) -> httpx.Response:
        model = json.loads(request.content)["model"]
        seen.append(model)
        if model == "primary":
            return httpx.Response(503, text="overloaded")
        return httpx.Response(200, content=fallback_body)

    client = _client(handler, model="primary", max_retries=0)
    client.set_fallback_models(["backup"], timeout=5)
    recorder = StreamRecorder()

    result = await client.chat_with_streaming([Message(role="user", content="x")], callback=recorder)

    assert seen == ["primary", "backup"]
    assert result.content == "from fallback"
    assert result.model == "backup"
    assert [c for c, _, done in recorder.events if not done] == ["from ", "fallback"]
    assert recorder.done_count == 1
    assert recorder.events[-1] == ("", "", True)


@pytest.mark.asyncio
async def test_broken_primary_stream_falls_back_with_fresh_content():
    primary_body = _sse({"choices": [{"delta": {"content": "half an "}}]}, "{not json")
    fallback_body = _sse({"choices": [{"delta": {"content": "whole answer"}, "finish_reason": "stop"}]}, "[DONE]")

    def handler(request: httpx.Request) -> httpx.Response:
        model = json.loads(request.content)["model"]
        return httpx.Response(200, content=primary_body if model == "primary" else fallback_body)

    client = _client(handler, model="primary", max_retries=0)
    client.set_fallback_models(["backup"], timeout=5)
    recorder = StreamRecorder()

    result = await client.chat_with_streaming([Message(role="user", content="x")], callback=recorder)

    assert result.content == "whole answer"
    assert recorder.done_count == 1


@pytest.mark.asyncio
async def test_all_models_failing_reports_primary_error():
    client = _client(lambda request: httpx.Response(500, text="boom"), model="primary", max_retries=0)
    client.set_fallback_models(["a", "b"])

    with pytest.raises(LLMError, match="all models failed, primary error: API error 500: boom"):
        await client.chat([Message(role="user", content="x")])


@pytest.mark.asyncio
async def test_rate_limited_request_is_retried():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            return httpx.Response(429, text="slow down", headers={"retry-after": "0"})
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    client = _client(handler, max_retries=2)

    assert await client.simple_query("ping") == "ok"
    assert calls == 2


def test_parse_api_error_reads_json_message_and_retry_after():
    error = parse_api_error(
        429,
        b'{"error": {"type": "rate_limit_error", "message": "Too many requests"}}',
        {"retry-after": "7"},
    )

    assert error.status_code == 429
    assert error.retry_after == 7.0
    assert str(error) == "API error 429: rate_limit_error: Too many requests"
    assert is_rate_limit_error(error)


def test_parse_api_error_falls_back_to_raw_text():
    error = parse_api_error(502, "Bad Gateway")
    assert str(error) == "API error 502: Bad Gateway"
    assert error.retry_after is None


def test_context_length_detection():
    assert is_context_length_error(LLMError("maximum context length is 8192 tokens"))
    assert is_context_length_error(LLMAPIError("prompt is too long: 210000 tokens"))
    assert not is_context_length_error(LLMError("connection reset"))
    assert not is_context_length_error(None)
