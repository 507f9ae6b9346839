"""Wire formats for the supported chat APIs.

A provider knows how to address an API (endpoint, headers), how to serialize a
request, and how to turn a buffered body or an SSE line stream back into a
``ChatResponse``. Transport, retries and cancellation live in ``LLMClient``.
"""

import json
import re
from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta
from typing import Any, AsyncIterator, Mapping

from codehelm.exceptions import LLMAPIError, LLMError
from codehelm.llm import (
    ChatResponse,
    Message,
    RateLimits,
    StreamCallback,
    ToolCall,
    ToolDefinition,
    Usage,
)
from codehelm.logging import get_logger

log = get_logger(__name__)

ANTHROPIC_API_VERSION = "2023-06-01"
ANTHROPIC_DEFAULT_MAX_TOKENS = 4096

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|us|µs|ns|h|m|s)")
_DURATION_UNITS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 1e-3,
    "us": 1e-6,
    "µs": 1e-6,
    "ns": 1e-9,
}


def parse_duration(value: str) -> float | None:
    """Parse a compact duration such as ``6m0s`` or ``250ms`` into seconds."""
    text = str(value or "").strip()
    if not text:
        return None
    pos = 0
    total = 0.0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != pos:
            return None
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        return None
    return total


def _parse_int_header(headers: Mapping[str, str], name: str) -> int | None:
    raw = headers.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        log.warning("Failed to parse rate limit header", header=name, value=raw)
        return None


def _sse_data(line: str) -> str | None:
    """Return the payload of an SSE ``data:`` line, or None for anything else."""
    stripped = line.strip()
    if not stripped or stripped.startswith(":"):
        return None
    if not stripped.startswith("data:"):
        return None
    return stripped[len("data:"):].strip()


def _load_frame(data: str) -> dict[str, Any]:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        raise LLMError(f"malformed SSE frame: {e} (data: {data[:200]})") from e
    if not isinstance(payload, dict):
        raise LLMError(f"malformed SSE frame: expected object (data: {data[:200]})")
    return payload


def _emit(callback: StreamCallback | None, content: str, thinking: str, done: bool) -> None:
    if callback is not None:
        callback(content, thinking, done)


class Provider(ABC):
    """Abstract wire format for one chat API family."""

    name: str = ""

    @abstractmethod
    def endpoint(self, base_url: str) -> str:
        """Full URL for chat requests."""

    @abstractmethod
    def set_headers(self, headers: dict[str, str], api_key: str) -> None:
        """Add authentication and content headers in place."""

    @abstractmethod
    def build_request_body(
        self,
        model: str,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        temperature: float | None,
        top_p: float | None,
        max_tokens: int | None,
        stream: bool,
    ) -> bytes:
        """Serialize a chat request."""

    @abstractmethod
    def parse_response_body(self, body: bytes) -> ChatResponse:
        """Parse a buffered (non-streaming) response body."""

    @abstractmethod
    async def parse_sse_stream(
        self,
        lines: AsyncIterator[str],
        callback: StreamCallback | None,
    ) -> ChatResponse:
        """Consume an SSE line stream, forwarding deltas to ``callback``."""

    @abstractmethod
    def parse_rate_limits(self, headers: Mapping[str, str]) -> RateLimits:
        """Extract rate-limit information from response headers."""


class OpenAIProvider(Provider):
    """OpenAI chat-completions wire format (also used by compatible servers)."""

    name = "openai"

    def endpoint(self, base_url: str) -> str:
        return base_url.rstrip("/") + "/chat/completions"

    def set_headers(self, headers: dict[str, str], api_key: str) -> None:
        headers["Content-Type"] = "application/json"
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

    @staticmethod
    def _convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = []
        for msg in messages:
            entry: dict[str, Any] = {"role": msg.role, "content": msg.content or ""}
            if msg.role == "assistant" and msg.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": tc.type or "function",
                        "function": {"name": tc.name, "arguments": tc.arguments or "{}"},
                    }
                    for tc in msg.tool_calls
                ]
            if msg.role == "tool":
                entry["tool_call_id"] = msg.tool_call_id or ""
            result.append(entry)
        return result

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {"type": "object", "properties": {}},
                },
            }
            for tool in tools
        ]

    def build_request_body(
        self,
        model: str,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        temperature: float | None,
        top_p: float | None,
        max_tokens: int | None,
        stream: bool,
    ) -> bytes:
        body: dict[str, Any] = {
            "model": model,
            "messages": self._convert_messages(messages),
            "stream": stream,
        }
        if temperature is not None:
            body["temperature"] = temperature
        if top_p is not None:
            body["top_p"] = top_p
        if max_tokens:
            body["max_tokens"] = max_tokens
        if tools:
            body["tools"] = self._convert_tools(tools)
            body["tool_choice"] = "auto"
        return json.dumps(body).encode("utf-8")

    def parse_response_body(self, body: bytes) -> ChatResponse:
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise LLMError(f"failed to decode response: {e}") from e
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            message = str(data["error"].get("message", "")).strip() or "unknown error"
            raise LLMAPIError(f"API error: {message}")

        choices = data.get("choices") or []
        if not choices:
            raise LLMError("response contained no choices")
        choice = choices[0]
        message = choice.get("message") or {}

        tool_calls = []
        for tc in message.get("tool_calls") or []:
            function = tc.get("function") or {}
            arguments = function.get("arguments", "")
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments)
            tool_calls.append(ToolCall(
                id=str(tc.get("id", "")),
                name=str(function.get("name", "")),
                arguments=arguments,
                type=str(tc.get("type") or "function"),
            ))

        usage_data = data.get("usage") or {}
        return ChatResponse(
            content=message.get("content") or "",
            thinking=message.get("reasoning_content") or "",
            tool_calls=tool_calls,
            finish_reason=choice.get("finish_reason") or "stop",
            model=str(data.get("model", "")),
            id=str(data.get("id", "")),
            usage=Usage(
                prompt_tokens=int(usage_data.get("prompt_tokens", 0) or 0),
                completion_tokens=int(usage_data.get("completion_tokens", 0) or 0),
                total_tokens=int(usage_data.get("total_tokens", 0) or 0),
            ),
        )

    async def parse_sse_stream(
        self,
        lines: AsyncIterator[str],
        callback: StreamCallback | None,
    ) -> ChatResponse:
        content_parts: list[str] = []
        thinking_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        finish_reason = ""
        model = ""
        response_id = ""
        usage = Usage()

        async for line in lines:
            data = _sse_data(line)
            if data is None:
                continue
            if data == "[DONE]":
                _emit(callback, "", "", True)
                break

            chunk = _load_frame(data)
            model = str(chunk.get("model") or model)
            response_id = str(chunk.get("id") or response_id)
            if isinstance(chunk.get("usage"), dict):
                usage = Usage(
                    prompt_tokens=int(chunk["usage"].get("prompt_tokens", 0) or 0),
                    completion_tokens=int(chunk["usage"].get("completion_tokens", 0) or 0),
                    total_tokens=int(chunk["usage"].get("total_tokens", 0) or 0),
                )

            choices = chunk.get("choices") or []
            if not choices:
                continue
            choice = choices[0]
            if choice.get("finish_reason"):
                finish_reason = str(choice["finish_reason"])

            delta = choice.get("delta") or {}
            text = delta.get("content") or ""
            thinking = delta.get("reasoning_content") or ""
            if text or thinking:
                content_parts.append(text)
                thinking_parts.append(thinking)
                _emit(callback, text, thinking, False)

            for fragment in delta.get("tool_calls") or []:
                function = fragment.get("function") or {}
                fragment_id = fragment.get("id") or ""
                if fragment_id:
                    tool_calls.append(ToolCall(
                        id=fragment_id,
                        name=str(function.get("name") or ""),
                        arguments=str(function.get("arguments") or ""),
                        type=str(fragment.get("type") or "function"),
                    ))
                elif tool_calls:
                    last = tool_calls[-1]
                    last.arguments += str(function.get("arguments") or "")
                    if not last.name and function.get("name"):
                        last.name = str(function["name"])

        return ChatResponse(
            content="".join(content_parts),
            thinking="".join(thinking_parts),
            tool_calls=tool_calls,
            finish_reason=finish_reason or "stop",
            model=model,
            id=response_id,
            usage=usage,
        )

    def parse_rate_limits(self, headers: Mapping[str, str]) -> RateLimits:
        limits = RateLimits(
            remaining_requests=_parse_int_header(headers, "x-ratelimit-remaining-requests"),
            remaining_tokens=_parse_int_header(headers, "x-ratelimit-remaining-tokens"),
        )
        now = datetime.now(UTC)
        reset_requests = parse_duration(headers.get("x-ratelimit-reset-requests", ""))
        if reset_requests is not None:
            limits.reset_requests = now + timedelta(seconds=reset_requests)
        reset_tokens = parse_duration(headers.get("x-ratelimit-reset-tokens", ""))
        if reset_tokens is not None:
            limits.reset_tokens = now + timedelta(seconds=reset_tokens)
        return limits


_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}


def map_stop_reason(stop_reason: str | None) -> str:
    """Map an Anthropic stop reason onto the OpenAI finish-reason vocabulary."""
    return _STOP_REASONS.get(str(stop_reason or ""), "stop")


def _parse_rfc3339(value: str | None) -> datetime | None:
    text = str(value or "").strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None


class AnthropicProvider(Provider):
    """Anthropic Messages API wire format."""

    name = "anthropic"

    def endpoint(self, base_url: str) -> str:
        return base_url.rstrip("/") + "/messages"

    def set_headers(self, headers: dict[str, str], api_key: str) -> None:
        headers["Content-Type"] = "application/json"
        headers["anthropic-version"] = ANTHROPIC_API_VERSION
        headers["accept"] = "application/json"
        if api_key:
            headers["x-api-key"] = api_key

    @staticmethod
    def convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Translate chat messages into strictly alternating Anthropic turns."""
        result: list[dict[str, Any]] = []
        for msg in messages:
            if msg.role == "system":
                continue
            blocks: list[dict[str, Any]] = []
            if msg.role == "assistant" and msg.tool_calls:
                if msg.content:
                    blocks.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls:
                    try:
                        tool_input = tc.parse_arguments()
                    except ValueError:
                        tool_input = {}
                    blocks.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": tool_input,
                    })
            elif msg.role == "tool":
                blocks.append({
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id or "",
                    "content": msg.content,
                })
            else:
                blocks.append({"type": "text", "text": msg.content or " "})

            role = "user" if msg.role == "tool" else msg.role
            if result and result[-1]["role"] == role:
                result[-1]["content"].extend(blocks)
            else:
                result.append({"role": role, "content": blocks})
        return result

    def build_request_body(
        self,
        model: str,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        temperature: float | None,
        top_p: float | None,
        max_tokens: int | None,
        stream: bool,
    ) -> bytes:
        system_parts = [msg.content for msg in messages if msg.role == "system" and msg.content]
        body: dict[str, Any] = {
            "model": model,
            "messages": self.convert_messages(messages),
            "max_tokens": max_tokens if max_tokens and max_tokens > 0 else ANTHROPIC_DEFAULT_MAX_TOKENS,
            "stream": stream,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        if temperature is not None:
            body["temperature"] = temperature
        if top_p is not None:
            body["top_p"] = top_p
        if tools:
            body["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description or "",
                    "input_schema": tool.parameters or {"type": "object", "properties": {}},
                }
                for tool in tools
            ]
        return json.dumps(body).encode("utf-8")

    def parse_response_body(self, body: bytes) -> ChatResponse:
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise LLMError(f"failed to decode Anthropic response: {e}") from e
        if data.get("type") == "error":
            error = data.get("error") or {}
            raise LLMAPIError(
                f"Anthropic API error ({error.get('type', 'unknown')}): {error.get('message', '')}"
            )

        content_parts: list[str] = []
        thinking_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for item in data.get("content") or []:
            kind = item.get("type")
            if kind == "text":
                content_parts.append(str(item.get("text", "")))
            elif kind == "thinking":
                thinking_parts.append(str(item.get("thinking", "")))
            elif kind == "tool_use":
                tool_calls.append(ToolCall(
                    id=str(item.get("id", "")),
                    name=str(item.get("name", "")),
                    arguments=json.dumps(item.get("input") or {}),
                ))

        usage_data = data.get("usage") or {}
        input_tokens = int(usage_data.get("input_tokens", 0) or 0)
        output_tokens = int(usage_data.get("output_tokens", 0) or 0)
        return ChatResponse(
            content="".join(content_parts),
            thinking="".join(thinking_parts),
            tool_calls=tool_calls,
            finish_reason=map_stop_reason(data.get("stop_reason")),
            model=str(data.get("model", "")),
            id=str(data.get("id", "")),
            usage=Usage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
        )

    async def parse_sse_stream(
        self,
        lines: AsyncIterator[str],
        callback: StreamCallback | None,
    ) -> ChatResponse:
        content_parts: list[str] = []
        thinking_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        block_to_tool: dict[int, int] = {}
        message_id = ""
        model = ""
        input_tokens = 0
        output_tokens = 0
        stop_reason = ""
        event_type = ""

        async for line in lines:
            stripped = line.strip()
            if stripped.startswith("event:"):
                event_type = stripped[len("event:"):].strip()
                continue
            data = _sse_data(line)
            if data is None:
                continue

            payload = _load_frame(data)
            kind = event_type or str(payload.get("type", ""))
            event_type = ""

            if kind == "message_start":
                message = payload.get("message") or {}
                message_id = str(message.get("id", ""))
                model = str(message.get("model", ""))
                input_tokens = int((message.get("usage") or {}).get("input_tokens", 0) or 0)
            elif kind == "content_block_start":
                block = payload.get("content_block") or {}
                if block.get("type") == "tool_use":
                    block_to_tool[int(payload.get("index", 0))] = len(tool_calls)
                    tool_calls.append(ToolCall(
                        id=str(block.get("id", "")),
                        name=str(block.get("name", "")),
                        arguments="",
                    ))
            elif kind == "content_block_delta":
                delta = payload.get("delta") or {}
                delta_type = delta.get("type")
                if delta_type == "text_delta":
                    text = str(delta.get("text", ""))
                    content_parts.append(text)
                    _emit(callback, text, "", False)
                elif delta_type == "thinking_delta":
                    thinking = str(delta.get("thinking", ""))
                    thinking_parts.append(thinking)
                    _emit(callback, "", thinking, False)
                elif delta_type == "input_json_delta":
                    idx = block_to_tool.get(int(payload.get("index", 0)))
                    if idx is not None:
                        tool_calls[idx].arguments += str(delta.get("partial_json", ""))
            elif kind == "message_delta":
                stop_reason = str((payload.get("delta") or {}).get("stop_reason") or stop_reason)
                output_tokens = int((payload.get("usage") or {}).get("output_tokens", 0) or 0)
            elif kind == "message_stop":
                _emit(callback, "", "", True)
                break
            elif kind == "error":
                error = payload.get("error") or {}
                raise LLMAPIError(
                    f"Anthropic stream error ({error.get('type', 'unknown')}): {error.get('message', data)}"
                )

        # Tool-use blocks with no input deltas still carry an (empty) object.
        for tc in tool_calls:
            if not tc.arguments:
                tc.arguments = "{}"

        return ChatResponse(
            content="".join(content_parts),
            thinking="".join(thinking_parts),
            tool_calls=tool_calls,
            finish_reason=map_stop_reason(stop_reason),
            model=model,
            id=message_id,
            usage=Usage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
        )

    def parse_rate_limits(self, headers: Mapping[str, str]) -> RateLimits:
        return RateLimits(
            remaining_requests=_parse_int_header(headers, "anthropic-ratelimit-requests-remaining"),
            remaining_tokens=_parse_int_header(headers, "anthropic-ratelimit-tokens-remaining"),
            reset_requests=_parse_rfc3339(headers.get("anthropic-ratelimit-requests-reset")),
            reset_tokens=_parse_rfc3339(headers.get("anthropic-ratelimit-tokens-reset")),
        )


_PROVIDERS: dict[str, type[Provider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
}


def detect_provider(provider_name: str = "", model: str = "", api_key: str = "") -> Provider:
    """Pick a provider from an explicit name, the model name or the key shape."""
    name = str(provider_name or "").strip().lower()
    if name in _PROVIDERS:
        return _PROVIDERS[name]()
    if name and name not in {"auto", ""}:
        # Ollama, vLLM, LM Studio, OpenRouter etc. speak the OpenAI format.
        return OpenAIProvider()
    if str(model or "").strip().lower().startswith("claude"):
        return AnthropicProvider()
    if str(api_key or "").startswith("sk-ant-"):
        return AnthropicProvider()
    return OpenAIProvider()
