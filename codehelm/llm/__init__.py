"""Provider-agnostic chat data model shared by the client and the agent."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable


# Callback receiving (content_chunk, thinking_chunk, done).
StreamCallback = Callable[[str, str, bool], None]


@dataclass
class ToolCall:
    """A tool call emitted by the model.

    ``arguments`` is the raw JSON text exactly as the model produced it; streamed
    calls assemble it from fragments, so it is only parsed at dispatch time.
    """

    id: str
    name: str
    arguments: str = ""
    type: str = "function"

    def parse_arguments(self) -> dict[str, Any]:
        """Decode ``arguments`` into a mapping.

        Raises:
            ValueError: if the text is not a JSON object
        """
        raw = (self.arguments or "").strip()
        if not raw:
            return {}
        value = json.loads(raw)
        if not isinstance(value, dict):
            raise ValueError(f"tool arguments must be a JSON object, got {type(value).__name__}")
        return value


@dataclass
class Usage:
    """Token usage reported by a provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: "Usage | None") -> None:
        if other is None:
            return
        self.prompt_tokens += max(0, int(other.prompt_tokens))
        self.completion_tokens += max(0, int(other.completion_tokens))
        self.total_tokens += max(0, int(other.total_tokens))

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str = ""
    thinking: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    usage: Usage | None = None


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


@dataclass
class RateLimits:
    """Rate-limit snapshot parsed from response headers."""

    remaining_requests: int | None = None
    remaining_tokens: int | None = None
    reset_requests: datetime | None = None
    reset_tokens: datetime | None = None


@dataclass
class ChatResponse:
    """A completed model response (streamed or not)."""

    content: str = ""
    thinking: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    model: str = ""
    id: str = ""
    usage: Usage = field(default_factory=Usage)
    rate_limits: RateLimits = field(default_factory=RateLimits)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_message(self) -> Message:
        """Assistant message carrying this response's content and tool calls."""
        return Message(
            role="assistant",
            content=self.content,
            thinking=self.thinking,
            tool_calls=list(self.tool_calls),
        )


__all__ = [
    "ChatResponse",
    "Message",
    "RateLimits",
    "StreamCallback",
    "ToolCall",
    "ToolDefinition",
    "Usage",
]
