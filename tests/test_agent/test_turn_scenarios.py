import asyncio
import time
from pathlib import Path

import pytest

from codehelm.agent import CANCELLED, Agent, TurnState
from codehelm.config import Config, MemoryConfig, PermissionsConfig
from codehelm.llm import ChatResponse, Message, ToolCall
from codehelm.tools.registry import Tool, ToolRegistry, ToolResult


class ScriptedLLM:
    """Returns queued responses in order and records every request."""

    def __init__(self, responses: list[ChatResponse]):
        self.responses = list(responses)
        self.requests: list[list[Message]] = []
        self.stream_chunks: list[str] = []
        self.hang_after_chunks = False

    def _next(self, messages: list[Message]) -> ChatResponse:
        self.requests.append(list(messages))
        if not self.responses:
            return ChatResponse(content="unexpected")
        return self.responses.pop(0)

    async def chat(self, messages, tools=None, temperature=None, top_p=None, max_tokens=None, cancel_event=None):
        return self._next(messages)

    async def chat_with_streaming(
        self,
        messages,
        tools=None,
        temperature=None,
        top_p=None,
        max_tokens=None,
        callback=None,
        cancel_event=None,
    ):
        for chunk in self.stream_chunks:
            callback(chunk, "", False)
            await asyncio.sleep(0)
        if self.hang_after_chunks:
            self.requests.append(list(messages))
            await asyncio.sleep(30)
        response = self._next(messages)
        if not self.stream_chunks and response.content:
            callback(response.content, "", False)
        callback("", "", True)
        return response

    async def simple_query(self, prompt, temperature=None, max_tokens=None, cancel_event=None):
        return "NONE"


class ReadFileStub(Tool):
    name = "read_file"
    description = "Read a file"
    parameters = {
        "type": "object",
        "properties": {"path": {"type": "string"}},
        "required": ["path"],
    }

    def __init__(self):
        self.paths: list[str] = []

    async def execute(self, **kwargs) -> ToolResult:
        self.paths.append(kwargs["path"])
        return ToolResult(success=True, output="FOO")


class SleepTool(Tool):
    name = "sleep"
    description = "Sleep for a while"
    parameters = {
        "type": "object",
        "properties": {"seconds": {"type": "number"}, "label": {"type": "string"}},
        "required": ["seconds", "label"],
    }

    def __init__(self):
        self.finished: list[str] = []

    async def execute(self, **kwargs) -> ToolResult:
        await asyncio.sleep(kwargs["seconds"])
        self.finished.append(kwargs["label"])
        return ToolResult(success=True, output=f"slept {kwargs['label']}")


class WriteFileStub(Tool):
    name = "write_file"
    description = "Write a file"
    parameters = {
        "type": "object",
        "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
        "required": ["path", "content"],
    }

    def __init__(self):
        self.calls = 0

    async def execute(self, **kwargs) -> ToolResult:
        self.calls += 1
        return ToolResult(success=True, output="written")


def _config(tmp_path: Path) -> Config:
    return Config(
        memory=MemoryConfig(storage_path=str(tmp_path / "memory.db")),
        permissions=PermissionsConfig(audit_enabled=False),
    )


def _agent(tmp_path: Path, llm: ScriptedLLM, *tools: Tool) -> Agent:
    registry = ToolRegistry()
    for tool in tools:
        registry.register(tool)
    return Agent(config=_config(tmp_path), llm=llm, tools=registry, project_path=tmp_path)


@pytest.mark.asyncio
async def test_simple_turn_returns_content_and_records_two_messages(tmp_path: Path):
    llm = ScriptedLLM([ChatResponse(content="hello", finish_reason="stop")])
    agent = _agent(tmp_path, llm)
    started: list[str] = []
    agent.set_tool_callbacks(on_start=lambda name, args: started.append(name))

    reply = await agent.chat("hi")

    assert reply == "hello"
    assert agent.memory.get_messages() == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ]
    assert started == []
    assert agent.state is TurnState.IDLE
    # First turn always carries the system prompt.
    assert llm.requests[0][0].role == "system"


@pytest.mark.asyncio
async def test_single_tool_turn_feeds_result_back_and_working_memory(tmp_path: Path):
    llm = ScriptedLLM([
        ChatResponse(
            tool_calls=[ToolCall(id="c1", name="read_file", arguments='{"path": "foo.txt"}')],
            finish_reason="tool_calls",
        ),
        ChatResponse(content="content is FOO"),
    ])
    tool = ReadFileStub()
    agent = _agent(tmp_path, llm, tool)
    events: list[tuple[str, str, str]] = []
    agent.set_tool_callbacks(
        on_start=lambda name, args: events.append(("start", name, args)),
        on_complete=lambda name, output: events.append(("complete", name, output)),
        on_error=lambda name, error: events.append(("error", name, error)),
    )

    reply = await agent.chat("read foo.txt")

    assert reply == "content is FOO"
    assert tool.paths == ["foo.txt"]
    assert events == [
        ("start", "read_file", '{"path": "foo.txt"}'),
        ("complete", "read_file", "FOO"),
    ]
    tool_messages = [m for m in agent.last_transcript if m.role == "tool"]
    assert len(tool_messages) == 1
    assert tool_messages[0].tool_call_id == "c1"
    assert tool_messages[0].content == "FOO"

    item = agent.memory.get_working_item("foo.txt")
    assert item is not None
    assert item.relevance == 1.0


@pytest.mark.asyncio
async def test_parallel_tools_run_concurrently_and_keep_call_order(tmp_path: Path):
    calls = [
        ToolCall(id="c1", name="sleep", arguments='{"seconds": 0.1, "label": "c1"}'),
        ToolCall(id="c2", name="sleep", arguments='{"seconds": 0.05, "label": "c2"}'),
        ToolCall(id="c3", name="sleep", arguments='{"seconds": 0.01, "label": "c3"}'),
    ]
    llm = ScriptedLLM([
        ChatResponse(tool_calls=calls, finish_reason="tool_calls"),
        ChatResponse(content="all slept"),
    ])
    tool = SleepTool()
    agent = _agent(tmp_path, llm, tool)
    agent.project.load()

    started = time.perf_counter()
    reply = await agent.chat("sleep three times")
    elapsed = time.perf_counter() - started

    assert reply == "all slept"
    assert elapsed <= 0.15
    assert tool.finished == ["c3", "c2", "c1"]

    second_request = llm.requests[1]
    assistant_index = next(i for i, m in enumerate(second_request) if m.tool_calls)
    following = second_request[assistant_index + 1:assistant_index + 4]
    assert [m.role for m in following] == ["tool", "tool", "tool"]
    assert [m.tool_call_id for m in following] == ["c1", "c2", "c3"]


@pytest.mark.asyncio
async def test_sensitive_tool_denied_never_runs_handler(tmp_path: Path):
    llm = ScriptedLLM([
        ChatResponse(
            tool_calls=[
                ToolCall(id="c1", name="write_file", arguments='{"path": "a.txt", "content": "x"}')
            ],
            finish_reason="tool_calls",
        ),
        ChatResponse(content="ok, not writing"),
    ])
    tool = WriteFileStub()
    agent = _agent(tmp_path, llm, tool)
    requests: list[tuple[str, str]] = []

    def approver(name: str, preview: str) -> None:
        requests.append((name, preview))
        agent.submit_approval(False)

    agent.set_approval_callback(approver)

    reply = await agent.chat("write a.txt")

    assert reply == "ok, not writing"
    assert tool.calls == 0
    assert requests == [("write_file", '{"path": "a.txt", "content": "x"}')]

    observed = [m for m in llm.requests[1] if m.role == "tool"]
    assert len(observed) == 1
    assert observed[0].tool_call_id == "c1"
    assert observed[0].content == "denied"


@pytest.mark.asyncio
async def test_sensitive_tool_approved_runs_once(tmp_path: Path):
    llm = ScriptedLLM([
        ChatResponse(
            tool_calls=[
                ToolCall(id="c1", name="write_file", arguments='{"path": "a.txt", "content": "x"}')
            ],
            finish_reason="tool_calls",
        ),
        ChatResponse(content="written"),
    ])
    tool = WriteFileStub()
    agent = _agent(tmp_path, llm, tool)
    agent.set_approval_callback(lambda name, preview: agent.submit_approval(True))

    assert await agent.chat("write a.txt") == "written"
    assert tool.calls == 1


@pytest.mark.asyncio
async def test_truncated_answer_is_continued_once(tmp_path: Path):
    llm = ScriptedLLM([
        ChatResponse(content="partial…", finish_reason="length"),
        ChatResponse(content="…done", finish_reason="stop"),
    ])
    agent = _agent(tmp_path, llm)

    reply = await agent.chat("write a long story")

    assert reply == "partial……done"
    assert len(llm.requests) == 2
    continuation = llm.requests[1]
    assert continuation[-2].role == "assistant"
    assert continuation[-2].content == "partial…"
    assert continuation[-1].role == "user"
    assert continuation[-1].content == "Continue exactly from where you were cut off."


@pytest.mark.asyncio
async def test_cancel_mid_stream_delivers_done_once_and_keeps_memory_clean(tmp_path: Path):
    llm = ScriptedLLM([])
    llm.stream_chunks = ["Once ", "upon ", "a time"]
    llm.hang_after_chunks = True
    agent = _agent(tmp_path, llm)
    events: list[tuple[str, bool]] = []

    def on_stream(content: str, thinking: str, done: bool) -> None:
        events.append((content, done))
        if content == "upon ":
            agent.stop_current_request()

    agent.set_stream_callback(on_stream)

    reply = await agent.chat("tell me a long story")

    assert reply is CANCELLED
    assert [done for _, done in events].count(True) == 1
    assert events[-1] == ("", True)
    assert agent.memory.get_messages() == [{"role": "user", "content": "tell me a long story"}]
    assert agent.state is TurnState.IDLE

    llm.stream_chunks = []
    llm.hang_after_chunks = False
    llm.responses = [ChatResponse(content="hello again")]
    events.clear()

    assert await agent.chat("hi") == "hello again"
    assert [done for _, done in events].count(True) == 1
    assert agent.memory.get_messages()[-1] == {"role": "assistant", "content": "hello again"}


def _unanswered_tool_calls(transcript: list[Message]) -> list[str]:
    """Ids of tool calls not immediately followed by their tool messages."""
    missing: list[str] = []
    for index, message in enumerate(transcript):
        if not message.tool_calls:
            continue
        expected = [call.id for call in message.tool_calls]
        following = transcript[index + 1:index + 1 + len(expected)]
        answered = [m.tool_call_id for m in following if m.role == "tool"]
        if answered != expected:
            missing.extend(expected)
    return missing


@pytest.mark.asyncio
async def test_cancel_during_tool_dispatch_leaves_no_dangling_tool_call(tmp_path: Path):
    llm = ScriptedLLM([
        ChatResponse(
            tool_calls=[ToolCall(id="c1", name="sleep", arguments='{"seconds": 5, "label": "c1"}')],
            finish_reason="tool_calls",
        ),
        ChatResponse(content="never reached"),
    ])
    tool = SleepTool()
    agent = _agent(tmp_path, llm, tool)
    asyncio.get_running_loop().call_later(0.2, agent.stop_current_request)

    started = time.perf_counter()
    reply = await agent.chat("sleep for a while")

    assert reply is CANCELLED
    assert time.perf_counter() - started < 2
    assert tool.finished == []
    assert _unanswered_tool_calls(agent.last_transcript) == []
    assert not any(m.tool_calls for m in agent.last_transcript)
    assert agent.memory.get_messages() == [{"role": "user", "content": "sleep for a while"}]


@pytest.mark.asyncio
async def test_malformed_arguments_fail_in_place_and_others_still_run(tmp_path: Path):
    llm = ScriptedLLM([
        ChatResponse(
            tool_calls=[
                ToolCall(id="c1", name="sleep", arguments='{"seconds": 0.01, "label": "c1"}'),
                ToolCall(id="c2", name="sleep", arguments="{bad"),
                ToolCall(id="c3", name="sleep", arguments='{"seconds": 0.01, "label": "c3"}'),
            ],
            finish_reason="tool_calls",
        ),
        ChatResponse(content="two of three"),
    ])
    tool = SleepTool()
    agent = _agent(tmp_path, llm, tool)
    errors: list[str] = []
    agent.set_tool_callbacks(on_error=lambda name, error: errors.append(error))

    assert await agent.chat("sleep three times") == "two of three"

    assert sorted(tool.finished) == ["c1", "c3"]
    tool_messages = [m for m in llm.requests[1] if m.role == "tool"]
    assert [m.tool_call_id for m in tool_messages] == ["c1", "c2", "c3"]
    assert tool_messages[0].content == "slept c1"
    assert tool_messages[1].content.startswith("invalid tool arguments")
    assert tool_messages[2].content == "slept c3"
    assert len(errors) == 1 and errors[0].startswith("invalid tool arguments")
    assert _unanswered_tool_calls(agent.last_transcript) == []


@pytest.mark.asyncio
async def test_unanswered_approval_times_out_as_denial(tmp_path: Path):
    llm = ScriptedLLM([
        ChatResponse(
            tool_calls=[
                ToolCall(id="c1", name="write_file", arguments='{"path": "a.txt", "content": "x"}')
            ],
            finish_reason="tool_calls",
        ),
        ChatResponse(content="no answer, skipped"),
    ])
    tool = WriteFileStub()
    agent = _agent(tmp_path, llm, tool)
    agent.config.permissions.approval_timeout = 0.05

    assert await agent.chat("write a.txt") == "no answer, skipped"

    assert tool.calls == 0
    assert not agent.approval.pending
    observed = [m for m in llm.requests[1] if m.role == "tool"]
    assert [m.tool_call_id for m in observed] == ["c1"]
    assert observed[0].content == "denied: approval timed out"
