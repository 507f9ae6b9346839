from pathlib import Path

import pytest

from codehelm.agent import Agent
from codehelm.config import Config, MemoryConfig, PermissionsConfig
from codehelm.exceptions import LLMAPIError, LLMError, ToolDepthExceededError
from codehelm.llm import ChatResponse, Message, ToolCall, Usage
from codehelm.tools.registry import Tool, ToolRegistry, ToolResult


class LoopingLLM:
    """Answers with a tool call ``rounds`` times, then with plain text."""

    def __init__(self, rounds: int, final: str = "finished"):
        self.rounds = rounds
        self.final = final
        self.calls = 0
        self.requests: list[list[Message]] = []

    async def chat(self, messages, tools=None, temperature=None, top_p=None, max_tokens=None, cancel_event=None):
        self.calls += 1
        self.requests.append(list(messages))
        if self.calls <= self.rounds:
            return ChatResponse(
                tool_calls=[ToolCall(id=f"c{self.calls}", name="noop", arguments="{}")],
                finish_reason="tool_calls",
                usage=Usage(prompt_tokens=10, completion_tokens=2, total_tokens=12),
            )
        return ChatResponse(content=self.final)

    async def simple_query(self, prompt, temperature=None, max_tokens=None, cancel_event=None):
        return "NONE"


class SequenceLLM:
    def __init__(self, items: list):
        self.items = list(items)
        self.requests: list[list[Message]] = []
        self.queries: list[str] = []
        self.query_reply = "NONE"

    async def chat(self, messages, tools=None, temperature=None, top_p=None, max_tokens=None, cancel_event=None):
        self.requests.append(list(messages))
        item = self.items.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def simple_query(self, prompt, temperature=None, max_tokens=None, cancel_event=None):
        self.queries.append(prompt)
        return self.query_reply


class NoopTool(Tool):
    name = "noop"
    description = "Does nothing"
    parameters = {"type": "object", "properties": {}, "required": []}

    def __init__(self):
        self.calls = 0

    async def execute(self, **kwargs) -> ToolResult:
        self.calls += 1
        return ToolResult(success=True, output="ok")


def _agent(tmp_path: Path, llm, config: Config | None = None) -> tuple[Agent, NoopTool]:
    tool = NoopTool()
    registry = ToolRegistry()
    registry.register(tool)
    config = config or Config(
        memory=MemoryConfig(storage_path=str(tmp_path / "memory.db")),
        permissions=PermissionsConfig(audit_enabled=False),
    )
    return Agent(config=config, llm=llm, tools=registry, project_path=tmp_path), tool


@pytest.mark.asyncio
async def test_fifty_tool_rounds_are_allowed(tmp_path: Path):
    llm = LoopingLLM(rounds=50)
    agent, tool = _agent(tmp_path, llm)

    assert await agent.chat("loop") == "finished"
    assert tool.calls == 50
    assert llm.calls == 51


@pytest.mark.asyncio
async def test_fifty_first_tool_round_raises_depth_error(tmp_path: Path):
    llm = LoopingLLM(rounds=51)
    agent, tool = _agent(tmp_path, llm)

    with pytest.raises(ToolDepthExceededError, match="maximum tool execution depth exceeded"):
        await agent.chat("loop forever")

    assert tool.calls == 50
    # The lock is released and the next turn runs normally.
    llm.rounds = 0
    llm.calls = 0
    assert await agent.chat("stop") == "finished"


@pytest.mark.asyncio
async def test_transcript_pairs_tool_results_with_calls(tmp_path: Path):
    llm = LoopingLLM(rounds=3)
    agent, _ = _agent(tmp_path, llm)

    await agent.chat("loop a little")

    transcript = agent.last_transcript
    for index, message in enumerate(transcript):
        if message.role == "assistant" and message.tool_calls:
            ids = [call.id for call in message.tool_calls]
            following = transcript[index + 1:index + 1 + len(ids)]
            assert [m.role for m in following] == ["tool"] * len(ids)
            assert [m.tool_call_id for m in following] == ids
    assert agent.get_usage_stats()["prompt_tokens"] == 30
    assert agent.get_context_stats().completion_count == 4


@pytest.mark.asyncio
async def test_continuations_stop_after_five(tmp_path: Path):
    responses = [ChatResponse(content=f"part{i} ", finish_reason="length") for i in range(10)]
    llm = SequenceLLM(responses)
    agent, _ = _agent(tmp_path, llm)

    reply = await agent.chat("very long answer")

    assert len(llm.requests) == 6
    assert reply == "part0 part1 part2 part3 part4 part5 "


@pytest.mark.asyncio
async def test_failed_continuation_keeps_partial_content(tmp_path: Path):
    llm = SequenceLLM([
        ChatResponse(content="half", finish_reason="length"),
        LLMError("connection reset"),
    ])
    agent, _ = _agent(tmp_path, llm)

    assert await agent.chat("go") == "half"


@pytest.mark.asyncio
async def test_context_length_error_trims_history_and_retries_once(tmp_path: Path):
    llm = SequenceLLM([
        LLMAPIError("API error 400: context_length_exceeded: too many tokens", status_code=400),
        ChatResponse(content="fits now"),
    ])
    agent, _ = _agent(tmp_path, llm)
    for i in range(10):
        agent.memory.add_message("user" if i % 2 == 0 else "assistant", f"old {i}")

    reply = await agent.chat("latest question")

    assert reply == "fits now"
    assert len(llm.requests) == 2
    # 11 messages, 30% of them (3) dropped before the retry.
    retried = [m for m in llm.requests[1] if m.role != "system"]
    assert len(retried) == 8
    assert retried[-1].content == "latest question"


@pytest.mark.asyncio
async def test_other_llm_errors_propagate(tmp_path: Path):
    llm = SequenceLLM([LLMAPIError("API error 401: invalid key", status_code=401)])
    agent, _ = _agent(tmp_path, llm)

    with pytest.raises(LLMAPIError):
        await agent.chat("hi")
    assert len(llm.requests) == 1


@pytest.mark.asyncio
async def test_system_prompt_only_resent_when_context_changes(tmp_path: Path):
    llm = SequenceLLM([ChatResponse(content="one"), ChatResponse(content="two")])
    agent, _ = _agent(tmp_path, llm)

    await agent.chat("hello")
    await agent.chat("hello again")

    assert llm.requests[0][0].role == "system"
    assert all(m.role != "system" for m in llm.requests[1])
    assert agent.get_context_stats().context_sent is True


@pytest.mark.asyncio
async def test_compression_folds_history_into_long_term_memory(tmp_path: Path):
    config = Config(
        memory=MemoryConfig(storage_path=str(tmp_path / "memory.db"), compression_trigger=4),
        permissions=PermissionsConfig(audit_enabled=False),
    )
    llm = SequenceLLM([ChatResponse(content=f"answer {i}") for i in range(3)])
    llm.query_reply = "- decided to use sqlite"
    agent, _ = _agent(tmp_path, llm, config)
    agent.config.agent.insight_interval = 0

    for i in range(3):
        await agent.chat(f"question {i}")

    assert len(llm.queries) == 1
    assert "Context Compression Task" in llm.queries[0]
    assert agent.memory.short_term_count() == 5
    assert [item.content for item in agent.memory.get_long_term()] == ["- decided to use sqlite"]
    assert agent.get_context_stats().message_count == 5
    assert agent.get_context_stats().context_sent is False


@pytest.mark.asyncio
async def test_failed_compression_keeps_the_session_context(tmp_path: Path):
    config = Config(
        memory=MemoryConfig(storage_path=str(tmp_path / "memory.db"), compression_trigger=4),
        permissions=PermissionsConfig(audit_enabled=False),
    )
    llm = SequenceLLM([ChatResponse(content=f"answer {i}") for i in range(3)])
    llm.query_reply = "   "
    agent, _ = _agent(tmp_path, llm, config)
    agent.config.agent.insight_interval = 0

    for i in range(3):
        await agent.chat(f"question {i}")

    assert len(llm.queries) == 1
    assert agent.memory.short_term_count() == 6
    assert agent.memory.get_long_term() == []
    stats = agent.get_context_stats()
    assert stats.context_sent is True
    assert stats.message_count == 6


@pytest.mark.asyncio
async def test_turn_creates_task_file_when_missing(tmp_path: Path):
    llm = SequenceLLM([ChatResponse(content="done")])
    agent, _ = _agent(tmp_path, llm)

    await agent.chat("hi")

    assert (tmp_path / "task.md").read_text(encoding="utf-8").startswith("# Project Tasks")
