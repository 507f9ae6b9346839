"""Agent orchestration for codehelm."""

import asyncio
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from codehelm.agent_dispatch_mixin import AgentToolDispatchMixin
from codehelm.agent_memory_mixin import AgentMemoryMixin
from codehelm.approval import ApprovalBridge, ApprovalRequestCallback
from codehelm.config import Config, get_config
from codehelm.exceptions import LLMError, RequestCancelledError, ToolDepthExceededError
from codehelm.health import HealthChecker
from codehelm.knowledge import Brain, Roadmap
from codehelm.llm import ChatResponse, Message, RateLimits, StreamCallback, ToolDefinition, Usage
from codehelm.llm.client import LLMClient, cancel_task, is_context_length_error, run_cancellable
from codehelm.logging import get_logger
from codehelm.memory import MemoryManager
from codehelm.permissions import PermissionManager
from codehelm.project import ProjectContext
from codehelm.prompts import RulesManager
from codehelm.session import ContextStats, SessionManager
from codehelm.tools import IntelligentRetryWrapper, ToolExecutor, ToolRegistry, create_default_registry

log = get_logger(__name__)

CONTINUE_PROMPT = "Continue exactly from where you were cut off."

# Returned by chat() when the turn was stopped; compare with ``is``.
CANCELLED = "[request cancelled]"


class TurnState(str, Enum):
    IDLE = "idle"
    BUILDING = "building"
    CALLING = "calling"
    STREAMING = "streaming"
    TOOL_DISPATCH = "tool_dispatch"
    CONTINUATION = "continuation"
    CANCELLED = "cancelled"


class _TurnStream:
    """Stream relay for one turn.

    Forwards content and thinking deltas from every model call of the turn and
    swallows the per-call ``done`` signals; ``finish`` delivers a single
    ``done=True`` when the turn ends, however it ends.
    """

    def __init__(self, agent: "Agent", callback: StreamCallback):
        self._agent = agent
        self._callback = callback
        self.finished = False

    def __call__(self, content: str, thinking: str, done: bool) -> None:
        if done or self.finished:
            return
        if self._agent.state is TurnState.CALLING:
            self._agent.state = TurnState.STREAMING
        if content or thinking:
            self._agent._invoke_callback(self._callback, content, thinking, False)

    def finish(self) -> None:
        if self.finished:
            return
        self.finished = True
        self._agent._invoke_callback(self._callback, "", "", True)


class Agent(AgentMemoryMixin, AgentToolDispatchMixin):
    """Main agent orchestrator.

    One turn at a time: ``chat`` holds ``_lock`` for the whole turn, including
    every tool round and continuation, so heartbeat turns never interleave with
    user turns.
    """

    def __init__(
        self,
        config: Config | None = None,
        llm: LLMClient | Any | None = None,
        tools: ToolRegistry | None = None,
        project_path: Path | str | None = None,
        memory: MemoryManager | None = None,
        session: SessionManager | None = None,
        permissions: PermissionManager | None = None,
        approval: ApprovalBridge | None = None,
        project: ProjectContext | None = None,
        rules: RulesManager | None = None,
        brain: Brain | None = None,
        roadmap: Roadmap | None = None,
        health_checker: HealthChecker | None = None,
    ):
        """Initialize the agent.

        Args:
            config: Configuration; defaults to the global config
            llm: Chat client; anything with ``chat``/``chat_with_streaming``/``simple_query``
            tools: Tool registry; defaults to the built-in tools
            project_path: Project root; defaults to the configured workspace
        """
        self.config = config or get_config()
        cfg = self.config
        self.project_path = Path(project_path) if project_path is not None else cfg.resolved_workspace_path()
        self.llm = llm or LLMClient.from_config(cfg)
        self.tools = tools if tools is not None else create_default_registry(cfg, self.project_path)
        self.executor = IntelligentRetryWrapper(
            ToolExecutor(self.tools, debug_level=cfg.debug.level, max_traces=cfg.debug.max_traces)
        )
        self.memory = memory or MemoryManager(cfg.memory)
        self.session = session or SessionManager()
        self.permissions = permissions or PermissionManager(cfg.permissions)
        self.approval = approval or ApprovalBridge()
        self.project = project or ProjectContext(self.project_path)
        self.rules = rules or RulesManager(self.project_path)
        if rules is None:
            self.rules.load()
        self.brain = brain or Brain(self.project_path)
        self.roadmap = roadmap or Roadmap(self.project_path)
        self.health_checker = health_checker or HealthChecker(
            self.project_path,
            test_command=cfg.heartbeat.test_command,
            build_command=cfg.heartbeat.build_command,
            task_file=cfg.heartbeat.task_file,
        )

        self.state = TurnState.IDLE
        self.total_usage = Usage()
        self.last_rate_limits = RateLimits()
        self.last_transcript: list[Message] = []
        self.heartbeat = None
        self.status_callback: Callable[[str], None] | None = None
        self.stream_callback: StreamCallback | None = None
        self.tool_start_callback: Callable[[str, str], None] | None = None
        self.tool_complete_callback: Callable[[str, str], None] | None = None
        self.tool_error_callback: Callable[[str, str], None] | None = None

        self._lock = asyncio.Lock()
        self._root_cancel = asyncio.Event()
        self._turn_cancel: asyncio.Event | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._initialized = False

    async def initialize(self) -> None:
        """Load persisted long-term memory."""
        if self._initialized:
            return
        await self.memory.load()
        self._initialized = True

    # -- callbacks ----------------------------------------------------------

    @staticmethod
    def _invoke_callback(callback: Callable[..., Any] | None, *args: Any) -> None:
        """Call an observer hook; its failures never reach the turn."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            log.debug("Observer callback failed", error=str(e))

    def _set_runtime_status(self, status: str) -> None:
        """Forward runtime status updates when callback is configured."""
        self._invoke_callback(self.status_callback, status)

    def set_status_callback(self, callback: Callable[[str], None] | None) -> None:
        self.status_callback = callback

    def set_stream_callback(self, callback: StreamCallback | None) -> None:
        self.stream_callback = callback

    def set_tool_callbacks(
        self,
        on_start: Callable[[str, str], None] | None = None,
        on_complete: Callable[[str, str], None] | None = None,
        on_error: Callable[[str, str], None] | None = None,
    ) -> None:
        self.tool_start_callback = on_start
        self.tool_complete_callback = on_complete
        self.tool_error_callback = on_error

    def set_approval_callback(self, callback: ApprovalRequestCallback | None) -> None:
        self.approval.set_request_callback(callback)

    def submit_approval(self, decision: bool) -> bool:
        return self.approval.submit(decision)

    # -- turn ---------------------------------------------------------------

    async def chat(self, text: str) -> str:
        """Run one turn; streams to the stream callback when one is set.

        Returns:
            The final assistant text, or ``CANCELLED`` when the turn was stopped

        Raises:
            LLMError: when every configured model failed
            ToolDepthExceededError: when the model keeps calling tools past the cap
        """
        return await self._chat(text, self.stream_callback)

    async def chat_with_streaming(self, text: str, callback: StreamCallback) -> str:
        return await self._chat(text, callback)

    def stop_current_request(self) -> None:
        """Cancel the active turn, if any. Call from the event loop thread."""
        if self._turn_cancel is not None:
            log.info("Stopping current request")
            self._turn_cancel.set()

    async def _chat(self, text: str, callback: StreamCallback | None) -> str:
        async with self._lock:
            cancel_event = asyncio.Event()
            if self._root_cancel.is_set():
                cancel_event.set()
            self._turn_cancel = cancel_event
            relay = _TurnStream(self, callback) if callback is not None and self.config.agent.streaming else None
            try:
                return await self._run_turn(text, relay, cancel_event)
            except RequestCancelledError:
                self.state = TurnState.CANCELLED
                log.info("Turn cancelled")
                self._set_runtime_status("stopped")
                return CANCELLED
            finally:
                if relay is not None:
                    relay.finish()
                self._turn_cancel = None
                self.state = TurnState.IDLE

    def _conversation(self, system_prompt: str | None) -> list[Message]:
        messages = [Message(role="system", content=system_prompt)] if system_prompt else []
        messages.extend(
            Message(role=m["role"], content=m["content"]) for m in self.memory.get_messages()
        )
        return messages

    async def _run_turn(self, text: str, relay: _TurnStream | None, cancel_event: asyncio.Event) -> str:
        self.state = TurnState.BUILDING
        stats = self.session.get_context_stats()
        log.info("Chat started", context_messages=stats.message_count)
        self.memory.age_working_memory(self.config.agent.working_memory_decay)
        self.memory.add_message("user", text)

        system_prompt, rules, project_info = self._build_system_prompt(text)
        needs_context = self.session.needs_context_refresh(system_prompt, rules, project_info)
        if needs_context:
            self._set_runtime_status("refreshing context")
        sent_prompt = system_prompt if needs_context else None
        messages = self._conversation(sent_prompt)
        tool_defs = self.tools.get_definitions()

        try:
            response = await self._call_llm(messages, tool_defs, relay, cancel_event)
        except RequestCancelledError:
            raise
        except LLMError as e:
            if not is_context_length_error(e):
                raise
            log.info("Context length exceeded, trimming oldest messages")
            self._set_runtime_status("context too long, trimming history")
            self.memory.trim_oldest(self.config.agent.context_trim_fraction)
            messages = self._conversation(sent_prompt)
            response = await self._call_llm(messages, tool_defs, relay, cancel_event)

        if needs_context:
            self.session.mark_context_sent(system_prompt, rules, project_info)

        content = await self._finish_turn(messages, response, tool_defs, relay, cancel_event)
        self.memory.add_message("assistant", content)
        await self._after_turn()
        return content

    async def _finish_turn(
        self,
        messages: list[Message],
        response: ChatResponse,
        tool_defs: list[ToolDefinition],
        relay: _TurnStream | None,
        cancel_event: asyncio.Event,
    ) -> str:
        """Tool rounds, then continuation of a truncated answer."""
        max_depth = self.config.agent.max_tool_depth
        depth = 0
        try:
            while response.has_tool_calls:
                if depth >= max_depth:
                    raise ToolDepthExceededError(max_depth)
                depth += 1
                if depth > 10:
                    log.info("Deep tool execution, continuing task", depth=depth)
                self.state = TurnState.TOOL_DISPATCH
                # The assistant message goes in only together with all of its tool results.
                tool_messages = await self._dispatch_tool_calls(response.tool_calls, cancel_event)
                messages.extend([response.to_message(), *tool_messages])
                response = await self._call_llm(messages, tool_defs, relay, cancel_event)

            content = response.content
            if response.finish_reason == "length":
                log.info("Response truncated, requesting continuation")
                content += await self._continue_response(messages, content, relay, cancel_event)
            messages.append(Message(role="assistant", content=content, usage=response.usage))
            return content
        finally:
            self.last_transcript = list(messages)

    async def _continue_response(
        self,
        messages: list[Message],
        content: str,
        relay: _TurnStream | None,
        cancel_event: asyncio.Event,
    ) -> str:
        continuation = ""
        current = content
        for attempt in range(1, self.config.agent.max_continuations + 1):
            self.state = TurnState.CONTINUATION
            request = [
                *messages,
                Message(role="assistant", content=current),
                Message(role="user", content=CONTINUE_PROMPT),
            ]
            try:
                response = await self._call_llm(request, None, relay, cancel_event)
            except RequestCancelledError:
                raise
            except LLMError as e:
                log.error("Continuation failed", attempt=attempt, error=str(e))
                break
            continuation += response.content
            current = response.content
            if response.finish_reason != "length":
                break
            log.info("Continuation also truncated", attempt=attempt)
        return continuation

    async def _call_llm(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        relay: _TurnStream | None,
        cancel_event: asyncio.Event,
    ) -> ChatResponse:
        self.state = TurnState.CALLING
        model = self.config.model
        if relay is not None:
            call = self.llm.chat_with_streaming(
                messages,
                tools,
                temperature=model.temperature,
                top_p=model.top_p,
                max_tokens=model.max_tokens,
                callback=relay,
                cancel_event=cancel_event,
            )
        else:
            call = self.llm.chat(
                messages,
                tools,
                temperature=model.temperature,
                top_p=model.top_p,
                max_tokens=model.max_tokens,
                cancel_event=cancel_event,
            )
        response = await run_cancellable(call, cancel_event)
        self.total_usage.add(response.usage)
        self.last_rate_limits = response.rate_limits
        self.session.update_token_usage(response.usage.prompt_tokens)
        return response

    # -- stats --------------------------------------------------------------

    def get_context_stats(self) -> ContextStats:
        return self.session.get_context_stats()

    def get_memory_stats(self) -> dict[str, int]:
        return self.memory.stats()

    def get_usage_stats(self) -> dict[str, Any]:
        limits = self.last_rate_limits
        return {
            **self.total_usage.to_dict(),
            "remaining_requests": limits.remaining_requests,
            "remaining_tokens": limits.remaining_tokens,
            "reset_requests": limits.reset_requests,
            "reset_tokens": limits.reset_tokens,
        }

    def get_retry_stats(self) -> dict[str, Any]:
        return self.executor.get_retry_stats()

    def get_debug_report(self) -> str:
        return self.executor.get_debug_report()

    def clear_memory(self, tier: str | None = None) -> None:
        self.memory.clear(tier)
        if tier in (None, "short"):
            self.session.reset_session()
            self.session.set_message_count(0)

    def reload_project(self) -> None:
        """Re-read rules and rescan the project tree."""
        self.rules.reload()
        self.project.load()

    # -- lifecycle ----------------------------------------------------------

    def start_heartbeat(self):
        """Start the background heartbeat when ``heartbeat.interval`` is positive."""
        from codehelm.heartbeat import Heartbeat

        interval = self.config.heartbeat.interval
        if interval <= 0:
            log.info("Heartbeat disabled", interval=interval)
            return None
        if self.heartbeat is None:
            self.heartbeat = Heartbeat(self, interval, self.config.heartbeat.reflection_every)
        self.heartbeat.start()
        return self.heartbeat

    async def shutdown(self) -> None:
        """Cancel everything in flight, persist memory and release resources."""
        log.info("Shutting down agent")
        self._root_cancel.set()
        self.stop_current_request()
        if self.heartbeat is not None:
            await self.heartbeat.stop()
        for task in list(self._background_tasks):
            await cancel_task(task)
        await self.memory.save()
        self.permissions.close()
        close = getattr(self.llm, "close", None)
        if close is not None:
            await close()
