"""Tool-call dispatch for Agent: gating, approval and parallel execution."""

import asyncio
from typing import Any

from codehelm.approval import ApprovalOutcome
from codehelm.exceptions import RequestCancelledError
from codehelm.llm import Message, ToolCall
from codehelm.llm.client import run_cancellable
from codehelm.logging import get_logger
from codehelm.tools.registry import ToolCallRequest, ToolResult

log = get_logger(__name__)

SHELL_TOOLS = {"shell", "run_command", "execute_command", "bash"}
FILE_READ_TOOLS = {"read_file", "view_file"}
ERROR_SEPARATOR = "\n[error]:\n"


def _failure(error: str, error_type: str) -> ToolResult:
    return ToolResult(success=False, error=error, data={"error_type": error_type, "raw_error": error})


def tool_message_content(result: ToolResult) -> str:
    """Text the model sees for one tool result.

    Failures keep both the output and the error so the model has the full picture.
    """
    if result.success or not result.error:
        return result.output
    if result.output:
        return result.output + ERROR_SEPARATOR + result.error
    return result.error


class AgentToolDispatchMixin:
    """Run the tool calls of one assistant message and build the tool messages."""

    def _emit_tool_start(self, name: str, arguments: str) -> None:
        self._invoke_callback(self.tool_start_callback, name, arguments)

    def _emit_tool_complete(self, name: str, output: str) -> None:
        self._invoke_callback(self.tool_complete_callback, name, output)

    def _emit_tool_error(self, name: str, error: str) -> None:
        self._invoke_callback(self.tool_error_callback, name, error)

    def _gate_call(self, name: str, arguments: dict[str, Any]) -> ToolResult | None:
        """Policy failure for a call that must not run, else None."""
        if not self.permissions.is_tool_allowed(name):
            log.warning("Tool not allowed", tool=name)
            return _failure("tool not allowed", "permission_denied")
        if name in SHELL_TOOLS:
            command = arguments.get("command")
            if isinstance(command, str) and not self.permissions.is_command_allowed(command):
                return _failure("command denied by policy", "security_violation")
        return None

    async def _execute_call(self, call: ToolCall, arguments: dict[str, Any], announce: bool = True) -> ToolResult:
        if announce:
            self._emit_tool_start(call.name, call.arguments)
        self._set_runtime_status(f"running {call.name}")
        log.info("Executing tool", tool=call.name, call_id=call.id)
        result = await self.executor.execute(
            ToolCallRequest(id=call.id, name=call.name, arguments=arguments)
        )
        if result.success:
            self._emit_tool_complete(call.name, result.output)
        else:
            log.warning("Tool failed", tool=call.name, call_id=call.id)
            self._emit_tool_error(call.name, result.error)
        return result

    async def _approve_call(self, call: ToolCall, cancel_event: asyncio.Event) -> ToolResult | None:
        """Approval round-trip for a sensitive call; a failure result when it may not run."""
        self._set_runtime_status(f"waiting for approval: {call.name}")
        outcome = await self.approval.request_decision(
            call.name,
            call.arguments,
            timeout=self.config.permissions.approval_timeout,
            cancel_event=cancel_event,
        )
        if outcome is ApprovalOutcome.CANCELLED:
            raise RequestCancelledError()
        if outcome is ApprovalOutcome.TIMED_OUT:
            self.permissions.log_approval_timeout(call.name)
            return _failure("denied: approval timed out", "permission_denied")
        approved = outcome is ApprovalOutcome.APPROVED
        self.permissions.log_approval_decision(call.name, approved)
        if not approved:
            return _failure("denied", "permission_denied")
        return None

    async def _dispatch_tool_calls(
        self,
        tool_calls: list[ToolCall],
        cancel_event: asyncio.Event,
    ) -> list[Message]:
        """Execute ``tool_calls`` and return one tool message per call, in call order.

        Non-sensitive calls run concurrently (bounded by ``agent.max_parallel_tools``);
        calls that need approval run one at a time after the approver answers.
        """
        count = len(tool_calls)
        results: list[ToolResult | None] = [None] * count
        arguments: list[dict[str, Any]] = [{} for _ in range(count)]
        parallel: list[int] = []
        sequential: list[int] = []

        for index, call in enumerate(tool_calls):
            try:
                arguments[index] = call.parse_arguments()
            except ValueError as e:
                log.warning("Malformed tool arguments", tool=call.name, call_id=call.id, error=str(e))
                results[index] = _failure(f"invalid tool arguments: {e}", "validation")
                self._emit_tool_error(call.name, results[index].error)
                continue
            gated = self._gate_call(call.name, arguments[index])
            if gated is not None:
                results[index] = gated
                self._emit_tool_error(call.name, gated.error)
                continue
            if self.permissions.requires_approval(call.name):
                sequential.append(index)
            else:
                parallel.append(index)

        log.info(
            "Dispatching tool calls",
            total=count,
            parallel=len(parallel),
            sequential=len(sequential),
        )

        if parallel:
            semaphore = asyncio.Semaphore(max(1, self.config.agent.max_parallel_tools))

            async def run(index: int) -> None:
                async with semaphore:
                    results[index] = await self._execute_call(tool_calls[index], arguments[index])

            await run_cancellable(asyncio.gather(*(run(i) for i in parallel)), cancel_event)

        for index in sequential:
            call = tool_calls[index]
            if cancel_event.is_set():
                raise RequestCancelledError()
            self._emit_tool_start(call.name, call.arguments)
            denied = await self._approve_call(call, cancel_event)
            if denied is not None:
                log.info("Sensitive tool not approved", tool=call.name, reason=denied.error)
                results[index] = denied
                self._emit_tool_error(call.name, denied.error)
                continue
            results[index] = await run_cancellable(
                self._execute_call(call, arguments[index], announce=False),
                cancel_event,
            )

        messages: list[Message] = []
        for call, args, result in zip(tool_calls, arguments, results):
            assert result is not None
            messages.append(
                Message(role="tool", content=tool_message_content(result), tool_call_id=call.id)
            )
            path = args.get("path")
            if result.success and call.name in FILE_READ_TOOLS and isinstance(path, str):
                self.memory.add_file(path, result.output, 1.0)
        self._set_runtime_status("thinking")
        return messages
