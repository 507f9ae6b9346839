"""Per-tool failure history that turns tool errors into actionable reports.

The wrapper never re-runs a call on its own; the model decides whether and how
to retry. Its job is to hand the model enough structure (category, cause,
fixes, earlier failures) that the next call is more likely to succeed.
"""

import posixpath
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from codehelm.logging import get_logger
from codehelm.tools.debug import DebugLevel, ExecutionTrace
from codehelm.tools.errors import (
    FILE_EXISTS,
    INVALID_PATH,
    NO_SPACE,
    PATH_NOT_FOUND,
    PERMISSION_DENIED,
    SECURITY_VIOLATION,
    classify,
    suggestions_for,
)
from codehelm.tools.registry import (
    ToolCallRequest,
    ToolExecutor,
    ToolResult,
    invalid_call_result,
    parse_tool_call_json,
)

log = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 5


@dataclass
class RetryAttempt:
    attempt_number: int
    timestamp: datetime
    arguments: dict[str, Any]
    error: str = ""
    error_type: str = ""
    recovered: bool = False
    suggestion: str = ""


@dataclass
class RetryContext:
    """Attempt history for one tool name."""

    tool_name: str
    attempts: list[RetryAttempt] = field(default_factory=list)
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    current_try: int = 0
    last_error_type: str = ""
    suggestions: list[str] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


def _what_went_wrong(error_type: str, arguments: dict[str, Any]) -> str:
    path = arguments.get("path") if isinstance(arguments.get("path"), str) else None
    if error_type == PERMISSION_DENIED:
        return (
            "You don't have permission to access this location. This usually happens when:\n"
            "- The directory requires elevated privileges\n"
            "- The file is marked as read-only\n"
            "- Another process has locked the file"
        )
    if error_type == PATH_NOT_FOUND:
        if path:
            return (
                "The path doesn't exist. Specifically:\n"
                f"- Target file: {posixpath.basename(path)}\n"
                f"- Parent directory: {posixpath.dirname(path) or '.'}\n"
                "- The parent directory needs to be created first"
            )
        return "The specified path doesn't exist. The parent directory needs to be created first."
    if error_type == INVALID_PATH:
        return 'The path contains invalid characters. Avoid: * ? < > | : "'
    if error_type == FILE_EXISTS:
        return (
            "A file already exists at this location. You can:\n"
            "- Read the existing file first\n"
            "- Choose a different filename\n"
            "- Explicitly overwrite if that's the intent"
        )
    if error_type == NO_SPACE:
        return "Not enough disk space to complete the operation."
    if error_type == SECURITY_VIOLATION:
        return "The operation tries to access locations outside the allowed project directory."
    return "An unexpected error occurred. Check the original error message for details."


def _how_to_fix(error_type: str, call: ToolCallRequest, suggestions: list[str]) -> str:
    lines = [f"{i}. {s}" for i, s in enumerate(suggestions, 1)]
    path = call.arguments.get("path")
    if call.name == "write_file" and isinstance(path, str) and path:
        base = posixpath.basename(path)
        lines.extend([
            "",
            "Alternative locations to try:",
            f"- workspace/{base}",
            f"- tmp/{base}",
        ])
        directory = posixpath.dirname(path)
        if directory not in ("", "."):
            lines.extend(["", f"Note: Target directory is '{directory}' - does it exist?"])
    return "\n".join(lines)


class IntelligentRetryWrapper:
    """Drop-in replacement for ``ToolExecutor`` that enriches failures."""

    def __init__(self, executor: ToolExecutor, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self.executor = executor
        self.max_attempts = max_attempts
        self._contexts: dict[str, RetryContext] = {}
        self._lock = threading.Lock()

    def _get_context(self, tool_name: str) -> RetryContext:
        with self._lock:
            ctx = self._contexts.get(tool_name)
            if ctx is None:
                ctx = RetryContext(tool_name=tool_name, max_attempts=self.max_attempts)
                self._contexts[tool_name] = ctx
            return ctx

    async def execute(self, call: ToolCallRequest) -> ToolResult:
        ctx = self._get_context(call.name)
        with ctx.lock:
            ctx.current_try += 1
            attempt_number = ctx.current_try
            had_failures = any(not a.recovered for a in ctx.attempts)

        result = await self.executor.execute(call)
        attempt = RetryAttempt(
            attempt_number=attempt_number,
            timestamp=datetime.now(),
            arguments=dict(call.arguments),
        )

        if result.success:
            attempt.recovered = True
            with ctx.lock:
                ctx.attempts.append(attempt)
            if had_failures:
                log.info("Tool recovered after failure", tool=call.name, attempt=attempt_number)
            return result

        raw_error = str(result.data.get("raw_error") or result.error)
        error_type = classify(call.name, raw_error)
        suggestions = suggestions_for(error_type, call.name, call.arguments)
        attempt.error = raw_error
        attempt.error_type = error_type
        attempt.suggestion = _how_to_fix(error_type, call, suggestions)

        with ctx.lock:
            ctx.attempts.append(attempt)
            ctx.last_error_type = error_type
            ctx.suggestions = suggestions
            previous = [a for a in ctx.attempts[:-1] if not a.recovered]

        result.error = self._build_report(call, attempt, ctx.max_attempts, previous)
        log.warning(
            "Tool failed",
            tool=call.name,
            attempt=attempt_number,
            max_attempts=ctx.max_attempts,
            error_type=error_type,
        )
        return result

    @staticmethod
    def _build_report(
        call: ToolCallRequest,
        attempt: RetryAttempt,
        max_attempts: int,
        previous: list[RetryAttempt],
    ) -> str:
        lines = [
            "TOOL EXECUTION FAILED",
            "",
            f"Tool: {call.name}",
            f"Attempt: {attempt.attempt_number}/{max_attempts}",
            f"Error Type: {attempt.error_type}",
            "",
            "ORIGINAL ERROR:",
            attempt.error,
            "",
            "WHAT WENT WRONG:",
            _what_went_wrong(attempt.error_type, call.arguments),
            "",
            "HOW TO FIX IT:",
            attempt.suggestion,
        ]
        if previous:
            lines.extend(["", "PREVIOUS ATTEMPTS:"])
            lines.extend(
                f"{i}. {a.timestamp.strftime('%H:%M:%S')} - {a.error_type}"
                for i, a in enumerate(previous, 1)
            )
        lines.extend([
            "",
            "ACTION REQUIRED:",
            "Analyze the error and call the tool again with:",
            "1. A corrected path or parameter",
            "2. An alternative location (see suggestions above)",
            "3. A different approach to achieve the same goal",
        ])
        return "\n".join(lines)

    def get_context(self, tool_name: str) -> RetryContext | None:
        with self._lock:
            return self._contexts.get(tool_name)

    def reset_context(self, tool_name: str) -> None:
        with self._lock:
            self._contexts.pop(tool_name, None)

    def get_retry_stats(self) -> dict[str, Any]:
        with self._lock:
            contexts = list(self._contexts.values())

        total_attempts = 0
        total_success = 0
        by_tool: dict[str, int] = {}
        by_error_type: Counter[str] = Counter()
        for ctx in contexts:
            with ctx.lock:
                attempts = list(ctx.attempts)
            by_tool[ctx.tool_name] = len(attempts)
            total_attempts += len(attempts)
            for a in attempts:
                if a.recovered:
                    total_success += 1
                if a.error_type:
                    by_error_type[a.error_type] += 1

        return {
            "total_attempts": total_attempts,
            "total_success": total_success,
            "success_rate": (total_success / total_attempts * 100) if total_attempts else 0.0,
            "by_tool": by_tool,
            "by_error_type": dict(by_error_type),
        }

    def format_retry_report(self) -> str:
        stats = self.get_retry_stats()
        lines = [
            "Intelligent Retry Report",
            "=" * 60,
            f"Total Attempts: {stats['total_attempts']}",
            f"Successful: {stats['total_success']}",
            f"Success Rate: {stats['success_rate']:.1f}%",
        ]
        if stats["by_tool"]:
            lines.extend(["", "Attempts by Tool:"])
            lines.extend(f"- {tool}: {count}" for tool, count in sorted(stats["by_tool"].items()))
        if stats["by_error_type"]:
            lines.extend(["", "Errors by Type:"])
            lines.extend(f"- {kind}: {count}" for kind, count in sorted(stats["by_error_type"].items()))
        return "\n".join(lines)

    # Executor surface

    async def execute_from_json(self, text: str) -> ToolResult:
        try:
            call = parse_tool_call_json(text)
        except ValueError as e:
            return invalid_call_result(e)
        return await self.execute(call)

    def set_debug_level(self, level: DebugLevel | str) -> None:
        self.executor.set_debug_level(level)

    def get_debug_report(self) -> str:
        return self.executor.get_debug_report()

    def get_recent_failures(self, n: int = 10) -> list[ExecutionTrace]:
        return self.executor.get_recent_failures(n)

    @property
    def registry(self):
        return self.executor.registry
