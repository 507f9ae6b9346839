"""Execution traces for tool calls."""

import threading
import time
import traceback
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum
from typing import Any

from codehelm.logging import get_logger

log = get_logger(__name__)

OUTPUT_PREVIEW_CHARS = 200


class DebugLevel(IntEnum):
    OFF = 0
    BASIC = 1
    VERBOSE = 2
    TRACE = 3

    @classmethod
    def parse(cls, value: "DebugLevel | str | int") -> "DebugLevel":
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        return cls[str(value).strip().upper()]


@dataclass
class ExecutionTrace:
    """What happened during one tool execution."""

    tool: str
    args: dict[str, Any]
    start: datetime = field(default_factory=lambda: datetime.now(UTC))
    end: datetime | None = None
    duration: float = 0.0
    success: bool = False
    error: str = ""
    error_type: str = ""  # validation, execution, panic, timeout
    stack: str = ""
    output: str = ""
    output_preview: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    _started: float = field(default_factory=time.monotonic, repr=False)


def _preview(text: str) -> str:
    if len(text) > OUTPUT_PREVIEW_CHARS:
        return text[:OUTPUT_PREVIEW_CHARS] + "..."
    return text


class DebugLogger:
    """Keeps a bounded history of traces and logs them by level."""

    def __init__(self, level: DebugLevel | str = DebugLevel.OFF, max_traces: int = 1000):
        self.level = DebugLevel.parse(level)
        self._traces: deque[ExecutionTrace] = deque(maxlen=max(1, int(max_traces)))
        self._lock = threading.Lock()

    def start_trace(self, tool: str, args: dict[str, Any]) -> ExecutionTrace:
        trace = ExecutionTrace(tool=tool, args=dict(args or {}))
        if self.level >= DebugLevel.BASIC:
            log.info("Tool start", tool=tool, at=trace.start.isoformat())
            if self.level >= DebugLevel.VERBOSE:
                log.info("Tool args", tool=tool, args=trace.args)
        return trace

    def end_trace(self, trace: ExecutionTrace, success: bool, output: str = "", error: str = "") -> None:
        trace.end = datetime.now(UTC)
        trace.duration = time.monotonic() - trace._started
        trace.success = success
        trace.output = output
        trace.output_preview = _preview(output)
        if not success:
            trace.error = trace.error or error
            if not trace.error_type:
                trace.error_type = "execution"
        with self._lock:
            self._traces.append(trace)
        if self.level >= DebugLevel.BASIC:
            log.info(
                "Tool end",
                tool=trace.tool,
                status="SUCCESS" if success else "FAILED",
                duration_ms=round(trace.duration * 1000, 2),
                error_type=trace.error_type or None,
            )
            if self.level >= DebugLevel.VERBOSE and trace.output_preview:
                log.info("Tool output", tool=trace.tool, preview=trace.output_preview)

    def capture_error(self, trace: ExecutionTrace, error: BaseException | str, error_type: str) -> None:
        """Record an error category and a stack snapshot on the trace."""
        trace.error = str(error)
        trace.error_type = error_type
        if isinstance(error, BaseException):
            trace.stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        else:
            trace.stack = "".join(traceback.format_stack())
        if self.level >= DebugLevel.VERBOSE:
            log.warning("Tool error", tool=trace.tool, error_type=error_type, error=trace.error)
            if self.level >= DebugLevel.TRACE:
                log.debug("Tool stack", tool=trace.tool, stack=trace.stack)

    def add_metadata(self, trace: ExecutionTrace, key: str, value: str) -> None:
        trace.metadata[key] = value
        if self.level >= DebugLevel.TRACE:
            log.debug("Tool metadata", tool=trace.tool, key=key, value=value)

    def get_recent_traces(self, n: int = 10) -> list[ExecutionTrace]:
        with self._lock:
            if n <= 0:
                return []
            return list(self._traces)[-n:]

    def get_failed_traces(self) -> list[ExecutionTrace]:
        with self._lock:
            return [t for t in self._traces if not t.success]

    def get_traces_by_tool(self, tool: str) -> list[ExecutionTrace]:
        with self._lock:
            return [t for t in self._traces if t.tool == tool]

    def generate_report(self) -> str:
        with self._lock:
            traces = list(self._traces)
        total = len(traces)
        if total == 0:
            return "No tool executions recorded."

        successful = sum(1 for t in traces if t.success)
        failed = total - successful
        average = sum(t.duration for t in traces) / total
        errors_by_type = Counter(t.error_type for t in traces if not t.success)
        tool_counts = Counter(t.tool for t in traces)

        lines = [
            "TOOL EXECUTION REPORT",
            "=" * 60,
            f"Total Executions: {total}",
            f"Successful: {successful} ({successful / total * 100:.1f}%)",
            f"Failed: {failed} ({failed / total * 100:.1f}%)",
            f"Average Duration: {average * 1000:.1f}ms",
        ]
        if errors_by_type:
            lines.append("Errors by Type:")
            lines.extend(f"  - {kind}: {count}" for kind, count in sorted(errors_by_type.items()))
        lines.append("Tool Usage:")
        lines.extend(f"  - {tool}: {count}" for tool, count in sorted(tool_counts.items()))
        return "\n".join(lines)

    def clear(self) -> None:
        with self._lock:
            self._traces.clear()
