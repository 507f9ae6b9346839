"""Tool registry, base tool class and the tool executor."""

import asyncio
import json
import threading
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field, model_validator

from codehelm.exceptions import ToolNotFoundError, ToolValidationError
from codehelm.llm import ToolDefinition
from codehelm.logging import get_logger
from codehelm.tools.debug import DebugLevel, DebugLogger, ExecutionTrace
from codehelm.tools.errors import enhance_tool_error

log = get_logger(__name__)

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    output: str = ""
    error: str = ""
    data: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _normalize_error(self) -> "ToolResult":
        """Failed results always carry an error message; successful ones none."""
        if self.success:
            self.error = ""
        elif not (self.error or "").strip():
            fallback = (self.output or "").strip()
            self.error = fallback or "Tool execution failed"
        return self


class ToolCallRequest(BaseModel):
    """A tool invocation with already-decoded arguments."""

    id: str = ""
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {"type": "object", "properties": {}}
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult with success status and output
        """

    def get_definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Check required keys and JSON types against ``parameters``.

        Raises:
            ToolValidationError: on the first violation
        """
        for key in self.parameters.get("required", []) or []:
            if key not in arguments:
                raise ToolValidationError(self.name, f"missing required argument: {key}")

        properties = self.parameters.get("properties", {}) or {}
        for key, value in arguments.items():
            spec = properties.get(key)
            if not isinstance(spec, dict) or value is None:
                continue
            expected = spec.get("type")
            allowed = expected if isinstance(expected, list) else [expected]
            if not any(_matches_json_type(value, t) for t in allowed if t):
                if any(allowed):
                    raise ToolValidationError(
                        self.name,
                        f"argument '{key}' must be of type {'/'.join(str(t) for t in allowed if t)}",
                    )


def _matches_json_type(value: Any, json_type: str) -> bool:
    if json_type == "null":
        return value is None
    python_types = _JSON_TYPES.get(json_type)
    if python_types is None:
        return True
    # bool is an int subclass but not a JSON number.
    if isinstance(value, bool) and json_type != "boolean":
        return False
    return isinstance(value, python_types)


def parse_tool_call_json(text: str) -> ToolCallRequest:
    """Decode ``{"id", "name", "arguments"}`` JSON into a request.

    ``arguments`` may be an object or a JSON-encoded string.

    Raises:
        ValueError: if the payload is malformed
    """
    payload = json.loads(text)
    if not isinstance(payload, dict):
        raise ValueError("tool call must be a JSON object")
    arguments = payload.get("arguments") or {}
    if isinstance(arguments, str):
        arguments = json.loads(arguments) if arguments.strip() else {}
    if not isinstance(arguments, dict):
        raise ValueError("arguments must be a JSON object")
    return ToolCallRequest(
        id=str(payload.get("id", "")),
        name=str(payload.get("name", "")),
        arguments=arguments,
    )


def invalid_call_result(error: Exception) -> ToolResult:
    return ToolResult(
        success=False,
        error=f"invalid tool call JSON: {error}",
        data={"error_type": "validation"},
    )


class ToolRegistry:
    """Name-keyed collection of tools."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}
        self._lock = threading.Lock()

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Raises:
            ValueError: if a tool with the same name is already registered
        """
        if not tool.name:
            raise ValueError("tool name must not be empty")
        with self._lock:
            if tool.name in self._tools:
                raise ValueError(f"tool already registered: {tool.name}")
            self._tools[tool.name] = tool
        log.debug("Registered tool", tool=tool.name)

    def unregister(self, name: str) -> bool:
        with self._lock:
            return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Tool:
        with self._lock:
            tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def has_tool(self, name: str) -> bool:
        with self._lock:
            return name in self._tools

    def list_tools(self) -> list[Tool]:
        """Snapshot of registered tools ordered by name."""
        with self._lock:
            return [self._tools[name] for name in sorted(self._tools)]

    def get_definitions(self) -> list[ToolDefinition]:
        return [tool.get_definition() for tool in self.list_tools()]

    def get_openai_format(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": definition.name,
                    "description": definition.description,
                    "parameters": definition.parameters,
                },
            }
            for definition in self.get_definitions()
        ]


class ToolExecutor:
    """Runs tool calls behind validation, a timeout and an exception barrier.

    Failures never raise: every outcome is a ``ToolResult``. The executor keeps
    no per-call state outside the trace store, so concurrent calls are safe.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        debug_level: DebugLevel | str = DebugLevel.OFF,
        max_traces: int = 1000,
    ):
        self.registry = registry
        self.debug = DebugLogger(debug_level, max_traces=max_traces)

    def _fail(
        self,
        trace: ExecutionTrace,
        error: str,
        error_type: str,
        output: str = "",
    ) -> ToolResult:
        self.debug.capture_error(trace, error, error_type)
        self.debug.end_trace(trace, False, output, error)
        return ToolResult(
            success=False,
            output=output,
            error=error,
            data={"error_type": error_type, "raw_error": error},
        )

    async def execute(self, call: ToolCallRequest) -> ToolResult:
        name = call.name
        arguments = dict(call.arguments or {})
        trace = self.debug.start_trace(name, arguments)
        if call.id:
            self.debug.add_metadata(trace, "call_id", call.id)

        try:
            tool = self.registry.get(name)
        except ToolNotFoundError as e:
            log.warning("Unknown tool requested", tool=name)
            return self._fail(trace, str(e), "validation")

        try:
            tool.validate_arguments(arguments)
        except ToolValidationError as e:
            return self._fail(trace, str(e), "validation")

        timeout = float(getattr(tool, "timeout_seconds", 30.0) or 30.0)
        try:
            result = await asyncio.wait_for(tool.execute(**arguments), timeout=timeout)
        except asyncio.TimeoutError as e:
            label = int(timeout) if timeout.is_integer() else timeout
            error = f"Execution timed out after {label}s"
            self.debug.capture_error(trace, e, "timeout")
            result = ToolResult(success=False, error=error)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Tool raised an exception", tool=name, error=str(e), exc_info=True)
            self.debug.capture_error(trace, e, "panic")
            result = ToolResult(success=False, error=f"PANIC: {e}")

        if not isinstance(result, ToolResult):
            result = ToolResult(success=False, error="tool returned an invalid result payload")

        raw_error = result.error
        if not result.success and raw_error:
            category, enhanced = enhance_tool_error(name, raw_error, arguments)
            result.data = {**result.data, "error_type": category, "raw_error": raw_error}
            result.error = enhanced

        self.debug.end_trace(trace, result.success, result.output, raw_error)
        return result

    async def execute_from_json(self, text: str) -> ToolResult:
        """Execute a call given as ``{"name": ..., "arguments": ...}`` JSON."""
        try:
            call = parse_tool_call_json(text)
        except ValueError as e:
            return invalid_call_result(e)
        return await self.execute(call)

    def set_debug_level(self, level: DebugLevel | str) -> None:
        self.debug.level = DebugLevel.parse(level)

    def get_debug_report(self) -> str:
        return self.debug.generate_report()

    def get_recent_failures(self, n: int = 10) -> list[ExecutionTrace]:
        return self.debug.get_failed_traces()[-n:]
