"""Custom exceptions for codehelm."""


class CodehelmError(Exception):
    """Base exception for codehelm."""

    pass


class ConfigurationError(CodehelmError):
    """Configuration-related errors."""

    pass


class LLMError(CodehelmError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class RequestCancelledError(LLMError):
    """In-flight LLM request was cancelled by the caller."""

    def __init__(self, message: str = "request cancelled"):
        super().__init__(message)


class ToolError(CodehelmError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolValidationError(ToolError):
    """Tool arguments do not satisfy the parameter schema."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"validation error for '{tool_name}': {message}")
        self.tool_name = tool_name


class AgentError(CodehelmError):
    """Errors that end an agent turn."""

    pass


class ToolDepthExceededError(AgentError):
    """Nested tool rounds exceeded the configured depth."""

    def __init__(self, max_depth: int):
        super().__init__("maximum tool execution depth exceeded")
        self.max_depth = max_depth


class PersistenceError(CodehelmError):
    """Persistence errors (memory store, audit log)."""

    pass


class ApprovalError(CodehelmError):
    """Approval bridge errors."""

    pass
