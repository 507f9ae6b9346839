"""Classification and enrichment of tool error text.

Failed tool results are fed back to the model, so the raw error is expanded
with a category, a short cause and numbered remediation steps. All substring
rules live in ``_RULES`` and ``_BROWSER_RULES``; ``classify`` is the only
entry point that reads them.
"""

import posixpath
from typing import Any

PERMISSION_DENIED = "permission_denied"
PATH_NOT_FOUND = "path_not_found"
INVALID_PATH = "invalid_path"
FILE_EXISTS = "file_exists"
NO_SPACE = "no_space"
SECURITY_VIOLATION = "security_violation"
UNKNOWN_COMMAND_WINDOWS = "unknown_command_windows"
UNKNOWN_COMMAND_UNIX = "unknown_command_unix"
BROWSER_TIMEOUT = "browser_timeout"
BROWSER_NO_TAB = "browser_no_tab"
BROWSER_CONTEXT_EXPIRED = "browser_context_expired"
BROWSER_ERROR = "browser_error"
UNKNOWN_ERROR = "unknown_error"

# First match wins.
_RULES: list[tuple[str, tuple[str, ...]]] = [
    (PERMISSION_DENIED, ("permission denied", "access denied", "access is denied")),
    (PATH_NOT_FOUND, ("no such file", "cannot find", "path does not exist", "system cannot find the path")),
    (INVALID_PATH, ("invalid argument", "illegal character")),
    (FILE_EXISTS, ("already exists", "file exists")),
    (NO_SPACE, ("no space left", "disk full")),
    (SECURITY_VIOLATION, ("security", "escapes project root")),
    (UNKNOWN_COMMAND_WINDOWS, ("is not recognized as an internal or external command",)),
    (UNKNOWN_COMMAND_UNIX, ("command not found",)),
]

# Timeouts are checked before "context" so "context deadline exceeded" is a timeout.
_BROWSER_RULES: list[tuple[str, tuple[str, ...]]] = [
    (BROWSER_TIMEOUT, ("timeout", "deadline exceeded")),
    (BROWSER_NO_TAB, ("call browser_navigate", "no browser tab")),
    (BROWSER_CONTEXT_EXPIRED, ("context expired", "context canceled")),
]

BROWSER_NOTE = "Note: browser tools require browser_navigate to be called first to open a tab."


def classify(tool_name: str, error_text: str) -> str:
    """Map an error message to a category name."""
    lower = str(error_text or "").lower()
    for category, needles in _RULES:
        if any(needle in lower for needle in needles):
            return category
    if str(tool_name or "").startswith("browser_"):
        for category, needles in _BROWSER_RULES:
            if any(needle in lower for needle in needles):
                return category
        return BROWSER_ERROR
    return UNKNOWN_ERROR


def _arg_path(args: dict[str, Any] | None) -> str | None:
    path = (args or {}).get("path")
    return path if isinstance(path, str) and path else None


def suggestions_for(category: str, tool_name: str, args: dict[str, Any] | None = None) -> list[str]:
    """Remediation steps for a category."""
    path = _arg_path(args)
    if category == PERMISSION_DENIED:
        return [
            "Write inside the project directory instead",
            "Ensure the file or directory is not read-only",
        ]
    if category == PATH_NOT_FOUND:
        if path:
            return [
                f"Directory '{posixpath.dirname(path) or '.'}' does not exist, create it first",
                "Check the path for typos or list the parent directory",
            ]
        return ["Path does not exist", "Use an existing directory"]
    if category == INVALID_PATH:
        return [
            'Remove special characters (* ? < > | : ") from the path',
            "Use forward slashes for directories",
        ]
    if category == FILE_EXISTS:
        return ["Read the existing file first", "Use a different filename"]
    if category == NO_SPACE:
        return ["Free up disk space or use a different location"]
    if category == SECURITY_VIOLATION:
        return [
            "Use relative paths within the project",
            "Do not use '..' to go outside the project root",
        ]
    if category == UNKNOWN_COMMAND_WINDOWS:
        return [
            "The program is not installed or not on PATH",
            "Use the Windows equivalent of the command (e.g. 'dir' instead of 'ls')",
        ]
    if category == UNKNOWN_COMMAND_UNIX:
        return [
            "The program is not installed or not on PATH",
            "Check the command spelling or install the missing package",
        ]
    if category == BROWSER_TIMEOUT:
        return [
            "The browser operation timed out",
            "Call browser_navigate again to reopen the tab, then retry",
        ]
    if category == BROWSER_NO_TAB:
        return [
            "Call browser_navigate with the same task_id first to open a page",
            "Use the same task_id for all browser operations in a session",
        ]
    if category == BROWSER_CONTEXT_EXPIRED:
        return [
            "The browser tab context was cancelled, call browser_navigate again to reopen",
            "Use the same task_id when re-navigating",
        ]
    if category == BROWSER_ERROR:
        return [
            "Call browser_navigate first to open a tab",
            "Check the URL is valid and the page loaded successfully",
        ]
    return [
        "Check the error message for details",
        "Verify all parameters are correct",
        "Try a simpler operation",
    ]


def explain(category: str, tool_name: str, args: dict[str, Any] | None = None) -> str:
    """One-line cause for a category."""
    path = _arg_path(args)
    if category == PERMISSION_DENIED:
        return "No permission to access that location."
    if category == PATH_NOT_FOUND:
        if path:
            return (
                f"Path '{posixpath.dirname(path) or '.'}' does not exist. "
                "Parent directory must be created first."
            )
        return "Specified path does not exist."
    if category == INVALID_PATH:
        return "Path contains invalid characters for this file system."
    if category == FILE_EXISTS:
        return "A file already exists at this path."
    if category == NO_SPACE:
        return "Insufficient disk space."
    if category == SECURITY_VIOLATION:
        return "Path escapes the allowed project directory."
    if category in (UNKNOWN_COMMAND_WINDOWS, UNKNOWN_COMMAND_UNIX):
        return "The shell could not find the requested program."
    if category == BROWSER_NO_TAB:
        return "No browser tab open for this task_id. Call browser_navigate first."
    if category == BROWSER_TIMEOUT:
        return "Browser operation timed out waiting for the page."
    if category == BROWSER_CONTEXT_EXPIRED:
        return "Browser tab context expired. Call browser_navigate again with the same task_id."
    if category == BROWSER_ERROR:
        return "Browser operation failed. Ensure browser_navigate was called first."
    return "Unexpected error, check the original error message."


def enhance_tool_error(
    tool_name: str,
    error_text: str,
    args: dict[str, Any] | None = None,
) -> tuple[str, str]:
    """Build the enhanced error block for a failed tool call.

    Args:
        tool_name: Name of the failed tool
        error_text: Raw error message from the handler
        args: Parsed call arguments (used for path-aware hints)

    Returns:
        Tuple of (category, enhanced error text)
    """
    category = classify(tool_name, error_text)
    lines = [
        f"TOOL FAILED: {tool_name} [{category}]",
        f"Error: {error_text}",
        f"Cause: {explain(category, tool_name, args)}",
    ]
    suggestions = suggestions_for(category, tool_name, args)
    if suggestions:
        lines.append("Fix:")
        lines.extend(f"  {i}. {s}" for i, s in enumerate(suggestions, 1))
    if tool_name.startswith("browser_") and tool_name != "browser_navigate":
        lines.append(BROWSER_NOTE)
    return category, "\n".join(lines)
