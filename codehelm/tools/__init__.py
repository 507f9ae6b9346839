"""Tools package for codehelm."""

from pathlib import Path

from codehelm.config import Config
from codehelm.logging import get_logger
from codehelm.tools.read import ReadFileTool
from codehelm.tools.registry import (
    Tool,
    ToolCallRequest,
    ToolExecutor,
    ToolRegistry,
    ToolResult,
)
from codehelm.tools.retry import IntelligentRetryWrapper
from codehelm.tools.shell import ShellTool
from codehelm.tools.write import WriteFileTool

log = get_logger(__name__)


def create_default_registry(config: Config, project_root: Path) -> ToolRegistry:
    """Registry holding the built-in tools enabled in ``config.tools.enabled``."""
    factories = {
        "read_file": lambda: ReadFileTool(project_root, max_bytes=config.tools.read.max_bytes),
        "write_file": lambda: WriteFileTool(project_root),
        "shell": lambda: ShellTool(project_root, timeout=config.tools.shell.timeout),
    }
    registry = ToolRegistry()
    for name in config.tools.enabled:
        factory = factories.get(name)
        if factory is None:
            log.warning("Unknown built-in tool in config", tool=name)
            continue
        registry.register(factory())
    return registry


__all__ = [
    "Tool",
    "ToolCallRequest",
    "ToolExecutor",
    "ToolRegistry",
    "ToolResult",
    "IntelligentRetryWrapper",
    "ReadFileTool",
    "WriteFileTool",
    "ShellTool",
    "create_default_registry",
]
