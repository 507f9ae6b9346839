"""Read tool for reading file contents."""

from pathlib import Path
from typing import Any

from codehelm.logging import get_logger
from codehelm.tools.paths import resolve_project_path
from codehelm.tools.registry import Tool, ToolResult

log = get_logger(__name__)


class ReadFileTool(Tool):
    """Read file contents inside the project."""

    name = "read_file"
    description = "Read the contents of a file in the project."
    timeout_seconds = 15.0
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to read, relative to the project root",
            },
            "limit": {
                "type": "integer",
                "description": "Maximum number of lines to read",
            },
            "offset": {
                "type": "integer",
                "description": "Line number to start reading from (1-indexed)",
            },
        },
        "required": ["path"],
    }

    def __init__(self, project_root: Path | str = ".", max_bytes: int = 100_000):
        self.project_root = Path(project_root)
        self.max_bytes = max_bytes

    async def execute(
        self,
        path: str,
        limit: int | None = None,
        offset: int | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Read a file.

        Args:
            path: Path to file
            limit: Optional line limit
            offset: Optional 1-indexed start line

        Returns:
            ToolResult whose output is the (sliced) file text
        """
        try:
            file_path = resolve_project_path(self.project_root, path)
        except PermissionError as e:
            return ToolResult(success=False, error=str(e))

        if not file_path.exists():
            return ToolResult(success=False, error=f"no such file: {path}")
        if not file_path.is_file():
            return ToolResult(success=False, error=f"not a file: {path}")

        size = file_path.stat().st_size
        if size > self.max_bytes:
            return ToolResult(
                success=False,
                error=f"file too large: {size} bytes (max {self.max_bytes})",
            )

        try:
            content = file_path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            log.error("Read failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))

        if offset or limit:
            lines = content.splitlines()
            start = max(1, int(offset or 1)) - 1
            lines = lines[start:]
            if limit:
                lines = lines[: max(0, int(limit))]
            content = "\n".join(lines)

        return ToolResult(success=True, output=content)
