"""Write tool for writing file contents."""

import asyncio
from pathlib import Path
from typing import Any

from codehelm.logging import get_logger
from codehelm.tools.paths import resolve_project_path
from codehelm.tools.registry import Tool, ToolResult

log = get_logger(__name__)


class WriteFileTool(Tool):
    """Create or overwrite files inside the project."""

    name = "write_file"
    description = "Create or overwrite a file in the project with the given content."
    timeout_seconds = 15.0
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to write, relative to the project root",
            },
            "content": {
                "type": "string",
                "description": "Content to write to the file",
            },
            "append": {
                "type": "boolean",
                "description": "Append to file instead of overwriting",
            },
        },
        "required": ["path", "content"],
    }

    def __init__(self, project_root: Path | str = "."):
        self.project_root = Path(project_root)

    @staticmethod
    def _write(file_path: Path, content: str, append: bool) -> None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "a" if append else "w", encoding="utf-8") as f:
            f.write(content)

    async def execute(self, path: str, content: str, append: bool = False, **kwargs: Any) -> ToolResult:
        """Write content to a file.

        Args:
            path: Path to file
            content: Content to write
            append: Whether to append instead of overwrite

        Returns:
            ToolResult with status
        """
        try:
            file_path = resolve_project_path(self.project_root, path)
            await asyncio.to_thread(self._write, file_path, content, append)
        except OSError as e:
            log.error("Write failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))

        action = "Appended" if append else "Wrote"
        log.info("File written", path=str(file_path), chars=len(content), append=append)
        return ToolResult(success=True, output=f"{action} {len(content)} chars to {path}")
