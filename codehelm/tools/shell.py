"""Shell tool for executing commands."""

import asyncio
import os
from pathlib import Path
from typing import Any

from codehelm.logging import get_logger
from codehelm.tools.registry import Tool, ToolResult

log = get_logger(__name__)

MAX_OUTPUT_CHARS = 10_000


class ShellTool(Tool):
    """Execute shell commands in the project root."""

    name = "shell"
    description = "Execute a shell command in the project directory and return its output."
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The shell command to execute",
            },
        },
        "required": ["command"],
    }

    def __init__(self, project_root: Path | str = ".", timeout: float = 30.0):
        self.project_root = Path(project_root)
        self.command_timeout = max(1.0, float(timeout))
        # The executor's own deadline sits just above the command's.
        self.timeout_seconds = self.command_timeout + 5.0

    async def execute(self, command: str, **kwargs: Any) -> ToolResult:
        """Execute a shell command.

        Args:
            command: Shell command to execute

        Returns:
            ToolResult with combined stdout/stderr; non-zero exit is a failure
        """
        if not command.strip():
            return ToolResult(success=False, error="command is empty")

        log.info("Executing shell command", command=command, timeout=self.command_timeout)
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.project_root),
            env=os.environ.copy(),
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.command_timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            label = int(self.command_timeout) if self.command_timeout.is_integer() else self.command_timeout
            return ToolResult(success=False, error=f"command timed out after {label}s")
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        output = stdout_text
        if stderr_text:
            output += f"\n[stderr] {stderr_text}"
        if len(output) > MAX_OUTPUT_CHARS:
            output = output[:MAX_OUTPUT_CHARS] + f"\n... [truncated, {len(output)} total chars]"

        if process.returncode != 0:
            return ToolResult(
                success=False,
                output=output,
                error=f"exit code {process.returncode}: {stderr_text or stdout_text or 'no output'}",
            )
        return ToolResult(success=True, output=output or "[no output]")
