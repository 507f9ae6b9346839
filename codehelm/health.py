"""Project health probes used by the heartbeat."""

import asyncio
import shlex
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from codehelm.logging import get_logger

log = get_logger(__name__)

PENDING_TASK_MARKERS = ("- [ ]", "- [/]")
BUILD_TIMEOUT_SECONDS = 120.0
TEST_TIMEOUT_SECONDS = 30.0
GIT_TIMEOUT_SECONDS = 10.0
MAX_ERROR_CHARS = 500

# Checked in order; the first marker file present selects the build command.
_BUILD_MARKERS = (
    ("go.mod", "go build ./..."),
    ("pyproject.toml", "python -m compileall -q ."),
    ("setup.py", "python -m compileall -q ."),
    ("package.json", "npm run build"),
    ("Cargo.toml", "cargo build"),
    ("Makefile", "make"),
)


def count_pending_tasks(text: str) -> int:
    """Number of unchecked (``- [ ]``) or in-progress (``- [/]``) items."""
    return sum(text.count(marker) for marker in PENDING_TASK_MARKERS)


def _truncate(text: str, limit: int = MAX_ERROR_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n... (truncated)"


@dataclass
class HealthStatus:
    """Snapshot of build, test, git and task state."""

    timestamp: datetime = field(default_factory=datetime.now)
    build_status: str = "unknown"  # passing, failing, skipped, unknown
    build_error: str = ""
    test_status: str = "unknown"  # passing, failing, skipped, unknown
    test_error: str = ""
    git_status: str = ""
    git_branch: str = ""
    git_uncommitted: int = 0
    pending_tasks: int = 0
    warnings: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @property
    def has_critical_issues(self) -> bool:
        return self.build_status == "failing" or self.test_status == "failing"

    def format_report(self) -> str:
        lines = [
            "# Project Health Report",
            "",
            f"**Timestamp:** {self.timestamp.strftime('%Y-%m-%d %H:%M:%S')}",
            "",
            f"## Build Status: {self.build_status}",
        ]
        if self.build_error:
            lines.extend(["```", _truncate(self.build_error), "```"])
        lines.extend(["", f"## Test Status: {self.test_status}"])
        if self.test_error:
            lines.extend(["```", _truncate(self.test_error), "```"])
        lines.extend([
            "",
            "## Git Status",
            f"- **Branch:** {self.git_branch}",
            f"- **Status:** {self.git_status}",
        ])
        if self.git_uncommitted:
            lines.append(f"- **Uncommitted files:** {self.git_uncommitted}")
        lines.extend(["", "## Tasks", f"- **Pending tasks:** {self.pending_tasks}", ""])
        if self.warnings:
            lines.append("## Warnings")
            lines.extend(f"- {w}" for w in self.warnings)
            lines.append("")
        lines.append("## Recommendations")
        lines.extend(f"- {r}" for r in self.recommendations)
        return "\n".join(lines) + "\n"


class HealthChecker:
    """Runs build/test/git/task probes in the project directory."""

    def __init__(
        self,
        project_path: Path | str,
        test_command: str = "",
        build_command: str = "",
        task_file: str = "task.md",
    ):
        self.project_path = Path(project_path)
        self.test_command = (test_command or "").strip()
        self.build_command = (build_command or "").strip()
        self.task_file = task_file

    def detect_build_command(self) -> str:
        if self.build_command:
            return "" if self.build_command == "skip" else self.build_command
        for marker, command in _BUILD_MARKERS:
            if (self.project_path / marker).exists():
                return command
        return ""

    async def _run(self, command: list[str], timeout: float) -> tuple[int, str]:
        """Run ``command`` and return (exit code, combined output)."""
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=str(self.project_path),
        )
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return -1, f"timed out after {timeout:g}s"
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise
        return process.returncode or 0, stdout.decode("utf-8", errors="replace").strip()

    async def _probe(self, command: str, timeout: float) -> tuple[bool, str]:
        try:
            code, output = await self._run(shlex.split(command), timeout)
        except (OSError, ValueError) as e:
            return False, str(e)
        return code == 0, output

    async def check_build(self, status: HealthStatus) -> None:
        command = self.detect_build_command()
        if not command:
            status.build_status = "skipped"
            return
        ok, output = await self._probe(command, BUILD_TIMEOUT_SECONDS)
        if ok:
            status.build_status = "passing"
        else:
            status.build_status = "failing"
            status.build_error = output
            status.warnings.append("Build is failing")

    async def check_tests(self, status: HealthStatus) -> None:
        if not self.test_command or self.test_command == "skip":
            status.test_status = "skipped"
            return
        ok, output = await self._probe(self.test_command, TEST_TIMEOUT_SECONDS)
        if ok:
            status.test_status = "passing"
        else:
            status.test_status = "failing"
            status.test_error = output
            status.warnings.append("Tests are failing")

    async def check_git(self, status: HealthStatus) -> None:
        if shutil.which("git") is None:
            status.git_status = "not a git repository"
            return
        try:
            code, branch = await self._run(["git", "branch", "--show-current"], GIT_TIMEOUT_SECONDS)
            if code == 0:
                status.git_branch = branch
            code, porcelain = await self._run(["git", "status", "--porcelain"], GIT_TIMEOUT_SECONDS)
        except OSError as e:
            log.debug("Git probe failed", error=str(e))
            status.git_status = "unknown"
            return
        if code != 0:
            status.git_status = "not a git repository"
            return
        status.git_uncommitted = len([line for line in porcelain.splitlines() if line.strip()])
        status.git_status = "uncommitted changes" if status.git_uncommitted else "clean"

    def check_tasks(self, status: HealthStatus) -> None:
        path = self.project_path / self.task_file
        try:
            status.pending_tasks = count_pending_tasks(path.read_text(encoding="utf-8"))
        except OSError:
            status.pending_tasks = 0

    @staticmethod
    def _recommend(status: HealthStatus) -> None:
        if status.build_status == "failing":
            status.recommendations.append("Fix build errors before proceeding with new features")
        if status.test_status == "failing":
            status.recommendations.append("Address failing tests to maintain code quality")
        if status.git_uncommitted > 10:
            status.recommendations.append("Consider committing changes - you have many uncommitted files")
        if status.pending_tasks > 20:
            status.recommendations.append("Review and prioritize tasks - backlog is getting large")
        if not status.recommendations:
            status.recommendations.append("Project health looks good!")

    async def check(self) -> HealthStatus:
        """Run every probe and return the combined snapshot."""
        status = HealthStatus()
        await self.check_build(status)
        await self.check_tests(status)
        await self.check_git(status)
        self.check_tasks(status)
        self._recommend(status)
        log.info(
            "Health check complete",
            build=status.build_status,
            tests=status.test_status,
            git=status.git_status,
            pending_tasks=status.pending_tasks,
        )
        return status
