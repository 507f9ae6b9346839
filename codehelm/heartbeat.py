"""Background heartbeat: periodic health check, wake-up turns and reflection."""

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

from codehelm.agent import CANCELLED
from codehelm.exceptions import CodehelmError, PersistenceError
from codehelm.health import PENDING_TASK_MARKERS, HealthStatus
from codehelm.llm.client import cancel_task
from codehelm.logging import get_logger

if TYPE_CHECKING:
    from codehelm.agent import Agent

log = get_logger(__name__)


def build_heartbeat_prompt(timestamp: datetime, status: HealthStatus, has_pending: bool, task_file: str) -> str:
    """Wake-up prompt carrying a structured health snapshot."""
    git = status.git_status or "unknown"
    if status.git_uncommitted:
        git += f" ({status.git_uncommitted} uncommitted files)"
    lines = [
        f"**Heartbeat Execution** - {timestamp.strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        "## Project Health Status",
        "",
        f"- **Build:** {status.build_status}",
        f"- **Tests:** {status.test_status}",
        f"- **Git:** {git}",
        f"- **Pending Tasks:** {status.pending_tasks}",
        "",
    ]
    if status.warnings:
        lines.append("**Warnings:**")
        lines.extend(f"- {w}" for w in status.warnings)
        lines.append("")
    if status.recommendations:
        lines.append("**Recommendations:**")
        lines.extend(f"- {r}" for r in status.recommendations)
        lines.append("")

    lines.extend(["## Your Actions", ""])
    if status.build_status == "failing":
        lines.extend(["**PRIORITY:** Build is failing. Please fix build errors immediately.", ""])
    elif status.test_status == "failing":
        lines.extend(["**PRIORITY:** Tests are failing. Please address test failures.", ""])
    elif has_pending:
        lines.extend([f"Please read `{task_file}` and execute pending tasks.", ""])
    lines.extend([
        "Respond with:",
        "1. If you took action: Brief summary of what was done",
        "2. If no action needed: Just say 'NO PENDING TASKS'",
    ])
    return "\n".join(lines) + "\n"


def build_reflection_prompt(status: HealthStatus, brain_entries: int, roadmap_summary: str) -> str:
    return f"""**Strategic Reflection**

You are performing a deep reflection on the project state. Please analyze:

1. **Recent Learnings** (from brain.md)
2. **Strategic Goals** (from roadmap.md)
3. **Current Health Status**

Based on this analysis:
- Identify patterns or recurring issues
- Suggest strategic improvements
- Update roadmap if priorities have shifted
- Record important insights in brain.md

Keep response concise and actionable.

---

**Health Status:**
- Build: {status.build_status}
- Tests: {status.test_status}
- Git: {status.git_status or "unknown"} ({status.git_uncommitted} uncommitted)
- Tasks: {status.pending_tasks} pending

**Brain Summary:** {brain_entries} recent entries
**Roadmap Summary:**
{roadmap_summary}

Please perform reflection and suggest next steps."""


class Heartbeat:
    """Periodic wake-up loop bound to one agent.

    Turns go through ``agent.chat`` and therefore wait for the agent's turn
    lock, so they never overlap a user turn.
    """

    def __init__(self, agent: "Agent", interval: float, reflection_every: int = 5):
        self.agent = agent
        self.interval = float(interval)
        self.reflection_every = int(reflection_every)
        self.count = 0
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        try:
            self.agent.brain.initialize()
            self.agent.roadmap.initialize()
        except OSError as e:
            log.warning("Failed to initialize knowledge files", error=str(e))
        self._task = asyncio.get_running_loop().create_task(self._run())
        log.info("Heartbeat started", interval=self.interval)

    async def stop(self) -> None:
        self._stop_event.set()
        await cancel_task(self._task)
        self._task = None
        log.info("Heartbeat stopped", ticks=self.count)

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await self.tick()
            except CodehelmError as e:
                log.error("Heartbeat tick failed", error=str(e), exc_info=True)

    async def _record(self, write: Callable[..., Any], *args: Any) -> None:
        try:
            await asyncio.to_thread(write, *args)
        except (OSError, PersistenceError) as e:
            log.error("Failed to record heartbeat knowledge", error=str(e))

    def _read_task_file(self) -> str:
        path = self.agent.project_path / self.agent.config.heartbeat.task_file
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            log.warning("Heartbeat could not read task file", path=str(path), error=str(e))
            return ""

    async def tick(self) -> str | None:
        """Run one heartbeat iteration; returns the wake-up turn's reply, if any."""
        self.count += 1
        now = datetime.now()
        log.info("Heartbeat", count=self.count)

        status = await self.agent.health_checker.check()
        critical = status.has_critical_issues
        task_text = await asyncio.to_thread(self._read_task_file)
        has_pending = any(marker in task_text for marker in PENDING_TASK_MARKERS)

        reply: str | None = None
        if critical or has_pending:
            log.info("Heartbeat waking agent", pending=has_pending, critical=critical)
            prompt = build_heartbeat_prompt(now, status, has_pending, self.agent.config.heartbeat.task_file)
            try:
                reply = await self.agent.chat(prompt)
            except CodehelmError as e:
                log.error("Heartbeat chat failed", error=str(e))
                await self._record(
                    self.agent.brain.add_error,
                    "Heartbeat Execution Failed",
                    f"Error during heartbeat: {e}",
                    "Check logs and LLM configuration",
                    ["heartbeat", "error"],
                )
            else:
                if critical and reply is not CANCELLED:
                    after = await self.agent.health_checker.check()
                    if after.build_status == "passing" and after.test_status == "passing":
                        await self._record(
                            self.agent.brain.add_insight,
                            "Heartbeat Resolved Critical Issues",
                            "The agent successfully resolved build/test failures during heartbeat",
                            ["heartbeat", "success", "auto-fix"],
                        )
        else:
            log.info("No action needed, project healthy and no pending tasks")

        if self.reflection_every > 0 and self.count % self.reflection_every == 0:
            await self.reflect(status)
        return reply

    async def reflect(self, status: HealthStatus) -> str | None:
        """Deeper reflection over the brain and roadmap."""
        log.info("Performing deep reflection")
        try:
            brain_entries = await asyncio.to_thread(self.agent.brain.entry_count)
            roadmap_summary = await asyncio.to_thread(self.agent.roadmap.get_summary)
        except OSError as e:
            log.error("Failed to read knowledge files", error=str(e))
            return None
        try:
            reply = await self.agent.chat(build_reflection_prompt(status, brain_entries, roadmap_summary))
        except CodehelmError as e:
            log.error("Deep reflection failed", error=str(e))
            return None
        log.info("Deep reflection completed", reply=reply[:200])
        return reply
