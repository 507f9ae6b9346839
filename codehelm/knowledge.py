"""Markdown knowledge stores kept in the project root.

``brain.md`` collects errors, patterns, decisions and insights the agent learns;
``roadmap.md`` holds strategic goals by priority. Both files are human-readable
and only ever grow: entries are inserted under their section header.
"""

import threading
import uuid
from datetime import datetime
from pathlib import Path

from codehelm.exceptions import PersistenceError
from codehelm.logging import get_logger

log = get_logger(__name__)

_LAST_UPDATE_PREFIX = "*Last update:"


def _now_stamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _format_tags(tags: list[str] | None) -> str:
    return ", ".join(f"`{tag}`" for tag in tags or [])


def _insert_under(lines: list[str], marker: str, block: str) -> list[str]:
    """Insert ``block`` right after ``marker`` and its placeholder comment line."""
    for idx, line in enumerate(lines):
        if line.strip() == marker:
            insert_at = idx + 1
            # Skip the blank line and the "<!-- ... -->" placeholder under headers.
            while insert_at < len(lines) and (
                not lines[insert_at].strip() or lines[insert_at].lstrip().startswith("<!--")
            ):
                insert_at += 1
                if lines[insert_at - 1].lstrip().startswith("<!--"):
                    break
            return lines[:insert_at] + ["", block, ""] + lines[insert_at:]
    raise PersistenceError(f"section not found: {marker}")


def _touch_timestamp(lines: list[str]) -> None:
    for i in range(len(lines) - 1, -1, -1):
        if lines[i].startswith(_LAST_UPDATE_PREFIX):
            lines[i] = f"{_LAST_UPDATE_PREFIX} {_now_stamp()}*"
            return


_BRAIN_SECTIONS = {
    "error": "## Errors and Solutions",
    "pattern": "## Code Patterns",
    "decision": "## Architectural Decisions",
    "insight": "## Insights",
}

_BRAIN_TEMPLATE = """# Agent Knowledge Base

Lessons learned, patterns discovered and important decisions for this project.

---

## Errors and Solutions

<!-- Errors found and how they were resolved -->

## Code Patterns

<!-- Patterns and conventions discovered in the project -->

## Architectural Decisions

<!-- Important technical decisions made -->

## Insights

<!-- General observations and discoveries -->

---

*Last update: {stamp}*
"""


class Brain:
    """The agent's knowledge base (``brain.md``)."""

    def __init__(self, project_path: Path | str):
        self.project_path = Path(project_path)
        self.path = self.project_path / "brain.md"
        self._lock = threading.Lock()

    def initialize(self) -> None:
        with self._lock:
            if self.path.exists():
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(_BRAIN_TEMPLATE.format(stamp=_now_stamp()), encoding="utf-8")

    def add_entry(
        self,
        category: str,
        title: str,
        description: str,
        tags: list[str] | None = None,
    ) -> None:
        """Insert an entry under the section for ``category`` (default: insights)."""
        self.initialize()
        marker = _BRAIN_SECTIONS.get(category, _BRAIN_SECTIONS["insight"])
        block = f"### {title}\n*{datetime.now().strftime('%Y-%m-%d %H:%M')}*\n\n{description}"
        if tags:
            block += f"\n\n**Tags:** {_format_tags(tags)}"
        with self._lock:
            lines = self.path.read_text(encoding="utf-8").split("\n")
            lines = _insert_under(lines, marker, block)
            _touch_timestamp(lines)
            self.path.write_text("\n".join(lines), encoding="utf-8")
        log.debug("Brain entry added", category=category, title=title)

    def add_error(self, title: str, description: str, solution: str, tags: list[str] | None = None) -> None:
        self.add_entry("error", title, f"{description}\n\n**Solution:** {solution}", tags)

    def add_pattern(self, title: str, description: str, tags: list[str] | None = None) -> None:
        self.add_entry("pattern", title, description, tags)

    def add_decision(
        self,
        title: str,
        description: str,
        rationale: str,
        tags: list[str] | None = None,
    ) -> None:
        self.add_entry("decision", title, f"{description}\n\n**Rationale:** {rationale}", tags)

    def add_insight(self, title: str, description: str, tags: list[str] | None = None) -> None:
        self.add_entry("insight", title, description, tags)

    def read(self) -> str:
        with self._lock:
            if not self.path.exists():
                return ""
            return self.path.read_text(encoding="utf-8")

    def entry_count(self) -> int:
        return sum(1 for line in self.read().split("\n") if line.startswith("### "))

    def search(self, query: str) -> list[str]:
        """Entries whose text contains ``query`` (case-insensitive)."""
        needle = query.lower()
        matches: list[str] = []
        current: list[str] | None = None
        for line in self.read().split("\n") + ["---"]:
            if line.startswith("### ") or line.startswith("## ") or line.startswith("---"):
                if current:
                    entry = "\n".join(current).strip()
                    if needle in entry.lower():
                        matches.append(entry)
                current = [line] if line.startswith("### ") else None
            elif current is not None:
                current.append(line)
        return matches


_PRIORITY_SECTIONS = {
    "high": "### High Priority",
    "medium": "### Medium Priority",
    "low": "### Low Priority",
}

_ROADMAP_TEMPLATE = """# Strategic Roadmap

Long-term planning for the project.

## Vision

<!-- Describe the long-term vision of the project -->

## Strategic Objectives

### High Priority

<!-- High priority objectives -->

### Medium Priority

<!-- Medium priority objectives -->

### Low Priority

<!-- Low priority objectives -->

## Completed

<!-- Already completed objectives -->

## Blocked

<!-- Blocked objectives and reasons -->

---

*Last update: {stamp}*
"""


class Roadmap:
    """Strategic goals by priority (``roadmap.md``)."""

    def __init__(self, project_path: Path | str):
        self.project_path = Path(project_path)
        self.path = self.project_path / "roadmap.md"
        self._lock = threading.Lock()

    def initialize(self) -> None:
        with self._lock:
            if self.path.exists():
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(_ROADMAP_TEMPLATE.format(stamp=_now_stamp()), encoding="utf-8")

    def add_goal(
        self,
        title: str,
        description: str,
        priority: str = "medium",
        status: str = "planned",
        tags: list[str] | None = None,
    ) -> str:
        """Add a goal under its priority section; returns the goal id."""
        self.initialize()
        goal_id = uuid.uuid4().hex[:8]
        marker = _PRIORITY_SECTIONS.get(priority.lower(), _PRIORITY_SECTIONS["medium"])
        block = (
            f"#### {title}\n"
            f"*ID: `{goal_id}`* | **Status:** {status} | "
            f"**Created:** {datetime.now().strftime('%Y-%m-%d')}\n\n{description}"
        )
        if tags:
            block += f"\n\n**Tags:** {_format_tags(tags)}"
        with self._lock:
            lines = self.path.read_text(encoding="utf-8").split("\n")
            lines = _insert_under(lines, marker, block)
            _touch_timestamp(lines)
            self.path.write_text("\n".join(lines), encoding="utf-8")
        return goal_id

    def read(self) -> str:
        with self._lock:
            if not self.path.exists():
                return ""
            return self.path.read_text(encoding="utf-8")

    @staticmethod
    def _count_goals(lines: list[str], marker: str) -> int:
        count = 0
        in_section = False
        for line in lines:
            if line.strip() == marker:
                in_section = True
                continue
            if not in_section:
                continue
            if line.startswith("####"):
                count += 1
            elif line.startswith("#") or line.startswith("---"):
                break
        return count

    def get_summary(self) -> str:
        lines = self.read().split("\n")
        high = self._count_goals(lines, _PRIORITY_SECTIONS["high"])
        medium = self._count_goals(lines, _PRIORITY_SECTIONS["medium"])
        low = self._count_goals(lines, _PRIORITY_SECTIONS["low"])
        completed = self._count_goals(lines, "## Completed")
        blocked = self._count_goals(lines, "## Blocked")
        active = high + medium + low
        return (
            "Roadmap Status:\n"
            f"- High Priority: {high} objectives\n"
            f"- Medium Priority: {medium} objectives\n"
            f"- Low Priority: {low} objectives\n"
            f"- Completed: {completed} objectives\n"
            f"- Blocked: {blocked} objectives\n"
            f"Total Active: {active} | Total: {active + completed + blocked}"
        )
