"""System prompt assembly: task contexts, templates, tool summary and project rules."""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Iterable

from codehelm.llm import ToolDefinition
from codehelm.logging import get_logger

log = get_logger(__name__)

RULES_FILENAME = ".helmrules"
TASK_FILENAMES = ("task.md", "todo.md", "tasks.md")
MAX_RULE_FILE_BYTES = 50 * 1024
TOOL_DESCRIPTION_MAX = 80


class TaskContext(str, Enum):
    ANALYSIS = "analysis"
    GENERATION = "generation"
    REFACTORING = "refactoring"
    DEBUGGING = "debugging"
    PLANNING = "planning"
    GENERAL = "general"


# Checked in order; the first context with a matching keyword wins.
_CONTEXT_KEYWORDS: list[tuple[TaskContext, tuple[str, ...]]] = [
    (TaskContext.DEBUGGING, ("bug", "error", "fix", "debug", "not working")),
    (TaskContext.ANALYSIS, ("analyze", "review", "check", "audit")),
    (TaskContext.REFACTORING, ("refactor", "clean", "improve", "simplify")),
    (TaskContext.GENERATION, ("create", "generate", "write", "implement", "add")),
    (TaskContext.PLANNING, ("plan", "design", "architect", "structure")),
]


def detect_context(text: str) -> TaskContext:
    """Classify a user message by keyword."""
    lower = str(text or "").lower()
    for context, keywords in _CONTEXT_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            return context
    return TaskContext.GENERAL


@dataclass(frozen=True)
class PromptTemplate:
    name: str
    base_prompt: str
    guidelines: tuple[str, ...] = ()
    output_format: str = ""


TEMPLATES: dict[TaskContext, PromptTemplate] = {
    TaskContext.ANALYSIS: PromptTemplate(
        name="Code Analysis",
        base_prompt=(
            "You are an expert code analyst. Analyze code for bugs, security "
            "vulnerabilities, performance problems and maintainability issues.\n"
            "Be specific and actionable. Reference exact line numbers when possible."
        ),
        guidelines=(
            "Focus only on real issues, not style preferences",
            "Prioritize security and bugs over style",
            "Provide severity ratings: HIGH, MEDIUM, LOW",
        ),
        output_format=(
            "## Issues Found\n\n"
            "### [SEVERITY] Issue Title\n"
            "- **Location**: file:line\n"
            "- **Problem**: Description\n"
            "- **Fix**: Suggested solution\n\n"
            "### Summary\n"
            "- Total issues: N"
        ),
    ),
    TaskContext.GENERATION: PromptTemplate(
        name="Code Generation",
        base_prompt=(
            "You are an expert programmer. Generate clean, well-documented code that "
            "follows the language's idioms, handles errors properly and is easy to test."
        ),
        guidelines=(
            "Include necessary imports",
            "Add comments for complex logic",
            "Handle edge cases",
            "Follow the existing code style in the project",
        ),
        output_format="Provide complete code in fenced blocks with the language specified.",
    ),
    TaskContext.REFACTORING: PromptTemplate(
        name="Code Refactoring",
        base_prompt=(
            "You are an expert at refactoring. Improve structure and readability while "
            "preserving exact behavior."
        ),
        guidelines=(
            "Never change functionality",
            "Keep changes minimal but impactful",
            "Explain each refactoring step",
            "Preserve all existing tests",
        ),
        output_format="For each change:\n1. BEFORE: original code\n2. AFTER: refactored code\n3. WHY: reason",
    ),
    TaskContext.DEBUGGING: PromptTemplate(
        name="Debugging",
        base_prompt=(
            "You are an expert debugger. Compare expected and actual behavior, find the "
            "root cause rather than the symptom, and consider edge cases."
        ),
        guidelines=(
            "Ask for error messages and stack traces",
            "Consider the execution environment",
            "Check dependencies and versions",
            "Verify assumptions about input/output",
        ),
        output_format=(
            "## Analysis\n"
            "1. **Symptom**: What's happening\n"
            "2. **Root Cause**: Why it's happening\n"
            "3. **Solution**: How to fix it\n"
            "4. **Prevention**: How to avoid it in future"
        ),
    ),
    TaskContext.PLANNING: PromptTemplate(
        name="Architecture Planning",
        base_prompt=(
            "You are a software architect. Plan solutions that are maintainable, follow "
            "established patterns and state their trade-offs explicitly."
        ),
        guidelines=(
            "Consider existing codebase constraints",
            "Think about backward compatibility",
            "Plan for incremental implementation",
            "Document assumptions and risks",
        ),
        output_format=(
            "## Proposed Design\n"
            "### Overview\n### Components\n### Trade-offs\n### Implementation Steps"
        ),
    ),
    TaskContext.GENERAL: PromptTemplate(
        name="General Assistant",
        base_prompt=(
            "You are an expert programming assistant. Help the user with their coding "
            "tasks. Be concise, accurate and practical."
        ),
        guidelines=(
            "Be direct and helpful",
            "Provide examples when useful",
            "Admit when unsure",
        ),
    ),
}


@dataclass
class PromptBuilder:
    """Composes the system prompt for one task context.

    The output only depends on the inputs and the date, so equal inputs on the
    same day produce byte-equal prompts (the session fingerprint relies on it).
    """

    context: TaskContext = TaskContext.GENERAL
    today: date | None = None
    tools_summary: str = ""
    project_info: str = ""
    history: str = ""
    custom_instructions: str = ""
    relevant_code: str = ""
    _template: PromptTemplate = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._template = TEMPLATES.get(self.context, TEMPLATES[TaskContext.GENERAL])

    def with_tools_summary(self, summary: str) -> "PromptBuilder":
        self.tools_summary = summary
        return self

    def with_project_info(self, info: str) -> "PromptBuilder":
        self.project_info = info
        return self

    def with_history(self, history: str) -> "PromptBuilder":
        self.history = history
        return self

    def with_custom_instructions(self, instructions: str) -> "PromptBuilder":
        self.custom_instructions = instructions
        return self

    def with_relevant_code(self, code: str) -> "PromptBuilder":
        self.relevant_code = code
        return self

    def build(self) -> str:
        day = self.today or date.today()
        parts = [
            "## System Information",
            f"- **Current Date**: {day.strftime('%A, %B %d, %Y')}",
            "",
            self._template.base_prompt,
            "",
        ]
        sections = [
            ("Available Tools", self.tools_summary),
            ("Guidelines", "\n".join(f"- {g}" for g in self._template.guidelines)),
            ("Project Context", self.project_info),
            ("Previous Context", self.history),
            ("Relevant Code", self.relevant_code),
            ("Additional Instructions", self.custom_instructions),
            ("Expected Output Format", self._template.output_format),
        ]
        for title, body in sections:
            if body and body.strip():
                parts.extend([f"## {title}", body.strip(), ""])
        return "\n".join(parts).rstrip() + "\n"


def _tool_category(name: str) -> str:
    lower = name.lower()
    if "browser" in lower or "navigate" in lower:
        return "Browser Automation"
    if "git" in lower:
        return "Version Control"
    if any(word in lower for word in ("file", "read", "write", "edit")):
        return "File Operations"
    return "Other Tools"


_CATEGORY_ORDER = ("File Operations", "Browser Automation", "Version Control", "Other Tools")


def build_tools_summary(tools: Iterable[ToolDefinition]) -> str:
    """Markdown catalog of tools grouped by category."""
    grouped: dict[str, list[ToolDefinition]] = {name: [] for name in _CATEGORY_ORDER}
    total = 0
    for tool in tools:
        grouped[_tool_category(tool.name)].append(tool)
        total += 1
    if total == 0:
        return ""

    lines: list[str] = []
    for category in _CATEGORY_ORDER:
        entries = sorted(grouped[category], key=lambda t: t.name)
        if not entries:
            continue
        lines.append(f"### {category}")
        for tool in entries:
            description = " ".join((tool.description or "").split())
            if len(description) > TOOL_DESCRIPTION_MAX:
                description = description[: TOOL_DESCRIPTION_MAX - 3] + "..."
            lines.append(f"- **{tool.name}**: {description}")
        lines.append("")
    lines.append(f"**Total**: {total} tools available. Call them with JSON arguments matching their schema.")
    return "\n".join(lines)


class RulesManager:
    """Loads project rule files and formats them for the system prompt."""

    def __init__(self, project_path: Path | str, max_file_bytes: int = MAX_RULE_FILE_BYTES):
        self.project_path = Path(project_path)
        self.max_file_bytes = max_file_bytes
        self.rules: dict[str, str] = {}

    def _load_file(self, name: str) -> None:
        path = self.project_path / name
        try:
            if not path.is_file():
                return
            size = path.stat().st_size
            if size > self.max_file_bytes:
                log.warning("Skipping oversized rules file", path=str(path), size=size)
                return
            self.rules[name] = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            log.warning("Failed to read rules file", path=str(path), error=str(e))

    def load(self) -> None:
        self.rules = {}
        for name in (RULES_FILENAME, "personality.md", "expertise.md", *TASK_FILENAMES):
            self._load_file(name)

    def reload(self) -> None:
        self.load()

    def get_formatted_rules(self) -> str:
        if not self.rules:
            return ""

        parts: list[str] = []
        if "personality.md" in self.rules:
            parts.extend(["## Your Personality", self.rules["personality.md"].strip(), ""])
        if "expertise.md" in self.rules:
            parts.extend(["## Your Expertise", self.rules["expertise.md"].strip(), ""])
        if RULES_FILENAME in self.rules:
            parts.extend(["## Agent Configuration", self.rules[RULES_FILENAME].strip(), ""])

        task_files = [name for name in TASK_FILENAMES if name in self.rules]
        if task_files:
            parts.extend([
                "## Current Project Tasks",
                "Follow the progress and instructions in these task lists:",
                "",
            ])
            for name in task_files:
                parts.extend([f"### {name}", self.rules[name].strip(), ""])

        parts.extend([
            "## Custom Rules",
            "The user may place additional instructions in these files in the project root:",
            "- `personality.md`: your personality and communication style",
            "- `expertise.md`: your technical expertise and domain knowledge",
            "- `task.md` / `todo.md` / `tasks.md`: current project tasks and priorities",
            f"- `{RULES_FILENAME}`: core agent rules and constraints",
            "If any of these files exist, their contents have been loaded above.",
        ])
        return "\n".join(parts) + "\n"

    def get_rules_summary(self) -> str:
        if not self.rules:
            return "No specific rules loaded."
        return "Active files: " + ", ".join(sorted(self.rules))
