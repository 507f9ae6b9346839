"""Prompt assembly, compression and insight helpers for Agent."""

import asyncio

from codehelm.exceptions import LLMError
from codehelm.logging import get_logger
from codehelm.memory import MemoryItem
from codehelm.prompts import PromptBuilder, build_tools_summary, detect_context

log = get_logger(__name__)

COMPRESSION_TEMPERATURE = 0.3
COMPRESSION_MAX_TOKENS = 300
INSIGHT_TEMPERATURE = 0.2
INSIGHT_MAX_TOKENS = 150
INSIGHT_WINDOW = 4
INSIGHT_TAG = "proactive-insight"
INITIAL_TASK_FILE = "# Project Tasks\n\n- [ ] Initial project audit and setup\n"

COMPRESSION_PROMPT = """### Context Compression Task
Summarize the following conversation segment in 2-3 concise bullet points.
Focus strictly on:
1. Technical decisions reached.
2. Patterns discovered in the codebase.
3. Errors or obstacles encountered and how they were solved.

Conversation Segment:
{conversation}

Summary:"""

INSIGHT_PROMPT = """### Insight Extraction Task
Based on the recent interaction below, identify if any permanent technical decisions or recurring project patterns were established.
If yes, provide a single sentence starting with "Decision:" or "Pattern:".
If nothing significant was established, reply with "NONE".

Recent Interaction:
{conversation}

Insight:"""


class AgentMemoryMixin:
    """Build the system prompt and keep memory compact between turns."""

    def _build_system_prompt(self, user_text: str) -> tuple[str, str, str]:
        """Return (system prompt, formatted rules, project summary) for a turn."""
        rules = self.rules.get_formatted_rules()
        project_info = self.project.get_summary()
        system_prompt = (
            PromptBuilder(detect_context(user_text))
            .with_tools_summary(build_tools_summary(self.tools.get_definitions()))
            .with_project_info(project_info)
            .with_history(self.memory.get_context())
            .with_custom_instructions(rules)
            .build()
        )
        return system_prompt, rules, project_info

    async def _compress_context(self, items: list[MemoryItem]) -> bool:
        """Summarize ``items`` with the model and fold them into long-term memory."""
        conversation = "\n".join(f"{item.role}: {item.content}" for item in items)
        try:
            summary = await self.llm.simple_query(
                COMPRESSION_PROMPT.format(conversation=conversation),
                temperature=COMPRESSION_TEMPERATURE,
                max_tokens=COMPRESSION_MAX_TOKENS,
                cancel_event=self._root_cancel,
            )
        except LLMError as e:
            log.error("Context compression failed", error=str(e))
            return False
        summary = summary.strip()
        if not summary:
            log.warning("Context compression returned an empty summary")
            return False
        compressed = self.memory.compress_items(summary)
        if compressed:
            log.info("Context compressed", items=len(items))
        return compressed

    async def _extract_insights(self) -> None:
        """Ask the model whether the latest exchange settled a decision or pattern."""
        messages = self.memory.get_messages()
        if len(messages) < INSIGHT_WINDOW:
            return
        conversation = "\n".join(f"{m['role']}: {m['content']}" for m in messages[-INSIGHT_WINDOW:])
        try:
            insight = await self.llm.simple_query(
                INSIGHT_PROMPT.format(conversation=conversation),
                temperature=INSIGHT_TEMPERATURE,
                max_tokens=INSIGHT_MAX_TOKENS,
                cancel_event=self._root_cancel,
            )
        except LLMError as e:
            log.debug("Insight extraction failed", error=str(e))
            return
        insight = insight.strip()
        if not insight or insight.upper() == "NONE":
            return
        self.memory.add_decision(insight, [INSIGHT_TAG])
        log.info("Proactive insight extracted", insight=insight)

    def _schedule_insight_extraction(self) -> None:
        task = asyncio.create_task(self._extract_insights())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def _sync_project_tasks(self) -> None:
        """Create the project task file when it does not exist yet."""
        path = self.project_path / self.config.heartbeat.task_file
        if path.exists():
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(INITIAL_TASK_FILE, encoding="utf-8")
            log.info("Initialized project task file", path=str(path))
        except OSError as e:
            log.warning("Failed to initialize task file", path=str(path), error=str(e))

    async def _after_turn(self) -> None:
        """Compression, insight extraction and task file upkeep after a turn."""
        trigger = self.config.memory.compression_trigger
        self.session.set_message_count(self.memory.short_term_count())
        if self.session.should_compress(trigger):
            self._set_runtime_status("compressing context")
            items = self.memory.get_items_to_compress()
            if items and await self._compress_context(items):
                self.session.reset_session()
                self.session.set_message_count(self.memory.short_term_count())
                self._set_runtime_status("context compressed")

        interval = self.config.agent.insight_interval
        count = self.memory.short_term_count()
        if interval > 0 and count and count % interval == 0:
            self._schedule_insight_extraction()

        self._sync_project_tasks()
