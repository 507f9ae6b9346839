"""Console REPL for codehelm."""

import asyncio
import json
from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from codehelm.approval import truncate_preview
from codehelm.logging import get_logger

if TYPE_CHECKING:
    from codehelm.agent import Agent

log = get_logger(__name__)

TOOL_OUTPUT_PREVIEW_CHARS = 400

HELP_TEXT = """\
/help      Show this help
/stats     Token usage, context session and memory counts
/memory    Long-term memory digest and tier sizes
/debug     Tool execution report
/retry     Tool failure and recovery statistics
/clear     Clear short-term memory and resend the context
/exit      Quit
Ctrl-C stops the current request."""


class TerminalUI:
    """Terminal UI using rich."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console(highlight=False)
        self._streaming = False
        self._thinking = False
        self._runtime_status = "waiting"

    def print_welcome(self, model: str = "", workspace: str = "") -> None:
        details = []
        if model:
            details.append(f"model: {escape(model)}")
        if workspace:
            details.append(f"workspace: {escape(workspace)}")
        body = "Type your message, /help for commands, /exit to quit."
        if details:
            body += "\n[dim]" + " | ".join(details) + "[/dim]"
        self.console.print(Panel(body, title="codehelm", expand=False))

    def print_help(self) -> None:
        self.console.print(HELP_TEXT, markup=False)

    def print_message(self, role: str, content: str) -> None:
        self.console.print(f"[bold cyan]{escape(role.upper())}[/bold cyan] {escape(content)}")

    def print_error(self, error: str) -> None:
        self.console.print(f"[bold red]Error:[/bold red] {escape(error)}")

    def print_warning(self, warning: str) -> None:
        self.console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")

    def print_success(self, message: str) -> None:
        self.console.print(f"[green]{escape(message)}[/green]")

    def append_system_line(self, text: str) -> None:
        """Log sink: dimmed system lines above the prompt."""
        self.console.print(f"[dim]{escape(text)}[/dim]")

    def set_runtime_status(self, status: str) -> None:
        if status == self._runtime_status:
            return
        self._runtime_status = status
        if not self._streaming:
            self.console.print(f"[dim]... {escape(status)}[/dim]")

    # -- streaming ----------------------------------------------------------

    def begin_assistant_stream(self) -> None:
        self._streaming = True
        self._thinking = False
        self.console.print("[bold green]ASSISTANT[/bold green] ", end="")

    def on_stream(self, content: str, thinking: str, done: bool) -> None:
        """Stream callback for the agent."""
        if done:
            self.end_assistant_stream()
            return
        if not self._streaming:
            self.begin_assistant_stream()
        if thinking:
            self._thinking = True
            self.console.print(f"[dim italic]{escape(thinking)}[/dim italic]", end="")
        if content:
            if self._thinking:
                self.console.print()
                self._thinking = False
            self.console.print(content, end="", markup=False)

    def end_assistant_stream(self) -> None:
        if not self._streaming:
            return
        self._streaming = False
        self.console.print()

    # -- tools --------------------------------------------------------------

    def print_tool_start(self, name: str, arguments: str) -> None:
        if self._streaming:
            self.end_assistant_stream()
        self.console.print(f"[magenta]> {escape(name)}[/magenta] [dim]{escape(truncate_preview(arguments))}[/dim]")

    def print_tool_complete(self, name: str, output: str) -> None:
        preview = output if len(output) <= TOOL_OUTPUT_PREVIEW_CHARS else output[:TOOL_OUTPUT_PREVIEW_CHARS] + "..."
        self.console.print(f"[green]< {escape(name)}[/green] [dim]{escape(preview)}[/dim]")

    def print_tool_error(self, name: str, error: str) -> None:
        first_line = error.strip().splitlines()[0] if error.strip() else "failed"
        self.console.print(f"[red]< {escape(name)} failed:[/red] {escape(first_line)}")

    def approval_prompt(self, tool: str, preview: str) -> str:
        """Markup for the approval question; answered through the shared line reader."""
        return f"[bold yellow]{escape(f'Allow {tool} with {preview}?')}[/bold yellow] (y/n) "

    @staticmethod
    def is_affirmative(response: str) -> bool:
        return response.lower().strip() in ("y", "yes")

    # -- readouts -----------------------------------------------------------

    def print_stats(self, agent: "Agent") -> None:
        usage = agent.get_usage_stats()
        context = agent.get_context_stats()
        memory = agent.get_memory_stats()

        table = Table(title="Session", show_header=False)
        table.add_column("metric")
        table.add_column("value", justify="right")
        table.add_row("prompt tokens", str(usage["prompt_tokens"]))
        table.add_row("completion tokens", str(usage["completion_tokens"]))
        table.add_row("total tokens", str(usage["total_tokens"]))
        if usage["remaining_requests"] is not None:
            table.add_row("remaining requests", str(usage["remaining_requests"]))
        if usage["remaining_tokens"] is not None:
            table.add_row("remaining tokens", str(usage["remaining_tokens"]))
        table.add_row("context sent", "yes" if context.context_sent else "no")
        table.add_row("completions", str(context.completion_count))
        table.add_row("session age", f"{context.session_age:.0f}s")
        table.add_row("short-term", str(memory["short_term"]))
        table.add_row("working", str(memory["working"]))
        table.add_row("long-term", str(memory["long_term"]))
        self.console.print(table)

    def print_memory(self, agent: "Agent") -> None:
        digest = agent.memory.get_context().strip()
        self.console.print(json.dumps(agent.get_memory_stats()), markup=False)
        if digest:
            self.console.print(digest, markup=False)
        else:
            self.console.print("[dim]No long-term or working memory yet.[/dim]")

    def print_report(self, text: str) -> None:
        self.console.print(text, markup=False)

    def prompt_markup(self, prompt_text: str = "> ") -> str:
        return f"[bold]{escape(prompt_text)}[/bold]"

    def read_line(self, markup: str) -> str:
        """Blocking read of one line; run it off the event loop."""
        return self.console.input(markup)

    def show_prompt(self, markup: str) -> None:
        self.console.print(markup, end="")

    def handle_special_command(self, cmd: str) -> str | None:
        """Map a slash command to an action name; plain text passes through."""
        cmd = cmd.strip()
        if not cmd.startswith("/"):
            return cmd

        command = cmd.split(None, 1)[0].lower()
        if command in ("/help", "/h", "/?"):
            self.print_help()
            return None
        if command in ("/exit", "/quit", "/q"):
            return "EXIT"
        actions: dict[str, str] = {
            "/stats": "STATS",
            "/memory": "MEMORY",
            "/debug": "DEBUG",
            "/retry": "RETRY",
            "/clear": "CLEAR",
        }
        action = actions.get(command)
        if action is None:
            self.print_error(f"Unknown command: {command}")
        return action


class SharedLineReader:
    """One console reader shared by the REPL prompt and approval questions.

    A read whose caller gave up (an approval that timed out) keeps its worker
    thread; the next caller is handed the line from that thread instead of
    starting a second reader on the same stdin.
    """

    def __init__(self, ui: TerminalUI):
        self.ui = ui
        self._pending: asyncio.Future[str] | None = None

    async def read(self, markup: str) -> str:
        if self._pending is None:
            self._pending = asyncio.ensure_future(asyncio.to_thread(self.ui.read_line, markup))
        else:
            self.ui.show_prompt(markup)
        pending = self._pending
        try:
            return await asyncio.shield(pending)
        finally:
            if pending.done() and self._pending is pending:
                self._pending = None


# Global UI instance
_ui: "TerminalUI | None" = None


def get_ui() -> TerminalUI:
    """Get the global UI instance."""
    global _ui
    if _ui is None:
        _ui = TerminalUI()
    return _ui


def set_ui(ui: TerminalUI) -> None:
    """Set the global UI instance."""
    global _ui
    _ui = ui
