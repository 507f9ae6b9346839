"""Main entry point for codehelm."""

import asyncio
import signal
from pathlib import Path

import typer

from codehelm import __version__
from codehelm.agent import CANCELLED, Agent
from codehelm.cli import SharedLineReader, TerminalUI, get_ui
from codehelm.config import Config, set_config
from codehelm.exceptions import CodehelmError, ConfigurationError
from codehelm.logging import configure_logging, get_logger, set_system_log_sink

log = get_logger(__name__)

app = typer.Typer(help="codehelm - a console coding assistant with tools and memory")


def _load_config(config: str) -> Config:
    if not config:
        return Config.load()
    path = Path(config).expanduser()
    if not path.exists():
        raise ConfigurationError(f"config file not found: {path}")
    return Config.from_yaml(path)


def _install_interrupt(agent: Agent) -> bool:
    """Route Ctrl-C to ``stop_current_request`` while a turn runs."""
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, agent.stop_current_request)
    except (NotImplementedError, RuntimeError):
        return False
    return True


def _remove_interrupt() -> None:
    try:
        asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
    except (NotImplementedError, RuntimeError):
        pass


def _wire_approval(agent: Agent, ui: TerminalUI, reader: SharedLineReader) -> None:
    """Answer approval requests from the console."""
    pending: set[asyncio.Task[None]] = set()

    async def ask(tool: str, preview: str) -> None:
        try:
            line = await reader.read(ui.approval_prompt(tool, preview))
        except EOFError:
            return
        if not agent.approval.pending:
            # The request already timed out; the line belongs to the next prompt.
            log.info("Approval answer arrived after the request ended", tool=tool)
            return
        agent.submit_approval(ui.is_affirmative(line))

    def on_request(tool: str, preview: str) -> None:
        task = asyncio.get_running_loop().create_task(ask(tool, preview))
        pending.add(task)
        task.add_done_callback(pending.discard)

    agent.set_approval_callback(on_request)


async def run_interactive(heartbeat: bool = False) -> None:
    """Run the interactive agent loop."""
    ui = get_ui()
    agent = Agent()
    agent.set_status_callback(ui.set_runtime_status)
    agent.set_stream_callback(ui.on_stream)
    agent.set_tool_callbacks(ui.print_tool_start, ui.print_tool_complete, ui.print_tool_error)
    reader = SharedLineReader(ui)
    _wire_approval(agent, ui, reader)

    ui.print_welcome(agent.config.model.model, str(agent.project_path))
    await agent.initialize()
    if heartbeat:
        agent.start_heartbeat()

    try:
        while True:
            try:
                user_input = await reader.read(ui.prompt_markup())
            except (KeyboardInterrupt, EOFError):
                log.info("Input closed")
                break

            action = ui.handle_special_command(user_input)
            if action is None:
                continue
            if action == "EXIT":
                break
            if action == "STATS":
                ui.print_stats(agent)
                continue
            if action == "MEMORY":
                ui.print_memory(agent)
                continue
            if action == "DEBUG":
                ui.print_report(agent.get_debug_report())
                continue
            if action == "RETRY":
                ui.print_report(agent.executor.format_retry_report())
                continue
            if action == "CLEAR":
                agent.clear_memory("short")
                ui.print_success("Short-term memory cleared")
                continue
            if not action.strip():
                continue

            interrupt_installed = _install_interrupt(agent)
            try:
                reply = await agent.chat(action)
            except CodehelmError as e:
                ui.end_assistant_stream()
                ui.print_error(str(e))
                log.error("Turn failed", error=str(e))
                continue
            finally:
                if interrupt_installed:
                    _remove_interrupt()

            if reply is CANCELLED:
                ui.print_warning("Request stopped")
            elif not agent.config.agent.streaming:
                ui.print_message("assistant", reply)
    finally:
        await agent.shutdown()


def main(
    config: str = "",
    model: str = "",
    provider: str = "",
    no_stream: bool = False,
    verbose: bool = False,
    heartbeat: int = 0,
) -> None:
    """Start an interactive codehelm session."""
    ui = get_ui()
    try:
        cfg = _load_config(config)
    except (ConfigurationError, ValueError, OSError) as e:
        ui.print_error(f"Failed to load config: {e}")
        raise typer.Exit(code=1)

    if model:
        cfg.model.model = model
    if provider:
        cfg.model.provider = provider
    if no_stream:
        cfg.agent.streaming = False
    if heartbeat > 0:
        cfg.heartbeat.interval = heartbeat
    set_config(cfg)

    set_system_log_sink(ui.append_system_line)
    configure_logging(cfg, "DEBUG" if verbose else None)

    try:
        asyncio.run(run_interactive(heartbeat=cfg.heartbeat.interval > 0))
    except KeyboardInterrupt:
        log.info("Shutting down...")


@app.command()
def run(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    no_stream: bool = typer.Option(False, "--no-stream", help="Disable streaming"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
    heartbeat: int = typer.Option(0, "--heartbeat", help="Heartbeat interval in seconds (0 keeps the config value)"),
) -> None:
    """Start the interactive session."""
    main(config, model, provider, no_stream, verbose, heartbeat)


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"codehelm v{__version__}")


if __name__ == "__main__":
    app()
