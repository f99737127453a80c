"""Main entry point for Shellpilot."""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.text import Text

from shellpilot.config import Config, set_config
from shellpilot.exceptions import ConfigurationError, PayloadGuardTripped
from shellpilot.logging import configure_logging, get_logger, set_system_log_sink
from shellpilot.plan import plan_to_markdown
from shellpilot.runtime import AgentRuntime

log = get_logger(__name__)

app = typer.Typer(help="Shellpilot - a terminal agent that plans and runs shell commands")

_STATUS_STYLES = {
    "info": "cyan",
    "warn": "yellow",
    "error": "red",
    "success": "green",
}


class ConsoleRenderer:
    """Prints runtime events to the terminal.

    Model and command text is wrapped in ``Text`` so square brackets in it
    are never read as rich markup.
    """

    def __init__(self, console: Console | None = None, verbose: bool = False):
        self.console = console or Console()
        self.verbose = verbose

    def _line(self, text: Any, style: str = "") -> None:
        self.console.print(Text(str(text), style=style))

    def render(self, event: dict[str, Any]) -> None:
        kind = event.get("type")
        if kind == "banner":
            self.console.print(
                Panel(Text(event.get("title", "")), subtitle=event.get("subtitle"), border_style="cyan")
            )
        elif kind == "status":
            self._line(event.get("message", ""), _STATUS_STYLES.get(event.get("level", "info"), "white"))
            if event.get("details") and self.verbose:
                self._line(event["details"], "dim")
        elif kind == "thinking":
            if event.get("state") == "start":
                self._line("thinking...", "dim")
        elif kind == "assistant-message":
            message = event.get("message") or ""
            if message:
                self.console.print(Panel(Markdown(message), title="assistant", border_style="green"))
        elif kind == "plan":
            plan = event.get("plan") or []
            if plan:
                self.console.print(Panel(Markdown(plan_to_markdown(plan)), title="plan", border_style="blue"))
        elif kind == "plan-progress":
            progress = event.get("progress") or {}
            self._line(
                f"plan {progress.get('completed_steps', 0)}/{progress.get('total_steps', 0)} "
                f"({progress.get('ratio', 0):.0%})",
                "dim",
            )
        elif kind == "context-usage":
            usage = event.get("usage") or {}
            self._line(
                f"context {usage.get('total_tokens', 0)}/{usage.get('max_tokens', 0)} tokens "
                f"({usage.get('percent_used', 0)}%)",
                "dim",
            )
        elif kind == "command-result":
            self._render_command_result(event)
        elif kind in ("error", "schema_validation_failed"):
            self._line(event.get("message", "Error"), "red")
            if self.verbose and event.get("details"):
                self._line(event["details"], "dim")
        elif kind == "request-input":
            metadata = event.get("metadata") or {}
            if metadata.get("scope") == "approval":
                command = metadata.get("command") or {}
                self._line(f"$ {command.get('run', '')}", "bold")
        elif kind == "debug":
            if self.verbose:
                self._line(f"debug: {event.get('payload')}", "dim")
        elif kind == "pass":
            if self.verbose:
                self._line(f"pass {event.get('pass_index')}", "dim")

    def _render_command_result(self, event: dict[str, Any]) -> None:
        command = event.get("command") or {}
        result = event.get("result") or {}
        preview = event.get("preview") or {}
        exit_code = result.get("exit_code")
        style = "green" if exit_code == 0 else "red"
        header = f"$ {command.get('run', '')}  [exit {exit_code}, {result.get('runtime_ms', 0)} ms]"
        if result.get("killed"):
            header += " (killed)"
        body = preview.get("stdout_preview") or ""
        if preview.get("stderr_preview"):
            body = f"{body}\n{preview['stderr_preview']}" if body else preview["stderr_preview"]
        self.console.print(Panel(Text(body or "(no output)"), title=Text(header), border_style=style))


def _read_line(prompt: str) -> str | None:
    try:
        return input(prompt)
    except EOFError:
        return None


async def run_session(runtime: AgentRuntime, renderer: ConsoleRenderer) -> None:
    """Pump events to the console and stdin answers back into the runtime."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, runtime.cancel)
    except (NotImplementedError, RuntimeError):
        log.debug("SIGINT handler unavailable, Ctrl+C will terminate the session")

    start_task = asyncio.create_task(runtime.start())
    try:
        async for event in runtime.outputs:
            renderer.render(event)
            if event.get("type") != "request-input":
                continue
            line = await asyncio.to_thread(_read_line, event.get("prompt") or "> ")
            if line is None:
                runtime.inputs.close()
            else:
                runtime.submit_prompt(line)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
    await start_task


def main(
    config: str = "",
    model: str = "",
    auto_approve: bool = False,
    no_human: bool = False,
    plan_merge: bool | None = None,
    verbose: bool = False,
) -> None:
    """Start a Shellpilot session in the current directory."""
    if verbose:
        os.environ["SHELLPILOT_LOGGING__LEVEL"] = "DEBUG"

    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except (ConfigurationError, ValidationError) as e:
            print(f"Failed to load config {config}: {e}", file=sys.stderr)
            cfg = Config.load()
    else:
        cfg = Config.load()

    if model:
        cfg.model.model = model
    if auto_approve:
        cfg.agent.auto_approve = True
    if no_human:
        cfg.agent.no_human = True
    if plan_merge is not None:
        cfg.agent.plan_merge = plan_merge
    if verbose:
        cfg.agent.debug = True
        cfg.logging.level = "DEBUG"

    set_config(cfg)
    renderer = ConsoleRenderer(verbose=verbose)
    set_system_log_sink(lambda line: renderer.console.print(Text.from_ansi(line), style="dim"))
    configure_logging()

    runtime = AgentRuntime()
    try:
        asyncio.run(run_session(runtime, renderer))
    except PayloadGuardTripped as e:
        renderer.console.print(Text(str(e), style="red"))
        if e.dump_path:
            renderer.console.print(Text(f"History snapshot written to {e.dump_path}", style="red"))
        raise typer.Exit(code=1) from e
    except KeyboardInterrupt:
        log.info("Shutting down...")
        raise typer.Exit(code=0)


@app.command()
def run(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    auto_approve: bool = typer.Option(False, "--auto-approve", help="Run every command without asking"),
    no_human: bool = typer.Option(False, "--no-human", help="Auto-respond until the assistant says done"),
    plan_merge: bool | None = typer.Option(None, "--plan-merge/--no-plan-merge", help="Merge plan updates"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    main(config, model, auto_approve, no_human, plan_merge, verbose)


@app.command()
def version() -> None:
    """Show version information."""
    from shellpilot import __version__

    print(f"Shellpilot v{__version__}")


if __name__ == "__main__":
    app()
