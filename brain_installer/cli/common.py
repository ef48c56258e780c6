"""Shared CLI utilities for brain-installer commands."""

import logging
import threading

import typer
from rich.console import Console
from rich.markup import escape

from brain_installer.exceptions import BrainInstallerError, ConfigError
from brain_installer.executor import ExecutionResult, Executor, Mode, Outcome, ToolResult
from brain_installer.handler import ToolHandler
from brain_installer.registry import clear_registry, get_all_handlers, register_tools
from brain_installer.settings import RunConfig, build_run_config

console = Console()

# Exit codes
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 2

_STATUS_STYLES = {
    Outcome.INSTALLED: "green",
    Outcome.UNINSTALLED: "green",
    Outcome.SKIPPED: "yellow",
    Outcome.FAILED: "red",
}


def load_run_config(code: int = EXIT_FAILED) -> RunConfig:
    """Load configuration or exit with the given status."""
    try:
        return build_run_config()
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(code)


def seed_registry(run: RunConfig, code: int = EXIT_FAILED) -> dict[str, ToolHandler]:
    """Register every enabled tool from the loaded configuration."""
    clear_registry()
    try:
        register_tools(run.tools)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(code)
    return get_all_handlers()


def parse_selection(answer: str, handlers: dict[str, ToolHandler]) -> list[str]:
    """Turn a comma-separated answer of slugs or list numbers into slugs."""
    slugs = list(handlers)
    selection = []
    for item in (part.strip() for part in answer.split(",")):
        if not item:
            continue
        if item.isdigit() and 1 <= int(item) <= len(slugs):
            selection.append(slugs[int(item) - 1])
        else:
            selection.append(item)
    return selection


def prompt_selection(handlers: dict[str, ToolHandler], action: str) -> list[str]:
    """Ask which tools to act on; exits with status 2 on empty input or Ctrl-C."""
    if not handlers:
        console.print("[yellow]No tools configured.[/yellow]")
        raise typer.Exit(EXIT_CANCELLED)

    console.print("[bold]Available tools:[/bold]")
    for index, (slug, handler) in enumerate(handlers.items(), start=1):
        console.print(f"  {index}. {escape(handler.tool.display_name)} [dim]({slug})[/dim]")

    try:
        answer = typer.prompt(
            f"Tools to {action} (comma-separated)", default="", show_default=False
        )
    except typer.Abort:
        console.print("\n[yellow]Cancelled.[/yellow]")
        raise typer.Exit(EXIT_CANCELLED)

    selection = parse_selection(answer, handlers)
    if not selection:
        console.print("[yellow]Nothing selected.[/yellow]")
        raise typer.Exit(EXIT_CANCELLED)
    return selection


def render_result(result: ToolResult) -> None:
    """Print one tool's buffered output followed by its status line."""
    for line in result.output:
        style = "yellow" if line.level == "WARNING" else "red" if line.level == "ERROR" else "dim"
        console.print(f"  [{style}]{escape(line.message)}[/{style}]")
    style = _STATUS_STYLES[result.outcome]
    console.print(f"[bold]{result.tool}[/bold]: [{style}]{escape(result.describe())}[/{style}]")


def exit_code(result: ExecutionResult) -> int:
    if result.interrupted:
        return EXIT_CANCELLED
    if result.failed:
        return EXIT_FAILED
    return EXIT_OK


def run_selected(
    mode: Mode,
    tools: list[str] | None,
    scope: str | None,
    non_interactive: bool,
    verbose: bool = False,
) -> None:
    """Select tools, run the executor and exit with the run's status code."""
    run = load_run_config()
    handlers = seed_registry(run)

    selection = list(tools or [])
    if not selection:
        if non_interactive or run.non_interactive:
            console.print("[red]Error:[/red] No tools selected (non-interactive mode)")
            console.print(f"[dim]Available: {', '.join(handlers) or 'none'}[/dim]")
            raise typer.Exit(EXIT_CANCELLED)
        selection = prompt_selection(handlers, mode.value)

    unknown = [slug for slug in selection if slug not in handlers]
    if unknown:
        console.print(f"[red]Error:[/red] Unknown tool(s): {', '.join(unknown)}")
        console.print(f"[dim]Available: {', '.join(handlers) or 'none'}[/dim]")
        raise typer.Exit(EXIT_FAILED)

    cancel = threading.Event()
    executor = Executor(
        run.env,
        handlers,
        on_complete=render_result,
        log_level=logging.DEBUG if verbose else logging.INFO,
    )
    try:
        result = executor.run(mode, selection, scope, cancel)
    except KeyboardInterrupt:
        cancel.set()
        console.print("\n[yellow]Cancelled.[/yellow]")
        raise typer.Exit(EXIT_CANCELLED)
    except BrainInstallerError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(EXIT_FAILED)

    code = exit_code(result)
    if code == EXIT_CANCELLED:
        console.print("[yellow]Cancelled; changes were rolled back.[/yellow]")
    elif code == EXIT_FAILED:
        console.print(f"[red]{len(result.failed)} tool(s) failed.[/red]")
    raise typer.Exit(code)
