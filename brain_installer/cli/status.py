"""Status command: what is installed where."""

from rich.markup import escape

from brain_installer.cli.common import EXIT_OK, console, load_run_config, seed_registry
from brain_installer.handler import ToolStatus


def _describe(status: ToolStatus) -> list[str]:
    if status.error:
        return [f"  [red]error:[/red] {escape(status.error)}"]

    tool = "[green]found[/green]" if status.tool_installed else "[dim]not found[/dim]"
    if status.plugin_installed is None:
        plugin = "[dim]no detection check[/dim]"
    elif status.plugin_installed:
        plugin = "[green]installed[/green]"
    else:
        plugin = "[dim]not installed[/dim]"

    lines = [f"  tool: {tool}", f"  brain: {plugin}"]
    if status.scope_root is not None:
        lines.append(f"  scope root: {escape(str(status.scope_root))}")
    if status.manifest is not None:
        manifest = status.manifest
        lines.append(
            f"  manifest: {escape(str(status.manifest_path))} "
            f"[dim](scope {manifest.scope}, engine {manifest.engine_version}, "
            f"{len(manifest.entries)} entries, {manifest.installed_at})[/dim]"
        )
    else:
        lines.append("  manifest: [dim]none[/dim]")
    return lines


def status() -> None:
    """Show per-tool install status.

    Always exits with status 0.

    Examples:
      brain-installer status
    """
    run = load_run_config(EXIT_OK)
    handlers = seed_registry(run, EXIT_OK)
    if not handlers:
        console.print("[yellow]No tools configured.[/yellow]")
        return

    console.print(f"[dim]Content: {escape(str(run.content_root))}[/dim]")
    console.print(f"[dim]Cache: {escape(str(run.env.cache_root))}[/dim]")
    for handler in handlers.values():
        result = handler.status(run.env)
        console.print()
        console.print(f"[bold]{escape(result.display_name)}[/bold] [dim]({result.name})[/dim]")
        for line in _describe(result):
            console.print(line)
