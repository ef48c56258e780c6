"""Install and uninstall commands."""

from typing import Annotated, List, Optional

import typer

from brain_installer.cli.common import run_selected
from brain_installer.executor import Mode

ToolsArgument = Annotated[
    Optional[List[str]],
    typer.Argument(help="Tool slugs (e.g. claude-code cursor). Prompts when omitted."),
]
ScopeOption = Annotated[
    Optional[str],
    typer.Option(
        "--scope",
        "-s",
        help="Scope to use for tools that declare it (e.g. global, project).",
    ),
]
NonInteractiveOption = Annotated[
    bool,
    typer.Option(
        "--non-interactive",
        "-y",
        help="Never prompt; take the selection from arguments only.",
    ),
]


def _verbose(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("verbose"))


def install(
    ctx: typer.Context,
    tools: ToolsArgument = None,
    scope: ScopeOption = None,
    non_interactive: NonInteractiveOption = False,
) -> None:
    """Install brain content into one or more tools.

    Examples:
      brain-installer install
      brain-installer install claude-code cursor
      brain-installer install cursor --scope project -y
    """
    run_selected(Mode.INSTALL, tools, scope, non_interactive, _verbose(ctx))


def uninstall(
    ctx: typer.Context,
    tools: ToolsArgument = None,
    scope: ScopeOption = None,
    non_interactive: NonInteractiveOption = False,
) -> None:
    """Remove exactly what a previous install placed.

    Examples:
      brain-installer uninstall cursor
      brain-installer uninstall claude-code cursor -y
    """
    run_selected(Mode.UNINSTALL, tools, scope, non_interactive, _verbose(ctx))
