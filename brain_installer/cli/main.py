"""CLI entry point for brain-installer."""

from typing import Annotated

import typer

from brain_installer import __version__
from brain_installer.cli.common import console
from brain_installer.cli.install import install, uninstall
from brain_installer.cli.status import status
from brain_installer.logbuffer import setup_logging

app = typer.Typer(
    name="brain-installer",
    help="Install shared agents, skills, commands, rules, hooks and MCP servers into AI coding tools.",
    no_args_is_help=True,
    add_completion=False,
)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"brain-installer {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show debug output."),
    ] = False,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    setup_logging(verbose)
    ctx.obj = {"verbose": verbose}


app.command()(install)
app.command()(uninstall)
app.command()(status)


if __name__ == "__main__":
    app()
