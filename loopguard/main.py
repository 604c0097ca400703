#!/usr/bin/env python3
"""
Main CLI entry point for loopguard
"""

import typer
from rich.console import Console

from loopguard import __version__
from loopguard.commands.demo import app as demo_app
from loopguard.commands.env import app as env_app
from loopguard.utils.logging import configure_logging

console = Console()


def version():
    """Show loopguard version"""
    typer.echo(f"loopguard version {__version__}")


def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only log errors"),
):
    """
    loopguard - keep the event loop live while blocking work runs elsewhere

    [bold]Examples:[/bold]

    Watch the loop stay responsive while CPU-bound work runs in processes:
        [cyan]loopguard demo --items 4 --workers 2[/cyan]

    See what happens when the same work runs on the loop:
        [cyan]loopguard demo --inline[/cyan]

    Check environment configuration:
        [cyan]loopguard env --config[/cyan]
    """
    if verbose and quiet:
        typer.echo("Error: --verbose and --quiet are mutually exclusive", err=True)
        raise typer.Exit(1)

    configure_logging(verbose=verbose, quiet=quiet)


def create_app() -> typer.Typer:
    """Create and configure the main CLI application"""
    app = typer.Typer(no_args_is_help=True)
    app.callback()(main)
    app.command()(version)
    for module_app in (demo_app, env_app):
        app.registered_commands.extend(module_app.registered_commands)
    return app


app = create_app()


def run():
    """Entry point for the CLI"""
    app()


if __name__ == "__main__":
    run()
