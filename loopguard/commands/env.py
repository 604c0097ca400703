"""CLI command for inspecting loopguard environment configuration."""

import typer
from rich.console import Console
from rich.table import Table

from ..config.settings import GateConfig, get_env_info
from ..exceptions import ConfigurationError

app = typer.Typer()
console = Console()


@app.command()
def env(
    show_config: bool = typer.Option(False, "--config", "-c", help="Also show the resolved gate configuration"),
):
    """Show LOOPGUARD_* environment variables and whether they are valid."""
    info = get_env_info()

    table = Table(title="loopguard environment")
    table.add_column("Variable", style="cyan")
    table.add_column("Value")
    table.add_column("Default", style="dim")
    table.add_column("Description")

    invalid = 0
    for name, entry in info.items():
        if entry["is_set"]:
            value = entry["value"] if entry["valid"] else f"[red]{entry['value']} (invalid)[/red]"
        else:
            value = "[dim]unset[/dim]"
        if not entry["valid"]:
            invalid += 1
        table.add_row(name, value, str(entry["default"] or "-"), entry["description"])

    console.print(table)

    if show_config:
        try:
            config = GateConfig.from_env()
        except ConfigurationError as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1)
        for key, value in vars(config).items():
            console.print(f"  [bold]{key}[/bold]: {value}")

    if invalid:
        console.print(f"[red]{invalid} invalid value(s)[/red]")
        raise typer.Exit(1)
