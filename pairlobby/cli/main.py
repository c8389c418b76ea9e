"""Main CLI entry point for pairlobby.

This module provides the main click group and lazy loading
of the command modules.
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

console = Console()

T = TypeVar("T")


class LazyGroup(click.Group):
    """A click Group that lazily loads commands.

    Command modules are only imported when they are invoked.
    """

    def __init__(self, *args, lazy_subcommands: dict[str, str] | None = None, **kwargs):
        """Initialize the lazy group.

        Args:
            lazy_subcommands: Mapping of command names to module paths.
        """
        super().__init__(*args, **kwargs)
        self._lazy_subcommands = lazy_subcommands or {}

    def list_commands(self, ctx: click.Context) -> list[str]:
        base = super().list_commands(ctx)
        return sorted(set(base + list(self._lazy_subcommands)))

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        if cmd_name in self.commands:
            return self.commands[cmd_name]
        if cmd_name in self._lazy_subcommands:
            return self._lazy_load(cmd_name)
        return None

    def _lazy_load(self, cmd_name: str) -> click.Command:
        """Import a command's module and register the command."""
        import importlib

        module_path = self._lazy_subcommands[cmd_name]
        module = importlib.import_module(module_path)

        cmd = None
        for attr_name in dir(module):
            attr = getattr(module, attr_name)
            if isinstance(attr, click.Command) and attr.name == cmd_name:
                cmd = attr
                break
        if cmd is None:
            raise click.ClickException(f"Could not find command '{cmd_name}' in {module_path}")

        self.add_command(cmd)
        return cmd


LAZY_SUBCOMMANDS = {
    # Lobby and ledger
    "lobby": "pairlobby.cli.lobby",
    "leaderboard": "pairlobby.cli.lobby",
    "history": "pairlobby.cli.lobby",
    # Trading
    "open": "pairlobby.cli.trade",
    "close": "pairlobby.cli.trade",
    "close-all": "pairlobby.cli.trade",
    "positions": "pairlobby.cli.trade",
    "sync": "pairlobby.cli.trade",
    "reconcile": "pairlobby.cli.trade",
}


CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}


def get_settings():
    """Load settings, exiting with a readable message on a bad config file."""
    import toml

    from pairlobby.config import load_settings

    try:
        return load_settings()
    except toml.TomlDecodeError as e:
        error_panel(f"Could not parse config file:\n\n{e}")
        raise SystemExit(1)


def get_data_store():
    from pairlobby.db import DataStore

    return DataStore(get_settings().db_path)


def run_with_manager(action: Callable[..., Awaitable[T]]) -> T:
    """Run ``action(manager)`` on a fresh event loop and shut the manager down."""
    from pairlobby.manager import PositionManager

    async def runner() -> T:
        manager = PositionManager.from_settings(get_settings())
        try:
            return await action(manager)
        finally:
            await manager.aclose()

    return asyncio.run(runner())


def error_panel(message: str, title: str = "Error") -> None:
    console.print(Panel(f"[red]{message}[/red]", title=f"[bold red]{title}[/bold red]", border_style="red"))


def money(value: Optional[float]) -> str:
    """Format a USD amount, colored by sign."""
    if value is None:
        return "[dim]-[/dim]"
    color = "green" if value >= 0 else "red"
    return f"[{color}]${value:,.2f}[/{color}]"


@click.group(cls=LazyGroup, lazy_subcommands=LAZY_SUBCOMMANDS, context_settings=CONTEXT_SETTINGS)
@click.version_option(package_name="pairlobby")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Show debug logging.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """pairlobby - pair-trading competition ledger.

    Players join a lobby with a fixed buy-in, open leveraged long/short
    pairs, and are ranked by cash plus the value of their open positions.

    \b
    Quick Start:
      pairlobby config init
      pairlobby lobby create demo --buy-in 1000
      pairlobby lobby join demo --player 0xabc
      pairlobby open demo BTC ETH 500 --leverage 5 --player 0xabc
      pairlobby leaderboard demo
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
    )
    # keep request logs out of normal output
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)
    ctx.ensure_object(dict)


@cli.group()
def config() -> None:
    """Manage the pairlobby config file."""
    pass


@config.command("init")
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing config file.")
@click.option(
    "--path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Where to write the config (default: ~/.config/pairlobby/config.toml).",
)
def config_init(force: bool, path: Optional[Path]) -> None:
    """Write a template config file."""
    from pairlobby.config import write_template

    try:
        written = write_template(path, overwrite=force)
    except FileExistsError as e:
        error_panel(f"{e}\n\nUse --force to overwrite.")
        raise SystemExit(1)
    console.print(Panel(
        f"Config written to [cyan]{written}[/cyan]\n\n"
        "Set [bold]venue.token[/bold] or PAIRLOBBY_VENUE_TOKEN for live lobbies.",
        title="[bold green]Config[/bold green]",
        border_style="green",
    ))


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
