"""Lobby commands for pairlobby CLI.

Creating and joining lobbies only writes records; membership rules live
with the hosting application.
"""

from datetime import datetime, timedelta
from typing import Optional

import click
from pydantic import ValidationError
from rich.panel import Panel
from rich.table import Table

from pairlobby.cli.main import console, error_panel, get_data_store, money

PLAYER_OPTION = click.option(
    "--player",
    envvar="PAIRLOBBY_PLAYER",
    required=True,
    help="Player wallet address (or PAIRLOBBY_PLAYER).",
)


@click.group()
def lobby() -> None:
    """Create, join and inspect lobbies.

    \b
    Commands:
      create  - Store a new lobby
      list    - List lobbies
      join    - Open a player's ledger in a lobby
      show    - Show lobby details
    """
    pass


@lobby.command("create")
@click.argument("lobby_id")
@click.option("--name", default=None, help="Display name (defaults to the lobby ID).")
@click.option("--buy-in", type=float, required=True, help="Starting balance for every player.")
@click.option("--live", is_flag=True, default=False, help="Execute on the live venue instead of paper.")
@click.option("--hours", type=float, default=None, help="Trading window length from now (max 24).")
def create(lobby_id: str, name: Optional[str], buy_in: float, live: bool, hours: Optional[float]) -> None:
    """Create a lobby.

    \b
    Examples:
      pairlobby lobby create demo --buy-in 1000
      pairlobby lobby create finals --buy-in 500 --live --hours 2
    """
    from pairlobby.models import Lobby

    store = get_data_store()
    if store.get_lobby(lobby_id) is not None:
        error_panel(f"Lobby {lobby_id} already exists.")
        raise SystemExit(1)

    start = datetime.now() if hours else None
    try:
        new_lobby = Lobby(
            id=lobby_id,
            name=name or lobby_id,
            buy_in=buy_in,
            is_demo=not live,
            start_time=start,
            end_time=start + timedelta(hours=hours) if start else None,
        )
    except ValidationError as e:
        error_panel(f"Invalid lobby:\n\n{e}")
        raise SystemExit(1)

    store.save_lobby(new_lobby)
    console.print(Panel(
        f"Lobby [bold]{new_lobby.name}[/bold] ([cyan]{new_lobby.id}[/cyan])\n"
        f"Buy-in: ${new_lobby.buy_in:,.2f}\n"
        f"Mode:   {'[yellow]LIVE[/yellow]' if live else 'PAPER'}",
        title="[bold green]Lobby Created[/bold green]",
        border_style="green",
    ))


@lobby.command("join")
@click.argument("lobby_id")
@PLAYER_OPTION
def join(lobby_id: str, player: str) -> None:
    """Join a lobby with its buy-in as starting balance."""
    from pairlobby.db import LedgerStore

    store = get_data_store()
    target = store.get_lobby(lobby_id)
    if target is None:
        error_panel(f"Lobby {lobby_id} not found.")
        raise SystemExit(1)

    try:
        account = LedgerStore(store).open_account(player, lobby_id, target.buy_in)
    except ValueError as e:
        error_panel(str(e))
        raise SystemExit(1)

    console.print(Panel(
        f"[bold]{account.player}[/bold] joined [cyan]{lobby_id}[/cyan]\n"
        f"Balance: ${account.balance:,.2f}",
        title="[bold green]Joined[/bold green]",
        border_style="green",
    ))


@lobby.command("list")
def list_lobbies() -> None:
    """List every lobby."""
    lobbies = get_data_store().get_lobbies()
    if not lobbies:
        console.print(Panel("[dim]No lobbies yet[/dim]", title="[bold]Lobbies[/bold]", border_style="dim"))
        return

    table = Table(title="Lobbies", show_header=True, header_style="bold cyan")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Buy-in", justify="right")
    table.add_column("Mode", justify="center")
    table.add_column("Status", justify="center")

    for item in lobbies:
        table.add_row(
            item.id,
            item.name,
            f"${item.buy_in:,.2f}",
            "PAPER" if item.is_demo else "[yellow]LIVE[/yellow]",
            "[green]running[/green]" if item.is_running() else "[dim]not running[/dim]",
        )
    console.print(table)


@lobby.command("show")
@click.argument("lobby_id")
def show(lobby_id: str) -> None:
    """Show lobby details and players."""
    from pairlobby.db import LedgerStore

    store = get_data_store()
    target = store.get_lobby(lobby_id)
    if target is None:
        error_panel(f"Lobby {lobby_id} not found.")
        raise SystemExit(1)

    window = "unbounded"
    if target.start_time and target.end_time:
        window = f"{target.start_time:%Y-%m-%d %H:%M} to {target.end_time:%Y-%m-%d %H:%M}"
    status = "[green]running[/green]" if target.is_running() else "[dim]not running[/dim]"
    players = LedgerStore(store).get_accounts(lobby_id)

    console.print(Panel(
        f"Name:    {target.name}\n"
        f"Buy-in:  ${target.buy_in:,.2f}\n"
        f"Mode:    {'PAPER' if target.is_demo else '[yellow]LIVE[/yellow]'}\n"
        f"Window:  {window}\n"
        f"Status:  {status}\n"
        f"Players: {len(players)}",
        title=f"[bold cyan]Lobby {target.id}[/bold cyan]",
        border_style="cyan",
    ))


@click.command()
@click.argument("lobby_id")
def leaderboard(lobby_id: str) -> None:
    """Show lobby standings by total value."""
    from pairlobby.db import LedgerStore
    from pairlobby.leaderboard import rank_accounts

    store = get_data_store()
    target = store.get_lobby(lobby_id)
    if target is None:
        error_panel(f"Lobby {lobby_id} not found.")
        raise SystemExit(1)

    standings = rank_accounts(LedgerStore(store).get_accounts(lobby_id), target.buy_in)
    if not standings:
        console.print(Panel("[dim]No players yet[/dim]", title="[bold]Leaderboard[/bold]", border_style="dim"))
        return

    table = Table(title=f"Leaderboard: {target.name}", show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right")
    table.add_column("Player", style="bold")
    table.add_column("Balance", justify="right")
    table.add_column("In Positions", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("P&L", justify="right")

    for standing in standings:
        table.add_row(
            str(standing.rank),
            standing.player,
            f"${standing.balance:,.2f}",
            f"${standing.value_in_positions:,.2f}",
            f"${standing.total_value:,.2f}",
            money(standing.pnl),
        )
    console.print(table)


@click.command()
@click.argument("lobby_id")
@PLAYER_OPTION
@click.option("-n", "--limit", type=int, default=20, help="Number of most recent entries.")
def history(lobby_id: str, player: str, limit: int) -> None:
    """Show a player's balance history."""
    from pairlobby.db import LedgerStore

    entries = LedgerStore(get_data_store()).get_history(player, lobby_id, limit=limit)
    if not entries:
        console.print(Panel("[dim]No history[/dim]", title="[bold]History[/bold]", border_style="dim"))
        return

    table = Table(title=f"Balance History: {player}", show_header=True, header_style="bold cyan")
    table.add_column("Time")
    table.add_column("Balance", justify="right")
    table.add_column("In Positions", justify="right")
    table.add_column("Total", justify="right")

    for entry in entries:
        table.add_row(
            f"{entry.timestamp:%Y-%m-%d %H:%M:%S}",
            f"${entry.balance:,.2f}",
            f"${entry.value_in_positions:,.2f}",
            f"${entry.total_value:,.2f}",
        )
    console.print(table)
