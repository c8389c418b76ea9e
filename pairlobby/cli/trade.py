"""Trading commands for pairlobby CLI.

Handles opening and closing pair positions, position display,
valuation sync and the reconciliation queue.
"""

import asyncio
from typing import Optional

import click
from rich.panel import Panel
from rich.table import Table

from pairlobby.cli.lobby import PLAYER_OPTION
from pairlobby.cli.main import console, error_panel, get_data_store, money, run_with_manager

CREDENTIAL_OPTION = click.option(
    "--token",
    envvar="PAIRLOBBY_VENUE_TOKEN",
    default="",
    help="Venue bearer token for live lobbies (or PAIRLOBBY_VENUE_TOKEN).",
)


@click.command("open")
@click.argument("lobby_id")
@click.argument("long_asset")
@click.argument("short_asset")
@click.argument("usd_value", type=float)
@PLAYER_OPTION
@click.option(
    "-l",
    "--leverage",
    type=click.FloatRange(min=0, min_open=True),
    default=1.0,
    show_default=True,
    help="Leverage multiplier.",
)
@click.option("--slippage", type=float, default=0.01, show_default=True, help="Maximum slippage fraction.")
@click.option(
    "--execution",
    type=click.Choice(["MARKET", "SYNC", "TWAP"], case_sensitive=False),
    default="MARKET",
    show_default=True,
)
@CREDENTIAL_OPTION
def open_position(
    lobby_id: str,
    long_asset: str,
    short_asset: str,
    usd_value: float,
    player: str,
    leverage: float,
    slippage: float,
    execution: str,
    token: str,
) -> None:
    """Open a long/short pair.

    LONG_ASSET is bought and SHORT_ASSET sold, each with half of USD_VALUE.
    The margin (USD_VALUE / leverage) is taken from the lobby balance.

    \b
    Examples:
      pairlobby open demo BTC ETH 500 --leverage 5
      pairlobby open demo SOL AVAX 200 -l 2 --execution TWAP
    """
    long_asset, short_asset = long_asset.upper(), short_asset.upper()
    console.print(Panel(
        f"Long:     [green]{long_asset}[/green]\n"
        f"Short:    [red]{short_asset}[/red]\n"
        f"Notional: ${usd_value:,.2f}\n"
        f"Leverage: {leverage:g}x\n"
        f"Margin:   ${usd_value / leverage:,.2f}",
        title="[bold cyan]Opening Position[/bold cyan]",
        border_style="cyan",
    ))

    try:
        outcome = run_with_manager(
            lambda manager: manager.open_position(
                player,
                lobby_id,
                long_asset,
                short_asset,
                leverage,
                usd_value,
                execution_type=execution.upper(),
                slippage=slippage,
                credential=token,
            )
        )
    except ValueError as e:
        error_panel(f"Invalid order:\n\n{e}")
        raise SystemExit(1)

    if not outcome.success:
        error_panel(f"{outcome.error}\n\n[dim]{outcome.error_code}[/dim]", title="Order Failed")
        raise SystemExit(1)

    text = (
        f"Position: [bold]{outcome.position_id}[/bold]\n"
        f"Order:    {outcome.order_id}\n"
        f"Margin:   ${outcome.margin_used:,.2f}"
    )
    if outcome.new_balance is not None:
        text += f"\nBalance:  ${outcome.new_balance:,.2f}"
    if outcome.error_code == "ledger_sync_failed":
        text += f"\n\n[yellow]{outcome.error}[/yellow]"
    console.print(Panel(text, title="[bold green]Position Opened[/bold green]", border_style="green"))


@click.command("close")
@click.argument("lobby_id")
@click.argument("position_id")
@PLAYER_OPTION
@click.option(
    "--execution",
    type=click.Choice(["MARKET", "TWAP"], case_sensitive=False),
    default="MARKET",
    show_default=True,
)
@click.option("--twap-duration", type=int, default=None, help="TWAP duration in seconds.")
@click.option("--twap-interval", type=int, default=None, help="Seconds between TWAP slices.")
@CREDENTIAL_OPTION
def close_position(
    lobby_id: str,
    position_id: str,
    player: str,
    execution: str,
    twap_duration: Optional[int],
    twap_interval: Optional[int],
    token: str,
) -> None:
    """Close one position and credit its value to the balance."""
    outcome = run_with_manager(
        lambda manager: manager.close_position(
            position_id,
            lobby_id,
            player=player,
            execution_type=execution.upper(),
            twap_duration=twap_duration,
            twap_interval_seconds=twap_interval,
            credential=token,
        )
    )

    if not outcome.success:
        error_panel(f"{outcome.error}\n\n[dim]{outcome.error_code}[/dim]", title="Close Failed")
        raise SystemExit(1)

    if outcome.already_closed:
        console.print(f"[dim]Position {position_id} was already closed.[/dim]")
        return

    text = f"Realized: {money(outcome.realized_value)}"
    if outcome.new_balance is not None:
        text += f"\nBalance:  ${outcome.new_balance:,.2f}"
    if outcome.error_code == "ledger_sync_failed":
        text += f"\n\n[yellow]{outcome.error}[/yellow]"
    console.print(Panel(text, title="[bold green]Position Closed[/bold green]", border_style="green"))


@click.command("close-all")
@click.argument("lobby_id")
@PLAYER_OPTION
@click.option(
    "--execution",
    type=click.Choice(["MARKET", "TWAP"], case_sensitive=False),
    default="MARKET",
    show_default=True,
)
@CREDENTIAL_OPTION
def close_all(lobby_id: str, player: str, execution: str, token: str) -> None:
    """Close every open position in a lobby."""
    outcome = run_with_manager(
        lambda manager: manager.close_all_positions(
            player, lobby_id, execution_type=execution.upper(), credential=token
        )
    )

    if outcome.results:
        table = Table(title="Close-All Results", show_header=True, header_style="bold cyan")
        table.add_column("Position", style="bold")
        table.add_column("Status", justify="center")
        table.add_column("Realized", justify="right")
        table.add_column("Error", style="dim")
        for result in outcome.results:
            status = "[green]closed[/green]" if result.success else f"[red]{result.status}[/red]"
            table.add_row(result.position_id, status, money(result.realized_value), result.error or "")
        console.print(table)

    summary = (
        f"Closed:   {outcome.closed_count}\n"
        f"Failed:   {outcome.failed_count}\n"
        f"Realized: {money(outcome.total_realized_value)}"
    )
    if outcome.new_balance is not None:
        summary += f"\nBalance:  ${outcome.new_balance:,.2f}"
    style = "green" if outcome.success else "red"
    console.print(Panel(summary, title=f"[bold {style}]Close-All[/bold {style}]", border_style=style))
    if not outcome.success:
        raise SystemExit(1)


@click.command()
@click.argument("lobby_id")
@PLAYER_OPTION
@click.option("-a", "--all", "show_all", is_flag=True, default=False, help="Include closed positions.")
def positions(lobby_id: str, player: str, show_all: bool) -> None:
    """Show a player's positions with their latest marks."""
    from pairlobby.db import PositionStore

    records = PositionStore(get_data_store()).list_positions(
        lobby_id, player=player, state=None if show_all else "open"
    )
    if not records:
        console.print(Panel("[dim]No open positions[/dim]", title="[bold]Positions[/bold]", border_style="dim"))
        return

    table = Table(title="Positions", show_header=True, header_style="bold cyan")
    table.add_column("Position", style="bold")
    table.add_column("Long", style="green")
    table.add_column("Short", style="red")
    table.add_column("Lev", justify="right")
    table.add_column("Notional", justify="right")
    table.add_column("Margin", justify="right")
    table.add_column("Value", justify="right")
    table.add_column("P&L", justify="right")
    table.add_column("State", justify="center", style="dim")

    for record in records:
        value = record.mark_value if record.state == "open" else record.realized_value
        pnl = value - record.margin_used if value is not None else None
        table.add_row(
            record.position_id,
            record.long_asset,
            record.short_asset,
            f"{record.leverage:g}x",
            f"${record.usd_value:,.2f}",
            f"${record.margin_used:,.2f}",
            money(value),
            money(pnl),
            record.state,
        )
    console.print(table)


@click.command()
@click.argument("lobby_id")
@PLAYER_OPTION
@click.option("-s", "--seconds", type=float, default=30.0, show_default=True, help="How long to sync.")
@CREDENTIAL_OPTION
def sync(lobby_id: str, player: str, seconds: float, token: str) -> None:
    """Keep a player's position value up to date for a while."""

    async def run(manager) -> float:
        manager.start_valuation_sync(player, lobby_id, credential=token)
        try:
            await asyncio.sleep(seconds)
        finally:
            manager.stop_valuation_sync(player, lobby_id)
        account = manager.ledger.get_account(player, lobby_id)
        return account.value_in_positions if account else 0.0

    console.print(f"[dim]Syncing {player} in {lobby_id} for {seconds:g}s...[/dim]")
    try:
        value = run_with_manager(run)
    except KeyboardInterrupt:
        console.print("[yellow]Sync interrupted[/yellow]")
        return
    except Exception as e:
        error_panel(f"Sync failed:\n\n{e}")
        raise SystemExit(1)
    console.print(f"[bold]Value in positions:[/bold] ${value:,.2f}")


@click.command()
@click.option("--lobby", "lobby_id", default=None, help="Only show one lobby.")
@click.option("--resolve", "resolve_id", type=int, default=None, help="Mark an item as repaired.")
def reconcile(lobby_id: Optional[str], resolve_id: Optional[int]) -> None:
    """List venue events the ledger has not recorded."""
    store = get_data_store()

    if resolve_id is not None:
        if store.resolve_reconciliation(resolve_id):
            console.print(f"[green]✓ Item {resolve_id} resolved[/green]")
        else:
            error_panel(f"No unresolved item {resolve_id}.")
            raise SystemExit(1)
        return

    items = store.get_reconciliation(lobby_id)
    if not items:
        console.print(Panel("[dim]Nothing to reconcile[/dim]", title="[bold]Reconciliation[/bold]", border_style="dim"))
        return

    table = Table(title="Reconciliation Queue", show_header=True, header_style="bold yellow")
    table.add_column("ID", justify="right")
    table.add_column("Kind", style="bold")
    table.add_column("Player")
    table.add_column("Lobby")
    table.add_column("Order / Position")
    table.add_column("Amount", justify="right")
    table.add_column("Detail", style="dim")
    table.add_column("Recorded")

    for item in items:
        table.add_row(
            str(item.id),
            item.kind,
            item.player,
            item.lobby_id,
            item.position_id or item.order_id or "",
            money(item.amount),
            item.detail,
            f"{item.created_at:%Y-%m-%d %H:%M:%S}",
        )
    console.print(table)
