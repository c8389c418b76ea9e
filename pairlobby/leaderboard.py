"""Lobby ranking by total account value."""

from pairlobby.models import LedgerAccount, Standing


def rank_accounts(accounts: list[LedgerAccount], buy_in: float) -> list[Standing]:
    """Rank ledgers by total value, highest first.

    ``sorted`` is stable, so equal totals keep their input order; pass
    accounts in join order to rank earlier joiners first on ties.

    Args:
        accounts: Ledgers of one lobby.
        buy_in: The lobby's buy-in, subtracted to get P&L.

    Returns:
        Standings with 1-based ranks.
    """
    ordered = sorted(accounts, key=lambda account: account.total_value, reverse=True)
    return [
        Standing(
            rank=index,
            player=account.player,
            balance=account.balance,
            value_in_positions=account.value_in_positions,
            total_value=account.total_value,
            pnl=account.total_value - buy_in,
        )
        for index, account in enumerate(ordered, start=1)
    ]
