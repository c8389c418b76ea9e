"""pairlobby: position lifecycle and ledger core for pair-trading lobbies."""
