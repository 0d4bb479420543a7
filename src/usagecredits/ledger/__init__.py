"""Credit ledger: balances, transaction log and metering."""
