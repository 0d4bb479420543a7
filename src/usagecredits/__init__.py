"""Prepaid usage-credit ledger and milestone reward engine."""
