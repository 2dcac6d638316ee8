"""Subscription delivery calendar, billing and undo ledger."""

__version__ = "0.1.0"
