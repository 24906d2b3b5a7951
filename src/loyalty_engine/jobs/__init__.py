"""Recurring job entrypoints for ledger maintenance."""

__all__ = ["loyalty"]
