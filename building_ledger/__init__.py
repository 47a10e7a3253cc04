"""Shared-expense billing ledger for multi-unit buildings."""

__version__ = "0.1.0"
