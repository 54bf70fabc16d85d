"""Scheduled, per-profile sync of bank accounts into an Actual Budget ledger."""

__version__ = "0.3.0"
