"""Echelon: delegated trading agents with an on-chain reputation ledger."""

__version__ = "0.1.0"
