"""Escrow Settlement Engine: escrow contracts settled through a double-entry ledger."""

__version__ = "0.1.0"
