"""Wallet, escrow and task lifecycle service for the errand marketplace."""

__version__ = "0.1.0"
