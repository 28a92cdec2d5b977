"""Crypto-paid subscriptions with callback reconciliation."""

__version__ = "0.1.0"
