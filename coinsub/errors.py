"""Common base for errors raised by the subscription core."""

from __future__ import annotations


class CoinsubError(Exception):
    """Base class for all domain errors."""
