"""
Coin catalogue and exchange-rate conversion
"""
from .coins import Coin, CoinProfile, parse_coin, profile_for
from .rates import (
    Conversion,
    ExchangeTickerOracle,
    RateConverter,
    RateOracle,
    RateSnapshot,
    RateUnavailable,
    TatumRateOracle,
)

__all__ = [
    'Coin',
    'CoinProfile',
    'Conversion',
    'ExchangeTickerOracle',
    'RateConverter',
    'RateOracle',
    'RateSnapshot',
    'RateUnavailable',
    'TatumRateOracle',
    'parse_coin',
    'profile_for',
]
