"""Exchange-rate oracles and the fiat to crypto converter."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

import ccxt
import httpx

from coinsub.errors import CoinsubError

from .coins import Coin, profile_for

logger = logging.getLogger(__name__)

FIAT_CURRENCY = "USD"


class RateUnavailable(CoinsubError):
    """Raised when no usable exchange rate can be obtained."""


@dataclass(frozen=True)
class RateSnapshot:
    """A single observation of a crypto/fiat rate."""

    coin: Coin
    fiat: str
    rate: float
    observed_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))


@dataclass(frozen=True)
class Conversion:
    """Result of converting a fiat amount into a crypto amount."""

    crypto_amount: float
    rate: float
    snapshot: RateSnapshot


class RateOracle(Protocol):
    """Source of crypto/fiat exchange rates."""

    async def get_rate(self, coin: Coin, fiat: str) -> float:
        """Return the price of one unit of ``coin`` expressed in ``fiat``."""


class TatumRateOracle:
    """Read exchange rates from the Tatum ``/tatum/rate`` endpoint."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.tatum.io/v3/",
        timeout: float = 10.0,
        http_client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/") + "/"
        self._http_client_factory = http_client_factory or (lambda: httpx.AsyncClient(timeout=timeout))

    async def get_rate(self, coin: Coin, fiat: str) -> float:
        if not self._api_key:
            raise RateUnavailable("TATUM_API_KEY is not configured")
        symbol = profile_for(coin).rate_symbol
        url = f"{self._base_url}tatum/rate/{symbol}"
        try:
            async with self._http_client_factory() as client:
                response = await client.get(
                    url,
                    params={"basePair": fiat.upper()},
                    headers={"x-api-key": self._api_key},
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RateUnavailable(f"rate lookup failed for {symbol}/{fiat}: {exc}") from exc

        value = data.get("value") if isinstance(data, dict) else None
        if value in (None, ""):
            raise RateUnavailable(f"rate response for {symbol}/{fiat} is missing value")
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise RateUnavailable(f"rate response for {symbol}/{fiat} is not numeric") from exc


class ExchangeTickerOracle:
    """Price coins from an exchange ticker (Binance by default) through ccxt."""

    def __init__(self, exchange: Any = None, *, quote: str = "USDT") -> None:
        # Initialize exchange connection (Binance as default)
        self.exchange = exchange or ccxt.binance({"enableRateLimit": True})
        self._quote = quote

    async def get_rate(self, coin: Coin, fiat: str) -> float:
        profile = profile_for(coin)
        if profile.stablecoin:
            return 1.0
        ticker = f"{profile.rate_symbol}/{self._quote}"
        try:
            price_data = await asyncio.to_thread(self.exchange.fetch_ticker, ticker)
        except ccxt.BaseError as exc:
            raise RateUnavailable(f"ticker lookup failed for {ticker}: {exc}") from exc
        last = price_data.get("last") if price_data else None
        if last is None:
            raise RateUnavailable(f"ticker {ticker} has no last price")
        return float(last)


class RateConverter:
    """Convert fiat amounts into crypto amounts using a :class:`RateOracle`.

    The converter never retries; callers decide whether the surrounding
    operation is worth repeating.
    """

    def __init__(self, oracle: RateOracle, *, timeout: Optional[float] = None) -> None:
        self._oracle = oracle
        self._timeout = timeout

    async def convert(self, fiat_amount: float, coin: Coin) -> Conversion:
        if fiat_amount is None or fiat_amount <= 0:
            raise ValueError("fiat amount must be positive")
        coin = Coin(coin)

        try:
            rate = await asyncio.wait_for(self._oracle.get_rate(coin, FIAT_CURRENCY), self._timeout)
        except RateUnavailable:
            raise
        except asyncio.TimeoutError as exc:
            raise RateUnavailable(f"rate lookup for {coin.value} timed out") from exc
        except Exception as exc:
            raise RateUnavailable(f"rate lookup for {coin.value} failed: {exc}") from exc

        if rate is None or rate <= 0:
            raise RateUnavailable(f"non-positive rate {rate!r} for {coin.value}/{FIAT_CURRENCY}")

        snapshot = RateSnapshot(coin=coin, fiat=FIAT_CURRENCY, rate=float(rate))
        crypto_amount = fiat_amount / snapshot.rate
        logger.info(
            {
                "event": "rate_converted",
                "coin": coin.value,
                "fiat_amount": fiat_amount,
                "rate": snapshot.rate,
                "crypto_amount": crypto_amount,
            }
        )
        return Conversion(crypto_amount=crypto_amount, rate=snapshot.rate, snapshot=snapshot)


def build_rate_oracle(source: str, *, api_key: str, base_url: str, timeout: float) -> RateOracle:
    """Create the oracle selected by ``RATE_SOURCE``."""

    if source == "exchange":
        logger.info({"event": "rate_oracle_selected", "source": "exchange"})
        return ExchangeTickerOracle()
    logger.info({"event": "rate_oracle_selected", "source": "tatum"})
    return TatumRateOracle(api_key=api_key, base_url=base_url, timeout=timeout)
