"""Independent balance verification against a blockchain balance oracle."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Literal, Mapping, Optional, Union

import httpx

from coinsub.crypto.coins import Coin, profile_for
from coinsub.errors import CoinsubError

logger = logging.getLogger(__name__)


class VerificationUnavailable(CoinsubError):
    """Raised when the balance oracle cannot answer.

    This is not evidence of non-payment.
    """


@dataclass(frozen=True)
class LedgerBalance:
    """Oracle shape reporting separate incoming and outgoing totals."""

    incoming: float
    outgoing: float

    @property
    def net(self) -> float:
        return self.incoming - self.outgoing


@dataclass(frozen=True)
class AccountBalance:
    """Oracle shape reporting a single, already-net balance."""

    balance: float

    @property
    def net(self) -> float:
        return self.balance


BalanceReport = Union[LedgerBalance, AccountBalance]


@dataclass(frozen=True)
class Verified:
    """The oracle (or the fallback policy) produced an amount."""

    amount: float
    source: Literal["oracle", "fallback"] = "oracle"


@dataclass(frozen=True)
class Unavailable:
    """The oracle could not be consulted."""

    reason: str


VerificationOutcome = Union[Verified, Unavailable]


def _as_float(value: object, field_name: str) -> float:
    if value in (None, ""):
        return 0.0
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise VerificationUnavailable(f"balance field {field_name!r} is not numeric: {value!r}") from exc


def parse_balance(coin: Coin, data: Mapping[str, object]) -> BalanceReport:
    """Normalise a raw oracle response into a :class:`BalanceReport`."""

    if not isinstance(data, Mapping):
        raise VerificationUnavailable(f"unexpected balance response for {coin.value}")
    if "incoming" in data or "outgoing" in data:
        return LedgerBalance(
            incoming=_as_float(data.get("incoming"), "incoming"),
            outgoing=_as_float(data.get("outgoing"), "outgoing"),
        )
    if "balance" in data:
        return AccountBalance(balance=_as_float(data.get("balance"), "balance"))
    raise VerificationUnavailable(f"balance response for {coin.value} has no known fields")


class BalanceVerifier:
    """Query the Tatum balance endpoints and return the confirmed incoming amount."""

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
        self._timeout = timeout
        self._http_client_factory = http_client_factory or (lambda: httpx.AsyncClient(timeout=timeout))

    async def verify(self, coin: Coin, address: str) -> Verified:
        """Return the verified amount or raise :class:`VerificationUnavailable`."""

        coin = Coin(coin)
        if not address:
            raise VerificationUnavailable("no address to verify")
        report = await self._fetch(coin, address)
        amount = max(0.0, report.net)
        logger.info(
            {
                "event": "balance_verified",
                "coin": coin.value,
                "address": address,
                "shape": type(report).__name__,
                "amount": amount,
            }
        )
        return Verified(amount=amount, source="oracle")

    async def check(self, coin: Coin, address: str) -> VerificationOutcome:
        """Like :meth:`verify` but returns :class:`Unavailable` instead of raising."""

        try:
            return await self.verify(coin, address)
        except VerificationUnavailable as exc:
            return Unavailable(reason=str(exc))

    async def _fetch(self, coin: Coin, address: str) -> BalanceReport:
        if not self._api_key:
            raise VerificationUnavailable("TATUM_API_KEY is not configured")
        profile = profile_for(coin)
        url = f"{self._base_url}{profile.balance_path}/{address}"
        params: Optional[dict[str, str]] = None
        if profile.contract_address:
            params = {"contractAddress": profile.contract_address}
        try:
            async with self._http_client_factory() as client:
                response = await asyncio.wait_for(
                    client.get(url, params=params, headers={"x-api-key": self._api_key}),
                    self._timeout,
                )
                response.raise_for_status()
                data = response.json()
        except asyncio.TimeoutError as exc:
            raise VerificationUnavailable(f"balance lookup for {coin.value} timed out") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise VerificationUnavailable(f"balance lookup for {coin.value} failed: {exc}") from exc
        return parse_balance(coin, data)
