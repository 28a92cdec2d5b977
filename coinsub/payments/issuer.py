"""Issue one-time receiving addresses through the CryptAPI-style issuance service."""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx

from coinsub.crypto.coins import Coin, profile_for
from coinsub.errors import CoinsubError

logger = logging.getLogger(__name__)

SIGNATURE_PARAM = "sig"


class IssuanceError(CoinsubError):
    """Raised when the issuance service does not hand out a usable address."""

    def __init__(self, message: str, *, subscription_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.subscription_id = subscription_id


@dataclass(frozen=True)
class IssuedAddress:
    """A receiving address bound to a set of signed correlation parameters."""

    address: str
    raw: Mapping[str, object]
    parameters: Dict[str, str]
    callback_url: str


def _canonical(parameters: Mapping[str, str]) -> bytes:
    items = sorted((key, str(value)) for key, value in parameters.items() if key != SIGNATURE_PARAM)
    return "&".join(f"{key}={value}" for key, value in items).encode("utf-8")


def sign_parameters(parameters: Mapping[str, object], secret: str) -> Dict[str, str]:
    """Return ``parameters`` stringified and, when ``secret`` is set, signed."""

    signed = {key: str(value) for key, value in parameters.items() if value is not None}
    signed.pop(SIGNATURE_PARAM, None)
    if secret:
        signed[SIGNATURE_PARAM] = hmac.new(secret.encode("utf-8"), _canonical(signed), hashlib.sha256).hexdigest()
    return signed


def verify_parameters(parameters: Mapping[str, object], secret: str) -> bool:
    """Check the correlation signature echoed back on a callback.

    Without a configured secret nothing was signed, so everything passes.
    """

    if not secret:
        return True
    signature = parameters.get(SIGNATURE_PARAM)
    if not signature:
        return False
    stringified = {key: str(value) for key, value in parameters.items()}
    computed = hmac.new(secret.encode("utf-8"), _canonical(stringified), hashlib.sha256).hexdigest()
    return hmac.compare_digest(str(signature), computed)


def _append_query(url: str, parameters: Mapping[str, str]) -> str:
    parts = urlsplit(url)
    query = "&".join(part for part in (parts.query, urlencode(parameters)) if part)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


class AddressIssuer:
    """Thin adapter over the address issuance service.

    The issuance service echoes the query string of the callback URL on every
    notification, so the signed correlation is embedded there. It is the only
    channel binding a later callback to its subscription.
    """

    def __init__(
        self,
        *,
        base_url: str = "https://api.cryptapi.io/",
        secret: str = "",
        confirmations: int = 1,
        timeout: float = 10.0,
        http_client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/") + "/"
        self._secret = secret
        self._confirmations = confirmations
        self._http_client_factory = http_client_factory or (lambda: httpx.AsyncClient(timeout=timeout))

    @property
    def secret(self) -> str:
        return self._secret

    async def issue_address(
        self,
        coin: Coin,
        destination_wallet: str,
        callback_url: str,
        correlation: Mapping[str, object],
    ) -> IssuedAddress:
        if not destination_wallet:
            raise IssuanceError(f"no destination wallet configured for {coin}")

        parameters = sign_parameters(correlation, self._secret)
        callback = _append_query(callback_url, parameters)
        query: Dict[str, str] = {
            "address": destination_wallet,
            "callback": callback,
            "pending": "1",
            "confirmations": str(self._confirmations),
            "json": "1",
        }
        for key, value in parameters.items():
            query[f"parameters[{key}]"] = value

        url = f"{self._base_url}{profile_for(coin).ticker}/create/"
        try:
            async with self._http_client_factory() as client:
                response = await client.get(url, params=query)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            logger.exception(
                "Address issuance request failed",
                extra={"coin": Coin(coin).value, "subscription_id": parameters.get("subscription_id")},
            )
            raise IssuanceError(f"issuance request failed: {exc}") from exc
        except ValueError as exc:
            raise IssuanceError("issuance response is not JSON") from exc

        if not isinstance(data, dict):
            raise IssuanceError("issuance response has an unexpected shape")
        status = data.get("status")
        if status is not None and status != "success":
            raise IssuanceError(f"issuance service returned status={status!r}: {data.get('error')}")
        address = data.get("address_in")
        if not isinstance(address, str) or not address.strip():
            raise IssuanceError("issuance response is missing address_in")

        logger.info(
            {
                "event": "address_issued",
                "coin": Coin(coin).value,
                "address": address,
                "subscription_id": parameters.get("subscription_id"),
            }
        )
        return IssuedAddress(address=address.strip(), raw=data, parameters=parameters, callback_url=callback)


def correlation_for(
    *,
    subscription_id: str,
    email: str,
    crypto_amount: float,
    conversion_rate: float,
    extra: Optional[Mapping[str, object]] = None,
) -> Dict[str, object]:
    """Build the correlation bag threaded through the issuance service."""

    correlation: Dict[str, object] = {
        "subscription_id": subscription_id,
        "email": email,
        "crypto_amount": crypto_amount,
        "conversion_rate": conversion_rate,
    }
    if extra:
        correlation.update(extra)
    return correlation
