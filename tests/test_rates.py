import asyncio

import httpx
import pytest

from coinsub.crypto import Coin, ExchangeTickerOracle, RateConverter, RateUnavailable, TatumRateOracle, parse_coin


def _tatum(handler):
    return TatumRateOracle(
        api_key="tatum-key",
        http_client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


async def test_converts_fiat_to_crypto_with_tatum_rate():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"value": "50000", "id": "BTC", "basePair": "USD"})

    conversion = await RateConverter(_tatum(handler)).convert(5, Coin.btc)

    assert conversion.crypto_amount == pytest.approx(0.0001)
    assert conversion.rate == 50000
    assert conversion.snapshot.coin is Coin.btc
    assert conversion.snapshot.fiat == "USD"
    assert seen[0].url.path == "/v3/tatum/rate/BTC"
    assert seen[0].url.params["basePair"] == "USD"
    assert seen[0].headers["x-api-key"] == "tatum-key"


@pytest.mark.parametrize("value", ["0", "-3", "", "not-a-number"])
async def test_unusable_rate_is_unavailable(value):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"value": value})

    with pytest.raises(RateUnavailable):
        await RateConverter(_tatum(handler)).convert(5, Coin.eth)


async def test_oracle_http_error_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, json={"message": "bad gateway"})

    with pytest.raises(RateUnavailable):
        await RateConverter(_tatum(handler)).convert(30, Coin.sol)


async def test_slow_oracle_times_out_as_unavailable():
    class SlowOracle:
        async def get_rate(self, coin, fiat):
            await asyncio.sleep(1)
            return 100.0

    with pytest.raises(RateUnavailable, match="timed out"):
        await RateConverter(SlowOracle(), timeout=0.01).convert(5, Coin.sol)


async def test_missing_api_key_is_unavailable():
    with pytest.raises(RateUnavailable):
        await TatumRateOracle(api_key="").get_rate(Coin.btc, "USD")


async def test_rejects_non_positive_fiat_amount():
    class NeverCalled:
        async def get_rate(self, coin, fiat):
            raise AssertionError("oracle should not be consulted")

    with pytest.raises(ValueError):
        await RateConverter(NeverCalled()).convert(0, Coin.btc)


async def test_exchange_ticker_oracle_uses_last_price():
    class FakeExchange:
        def __init__(self):
            self.symbols = []

        def fetch_ticker(self, symbol):
            self.symbols.append(symbol)
            return {"symbol": symbol, "last": 2500.5}

    exchange = FakeExchange()
    oracle = ExchangeTickerOracle(exchange)

    assert await oracle.get_rate(Coin.eth, "USD") == pytest.approx(2500.5)
    assert await oracle.get_rate(Coin.usdc, "USD") == 1.0
    assert exchange.symbols == ["ETH/USDT"]


def test_parse_coin_accepts_token_prefix():
    assert parse_coin("BTC") is Coin.btc
    assert parse_coin("erc20_usdc") is Coin.usdc
    assert parse_coin("doge") is None
    assert parse_coin("") is None
