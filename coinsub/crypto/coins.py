"""Supported coins and the per-coin identifiers used by external services."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


class Coin(str, Enum):
    """Coins accepted for subscription payments."""

    btc = "btc"
    eth = "eth"
    sol = "sol"
    usdc = "usdc"


@dataclass(frozen=True)
class CoinProfile:
    """Identifiers for a coin across the issuance, rate and balance services."""

    coin: Coin
    ticker: str
    rate_symbol: str
    balance_path: str
    wallet_env: str
    default_wallet: str
    contract_address: Optional[str] = None
    stablecoin: bool = False


USDC_CONTRACT = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"

COIN_PROFILES: Dict[Coin, CoinProfile] = {
    Coin.btc: CoinProfile(
        coin=Coin.btc,
        ticker="btc",
        rate_symbol="BTC",
        balance_path="bitcoin/address/balance",
        wallet_env="BITCOIN_ADDRESS",
        default_wallet="bc1q254klmlgtanf8xez28gy7r0enpyhk88r2499pt",
    ),
    Coin.eth: CoinProfile(
        coin=Coin.eth,
        ticker="eth",
        rate_symbol="ETH",
        balance_path="ethereum/account/balance",
        wallet_env="ETHEREUM_ADDRESS",
        default_wallet="0x402282c72a2f2b9f059C3b39Fa63932D6AA09f11",
    ),
    Coin.sol: CoinProfile(
        coin=Coin.sol,
        ticker="sol",
        rate_symbol="SOL",
        balance_path="solana/account/balance",
        wallet_env="SOLANA_ADDRESS",
        default_wallet="CsTWZTbDryjcb229RQ9b7wny5qytH9jwoJy6Lu98xpeF",
    ),
    Coin.usdc: CoinProfile(
        coin=Coin.usdc,
        ticker="erc20/usdc",
        rate_symbol="USDC",
        balance_path="ethereum/account/balance",
        wallet_env="USDC_ADDRESS",
        default_wallet="0x402282c72a2f2b9f059C3b39Fa63932D6AA09f11",
        contract_address=USDC_CONTRACT,
        stablecoin=True,
    ),
}


def parse_coin(value: str) -> Optional[Coin]:
    """Return the :class:`Coin` for ``value`` or ``None`` when unsupported."""

    if not value:
        return None
    normalised = value.strip().lower()
    # The issuance service reports token coins as "erc20_usdc".
    normalised = normalised.replace("erc20_", "").replace("erc20/", "")
    try:
        return Coin(normalised)
    except ValueError:
        return None


def profile_for(coin: Coin) -> CoinProfile:
    return COIN_PROFILES[coin]
