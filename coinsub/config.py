"""Runtime configuration loaded from the environment (and ``.env`` files)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

from coinsub.crypto.coins import COIN_PROFILES, Coin

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning({"event": "invalid_config", "key": name, "value": value, "default": default})
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


def _env_price(name: str, default: float) -> float:
    value = _env_float(name, default)
    if not value > 0:
        logger.warning({"event": "invalid_config", "key": name, "value": value, "default": default})
        return default
    return value


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


@dataclass(frozen=True)
class Settings:
    """Immutable settings snapshot used to wire the application."""

    database_path: str = "data/coinsub.db"
    public_base_url: str = "http://localhost:8000"
    monthly_price_usd: float = 5.0
    yearly_price_usd: float = 30.0
    wallets: Dict[Coin, str] = field(
        default_factory=lambda: {coin: profile.default_wallet for coin, profile in COIN_PROFILES.items()}
    )
    cryptapi_base_url: str = "https://api.cryptapi.io/"
    cryptapi_confirmations: int = 1
    tatum_api_key: str = ""
    tatum_base_url: str = "https://api.tatum.io/v3/"
    rate_source: str = "tatum"
    callback_secret: str = ""
    mailgun_api_key: str = ""
    mailgun_domain: str = ""
    mailgun_base_url: str = "https://api.mailgun.net/v3/"
    from_email: str = "hello@convert2doc.com"
    reply_to_email: str = "help@convert2doc.com"
    http_timeout_seconds: float = 10.0
    reminder_horizon_days: int = 7
    create_rate_limit: int = 20
    create_rate_window_seconds: float = 60.0
    admin_token: Optional[str] = None
    log_level: str = "INFO"

    @property
    def callback_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/api/1/payment-callback"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        wallets = {
            coin: _env_str(profile.wallet_env) or profile.default_wallet
            for coin, profile in COIN_PROFILES.items()
        }
        return cls(
            database_path=_env_str("DATABASE_PATH", cls.database_path),
            public_base_url=_env_str("PUBLIC_BASE_URL", cls.public_base_url),
            monthly_price_usd=_env_price("MONTHLY_SUBSCRIPTION_PRICE", cls.monthly_price_usd),
            yearly_price_usd=_env_price("YEARLY_SUBSCRIPTION_PRICE", cls.yearly_price_usd),
            wallets=wallets,
            cryptapi_base_url=_env_str("CRYPTAPI_BASE_URL", cls.cryptapi_base_url),
            cryptapi_confirmations=_env_int("CRYPTAPI_CONFIRMATIONS", cls.cryptapi_confirmations),
            tatum_api_key=_env_str("TATUM_API_KEY"),
            tatum_base_url=_env_str("TATUM_BASE_URL", cls.tatum_base_url),
            rate_source=_env_str("RATE_SOURCE", cls.rate_source).lower(),
            callback_secret=_env_str("CALLBACK_SECRET"),
            mailgun_api_key=_env_str("MAILGUN_API_KEY"),
            mailgun_domain=_env_str("MAILGUN_DOMAIN"),
            mailgun_base_url=_env_str("MAILGUN_BASE_URL", cls.mailgun_base_url),
            from_email=_env_str("FROM_EMAIL", cls.from_email),
            reply_to_email=_env_str("REPLY_TO_EMAIL", cls.reply_to_email),
            http_timeout_seconds=_env_float("HTTP_TIMEOUT_SECONDS", cls.http_timeout_seconds),
            reminder_horizon_days=_env_int("REMINDER_HORIZON_DAYS", cls.reminder_horizon_days),
            create_rate_limit=_env_int("CREATE_RATE_LIMIT", cls.create_rate_limit),
            create_rate_window_seconds=_env_float("CREATE_RATE_WINDOW_SECONDS", cls.create_rate_window_seconds),
            admin_token=_env_str("ADMIN_TOKEN") or None,
            log_level=_env_str("LOG_LEVEL", cls.log_level).upper(),
        )
