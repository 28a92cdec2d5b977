"""Data models for crypto-paid subscriptions and their payments."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from coinsub.crypto.coins import Coin
from coinsub.errors import CoinsubError

CORRELATION_KEYS = ("subscription_id", "email", "crypto_amount", "conversion_rate", "sig")


class InvalidRequest(CoinsubError, ValueError):
    """Raised when a caller supplies unusable input."""


class InvalidPlanOrCoin(InvalidRequest):
    """Raised for an unknown plan or an unsupported coin."""


class UnknownSubscription(CoinsubError, KeyError):
    """Raised when a referenced subscription does not exist."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(subscription_id)
        self.subscription_id = subscription_id

    def __str__(self) -> str:
        return f"unknown subscription {self.subscription_id}"


class Plan(str, Enum):
    monthly = "monthly"
    yearly = "yearly"

    @property
    def interval(self) -> str:
        return "month" if self is Plan.monthly else "year"

    @property
    def months(self) -> int:
        return 1 if self is Plan.monthly else 12


class SubscriptionStatus(str, Enum):
    """Lifecycle status for a subscription."""

    pending = "pending"
    pending_payment = "pending_payment"
    active = "active"
    expired = "expired"
    canceled = "canceled"

    @property
    def terminal(self) -> bool:
        return self in (SubscriptionStatus.expired, SubscriptionStatus.canceled)


class PaymentStatus(str, Enum):
    pending = "pending"
    completed = "completed"


class VerificationSource(str, Enum):
    oracle = "oracle"
    fallback = "fallback"


@dataclass(slots=True)
class SubscriptionRecord:
    """Database representation of a subscription."""

    id: str
    email: str
    plan: Plan
    fiat_amount: float
    fiat_currency: str
    coin: Coin
    crypto_amount: float
    conversion_rate: float
    interval: str
    status: SubscriptionStatus
    receiving_address: Optional[str]
    issuance_info: Optional[Dict[str, Any]]
    start_at: datetime
    expiration_at: datetime
    last_payment_at: Optional[datetime]
    reminder_sent: bool
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class PaymentRecord:
    """Database representation of a payment observed for a subscription."""

    id: str
    subscription_id: str
    coin: Coin
    txid_in: str
    txid_out: Optional[str]
    claimed_amount: float
    confirmed_claimed_amount: Optional[float]
    verified_amount: Optional[float]
    forwarded_amount: Optional[float]
    fee: Optional[float]
    confirmations: int
    status: PaymentStatus
    verification_source: VerificationSource
    review_flag: Optional[str]
    raw_payload: Dict[str, Any]
    paid_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class SubscriptionCreate(BaseModel):
    """Request payload for creating a subscription."""

    email: Optional[str] = Field(None, description="Subscriber email address")
    plan: Optional[str] = Field(None, description="Billing plan: monthly or yearly")
    coin: Optional[str] = Field(None, description="Settlement coin: btc, eth, sol or usdc")

    @field_validator("email")
    @classmethod
    def normalise_email(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().lower() if value else value

    @field_validator("plan", "coin")
    @classmethod
    def lowercase(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().lower() if value else value


class SubscriptionCreateResponse(BaseModel):
    """Response payload for subscription creation."""

    subscription_id: str
    crypto_amount: float
    coin: Coin
    receiving_address: str
    fiat_amount: float
    fiat_currency: str
    conversion_rate: float
    status: SubscriptionStatus
    expiration_date: datetime


class CallbackNotification(BaseModel):
    """Notification sent by the issuance service when funds are observed."""

    model_config = ConfigDict(extra="allow")

    pending: Optional[bool] = None
    status_code: Optional[int] = None
    coin: Optional[str] = None
    uuid: Optional[str] = None
    address_in: Optional[str] = None
    address_out: Optional[str] = None
    txid_in: Optional[str] = None
    txid_out: Optional[str] = None
    confirmations: Optional[int] = None
    value_coin: Optional[float] = None
    value_forwarded_coin: Optional[float] = None
    fee_coin: Optional[float] = None
    price: Optional[float] = None
    parameters: Dict[str, str] = Field(default_factory=dict)
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    @field_validator("parameters", mode="before")
    @classmethod
    def stringify_parameters(cls, value: Any) -> Dict[str, str]:
        if not value:
            return {}
        if not isinstance(value, Mapping):
            raise ValueError("parameters must be an object")
        return {str(key): str(item) for key, item in value.items() if item is not None}

    @classmethod
    def from_payload(
        cls,
        body: Mapping[str, Any],
        query: Optional[Mapping[str, Any]] = None,
    ) -> "CallbackNotification":
        """Merge body and query string into a notification.

        Correlation keys may arrive nested under ``parameters``, as
        ``parameters[key]`` form fields, or flattened into the callback query
        string; nested values win.
        """

        merged: Dict[str, Any] = dict(query or {})
        merged.update(body)
        parameters: Dict[str, Any] = {key: merged[key] for key in CORRELATION_KEYS if merged.get(key) is not None}
        for key in [key for key in merged if key.startswith("parameters[") and key.endswith("]")]:
            parameters[key[len("parameters["):-1]] = merged.pop(key)
        nested = merged.get("parameters")
        if isinstance(nested, Mapping):
            parameters.update(nested)
        merged["parameters"] = parameters
        for key in CORRELATION_KEYS:
            merged.pop(key, None)
        notification = cls.model_validate(merged)
        notification.raw = dict(merged)
        return notification


class SubscriptionStatusQuery(BaseModel):
    subscription_id: Optional[str] = None
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def normalise_email(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().lower() if value else value


class PaymentView(BaseModel):
    id: str
    txid_in: str
    status: PaymentStatus
    claimed_amount: float
    verified_amount: Optional[float]
    verification_source: VerificationSource
    confirmations: int
    review_flag: Optional[str]
    paid_at: Optional[datetime]


class SubscriptionView(BaseModel):
    """Serialized representation for status queries."""

    id: str
    email: str
    plan: Plan
    status: SubscriptionStatus
    coin: Coin
    crypto_amount: float
    fiat_amount: float
    fiat_currency: str
    conversion_rate: float
    interval: str
    receiving_address: Optional[str]
    start_date: datetime
    expiration_date: datetime
    last_payment_date: Optional[datetime]
    is_active: bool
    payments: List[PaymentView] = Field(default_factory=list)


class SubscriptionStatusResponse(BaseModel):
    has_subscription: bool
    payment_verified: bool
    subscription: Optional[SubscriptionView] = None
