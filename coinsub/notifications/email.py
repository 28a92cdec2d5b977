"""Transactional email notifications sent through the Mailgun HTTP API."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Set

import httpx
from tenacity import RetryCallState, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from coinsub.errors import CoinsubError
from coinsub.metrics import record_notification

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from coinsub.subscription.models import PaymentRecord, SubscriptionRecord

logger = logging.getLogger(__name__)


class NotificationError(CoinsubError):
    """Raised when an email could not be delivered."""


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    text: str
    template: str


def _log_retry_attempt(retry_state: RetryCallState) -> None:
    message: Optional[EmailMessage] = None
    if len(retry_state.args) > 1:
        message = retry_state.args[1]
    logger.info(
        {
            "event": "email_retry",
            "template": message.template if message else None,
            "attempt": retry_state.attempt_number,
        }
    )


def _date(value) -> str:
    return value.strftime("%B %d, %Y") if value else "n/a"


class EmailNotifier:
    """Send subscription lifecycle emails.

    Delivery failures surface as :class:`NotificationError`; callers on the
    payment path use :meth:`notify_nowait` so a failed send never affects a
    committed transaction.
    """

    def __init__(
        self,
        *,
        api_key: str,
        domain: str,
        from_email: str,
        reply_to: str = "",
        base_url: str = "https://api.mailgun.net/v3/",
        timeout: float = 10.0,
        monthly_price: float = 5.0,
        yearly_price: float = 30.0,
        http_client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self._api_key = api_key
        self._domain = domain
        self._from_email = from_email
        self._reply_to = reply_to
        self._base_url = base_url.rstrip("/") + "/"
        self._monthly_price = monthly_price
        self._yearly_price = yearly_price
        self._http_client_factory = http_client_factory or (lambda: httpx.AsyncClient(timeout=timeout))
        self._pending: Set[asyncio.Task] = set()

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._domain)

    async def send(self, message: EmailMessage) -> bool:
        """Deliver ``message``; returns ``False`` when email is not configured."""

        if not self.configured or not message.to:
            logger.info({"event": "email_skipped", "template": message.template, "reason": "not_configured"})
            record_notification(message.template, "skipped")
            return False
        try:
            await self._post(message)
        except httpx.HTTPError as exc:
            record_notification(message.template, "failed")
            raise NotificationError(f"failed to send {message.template} email: {exc}") from exc
        record_notification(message.template, "sent")
        logger.info({"event": "email_sent", "template": message.template, "to": message.to})
        return True

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        reraise=True,
        before=_log_retry_attempt,
    )
    async def _post(self, message: EmailMessage) -> None:
        data = {
            "from": self._from_email,
            "to": message.to,
            "subject": message.subject,
            "text": message.text,
            "html": message.text,
        }
        if self._reply_to:
            data["h:Reply-To"] = self._reply_to
        async with self._http_client_factory() as client:
            response = await client.post(
                f"{self._base_url}{self._domain}/messages",
                data=data,
                auth=("api", self._api_key),
            )
            response.raise_for_status()

    def notify_nowait(self, sender: Awaitable[bool]) -> None:
        """Schedule ``sender`` in the background and log (never raise) failures."""

        task = asyncio.ensure_future(sender)
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error({"event": "email_failed", "error": str(exc)})

    async def drain(self) -> None:
        """Wait for scheduled notifications (used on shutdown and in tests)."""

        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def send_subscription_confirmation(self, subscription: "SubscriptionRecord") -> bool:
        text = f"""
Thank you for subscribing!

Subscription Details:
- Plan: {subscription.plan.value}
- Price: ${subscription.fiat_amount:g} per {subscription.interval}
- Amount due: {subscription.crypto_amount:.8f} {subscription.coin.value.upper()}
- Payment address: {subscription.receiving_address or 'Pending'}
- Start Date: {_date(subscription.start_at)}

Your subscription becomes active as soon as the payment is confirmed on-chain.
"""
        return await self.send(
            EmailMessage(
                to=subscription.email,
                subject="Your Subscription Confirmation",
                text=text.strip(),
                template="subscription_confirmation",
            )
        )

    async def send_payment_received(self, subscription: "SubscriptionRecord", payment: "PaymentRecord") -> bool:
        text = f"""
Thank you for your payment!

Payment Details:
- Amount: {payment.claimed_amount:.8f} {payment.coin.value.upper()}
- Transaction ID: {payment.txid_in}
- Date: {_date(payment.paid_at)}

Your subscription has been extended until {_date(subscription.expiration_at)}.
"""
        return await self.send(
            EmailMessage(to=subscription.email, subject="Payment Received", text=text.strip(), template="payment_received")
        )

    async def send_payment_reminder(self, subscription: "SubscriptionRecord", days_left: int) -> bool:
        text = f"""
Your subscription will expire in {days_left} days.

Subscription Details:
- Plan: {subscription.plan.value}
- Expiration Date: {_date(subscription.expiration_at)}

Renewal Options:
- Monthly Plan: ${self._monthly_price:g}/month
- Yearly Plan: ${self._yearly_price:g}/year
"""
        return await self.send(
            EmailMessage(
                to=subscription.email,
                subject=f"Your Subscription Expires in {days_left} Days",
                text=text.strip(),
                template="payment_reminder",
            )
        )

    async def send_subscription_expired(self, subscription: "SubscriptionRecord") -> bool:
        text = f"""
Your subscription has expired.

Subscription Details:
- Plan: {subscription.plan.value}
- Expiration Date: {_date(subscription.expiration_at)}

Renewal Options:
- Monthly Plan: ${self._monthly_price:g}/month
- Yearly Plan: ${self._yearly_price:g}/year
"""
        return await self.send(
            EmailMessage(
                to=subscription.email,
                subject="Your Subscription Has Expired",
                text=text.strip(),
                template="subscription_expired",
            )
        )
