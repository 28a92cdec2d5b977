import asyncio
import inspect
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from urllib.parse import parse_qs

import httpx
import pytest

from coinsub.audit import bootstrap_default_audit_trail
from coinsub.config import Settings
from coinsub.crypto import Coin, RateConverter
from coinsub.notifications import EmailNotifier
from coinsub.payments import AddressIssuer, Unavailable, Verified
from coinsub.payments.issuer import correlation_for, sign_parameters
from coinsub.subscription import CallbackReconciler, Plan, SubscriptionLifecycle, SubscriptionRepository

CALLBACK_SECRET = "test-callback-secret"
ADMIN_TOKEN = "test-admin-token"
START = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Run async test functions without requiring pytest-asyncio plugin."""

    test_func = pyfuncitem.obj
    if inspect.iscoroutinefunction(test_func):
        loop = asyncio.new_event_loop()
        try:
            argnames = pyfuncitem._fixtureinfo.argnames
            loop.run_until_complete(test_func(**{name: pyfuncitem.funcargs[name] for name in argnames}))
        finally:
            loop.close()
        return True
    return None


class FrozenClock:
    """Callable clock the tests move forward by hand."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


class StaticRateOracle:
    def __init__(self, rates=None) -> None:
        self.rates = dict(rates or {Coin.btc: 50000.0, Coin.eth: 2500.0, Coin.sol: 100.0, Coin.usdc: 1.0})
        self.calls = []

    async def get_rate(self, coin, fiat):
        self.calls.append((coin, fiat))
        return self.rates[coin]


class StubVerifier:
    """Balance verifier whose answer is set by the test."""

    def __init__(self) -> None:
        self.outcome = Unavailable(reason="not configured in test")
        self.calls = []

    def answer(self, amount: float) -> None:
        self.outcome = Verified(amount=amount, source="oracle")

    def fail(self, reason: str = "oracle down") -> None:
        self.outcome = Unavailable(reason=reason)

    async def check(self, coin, address):
        self.calls.append((coin, address))
        return self.outcome


class IssuanceService:
    """MockTransport handler standing in for the address issuance API."""

    def __init__(self) -> None:
        self.requests = []
        self.fail_with = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return self.fail_with
        ticker = request.url.path.strip("/").replace("/create", "")
        return httpx.Response(
            200,
            json={
                "status": "success",
                "address_in": f"{ticker.replace('/', '-')}-in-{len(self.requests)}",
                "address_out": request.url.params["address"],
                "callback_url": request.url.params["callback"],
                "minimum_transaction_coin": 0.00008,
            },
        )


class Mailbox:
    """MockTransport handler standing in for the Mailgun API."""

    def __init__(self) -> None:
        self.messages = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        form = {key: values[0] for key, values in parse_qs(request.content.decode("utf-8")).items()}
        self.messages.append(form)
        return httpx.Response(200, json={"id": f"<{len(self.messages)}@mailgun>", "message": "Queued. Thank you."})

    def subjects(self):
        return [message["subject"] for message in self.messages]


def _factory(handler):
    return lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture()
def clock():
    return FrozenClock()


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        database_path=str(tmp_path / "coinsub.db"),
        public_base_url="https://subs.example.com",
        callback_secret=CALLBACK_SECRET,
        mailgun_api_key="key-test",
        mailgun_domain="mg.example.com",
        admin_token=ADMIN_TOKEN,
        create_rate_limit=100,
    )


@pytest.fixture()
def collaborators():
    issuance = IssuanceService()
    mailbox = Mailbox()
    return SimpleNamespace(
        rate_oracle=StaticRateOracle(),
        issuance=issuance,
        issuer=AddressIssuer(secret=CALLBACK_SECRET, http_client_factory=_factory(issuance)),
        verifier=StubVerifier(),
        mailbox=mailbox,
        notifier=EmailNotifier(
            api_key="key-test",
            domain="mg.example.com",
            from_email="billing@example.com",
            http_client_factory=_factory(mailbox),
        ),
    )


@pytest.fixture()
def services(tmp_path, settings, collaborators, clock):
    repo = SubscriptionRepository(tmp_path / "services.db")
    audit_trail = bootstrap_default_audit_trail()
    lifecycle = SubscriptionLifecycle(
        repo,
        RateConverter(collaborators.rate_oracle),
        collaborators.issuer,
        wallets=settings.wallets,
        callback_url=settings.callback_url,
        prices={Plan.monthly: 5.0, Plan.yearly: 30.0},
        notifier=collaborators.notifier,
        audit_trail=audit_trail,
        clock=clock,
    )
    reconciler = CallbackReconciler(
        repo,
        lifecycle,
        collaborators.verifier,
        secret=CALLBACK_SECRET,
        notifier=collaborators.notifier,
        audit_trail=audit_trail,
        clock=clock,
    )
    yield SimpleNamespace(
        repo=repo,
        lifecycle=lifecycle,
        reconciler=reconciler,
        audit_trail=audit_trail,
        clock=clock,
        **vars(collaborators),
    )
    repo.close()


def _callback_body(
    subscription,
    *,
    pending: bool,
    txid_in: str = "tx-in-1",
    value_coin=None,
    secret: str = CALLBACK_SECRET,
    **extra,
) -> dict:
    """Build a notification body the way the issuance service would post it."""

    parameters = sign_parameters(
        correlation_for(
            subscription_id=subscription.id,
            email=subscription.email,
            crypto_amount=subscription.crypto_amount,
            conversion_rate=subscription.conversion_rate,
        ),
        secret,
    )
    body = {
        "pending": 1 if pending else 0,
        "coin": subscription.coin.value,
        "address_in": subscription.receiving_address,
        "txid_in": txid_in,
        "value_coin": subscription.crypto_amount if value_coin is None else value_coin,
        "confirmations": 0 if pending else 1,
        "parameters": parameters,
    }
    body.update(extra)
    return body


@pytest.fixture()
def callback_body():
    return _callback_body
