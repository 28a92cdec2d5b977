from datetime import datetime, timedelta, timezone

import httpx
import pytest

from coinsub.crypto import Coin, RateConverter, RateUnavailable
from coinsub.payments import IssuanceError
from coinsub.subscription import (
    InvalidPlanOrCoin,
    InvalidRequest,
    Plan,
    SubscriptionLifecycle,
    SubscriptionStatus,
    UnknownSubscription,
    add_interval,
)


async def test_create_freezes_rate_and_persists_pending(services):
    record = await services.lifecycle.create("Alice@Example.com ", "monthly", "btc")
    await services.notifier.drain()

    assert record.status is SubscriptionStatus.pending
    assert record.email == "alice@example.com"
    assert record.crypto_amount == pytest.approx(0.0001)
    assert record.conversion_rate == 50000
    assert record.fiat_amount == 5
    assert record.interval == "month"
    assert record.receiving_address == "btc-in-1"
    assert record.start_at == services.clock()
    assert record.expiration_at == datetime(2024, 2, 15, 12, 0, tzinfo=timezone.utc)

    stored = services.repo.get_subscription(record.id)
    assert stored.receiving_address == "btc-in-1"
    assert stored.issuance_info["response"]["address_in"] == "btc-in-1"

    issuance_params = services.issuance.requests[0].url.params
    assert issuance_params["parameters[subscription_id]"] == record.id
    assert issuance_params["parameters[email]"] == "alice@example.com"
    assert services.mailbox.subjects() == ["Your Subscription Confirmation"]
    assert [event.name for event in services.audit_trail.events_named("subscription.created")] == [
        "subscription.created"
    ]


async def test_stored_rate_never_changes_after_creation(services):
    record = await services.lifecycle.create("bob@example.com", "yearly", "eth")
    services.rate_oracle.rates[Coin.eth] = 4000.0

    stored = services.repo.get_subscription(record.id)

    assert stored.conversion_rate == 2500
    assert stored.crypto_amount == pytest.approx(30 / 2500)
    assert stored.interval == "year"


@pytest.mark.parametrize(
    "email, plan, coin, error",
    [
        ("", "monthly", "btc", InvalidRequest),
        (None, "monthly", "btc", InvalidRequest),
        ("carol@example.com", "weekly", "btc", InvalidPlanOrCoin),
        ("carol@example.com", "monthly", "doge", InvalidPlanOrCoin),
        ("carol@example.com", None, "btc", InvalidPlanOrCoin),
    ],
)
async def test_create_rejects_invalid_input(services, email, plan, coin, error):
    with pytest.raises(error):
        await services.lifecycle.create(email, plan, coin)

    assert services.repo.count_subscriptions() == 0
    assert services.rate_oracle.calls == []


async def test_rate_outage_creates_nothing(services):
    async def broken(coin, fiat):
        raise RateUnavailable("oracle offline")

    services.rate_oracle.get_rate = broken

    with pytest.raises(RateUnavailable):
        await services.lifecycle.create("dave@example.com", "monthly", "sol")

    assert services.repo.count_subscriptions() == 0


async def test_issuance_failure_leaves_pending_row(services):
    services.issuance.fail_with = httpx.Response(200, json={"status": "error", "error": "bad wallet"})

    with pytest.raises(IssuanceError) as exc:
        await services.lifecycle.create("erin@example.com", "monthly", "usdc")

    stored = services.repo.get_subscription(exc.value.subscription_id)
    assert stored is not None
    assert stored.status is SubscriptionStatus.pending
    assert stored.receiving_address is None


async def test_mark_pending_payment_only_moves_pending(services):
    record = await services.lifecycle.create("frank@example.com", "monthly", "btc")

    assert services.lifecycle.mark_pending_payment(record.id) is True
    assert services.lifecycle.mark_pending_payment(record.id) is False
    assert services.repo.get_subscription(record.id).status is SubscriptionStatus.pending_payment


async def test_first_payment_runs_from_paid_at_then_renewals_stack(services, clock):
    record = await services.lifecycle.create("gina@example.com", "monthly", "btc")
    paid_at = clock.advance(days=2)

    first = services.lifecycle.activate_or_renew(record.id, paid_at)
    assert first.subscription.status is SubscriptionStatus.active
    assert first.subscription.expiration_at == add_interval(paid_at, 1)
    assert first.renewed is False

    early = clock.advance(days=10)
    second = services.lifecycle.activate_or_renew(record.id, early)
    assert second.renewed is True
    assert second.subscription.expiration_at == add_interval(first.subscription.expiration_at, 1)
    assert second.subscription.last_payment_at == early


async def test_renewal_after_lapse_runs_from_paid_at(services, clock):
    record = await services.lifecycle.create("hank@example.com", "monthly", "btc")
    services.lifecycle.activate_or_renew(record.id, clock())
    late = clock.advance(days=90)

    activation = services.lifecycle.activate_or_renew(record.id, late)

    assert activation.subscription.expiration_at == add_interval(late, 1)


async def test_activation_revives_expired_subscription(services, clock):
    record = await services.lifecycle.create("ivy@example.com", "monthly", "btc")
    services.lifecycle.activate_or_renew(record.id, clock())
    clock.advance(days=40)
    assert await services.lifecycle.sweep_expirations() == 1

    activation = services.lifecycle.activate_or_renew(record.id, clock())

    assert activation.previous_status is SubscriptionStatus.expired
    assert activation.subscription.status is SubscriptionStatus.active


def test_add_interval_clamps_month_end():
    moment = datetime(2024, 1, 31, 8, 30, tzinfo=timezone.utc)

    assert add_interval(moment, 1) == datetime(2024, 2, 29, 8, 30, tzinfo=timezone.utc)
    assert add_interval(moment, 12) == datetime(2025, 1, 31, 8, 30, tzinfo=timezone.utc)
    assert add_interval(datetime(2024, 12, 5, tzinfo=timezone.utc), 1) == datetime(2025, 1, 5, tzinfo=timezone.utc)


async def test_cancel_is_terminal_and_idempotent(services):
    record = await services.lifecycle.create("jack@example.com", "monthly", "btc")

    canceled = await services.lifecycle.cancel(record.id)
    again = await services.lifecycle.cancel(record.id)

    assert canceled.status is SubscriptionStatus.canceled
    assert again.status is SubscriptionStatus.canceled
    assert len(services.audit_trail.events_named("subscription.canceled")) == 1
    with pytest.raises(UnknownSubscription):
        await services.lifecycle.cancel("missing")


async def test_reminder_sweep_sends_once_per_subscription(services, clock):
    record = await services.lifecycle.create("kate@example.com", "monthly", "btc")
    services.lifecycle.activate_or_renew(record.id, clock())
    await services.notifier.drain()
    services.mailbox.messages.clear()

    now = clock.advance(days=27)
    assert await services.lifecycle.sweep_reminders(now, horizon_days=7) == 1
    assert await services.lifecycle.sweep_reminders(now + timedelta(hours=1), horizon_days=7) == 0

    assert services.mailbox.subjects() == ["Your Subscription Expires in 4 Days"]
    assert services.repo.get_subscription(record.id).reminder_sent is True


async def test_reminder_flag_resets_on_renewal(services, clock):
    record = await services.lifecycle.create("liam@example.com", "monthly", "btc")
    services.lifecycle.activate_or_renew(record.id, clock())
    await services.lifecycle.sweep_reminders(clock.advance(days=27))

    services.lifecycle.activate_or_renew(record.id, clock())

    assert services.repo.get_subscription(record.id).reminder_sent is False


async def test_reminder_sweep_isolates_failures(services, clock, monkeypatch):
    first = await services.lifecycle.create("mia@example.com", "monthly", "btc")
    second = await services.lifecycle.create("noah@example.com", "monthly", "btc")
    services.lifecycle.activate_or_renew(first.id, clock())
    services.lifecycle.activate_or_renew(second.id, clock())

    original = services.notifier.send_payment_reminder

    async def flaky(subscription, days_left):
        if subscription.id == first.id:
            raise RuntimeError("mail relay exploded")
        return await original(subscription, days_left)

    monkeypatch.setattr(services.notifier, "send_payment_reminder", flaky)

    assert await services.lifecycle.sweep_reminders(clock.advance(days=27)) == 1
    assert services.repo.get_subscription(first.id).reminder_sent is False
    assert services.repo.get_subscription(second.id).reminder_sent is True


async def test_unconfigured_email_does_not_mark_reminder_sent(services, clock, monkeypatch):
    record = await services.lifecycle.create("olga@example.com", "monthly", "btc")
    services.lifecycle.activate_or_renew(record.id, clock())
    monkeypatch.setattr(services.notifier, "_api_key", "")

    assert await services.lifecycle.sweep_reminders(clock.advance(days=27)) == 0
    assert services.repo.get_subscription(record.id).reminder_sent is False


async def test_expiration_sweep_transitions_exactly_once(services, clock):
    record = await services.lifecycle.create("pete@example.com", "monthly", "btc")
    pending_only = await services.lifecycle.create("quinn@example.com", "monthly", "btc")
    services.lifecycle.activate_or_renew(record.id, clock())
    await services.notifier.drain()
    services.mailbox.messages.clear()

    now = clock.advance(days=32)
    assert await services.lifecycle.sweep_expirations(now) == 1
    assert await services.lifecycle.sweep_expirations(now) == 0

    assert services.repo.get_subscription(record.id).status is SubscriptionStatus.expired
    assert services.repo.get_subscription(pending_only.id).status is SubscriptionStatus.pending
    assert services.mailbox.subjects() == ["Your Subscription Has Expired"]
    assert len(services.audit_trail.events_named("subscription.expired")) == 1


async def test_has_active_subscription(services, clock):
    record = await services.lifecycle.create("rita@example.com", "monthly", "btc")
    assert services.lifecycle.has_active_subscription("rita@example.com") is False

    services.lifecycle.activate_or_renew(record.id, clock())

    assert services.lifecycle.has_active_subscription("RITA@example.com") is True
    assert services.lifecycle.has_active_subscription("rita@example.com", clock() + timedelta(days=40)) is False


def test_non_positive_price_is_rejected_at_construction(services, settings):
    with pytest.raises(ValueError):
        SubscriptionLifecycle(
            services.repo,
            RateConverter(services.rate_oracle),
            services.issuer,
            wallets=settings.wallets,
            callback_url=settings.callback_url,
            prices={Plan.monthly: 0.0, Plan.yearly: 30.0},
        )
