import pytest

from coinsub.config import Settings


@pytest.fixture(autouse=True)
def clear_env(monkeypatch):
    for name in ("MONTHLY_SUBSCRIPTION_PRICE", "YEARLY_SUBSCRIPTION_PRICE", "ADMIN_TOKEN", "PUBLIC_BASE_URL"):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.mark.parametrize("value", ["-5", "0", "nan", "five"])
def test_unusable_prices_fall_back_to_defaults(monkeypatch, caplog, value):
    monkeypatch.setenv("MONTHLY_SUBSCRIPTION_PRICE", value)
    monkeypatch.setenv("YEARLY_SUBSCRIPTION_PRICE", value)

    settings = Settings.from_env()

    assert settings.monthly_price_usd == 5.0
    assert settings.yearly_price_usd == 30.0
    assert any(
        isinstance(record.msg, dict) and record.msg.get("key") == "MONTHLY_SUBSCRIPTION_PRICE"
        for record in caplog.records
    )


def test_prices_and_callback_url_from_env(monkeypatch):
    monkeypatch.setenv("MONTHLY_SUBSCRIPTION_PRICE", "7.5")
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://billing.example.com/")
    monkeypatch.setenv("ADMIN_TOKEN", " secret ")

    settings = Settings.from_env()

    assert settings.monthly_price_usd == 7.5
    assert settings.callback_url == "https://billing.example.com/api/1/payment-callback"
    assert settings.admin_token == "secret"
