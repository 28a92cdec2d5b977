"""FastAPI application factory for the crypto subscription service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from coinsub import __version__
from coinsub.audit import bootstrap_default_audit_trail
from coinsub.config import Settings
from coinsub.crypto import RateConverter, RateOracle
from coinsub.crypto.rates import build_rate_oracle
from coinsub.metrics import record_http_request, set_app_info
from coinsub.notifications import EmailNotifier
from coinsub.payments import AddressIssuer, BalanceVerifier
from coinsub.security import RateLimiter
from coinsub.subscription import CallbackReconciler, Plan, SubscriptionLifecycle, SubscriptionRepository
from coinsub.subscription.lifecycle import utcnow
from coinsub.subscription.routes import internal_router
from coinsub.subscription.routes import router as subscription_router

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format="%(levelname)s: %(message)s")


def create_app(
    settings: Optional[Settings] = None,
    *,
    rate_oracle: Optional[RateOracle] = None,
    issuer: Optional[AddressIssuer] = None,
    verifier: Optional[BalanceVerifier] = None,
    notifier: Optional[EmailNotifier] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Build the application; collaborators are constructed on startup and closed on shutdown.

    Any collaborator passed in replaces the one built from ``settings``.
    """

    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        repo = SubscriptionRepository(settings.database_path)
        audit_trail = bootstrap_default_audit_trail()
        converter = RateConverter(
            rate_oracle
            or build_rate_oracle(
                settings.rate_source,
                api_key=settings.tatum_api_key,
                base_url=settings.tatum_base_url,
                timeout=settings.http_timeout_seconds,
            ),
            timeout=settings.http_timeout_seconds,
        )
        address_issuer = issuer or AddressIssuer(
            base_url=settings.cryptapi_base_url,
            secret=settings.callback_secret,
            confirmations=settings.cryptapi_confirmations,
            timeout=settings.http_timeout_seconds,
        )
        balance_verifier = verifier or BalanceVerifier(
            api_key=settings.tatum_api_key,
            base_url=settings.tatum_base_url,
            timeout=settings.http_timeout_seconds,
        )
        email_notifier = notifier or EmailNotifier(
            api_key=settings.mailgun_api_key,
            domain=settings.mailgun_domain,
            from_email=settings.from_email,
            reply_to=settings.reply_to_email,
            base_url=settings.mailgun_base_url,
            timeout=settings.http_timeout_seconds,
            monthly_price=settings.monthly_price_usd,
            yearly_price=settings.yearly_price_usd,
        )
        lifecycle = SubscriptionLifecycle(
            repo,
            converter,
            address_issuer,
            wallets=settings.wallets,
            callback_url=settings.callback_url,
            prices={Plan.monthly: settings.monthly_price_usd, Plan.yearly: settings.yearly_price_usd},
            notifier=email_notifier,
            audit_trail=audit_trail,
            clock=clock,
        )
        reconciler = CallbackReconciler(
            repo,
            lifecycle,
            balance_verifier,
            secret=address_issuer.secret,
            notifier=email_notifier,
            audit_trail=audit_trail,
            clock=clock,
        )

        app.state.subscription_repo = repo
        app.state.audit_trail = audit_trail
        app.state.balance_verifier = balance_verifier
        app.state.notifier = email_notifier
        app.state.lifecycle = lifecycle
        app.state.reconciler = reconciler
        app.state.create_rate_limiter = RateLimiter(
            limit=settings.create_rate_limit,
            window_seconds=settings.create_rate_window_seconds,
        )
        lifecycle.refresh_active_gauge()
        logger.info({"event": "startup", "database": settings.database_path, "rate_source": settings.rate_source})
        try:
            yield
        finally:
            await email_notifier.drain()
            repo.close()
            logger.info({"event": "shutdown"})

    app = FastAPI(title="Coinsub Subscription API", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    set_app_info(__version__)

    @app.middleware("http")
    async def count_requests(request: Request, call_next):
        response = await call_next(request)
        route = request.scope.get("route")
        record_http_request(getattr(route, "path", "unmatched"))
        return response

    @app.get("/health")
    async def health(request: Request) -> dict[str, object]:
        repo: Optional[SubscriptionRepository] = getattr(request.app.state, "subscription_repo", None)
        return {
            "status": "ok",
            "version": __version__,
            "subscriptions": repo.count_subscriptions() if repo is not None else 0,
        }

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(subscription_router)
    app.include_router(internal_router)
    return app


_settings = Settings.from_env()
configure_logging(_settings.log_level)
app = create_app(_settings)
