"""Crypto-paid subscriptions: lifecycle, callback reconciliation and HTTP routes."""

from .lifecycle import Activation, SubscriptionLifecycle, add_interval
from .models import InvalidPlanOrCoin, InvalidRequest, Plan, SubscriptionStatus, UnknownSubscription
from .reconciler import CallbackReconciler, MalformedCallback, ReconcileResult
from .repository import PersistenceConflict, SubscriptionRepository

__all__ = [
    "Activation",
    "CallbackReconciler",
    "InvalidPlanOrCoin",
    "InvalidRequest",
    "MalformedCallback",
    "PersistenceConflict",
    "Plan",
    "ReconcileResult",
    "SubscriptionLifecycle",
    "SubscriptionRepository",
    "SubscriptionStatus",
    "UnknownSubscription",
    "add_interval",
]
