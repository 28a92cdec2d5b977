"""Audit trail, guardrails, and event bus for subscription state changes."""

from .event_bus import AuditEvent, EventBus
from .guardrails import Guardrail, GuardrailEngine, GuardrailViolation, payment_guardrails
from .service import OPS_UNIT, PAYMENTS_UNIT, SUBSCRIPTION_UNIT, AuditTrail, CUnit, bootstrap_default_audit_trail

__all__ = [
    "AuditEvent",
    "AuditTrail",
    "CUnit",
    "EventBus",
    "Guardrail",
    "GuardrailEngine",
    "GuardrailViolation",
    "OPS_UNIT",
    "PAYMENTS_UNIT",
    "SUBSCRIPTION_UNIT",
    "bootstrap_default_audit_trail",
    "payment_guardrails",
]
