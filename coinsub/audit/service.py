"""High-level audit trail orchestration."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Iterable, List

from coinsub.metrics import record_audit_event, record_guardrail_violation
from coinsub.ops import alerts

from .event_bus import AuditEvent, AuditEventHandler, EventBus
from .guardrails import Guardrail, GuardrailEngine, GuardrailViolation, payment_guardrails

logger = logging.getLogger(__name__)

SUBSCRIPTION_UNIT = "core.subscription"
PAYMENTS_UNIT = "core.payments"
OPS_UNIT = "core.ops"


@dataclass(frozen=True)
class CUnit:
    """A controllable unit that owns a family of audit events."""

    id: str
    name: str
    description: str
    owners: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()


class AuditTrail:
    """Facade around the audit event bus, guardrails, and sinks."""

    def __init__(
        self,
        *,
        c_units: Iterable[CUnit],
        guardrails: Iterable[Guardrail] | None = None,
        history_limit: int = 500,
    ) -> None:
        self._bus = EventBus()
        self._c_units: Dict[str, CUnit] = {unit.id: unit for unit in c_units}
        self._history: Deque[AuditEvent] = deque(maxlen=history_limit)
        self._guardrail_engine = GuardrailEngine(list(guardrails or ()), self._bus)
        self._bus.subscribe(self._history.append)
        self._bus.subscribe(self._guardrail_engine.handle_event)
        self._bus.subscribe(self._log_sink)
        self._bus.subscribe(self._metrics_sink)

    @property
    def c_units(self) -> Dict[str, CUnit]:
        return dict(self._c_units)

    @property
    def history(self) -> List[AuditEvent]:
        return list(self._history)

    @property
    def violations(self) -> List[GuardrailViolation]:
        return self._guardrail_engine.violations

    def events_named(self, name: str) -> List[AuditEvent]:
        return [event for event in self._history if event.name == name]

    async def emit(self, event: AuditEvent) -> None:
        if event.c_unit not in self._c_units:
            raise ValueError(f"Unknown C-Unit: {event.c_unit}")
        await self._bus.publish(event)

    def subscribe(self, handler: AuditEventHandler) -> None:
        self._bus.subscribe(handler)

    @staticmethod
    def _log_sink(event: AuditEvent) -> None:
        if isinstance(event, GuardrailViolation):
            logger.warning(
                {
                    "event": "guardrail_violation",
                    "guardrail": event.guardrail_id,
                    "subject": event.subject,
                    "reason": event.reason,
                }
            )
        else:
            logger.info({"event": event.name, "c_unit": event.c_unit, "subject": event.subject, **event.payload})

    @staticmethod
    def _metrics_sink(event: AuditEvent) -> None:
        if isinstance(event, GuardrailViolation):
            record_guardrail_violation(event.guardrail_id, event.severity)
        record_audit_event(event.c_unit, event.severity)


def bootstrap_default_audit_trail() -> AuditTrail:
    """Create the audit trail wired into the FastAPI app."""

    default_c_units = [
        CUnit(
            id=SUBSCRIPTION_UNIT,
            name="Subscriptions",
            description="Subscription creation, activation, renewal and expiry",
            owners=("billing",),
        ),
        CUnit(
            id=PAYMENTS_UNIT,
            name="Payments",
            description="Payment callbacks and on-chain verification",
            owners=("billing", "ops"),
        ),
        CUnit(
            id=OPS_UNIT,
            name="Operations",
            description="Scheduled sweeps and administrative actions",
            owners=("ops",),
        ),
    ]

    trail = AuditTrail(c_units=default_c_units, guardrails=payment_guardrails())
    trail.subscribe(_alert_sink)
    return trail


async def _alert_sink(event: AuditEvent) -> None:
    if not isinstance(event, GuardrailViolation):
        return
    if event.severity not in {"high", "critical"}:
        return

    payload = {
        "guardrail_id": event.guardrail_id,
        "reason": event.reason,
        "event": event.payload.get("event"),
        "subject": event.subject,
    }
    try:
        await asyncio.to_thread(alerts.send_alert, "guardrail_violation", payload)
    except Exception:
        logger.exception("Failed to send guardrail alert", extra={"guardrail": event.guardrail_id})
