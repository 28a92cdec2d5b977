"""Guardrails raised on suspicious payment and callback activity."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from .event_bus import AuditEvent, EventBus


@dataclass(frozen=True)
class GuardrailViolation(AuditEvent):
    """Audit event emitted when a guardrail is breached."""

    guardrail_id: str = ""
    reason: str = ""


@dataclass
class Guardrail:
    """Declarative guardrail definition."""

    id: str
    description: str
    severity: str
    predicate: Callable[[AuditEvent], bool]
    reason: Callable[[AuditEvent], str] = field(default=lambda event: "")

    def evaluate(self, event: AuditEvent) -> Optional[GuardrailViolation]:
        if not self.predicate(event):
            return None
        return GuardrailViolation(
            name="guardrail.violation",
            c_unit=event.c_unit,
            actor=event.actor,
            subject=event.subject,
            severity=self.severity,
            payload={"event": event.name, **event.payload},
            guardrail_id=self.id,
            reason=self.reason(event),
        )


class GuardrailEngine:
    """Evaluates guardrails against published audit events."""

    def __init__(self, guardrails: Iterable[Guardrail], bus: EventBus) -> None:
        self._guardrails: List[Guardrail] = list(guardrails)
        self._bus = bus
        self._violations: List[GuardrailViolation] = []

    @property
    def violations(self) -> List[GuardrailViolation]:
        return list(self._violations)

    async def handle_event(self, event: AuditEvent) -> None:
        if isinstance(event, GuardrailViolation):
            return

        for guardrail in self._guardrails:
            violation = guardrail.evaluate(event)
            if violation is not None:
                self._violations.append(violation)
                await self._bus.publish(violation)


def payment_guardrails() -> List[Guardrail]:
    """Guardrails covering the payment reconciliation path."""

    return [
        Guardrail(
            id="payment-review-flag",
            description="Payments whose amounts disagree must be reviewed by an operator",
            severity="high",
            predicate=lambda event: event.name == "payment.flagged",
            reason=lambda event: str(event.payload.get("review_flag", "unknown")),
        ),
        Guardrail(
            id="payment-unverified",
            description="Payments settled on the self-reported amount need a later balance check",
            severity="medium",
            predicate=lambda event: event.name == "payment.verification_fallback",
            reason=lambda event: str(event.payload.get("reason", "oracle unavailable")),
        ),
        Guardrail(
            id="callback-rejected",
            description="Callbacks that cannot be matched to a subscription",
            severity="high",
            predicate=lambda event: event.name == "callback.rejected",
            reason=lambda event: str(event.payload.get("error", "rejected")),
        ),
    ]
