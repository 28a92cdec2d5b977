"""Publish/subscribe bus for subscription and payment audit events."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)

AuditEventHandler = Callable[["AuditEvent"], Optional[Awaitable[None]]]


@dataclass(frozen=True)
class AuditEvent:
    """Envelope describing a state change published to the bus."""

    name: str
    c_unit: str
    actor: str
    subject: str
    severity: str = "info"
    payload: dict[str, Any] = field(default_factory=dict)
    tags: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))


class EventBus:
    """In-process event bus; handlers may be plain callables or coroutines."""

    def __init__(self) -> None:
        self._subscribers: List[AuditEventHandler] = []

    def subscribe(self, handler: AuditEventHandler) -> None:
        self._subscribers.append(handler)

    async def publish(self, event: AuditEvent) -> None:
        """Deliver ``event`` to every subscriber; one failing handler never stops the rest."""

        for handler in list(self._subscribers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Audit event handler failed", extra={"audit_event": event.name})
