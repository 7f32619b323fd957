from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from backend.app.db.models.models_v1 import utcnow

events_logger = logging.getLogger("moana.events")


@dataclass(frozen=True)
class DomainEvent:
    name: str
    tenant_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class EmitResult:
    emitted: bool
    provider: str


class EventNotifier(Protocol):
    def emit(self, event: DomainEvent) -> EmitResult: ...


class NullEventNotifier:
    provider = "noop"

    def emit(self, event: DomainEvent) -> EmitResult:
        return EmitResult(emitted=False, provider=self.provider)


class LogEventNotifier:
    """
    Publie l'évènement en une ligne JSON sur le logger `moana.events`.
    """

    provider = "log"

    def emit(self, event: DomainEvent) -> EmitResult:
        events_logger.info(
            json.dumps(
                {
                    "event": event.name,
                    "tenantId": event.tenant_id,
                    "ts": event.occurred_at.isoformat(),
                    **event.payload,
                },
                default=str,
            )
        )
        return EmitResult(emitted=True, provider=self.provider)


def get_notifier(enabled: bool) -> EventNotifier:
    return LogEventNotifier() if enabled else NullEventNotifier()
