"""Quota threshold events.

The ledger emits an event whenever a mutation moves a record from one
status to another: into ``warning``, into ``exceeded``, or back to ``ok``.
Handlers are plain callables run synchronously in registration order.
Handler errors are logged but never propagate, so event dispatch cannot
break quota accounting.

Usage::

    bus = QuotaEventBus()
    bus.register_handler(notify_billing, event_type=QuotaEventType.EXCEEDED)
    ledger = QuotaLedger(store, event_bus=bus)
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from tenancy_engine.quota.models import QuotaStatus

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


class QuotaEventType(str, Enum):
    """Status transitions reported by the quota ledger."""

    WARNING = "quota.warning"
    EXCEEDED = "quota.exceeded"
    RECOVERED = "quota.recovered"

    @classmethod
    def for_transition(cls, previous: QuotaStatus, current: QuotaStatus) -> QuotaEventType | None:
        """Return the event for a ``previous -> current`` status change, if any."""
        if previous is current:
            return None
        if current is QuotaStatus.EXCEEDED:
            return cls.EXCEEDED
        if current is QuotaStatus.WARNING:
            return cls.WARNING
        return cls.RECOVERED


# ---------------------------------------------------------------------------
# Event payload
# ---------------------------------------------------------------------------


class QuotaEvent(BaseModel):
    """Payload delivered to handlers."""

    event_type: QuotaEventType
    tenant_id: str
    resource_type: str
    previous_status: QuotaStatus
    status: QuotaStatus
    current_usage: int
    limit: int
    usage_percentage: float
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    data: dict[str, Any] = Field(default_factory=dict)


QuotaEventHandler = Callable[[QuotaEvent], None]


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------


class QuotaEventBus:
    """In-process, synchronous event bus for quota transitions."""

    def __init__(self) -> None:
        self._handlers: dict[QuotaEventType | None, list[QuotaEventHandler]] = {}
        self._lock = threading.Lock()

    def register_handler(
        self,
        handler: QuotaEventHandler,
        *,
        event_type: QuotaEventType | None = None,
    ) -> None:
        """Register a handler for a specific event type (or all events).

        Parameters
        ----------
        handler:
            Callable that accepts a :class:`QuotaEvent`.
        event_type:
            If ``None``, the handler receives *all* events (wildcard).
        """
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(
            "Registered quota event handler %s for %s",
            getattr(handler, "__name__", repr(handler)),
            event_type.value if event_type else "ALL",
        )

    def emit(self, event: QuotaEvent) -> int:
        """Deliver *event* to every matching handler.

        Returns the number of handlers that completed without raising.
        """
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, []))
            handlers.extend(self._handlers.get(None, []))

        if not handlers:
            logger.debug("No handlers for event %s", event.event_type.value)
            return 0

        delivered = 0
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Quota event handler %s failed for %s (tenant=%s, resource=%s)",
                    getattr(handler, "__name__", repr(handler)),
                    event.event_type.value,
                    event.tenant_id,
                    event.resource_type,
                )
            else:
                delivered += 1
        return delivered
