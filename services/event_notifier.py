"""
Event Notifier
Fire-and-forget delivery of escrow state transitions.

Sinks never raise into the settlement flow: a failed emit is logged and dropped.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionEvent:
    """A single status change of a payment, milestone or task"""
    entity_type: str  # payment | milestone | task
    entity_id: str
    from_status: Optional[str]
    to_status: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def event_type(self) -> str:
        return f"{self.entity_type}.{self.to_status}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "timestamp": self.timestamp.isoformat(),
        }


class EventNotifier(ABC):
    """Notifier contract"""

    def emit(self, event: TransitionEvent) -> None:
        try:
            self._deliver(event)
        except Exception as e:
            logger.error(
                f"❌ EVENT_EMIT_FAILED: {type(self).__name__} dropped {event.event_type} "
                f"for {event.entity_id}: {e}"
            )

    @abstractmethod
    def _deliver(self, event: TransitionEvent) -> None:
        pass


class LoggingEventNotifier(EventNotifier):
    """Writes every transition to the application log"""

    def _deliver(self, event: TransitionEvent) -> None:
        logger.info(
            f"🔔 TRANSITION: {event.entity_type} {event.entity_id} "
            f"{event.from_status} → {event.to_status}"
        )


class OutboxEventNotifier(EventNotifier):
    """Persists transitions to the outbox table for asynchronous processing"""

    def __init__(self, store):
        self.store = store

    def _deliver(self, event: TransitionEvent) -> None:
        self.store.add_outbox_event(
            event_type=event.event_type,
            aggregate_id=event.entity_id,
            event_data=event.to_dict(),
        )


class CompositeEventNotifier(EventNotifier):
    """Fans a transition out to several sinks; one failing sink does not block the others"""

    def __init__(self, notifiers: Iterable[EventNotifier]):
        self.notifiers: List[EventNotifier] = list(notifiers)

    def _deliver(self, event: TransitionEvent) -> None:
        for notifier in self.notifiers:
            notifier.emit(event)

