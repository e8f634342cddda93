"""
Event Notifier Tests
"""

import logging
from datetime import datetime, timezone
from unittest.mock import Mock

from services.event_notifier import (
    CompositeEventNotifier, EventNotifier, LoggingEventNotifier, OutboxEventNotifier, TransitionEvent
)


class BrokenNotifier(EventNotifier):
    def _deliver(self, event):
        raise ConnectionError("sink offline")


def _event():
    return TransitionEvent("payment", "PAY-1", "processing", "completed",
                           datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc))


class TestEventNotifiers:
    """Sinks and failure isolation"""

    def test_event_serialisation(self):
        event = _event()
        assert event.event_type == "payment.completed"
        assert event.to_dict() == {
            "entity_type": "payment",
            "entity_id": "PAY-1",
            "from_status": "processing",
            "to_status": "completed",
            "timestamp": "2026-10-19T09:00:00+00:00",
        }

    def test_logging_notifier(self, caplog):
        with caplog.at_level(logging.INFO):
            LoggingEventNotifier().emit(_event())
        assert any("TRANSITION" in record.getMessage() and "PAY-1" in record.getMessage()
                   for record in caplog.records)

    def test_outbox_notifier_persists_event(self, ledger_store):
        OutboxEventNotifier(ledger_store).emit(_event())

        events = ledger_store.list_outbox_events("PAY-1")
        assert len(events) == 1
        assert events[0]["event_type"] == "payment.completed"
        assert events[0]["event_data"]["to_status"] == "completed"
        assert events[0]["processed"] is False

    def test_failures_are_logged_not_raised(self, caplog):
        with caplog.at_level(logging.ERROR):
            BrokenNotifier().emit(_event())
        assert any("EVENT_EMIT_FAILED" in record.getMessage() for record in caplog.records)

    def test_composite_isolates_failing_sink(self):
        healthy = Mock(spec=EventNotifier)
        CompositeEventNotifier([BrokenNotifier(), healthy]).emit(_event())
        healthy.emit.assert_called_once()

    def test_manager_writes_outbox(self, ledger_store, retry_policy):
        from services.escrow_payment_manager import EscrowPaymentManager

        notifier = CompositeEventNotifier([LoggingEventNotifier(), OutboxEventNotifier(ledger_store)])
        manager = EscrowPaymentManager(ledger_store, notifier=notifier, retry_policy=retry_policy)
        payment = manager.create_escrow_payment("TASK-O", "a", "b", 1000, "wave")
        manager.release_escrow_payment(payment.payment_id, "TASK-O")

        types = [e["event_type"] for e in ledger_store.list_outbox_events(payment.payment_id)]
        assert types == ["payment.processing", "payment.completed"]
        task_types = [e["event_type"] for e in ledger_store.list_outbox_events("TASK-O")]
        assert task_types == ["task.in_progress", "task.completed"]
