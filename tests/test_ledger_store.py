"""
Ledger Store Tests
SQLAlchemy ledger: versioned upserts, guarded task writes, queues and error translation
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import text

from models import ReconciliationItemStatus, TaskStatus
from services.ledger_store import (
    EscrowPaymentRecord, MilestoneRecord, ReconciliationItem, generate_entity_id
)
from utils.escrow_metadata import MilestoneEscrowMetadata
from utils.exception_handler import (
    ConcurrentModificationError, NotFoundError, PersistenceError, ValidationError
)


def _payment(payment_id="PAY-TEST", task_id="TASK-S", payer="payer", payee="payee", amount=5000, **overrides):
    values = dict(
        payment_id=payment_id,
        task_id=task_id,
        payer_id=payer,
        payee_id=payee,
        amount=amount,
        fee_amount=0,
        net_amount=amount,
        payment_method="wave",
        status="processing",
    )
    values.update(overrides)
    return EscrowPaymentRecord(**values)


class TestPaymentPersistence:
    """Payment upserts"""

    def test_insert_and_read(self, ledger_store):
        stored = ledger_store.upsert_payment(
            _payment(metadata=MilestoneEscrowMetadata(milestone_id="MS-1")), change_reason="captured"
        )
        assert stored.version == 1

        loaded = ledger_store.get_payment("PAY-TEST")
        assert loaded.amount == 5000
        assert loaded.metadata == MilestoneEscrowMetadata(milestone_id="MS-1")
        assert loaded.version == 1

        history = ledger_store.list_payment_history("PAY-TEST")
        assert [(h.from_status, h.to_status, h.change_reason) for h in history] == [(None, "processing", "captured")]

    def test_update_bumps_version_and_records_history(self, ledger_store):
        stored = ledger_store.upsert_payment(_payment())
        updated = ledger_store.upsert_payment(
            _payment(status="disputed", dispute_reason="late", version=stored.version)
        )
        assert updated.version == 2
        assert ledger_store.get_payment("PAY-TEST").dispute_reason == "late"
        assert [h.to_status for h in ledger_store.list_payment_history("PAY-TEST")] == ["processing", "disputed"]

    def test_same_status_write_adds_no_history(self, ledger_store):
        stored = ledger_store.upsert_payment(_payment())
        ledger_store.upsert_payment(_payment(version=stored.version))
        assert len(ledger_store.list_payment_history("PAY-TEST")) == 1

    def test_stale_version_rejected(self, ledger_store):
        stored = ledger_store.upsert_payment(_payment())
        ledger_store.upsert_payment(_payment(status="failed", version=stored.version))

        with pytest.raises(ConcurrentModificationError):
            ledger_store.upsert_payment(_payment(status="completed", escrow_released=True, version=stored.version))
        assert ledger_store.get_payment("PAY-TEST").status == "failed"

    def test_duplicate_insert_rejected(self, ledger_store):
        ledger_store.upsert_payment(_payment())
        with pytest.raises(ConcurrentModificationError):
            ledger_store.upsert_payment(_payment())

    def test_update_of_unknown_payment(self, ledger_store):
        with pytest.raises(NotFoundError):
            ledger_store.upsert_payment(_payment(version=3))

    def test_get_unknown(self, ledger_store):
        with pytest.raises(NotFoundError):
            ledger_store.get_payment("PAY-NOPE")

    def test_list_payments_for_party(self, ledger_store):
        ledger_store.upsert_payment(_payment("PAY-1", payer="alice", payee="bob"))
        ledger_store.upsert_payment(_payment("PAY-2", payer="bob", payee="carol"))
        ledger_store.upsert_payment(_payment("PAY-3", payer="dave", payee="erin"))

        ids = {p.payment_id for p in ledger_store.list_payments_for_party("bob")}
        assert ids == {"PAY-1", "PAY-2"}

    def test_released_requires_completed_status(self, ledger_store):
        with pytest.raises(PersistenceError):
            ledger_store.upsert_payment(_payment(escrow_released=True))

    def test_generated_ids_are_prefixed(self):
        payment_id = generate_entity_id("PAY")
        assert payment_id.startswith("PAY-")
        assert payment_id != generate_entity_id("PAY")


class TestTaskStatus:
    """Task status writes"""

    def test_first_write_creates_task(self, ledger_store):
        assert ledger_store.update_task_status("TASK-X", TaskStatus.IN_PROGRESS.value) is True
        assert ledger_store.get_task("TASK-X").status == "in_progress"

    def test_guarded_write(self, ledger_store):
        completed_at = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
        ledger_store.update_task_status("TASK-X", TaskStatus.IN_PROGRESS.value)

        assert ledger_store.update_task_status(
            "TASK-X", "completed", fields={"completed_at": completed_at}, unless_status="completed"
        ) is True
        assert ledger_store.update_task_status(
            "TASK-X", "completed", fields={"completed_at": datetime.now(timezone.utc)}, unless_status="completed"
        ) is False

        task = ledger_store.get_task("TASK-X")
        assert task.status == "completed"
        assert task.completed_at.replace(tzinfo=None) == completed_at.replace(tzinfo=None)

    def test_unknown_fields_rejected(self, ledger_store):
        with pytest.raises(ValidationError):
            ledger_store.update_task_status("TASK-X", "completed", fields={"title": "hijack"})

    def test_unknown_task(self, ledger_store):
        assert ledger_store.get_task("TASK-NONE") is None


class TestMilestonePersistence:
    """Milestone rows"""

    def test_ordering_by_position(self, ledger_store):
        ledger_store.insert_milestones([
            MilestoneRecord("MS-B", "TASK-O", "Second", 200, position=1),
            MilestoneRecord("MS-A", "TASK-O", "First", 100, position=0),
        ])
        assert [m.milestone_id for m in ledger_store.list_milestones_by_task("TASK-O")] == ["MS-A", "MS-B"]

    def test_versioned_milestone_update(self, ledger_store):
        stored = ledger_store.upsert_milestone(MilestoneRecord("MS-A", "TASK-O", "First", 100))
        assert stored.version == 1

        funded = ledger_store.upsert_milestone(
            MilestoneRecord("MS-A", "TASK-O", "First", 100, status="funded", payment_id="PAY-1", version=1)
        )
        assert funded.version == 2

        with pytest.raises(ConcurrentModificationError):
            ledger_store.upsert_milestone(MilestoneRecord("MS-A", "TASK-O", "First", 100, version=1))

    def test_get_unknown_milestone(self, ledger_store):
        with pytest.raises(NotFoundError):
            ledger_store.get_milestone("MS-NOPE")


class TestReconciliationQueue:
    """Reconciliation items"""

    def test_record_list_and_resolve(self, ledger_store):
        completed_at = datetime(2026, 10, 2, 8, 30, tzinfo=timezone.utc)
        item = ledger_store.record_reconciliation_item(ReconciliationItem(
            task_id="TASK-Q", desired_status="completed", payment_id="PAY-Q",
            fields={"completed_at": completed_at}, last_error="timeout",
        ))
        assert item.item_id is not None

        open_items = ledger_store.list_open_reconciliation_items(10)
        assert len(open_items) == 1
        assert open_items[0].fields["completed_at"] == completed_at

        open_items[0].status = ReconciliationItemStatus.RESOLVED.value
        ledger_store.save_reconciliation_item(open_items[0])
        assert ledger_store.list_open_reconciliation_items(10) == []

    def test_limit(self, ledger_store):
        for index in range(5):
            ledger_store.record_reconciliation_item(ReconciliationItem(task_id=f"TASK-{index}", desired_status="cancelled"))
        assert len(ledger_store.list_open_reconciliation_items(3)) == 3


class TestErrorTranslation:
    """SQLAlchemy failures become PersistenceError"""

    def test_missing_table_is_persistence_error(self, ledger_store, engine):
        with engine.begin() as connection:
            connection.execute(text("DROP TABLE payments"))

        with pytest.raises(PersistenceError) as exc_info:
            ledger_store.get_payment("PAY-ANY")
        assert exc_info.value.retryable is True
        assert exc_info.value.original_exception is not None
