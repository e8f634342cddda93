"""
Ledger Store
============

Persistence contract for the settlement core plus its SQLAlchemy implementation.

The store is the only shared mutable resource. Payments and milestones are
written with a version compare-and-swap so that concurrent read-modify-write
cycles on the same id serialise: the loser gets ConcurrentModificationError.
Every SQLAlchemy failure leaves the store as a retryable PersistenceError.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, or_
from sqlalchemy.orm import sessionmaker

from database import managed_session
from models import (
    EscrowPayment, Milestone, Task, PaymentStatusHistory, OutboxEvent,
    TaskReconciliationItem, MilestoneStatus, ReconciliationItemStatus
)
from utils.escrow_metadata import EscrowMetadata, encode_metadata, decode_metadata
from utils.exception_handler import (
    NotFoundError, ConcurrentModificationError, ValidationError, translate_ledger_errors
)
from utils.optimistic_locking import OptimisticLockManager

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_entity_id(prefix: str) -> str:
    """Opaque identifier such as PAY-3F9A1C0B7E42"""
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


# ============================================================================
# RECORDS
# ============================================================================

@dataclass
class EscrowPaymentRecord:
    """Escrow payment as seen by the managers (version 0 = not yet stored)"""
    payment_id: str
    task_id: str
    payer_id: str
    payee_id: str
    amount: int
    fee_amount: int
    net_amount: int
    payment_method: str
    status: str
    currency: str = "FCFA"
    escrow_released: bool = False
    escrow_released_at: Optional[datetime] = None
    refund_amount: Optional[int] = None
    refund_reason: Optional[str] = None
    dispute_reason: Optional[str] = None
    metadata: Optional[EscrowMetadata] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class MilestoneRecord:
    milestone_id: str
    task_id: str
    title: str
    amount: int
    description: Optional[str] = None
    due_date: Optional[date] = None
    position: int = 0
    payment_id: Optional[str] = None
    reserved_payment_id: Optional[str] = None
    status: str = MilestoneStatus.PENDING.value
    completed_at: Optional[datetime] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class TaskRecord:
    task_id: str
    status: str
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class PaymentHistoryEntry:
    payment_id: str
    from_status: Optional[str]
    to_status: str
    change_reason: str
    changed_at: Optional[datetime] = None


@dataclass
class ReconciliationItem:
    """A task status write that still has to be applied"""
    task_id: str
    desired_status: str
    payment_id: Optional[str] = None
    milestone_id: Optional[str] = None
    fields: Dict[str, Any] = field(default_factory=dict)
    last_error: Optional[str] = None
    attempts: int = 0
    status: str = ReconciliationItemStatus.OPEN.value
    item_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


# ============================================================================
# CONTRACT
# ============================================================================

class LedgerStore(ABC):
    """Persistence contract used by the escrow and milestone managers"""

    # Payments
    @abstractmethod
    def upsert_payment(self, record: EscrowPaymentRecord, change_reason: Optional[str] = None) -> EscrowPaymentRecord:
        """Insert (version 0) or compare-and-swap update; appends status history on status change"""

    @abstractmethod
    def get_payment(self, payment_id: str) -> EscrowPaymentRecord:
        """Raises NotFoundError for unknown ids"""

    @abstractmethod
    def get_latest_payment_for_task(self, task_id: str) -> Optional[EscrowPaymentRecord]:
        pass

    @abstractmethod
    def list_payments_for_party(self, party_id: str) -> List[EscrowPaymentRecord]:
        pass

    @abstractmethod
    def list_payment_history(self, payment_id: str) -> List[PaymentHistoryEntry]:
        pass

    # Tasks
    @abstractmethod
    def update_task_status(self, task_id: str, status: str, fields: Optional[Dict[str, Any]] = None,
                           unless_status: Optional[str] = None) -> bool:
        """
        Write the task status. When unless_status is given the write is skipped
        (returns False) if the task already holds that status.
        """

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[TaskRecord]:
        pass

    # Milestones
    @abstractmethod
    def upsert_milestone(self, record: MilestoneRecord) -> MilestoneRecord:
        pass

    @abstractmethod
    def insert_milestones(self, records: List[MilestoneRecord]) -> List[MilestoneRecord]:
        """Insert a batch of new milestones atomically"""

    @abstractmethod
    def get_milestone(self, milestone_id: str) -> MilestoneRecord:
        """Raises NotFoundError for unknown ids"""

    @abstractmethod
    def list_milestones_by_task(self, task_id: str) -> List[MilestoneRecord]:
        """Ordered by creation (position, then created_at)"""

    # Reconciliation
    @abstractmethod
    def record_reconciliation_item(self, item: ReconciliationItem) -> ReconciliationItem:
        pass

    @abstractmethod
    def list_open_reconciliation_items(self, limit: int) -> List[ReconciliationItem]:
        pass

    @abstractmethod
    def save_reconciliation_item(self, item: ReconciliationItem) -> ReconciliationItem:
        pass

    # Outbox
    @abstractmethod
    def add_outbox_event(self, event_type: str, aggregate_id: str, event_data: Dict[str, Any]) -> None:
        pass


# ============================================================================
# SQLALCHEMY IMPLEMENTATION
# ============================================================================

# Task columns the settlement core is allowed to write besides status
TASK_WRITABLE_FIELDS = {"completed_at"}


def _encode_fields(fields: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    encoded = {}
    for key, value in (fields or {}).items():
        encoded[key] = value.isoformat() if isinstance(value, datetime) else value
    return encoded


def _decode_fields(fields: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    decoded = {}
    for key, value in (fields or {}).items():
        if key.endswith("_at") and isinstance(value, str):
            decoded[key] = datetime.fromisoformat(value)
        else:
            decoded[key] = value
    return decoded


class SqlAlchemyLedgerStore(LedgerStore):
    """LedgerStore backed by the relational schema in models.py"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # ------------------------------------------------------------------ payments

    @staticmethod
    def _payment_to_record(row: EscrowPayment) -> EscrowPaymentRecord:
        return EscrowPaymentRecord(
            payment_id=row.payment_id,
            task_id=row.task_id,
            payer_id=row.payer_id,
            payee_id=row.payee_id,
            amount=row.amount,
            fee_amount=row.fee_amount,
            net_amount=row.net_amount,
            payment_method=row.payment_method,
            status=row.status,
            currency=row.currency,
            escrow_released=row.escrow_released,
            escrow_released_at=row.escrow_released_at,
            refund_amount=row.refund_amount,
            refund_reason=row.refund_reason,
            dispute_reason=row.dispute_reason,
            metadata=decode_metadata(row.payment_metadata),
            version=row.version,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _payment_columns(record: EscrowPaymentRecord) -> Dict[str, Any]:
        return {
            "task_id": record.task_id,
            "payer_id": record.payer_id,
            "payee_id": record.payee_id,
            "amount": record.amount,
            "fee_amount": record.fee_amount,
            "net_amount": record.net_amount,
            "currency": record.currency,
            "payment_method": record.payment_method,
            "status": record.status,
            "escrow_released": record.escrow_released,
            "escrow_released_at": record.escrow_released_at,
            "refund_amount": record.refund_amount,
            "refund_reason": record.refund_reason,
            "dispute_reason": record.dispute_reason,
            "payment_metadata": encode_metadata(record.metadata),
        }

    @translate_ledger_errors
    def upsert_payment(self, record: EscrowPaymentRecord, change_reason: Optional[str] = None) -> EscrowPaymentRecord:
        now = utcnow()
        with managed_session(self.session_factory) as session:
            current = session.execute(
                select(EscrowPayment.status, EscrowPayment.version)
                .where(EscrowPayment.payment_id == record.payment_id)
            ).first()

            if record.version == 0:
                if current is not None:
                    raise ConcurrentModificationError("payment", record.payment_id, 0)
                session.add(EscrowPayment(
                    payment_id=record.payment_id,
                    version=1,
                    created_at=record.created_at or now,
                    updated_at=now,
                    **self._payment_columns(record)
                ))
                from_status = None
                stored = replace(record, version=1, created_at=record.created_at or now, updated_at=now)
            else:
                if current is None:
                    raise NotFoundError("payment", record.payment_id)
                from_status = current.status
                new_version = OptimisticLockManager(session).versioned_update(
                    EscrowPayment, "payment_id", record.payment_id,
                    {**self._payment_columns(record), "updated_at": now},
                    record.version,
                )
                stored = replace(record, version=new_version, updated_at=now)

            if from_status != record.status:
                session.add(PaymentStatusHistory(
                    payment_id=record.payment_id,
                    from_status=from_status,
                    to_status=record.status,
                    change_reason=(change_reason or f"status changed to {record.status}")[:255],
                    changed_at=now,
                ))

        logger.debug(f"📒 PAYMENT_UPSERTED: {record.payment_id} status={record.status} v{stored.version}")
        return stored

    @translate_ledger_errors
    def get_payment(self, payment_id: str) -> EscrowPaymentRecord:
        with managed_session(self.session_factory) as session:
            row = session.execute(
                select(EscrowPayment).where(EscrowPayment.payment_id == payment_id)
            ).scalar_one_or_none()
            if row is None:
                raise NotFoundError("payment", payment_id)
            return self._payment_to_record(row)

    @translate_ledger_errors
    def get_latest_payment_for_task(self, task_id: str) -> Optional[EscrowPaymentRecord]:
        with managed_session(self.session_factory) as session:
            row = session.execute(
                select(EscrowPayment)
                .where(EscrowPayment.task_id == task_id)
                .order_by(EscrowPayment.created_at.desc(), EscrowPayment.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            return self._payment_to_record(row) if row is not None else None

    @translate_ledger_errors
    def list_payments_for_party(self, party_id: str) -> List[EscrowPaymentRecord]:
        with managed_session(self.session_factory) as session:
            rows = session.execute(
                select(EscrowPayment)
                .where(or_(EscrowPayment.payer_id == party_id, EscrowPayment.payee_id == party_id))
                .order_by(EscrowPayment.created_at.desc(), EscrowPayment.id.desc())
            ).scalars().all()
            return [self._payment_to_record(row) for row in rows]

    @translate_ledger_errors
    def list_payment_history(self, payment_id: str) -> List[PaymentHistoryEntry]:
        with managed_session(self.session_factory) as session:
            rows = session.execute(
                select(PaymentStatusHistory)
                .where(PaymentStatusHistory.payment_id == payment_id)
                .order_by(PaymentStatusHistory.id.asc())
            ).scalars().all()
            return [
                PaymentHistoryEntry(
                    payment_id=row.payment_id,
                    from_status=row.from_status,
                    to_status=row.to_status,
                    change_reason=row.change_reason,
                    changed_at=row.changed_at,
                )
                for row in rows
            ]

    # --------------------------------------------------------------------- tasks

    @translate_ledger_errors
    def update_task_status(self, task_id: str, status: str, fields: Optional[Dict[str, Any]] = None,
                           unless_status: Optional[str] = None) -> bool:
        fields = dict(fields or {})
        unknown = set(fields) - TASK_WRITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Task fields not writable by the settlement core: {sorted(unknown)}")

        now = utcnow()
        with managed_session(self.session_factory) as session:
            exists = session.execute(
                select(Task.id).where(Task.task_id == task_id)
            ).first()

            if exists is None:
                # Task owner system is external; materialise a bare row on first write
                session.add(Task(task_id=task_id, status=status, created_at=now, updated_at=now, **fields))
                logger.info(f"📝 TASK_STATUS_WRITTEN: {task_id} -> {status} (new row)")
                return True

            stmt = update(Task).where(Task.task_id == task_id)
            if unless_status is not None:
                stmt = stmt.where(Task.status != unless_status)
            result = session.execute(
                stmt.values(status=status, updated_at=now, **fields)
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 0:
                logger.info(f"⏭️ TASK_STATUS_SKIPPED: {task_id} already {unless_status}")
                return False

        logger.info(f"📝 TASK_STATUS_WRITTEN: {task_id} -> {status}")
        return True

    @translate_ledger_errors
    def get_task(self, task_id: str) -> Optional[TaskRecord]:
        with managed_session(self.session_factory) as session:
            row = session.execute(select(Task).where(Task.task_id == task_id)).scalar_one_or_none()
            if row is None:
                return None
            return TaskRecord(
                task_id=row.task_id,
                status=row.status,
                completed_at=row.completed_at,
                updated_at=row.updated_at,
            )

    # ---------------------------------------------------------------- milestones

    @staticmethod
    def _milestone_to_record(row: Milestone) -> MilestoneRecord:
        return MilestoneRecord(
            milestone_id=row.milestone_id,
            task_id=row.task_id,
            title=row.title,
            amount=row.amount,
            description=row.description,
            due_date=row.due_date,
            position=row.position,
            payment_id=row.payment_id,
            reserved_payment_id=row.reserved_payment_id,
            status=row.status,
            completed_at=row.completed_at,
            version=row.version,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _milestone_columns(record: MilestoneRecord) -> Dict[str, Any]:
        return {
            "task_id": record.task_id,
            "title": record.title,
            "description": record.description,
            "amount": record.amount,
            "due_date": record.due_date,
            "position": record.position,
            "payment_id": record.payment_id,
            "reserved_payment_id": record.reserved_payment_id,
            "status": record.status,
            "completed_at": record.completed_at,
        }

    @translate_ledger_errors
    def upsert_milestone(self, record: MilestoneRecord) -> MilestoneRecord:
        if record.version == 0:
            return self.insert_milestones([record])[0]

        now = utcnow()
        with managed_session(self.session_factory) as session:
            exists = session.execute(
                select(Milestone.id).where(Milestone.milestone_id == record.milestone_id)
            ).first()
            if exists is None:
                raise NotFoundError("milestone", record.milestone_id)
            new_version = OptimisticLockManager(session).versioned_update(
                Milestone, "milestone_id", record.milestone_id,
                {**self._milestone_columns(record), "updated_at": now},
                record.version,
            )
        return replace(record, version=new_version, updated_at=now)

    @translate_ledger_errors
    def insert_milestones(self, records: List[MilestoneRecord]) -> List[MilestoneRecord]:
        now = utcnow()
        stored = []
        with managed_session(self.session_factory) as session:
            for record in records:
                if record.version != 0:
                    raise ConcurrentModificationError("milestone", record.milestone_id, 0)
                session.add(Milestone(
                    milestone_id=record.milestone_id,
                    version=1,
                    created_at=record.created_at or now,
                    updated_at=now,
                    **self._milestone_columns(record)
                ))
                stored.append(replace(record, version=1, created_at=record.created_at or now, updated_at=now))
        return stored

    @translate_ledger_errors
    def get_milestone(self, milestone_id: str) -> MilestoneRecord:
        with managed_session(self.session_factory) as session:
            row = session.execute(
                select(Milestone).where(Milestone.milestone_id == milestone_id)
            ).scalar_one_or_none()
            if row is None:
                raise NotFoundError("milestone", milestone_id)
            return self._milestone_to_record(row)

    @translate_ledger_errors
    def list_milestones_by_task(self, task_id: str) -> List[MilestoneRecord]:
        with managed_session(self.session_factory) as session:
            rows = session.execute(
                select(Milestone)
                .where(Milestone.task_id == task_id)
                .order_by(Milestone.position.asc(), Milestone.created_at.asc(), Milestone.id.asc())
            ).scalars().all()
            return [self._milestone_to_record(row) for row in rows]

    # ------------------------------------------------------------ reconciliation

    @staticmethod
    def _item_to_record(row: TaskReconciliationItem) -> ReconciliationItem:
        return ReconciliationItem(
            task_id=row.task_id,
            desired_status=row.desired_status,
            payment_id=row.payment_id,
            milestone_id=row.milestone_id,
            fields=_decode_fields(row.fields),
            last_error=row.last_error,
            attempts=row.attempts,
            status=row.status,
            item_id=row.id,
            created_at=row.created_at,
            updated_at=row.updated_at,
            resolved_at=row.resolved_at,
        )

    @translate_ledger_errors
    def record_reconciliation_item(self, item: ReconciliationItem) -> ReconciliationItem:
        now = utcnow()
        with managed_session(self.session_factory) as session:
            row = TaskReconciliationItem(
                task_id=item.task_id,
                payment_id=item.payment_id,
                milestone_id=item.milestone_id,
                desired_status=item.desired_status,
                fields=_encode_fields(item.fields),
                status=item.status,
                attempts=item.attempts,
                last_error=item.last_error,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            item_id = row.id

        logger.warning(
            f"⚠️ RECONCILIATION_ITEM_RECORDED: #{item_id} task={item.task_id} -> {item.desired_status}"
        )
        return replace(item, item_id=item_id, created_at=now, updated_at=now)

    @translate_ledger_errors
    def list_open_reconciliation_items(self, limit: int) -> List[ReconciliationItem]:
        with managed_session(self.session_factory) as session:
            rows = session.execute(
                select(TaskReconciliationItem)
                .where(TaskReconciliationItem.status == ReconciliationItemStatus.OPEN.value)
                .order_by(TaskReconciliationItem.id.asc())
                .limit(limit)
            ).scalars().all()
            return [self._item_to_record(row) for row in rows]

    @translate_ledger_errors
    def save_reconciliation_item(self, item: ReconciliationItem) -> ReconciliationItem:
        if item.item_id is None:
            return self.record_reconciliation_item(item)

        now = utcnow()
        with managed_session(self.session_factory) as session:
            row = session.get(TaskReconciliationItem, item.item_id)
            if row is None:
                raise NotFoundError("reconciliation_item", str(item.item_id))
            row.status = item.status
            row.attempts = item.attempts
            row.last_error = item.last_error
            row.resolved_at = item.resolved_at
            row.updated_at = now
        return replace(item, updated_at=now)

    # -------------------------------------------------------------------- outbox

    @translate_ledger_errors
    def add_outbox_event(self, event_type: str, aggregate_id: str, event_data: Dict[str, Any]) -> None:
        with managed_session(self.session_factory) as session:
            session.add(OutboxEvent(
                event_type=event_type,
                aggregate_id=aggregate_id,
                event_data=event_data,
                processed=False,
                created_at=utcnow(),
            ))

    @translate_ledger_errors
    def list_outbox_events(self, aggregate_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with managed_session(self.session_factory) as session:
            stmt = select(OutboxEvent).order_by(OutboxEvent.id.asc())
            if aggregate_id is not None:
                stmt = stmt.where(OutboxEvent.aggregate_id == aggregate_id)
            return [
                {
                    "event_type": row.event_type,
                    "aggregate_id": row.aggregate_id,
                    "event_data": row.event_data,
                    "processed": row.processed,
                }
                for row in session.execute(stmt).scalars().all()
            ]
