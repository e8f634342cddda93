"""
Task Escrow Settlement - Database Schema
========================================

Ledger tables for the settlement core:
- Escrow payments held between a task requester (payer) and fulfiller (payee)
- Task milestones funded and released independently
- Payment status audit trail
- Outbox events for transition notifications
- Task status reconciliation queue for best-effort task writes

Amounts are integers in minor currency units (FCFA has no minor unit).
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Date, Boolean, Text,
    Index, CheckConstraint, func, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class PaymentStatus(Enum):
    """Escrow payment lifecycle states"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class PaymentMethod(Enum):
    """Supported payment rails"""
    MTN_MONEY = "mtn_money"
    ORANGE_MONEY = "orange_money"
    MOOV_MONEY = "moov_money"
    WAVE = "wave"
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"
    CRYPTO = "crypto"

    @property
    def is_fee_bearing(self) -> bool:
        """Mobile money operators charge the transfer fee; Wave is exempt"""
        return self in (PaymentMethod.MTN_MONEY, PaymentMethod.ORANGE_MONEY, PaymentMethod.MOOV_MONEY)


class MilestoneStatus(Enum):
    """Milestone lifecycle states"""
    PENDING = "pending"
    FUNDED = "funded"
    RELEASED = "released"
    DISPUTED = "disputed"


class TaskStatus(Enum):
    """Task lifecycle states (owned by the task system, partially written here)"""
    DRAFT = "draft"
    POSTED = "posted"
    APPLICATIONS = "applications"
    SELECTED = "selected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class EscrowType(Enum):
    FULL = "full"
    MILESTONE = "milestone"


class ReconciliationItemStatus(Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"


# ============================================================================
# CORE LEDGER MODELS
# ============================================================================

class Task(Base):
    """Task entity - owned externally, only status fields are written here"""
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True)
    task_id = Column(String(64), unique=True, nullable=False)
    status = Column(String(20), nullable=False, default=TaskStatus.POSTED.value)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_tasks_status', 'status'),
    )

    def __repr__(self):
        return f"<Task(task_id={self.task_id}, status={self.status})>"


class EscrowPayment(Base):
    """Escrow payment held between payer and payee for a task"""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    payment_id = Column(String(64), unique=True, nullable=False)
    task_id = Column(String(64), nullable=False)

    # Parties
    payer_id = Column(String(64), nullable=False)
    payee_id = Column(String(64), nullable=False)

    # Amounts (integer minor units)
    amount = Column(BigInteger, nullable=False)
    fee_amount = Column(BigInteger, nullable=False, default=0)
    net_amount = Column(BigInteger, nullable=False)
    currency = Column(String(10), nullable=False, default="FCFA")
    payment_method = Column(String(20), nullable=False)

    # Lifecycle
    status = Column(String(20), nullable=False, default=PaymentStatus.PROCESSING.value)
    escrow_released = Column(Boolean, nullable=False, default=False)
    escrow_released_at = Column(DateTime(timezone=True), nullable=True)

    # Refund / dispute outcome
    refund_amount = Column(BigInteger, nullable=True)
    refund_reason = Column(Text, nullable=True)
    dispute_reason = Column(Text, nullable=True)

    # Versioned metadata variant (see utils.escrow_metadata)
    payment_metadata = Column("metadata", JSONType, nullable=True)

    # Optimistic locking
    version = Column(Integer, nullable=False, default=1, server_default="1")

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_payments_amount_positive'),
        CheckConstraint('fee_amount >= 0', name='ck_payments_fee_non_negative'),
        CheckConstraint('net_amount = amount - fee_amount', name='ck_payments_net_amount'),
        CheckConstraint('payer_id <> payee_id', name='ck_payments_distinct_parties'),
        CheckConstraint(
            "NOT escrow_released OR status = 'completed'",
            name='ck_payments_released_only_when_completed'
        ),
        Index('ix_payments_task_id', 'task_id'),
        Index('ix_payments_payer_id', 'payer_id'),
        Index('ix_payments_payee_id', 'payee_id'),
        Index('ix_payments_status', 'status'),
        Index('ix_payments_created_at', 'created_at'),
    )

    def __repr__(self):
        return (
            f"<EscrowPayment(payment_id={self.payment_id}, task_id={self.task_id}, "
            f"amount={self.amount}, status={self.status}, released={self.escrow_released})>"
        )


class Milestone(Base):
    """Independently fundable and releasable slice of a task's payment"""
    __tablename__ = "task_milestones"

    id = Column(Integer, primary_key=True)
    milestone_id = Column(String(64), unique=True, nullable=False)
    task_id = Column(String(64), nullable=False)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    amount = Column(BigInteger, nullable=False)
    due_date = Column(Date, nullable=True)
    position = Column(Integer, nullable=False, default=0)

    payment_id = Column(String(64), nullable=True)  # Set once funded
    reserved_payment_id = Column(String(64), nullable=True)  # Payment id claimed before capture
    status = Column(String(20), nullable=False, default=MilestoneStatus.PENDING.value)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False, default=1, server_default="1")

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_task_milestones_amount_positive'),
        Index('ix_task_milestones_task_id', 'task_id'),
        Index('ix_task_milestones_payment_id', 'payment_id'),
    )

    def __repr__(self):
        return f"<Milestone(milestone_id={self.milestone_id}, task_id={self.task_id}, status={self.status})>"


class PaymentStatusHistory(Base):
    """
    Audit trail for all status changes of escrow payments
    Provides complete lifecycle tracking and debugging capabilities
    """
    __tablename__ = "payment_status_history"

    id = Column(Integer, primary_key=True)
    payment_id = Column(String(64), nullable=False)

    from_status = Column(String(20), nullable=True)  # Null for the initial capture
    to_status = Column(String(20), nullable=False)
    change_reason = Column(String(255), nullable=False)

    changed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_payment_status_history_payment', 'payment_id'),
        Index('ix_payment_status_history_changed_at', 'changed_at'),
    )

    def __repr__(self):
        return f"<PaymentStatusHistory(payment_id={self.payment_id}, {self.from_status} -> {self.to_status})>"


class OutboxEvent(Base):
    """Outbox pattern for reliable event processing"""
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True)
    event_type = Column(String(50), nullable=False)
    aggregate_id = Column(String(100), nullable=False)
    event_data = Column(JSONType, nullable=False)
    processed = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    retry_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        Index('ix_outbox_events_processed', 'processed'),
        Index('ix_outbox_events_aggregate_id', 'aggregate_id'),
    )

    def __repr__(self):
        return f"<OutboxEvent(event_type={self.event_type}, aggregate_id={self.aggregate_id}, processed={self.processed})>"


class TaskReconciliationItem(Base):
    """Task status write that failed after the authoritative payment write"""
    __tablename__ = "task_reconciliation_items"

    id = Column(Integer, primary_key=True)
    task_id = Column(String(64), nullable=False)
    payment_id = Column(String(64), nullable=True)
    milestone_id = Column(String(64), nullable=True)

    desired_status = Column(String(20), nullable=False)
    fields = Column(JSONType, nullable=True)  # Extra task columns, ISO timestamps

    status = Column(String(20), nullable=False, default=ReconciliationItemStatus.OPEN.value)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ix_task_reconciliation_items_status', 'status'),
        Index('ix_task_reconciliation_items_task_id', 'task_id'),
    )

    def __repr__(self):
        return (
            f"<TaskReconciliationItem(task_id={self.task_id}, desired_status={self.desired_status}, "
            f"status={self.status}, attempts={self.attempts})>"
        )
