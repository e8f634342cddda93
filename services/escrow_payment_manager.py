"""
Escrow Payment Manager
======================

Whole-payment escrow lifecycle: capture, release, refund, dispute, failure.

Every mutation is a read -> validate -> versioned upsert against the ledger.
The payment record is the source of truth and its write is retried with
backoff; the companion task status write is attempted once and, if it fails,
is queued as a reconciliation item instead of being rolled back.
"""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple, Union

from config import Config
from models import PaymentMethod, PaymentStatus, TaskStatus
from services.event_notifier import EventNotifier, LoggingEventNotifier, TransitionEvent
from services.ledger_store import (
    EscrowPaymentRecord, LedgerStore, ReconciliationItem, generate_entity_id
)
from utils.escrow_metadata import EscrowMetadata, FullEscrowMetadata, is_milestone_payment
from utils.escrow_state_machine import PaymentStateValidator
from utils.exception_handler import (
    AlreadyReleasedError, ConcurrentModificationError, EscrowError, InvalidAmountError,
    SamePartyError, ValidationError
)
from utils.fee_calculator import FeeCalculator
from utils.ledger_retry import LedgerRetryPolicy

logger = logging.getLogger(__name__)


def validate_amount(amount: Any) -> int:
    """Amounts are positive integers in minor units"""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(amount)
    return amount


def parse_payment_method(method: Union[PaymentMethod, str]) -> PaymentMethod:
    try:
        return method if isinstance(method, PaymentMethod) else PaymentMethod(method)
    except ValueError:
        raise ValidationError(f"Unsupported payment method: {method!r}")


class EscrowPaymentManager:
    """Escrow payment lifecycle over an injected LedgerStore"""

    def __init__(
        self,
        store: LedgerStore,
        notifier: Optional[EventNotifier] = None,
        retry_policy: Optional[LedgerRetryPolicy] = None,
    ):
        self.store = store
        self.notifier = notifier or LoggingEventNotifier()
        self.retry_policy = retry_policy or LedgerRetryPolicy()
        self.validator = PaymentStateValidator

    # ------------------------------------------------------------------ queries

    def get_payment(self, payment_id: str) -> EscrowPaymentRecord:
        return self.retry_policy.call(
            f"get_payment({payment_id})", lambda: self.store.get_payment(payment_id)
        )

    def get_escrow_status(self, task_id: str) -> Optional[EscrowPaymentRecord]:
        """Most recent payment for the task, or None"""
        return self.retry_policy.call(
            f"get_escrow_status({task_id})", lambda: self.store.get_latest_payment_for_task(task_id)
        )

    # ---------------------------------------------------------------- mutations

    def create_escrow_payment(
        self,
        task_id: str,
        payer_id: str,
        payee_id: str,
        amount: int,
        method: Union[PaymentMethod, str],
        description: Optional[str] = None,
        metadata: Optional[EscrowMetadata] = None,
        payment_id: Optional[str] = None,
    ) -> EscrowPaymentRecord:
        """
        Capture funds into escrow for a task; the record starts as processing.
        A caller that reserved payment_id up front gets ConcurrentModificationError
        if a payment with that id already exists.
        """
        if not task_id or not payer_id or not payee_id:
            raise ValidationError("task_id, payer_id and payee_id are required")
        validate_amount(amount)
        if payer_id == payee_id:
            raise SamePartyError(payer_id)
        payment_method = parse_payment_method(method)

        fee_amount, net_amount = FeeCalculator.calculate_fee_breakdown(amount, payment_method)
        record = EscrowPaymentRecord(
            payment_id=payment_id or generate_entity_id("PAY"),
            task_id=task_id,
            payer_id=payer_id,
            payee_id=payee_id,
            amount=amount,
            fee_amount=fee_amount,
            net_amount=net_amount,
            payment_method=payment_method.value,
            status=PaymentStatus.PROCESSING.value,
            currency=Config.SETTLEMENT_CURRENCY,
            metadata=metadata or FullEscrowMetadata(description=description),
        )
        self.validator.validate_transition(record.payment_id, None, record.status)

        stored = self._write_payment(record, "escrow payment captured")
        logger.info(
            f"✅ ESCROW_CREATED: {stored.payment_id} task={task_id} amount={amount} "
            f"fee={fee_amount} net={net_amount} {stored.currency} via {payment_method.value}"
        )
        self._emit("payment", stored.payment_id, None, stored.status)

        self.update_task_status_best_effort(
            task_id, TaskStatus.IN_PROGRESS.value, payment_id=stored.payment_id
        )
        return stored

    def release_escrow_payment(self, payment_id: str, task_id: str) -> EscrowPaymentRecord:
        """
        Release held funds to the payee.

        A second release of the same payment is rejected with AlreadyReleasedError
        and leaves the stored record untouched.
        """

        def apply_release(record: EscrowPaymentRecord) -> EscrowPaymentRecord:
            if record.escrow_released:
                raise AlreadyReleasedError("payment", record.payment_id)
            self.validator.validate_transition(record.payment_id, record.status, PaymentStatus.COMPLETED.value)
            return replace(
                record,
                status=PaymentStatus.COMPLETED.value,
                escrow_released=True,
                escrow_released_at=datetime.now(timezone.utc),
                dispute_reason=None,
            )

        previous, stored = self._transition(payment_id, task_id, apply_release, "escrow released to payee")
        logger.info(f"🔓 ESCROW_RELEASED: {payment_id} task={task_id} net={stored.net_amount} to {stored.payee_id}")
        self._emit("payment", payment_id, previous.status, stored.status)

        if not is_milestone_payment(stored.metadata):
            self.update_task_status_best_effort(
                task_id,
                TaskStatus.COMPLETED.value,
                fields={"completed_at": stored.escrow_released_at},
                payment_id=payment_id,
                unless_status=TaskStatus.COMPLETED.value,
            )
        return stored

    def refund_escrow_payment(self, payment_id: str, task_id: str, reason: str) -> EscrowPaymentRecord:
        """Return the full amount to the payer; released payments cannot be refunded"""

        def apply_refund(record: EscrowPaymentRecord) -> EscrowPaymentRecord:
            if record.escrow_released:
                raise AlreadyReleasedError("payment", record.payment_id)
            self.validator.validate_transition(record.payment_id, record.status, PaymentStatus.REFUNDED.value)
            return replace(
                record,
                status=PaymentStatus.REFUNDED.value,
                refund_amount=record.amount,
                refund_reason=reason,
                dispute_reason=None,
            )

        previous, stored = self._transition(payment_id, task_id, apply_refund, f"refunded: {reason}")
        logger.info(f"↩️ ESCROW_REFUNDED: {payment_id} task={task_id} amount={stored.refund_amount} reason={reason}")
        self._emit("payment", payment_id, previous.status, stored.status)

        self.update_task_status_best_effort(task_id, TaskStatus.CANCELLED.value, payment_id=payment_id)
        return stored

    def dispute_escrow_payment(self, payment_id: str, task_id: str, reason: str) -> EscrowPaymentRecord:
        """Freeze a held payment pending arbitration (resolved by release or refund)"""

        def apply_dispute(record: EscrowPaymentRecord) -> EscrowPaymentRecord:
            if record.escrow_released:
                raise AlreadyReleasedError("payment", record.payment_id)
            self.validator.validate_transition(record.payment_id, record.status, PaymentStatus.DISPUTED.value)
            return replace(record, status=PaymentStatus.DISPUTED.value, dispute_reason=reason)

        previous, stored = self._transition(payment_id, task_id, apply_dispute, f"disputed: {reason}")
        logger.warning(f"⚠️ ESCROW_DISPUTED: {payment_id} task={task_id} reason={reason}")
        self._emit("payment", payment_id, previous.status, stored.status)

        self.update_task_status_best_effort(task_id, TaskStatus.DISPUTED.value, payment_id=payment_id)
        return stored

    def mark_escrow_failed(self, payment_id: str, reason: str) -> EscrowPaymentRecord:
        """Record that the external capture step failed"""

        def apply_failure(record: EscrowPaymentRecord) -> EscrowPaymentRecord:
            self.validator.validate_transition(record.payment_id, record.status, PaymentStatus.FAILED.value)
            return replace(record, status=PaymentStatus.FAILED.value)

        previous, stored = self._transition(payment_id, None, apply_failure, f"capture failed: {reason}")
        logger.warning(f"❌ ESCROW_CAPTURE_FAILED: {payment_id} reason={reason}")
        self._emit("payment", payment_id, previous.status, stored.status)
        return stored

    # ------------------------------------------------------------------ helpers

    def _write_payment(self, record: EscrowPaymentRecord, change_reason: str) -> EscrowPaymentRecord:
        return self.retry_policy.call(
            f"upsert_payment({record.payment_id})",
            lambda: self.store.upsert_payment(record, change_reason=change_reason),
        )

    def _transition(
        self,
        payment_id: str,
        task_id: Optional[str],
        mutate: Callable[[EscrowPaymentRecord], EscrowPaymentRecord],
        change_reason: str,
    ) -> Tuple[EscrowPaymentRecord, EscrowPaymentRecord]:
        """
        Read, validate and write one payment transition.
        A lost compare-and-swap is re-read and re-validated once, so a concurrent
        release surfaces as AlreadyReleasedError rather than a second release.
        """
        for attempt in (1, 2):
            current = self.get_payment(payment_id)
            if task_id is not None and current.task_id != task_id:
                raise ValidationError(f"Payment {payment_id} belongs to task {current.task_id}, not {task_id}")

            updated = mutate(current)
            try:
                return current, self._write_payment(updated, change_reason)
            except ConcurrentModificationError:
                if attempt == 2:
                    raise
                logger.warning(f"🔒 PAYMENT_VERSION_CONFLICT: {payment_id} changed concurrently, re-validating")

    def update_task_status_best_effort(
        self,
        task_id: str,
        status: str,
        fields: Optional[Dict[str, Any]] = None,
        payment_id: Optional[str] = None,
        milestone_id: Optional[str] = None,
        unless_status: Optional[str] = None,
    ) -> bool:
        """
        Companion task write. Never raises for ledger failures: a failed write is
        queued for the reconciliation job, and if even that fails the full
        payload goes to the critical log.
        """
        try:
            previous = self.store.get_task(task_id)
            written = self.store.update_task_status(task_id, status, fields=fields, unless_status=unless_status)
        except EscrowError as e:
            logger.error(f"❌ TASK_STATUS_WRITE_FAILED: task={task_id} -> {status}: {e}")
            self._queue_reconciliation(task_id, status, fields, payment_id, milestone_id, str(e))
            return False

        if written:
            self._emit("task", task_id, previous.status if previous else None, status)
        return written

    def _queue_reconciliation(
        self,
        task_id: str,
        status: str,
        fields: Optional[Dict[str, Any]],
        payment_id: Optional[str],
        milestone_id: Optional[str],
        error: str,
    ):
        item = ReconciliationItem(
            task_id=task_id,
            desired_status=status,
            payment_id=payment_id,
            milestone_id=milestone_id,
            fields=dict(fields or {}),
            last_error=error,
        )
        try:
            self.store.record_reconciliation_item(item)
        except EscrowError as e:
            logger.critical(
                f"🚨 RECONCILIATION_ITEM_LOST: task={task_id} desired_status={status} "
                f"payment={payment_id} milestone={milestone_id} fields={item.fields} "
                f"task_error={error} queue_error={e}"
            )

    def _emit(self, entity_type: str, entity_id: str, from_status: Optional[str], to_status: str):
        self.notifier.emit(TransitionEvent(entity_type, entity_id, from_status, to_status))
