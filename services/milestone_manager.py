"""
Milestone Manager
Splits a task's payment into independently funded and released milestones.

Funding and release go through the EscrowPaymentManager. After every release
the milestones of the task are re-read and, once all are released, the task is
completed through a guarded write so the roll-up fires exactly once.
"""

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from models import MilestoneStatus, PaymentMethod, PaymentStatus, TaskStatus
from services.escrow_payment_manager import EscrowPaymentManager, validate_amount
from services.event_notifier import TransitionEvent
from services.ledger_store import (
    EscrowPaymentRecord, LedgerStore, MilestoneRecord, generate_entity_id
)
from utils.escrow_metadata import MilestoneEscrowMetadata
from utils.escrow_state_machine import MilestoneStateValidator
from utils.exception_handler import (
    AlreadyReleasedError, ConcurrentModificationError, ConflictError, EmptyMilestoneListError,
    EscrowError, MilestoneSumMismatchError, NotFoundError, NotFundedError, ValidationError
)

logger = logging.getLogger(__name__)

# A reserved payment in one of these states can no longer fund the milestone
STALE_FUNDING_STATUSES = {PaymentStatus.FAILED.value, PaymentStatus.REFUNDED.value}


@dataclass
class MilestoneFunding:
    milestone: MilestoneRecord
    payment: EscrowPaymentRecord


class MilestoneManager:
    """Milestone lifecycle and task roll-up"""

    def __init__(self, store: LedgerStore, escrow_manager: EscrowPaymentManager):
        self.store = store
        self.escrow_manager = escrow_manager
        self.retry_policy = escrow_manager.retry_policy
        self.notifier = escrow_manager.notifier
        self.validator = MilestoneStateValidator

    def create_milestones(
        self,
        task_id: str,
        milestones: List[Dict[str, Any]],
        expected_total: Optional[int] = None,
    ) -> List[MilestoneRecord]:
        """
        Create pending milestones for a task, in list order.

        Args:
            task_id: Owning task
            milestones: Entries with title, description, amount and optional due_date
            expected_total: When given, the amounts must add up to it exactly
        """
        if not milestones:
            raise EmptyMilestoneListError(task_id)

        for entry in milestones:
            if not entry.get("title"):
                raise ValidationError("Every milestone needs a title")
            validate_amount(entry.get("amount"))
            due_date = entry.get("due_date")
            if due_date is not None and not isinstance(due_date, date):
                raise ValidationError(f"due_date must be a date, got {due_date!r}")

        actual_total = sum(entry["amount"] for entry in milestones)
        if expected_total is not None and actual_total != expected_total:
            raise MilestoneSumMismatchError(task_id, expected_total, actual_total)

        # Append after any milestones the task already has
        offset = len(self.store.list_milestones_by_task(task_id))
        records = [
            MilestoneRecord(
                milestone_id=generate_entity_id("MS"),
                task_id=task_id,
                title=entry["title"],
                description=entry.get("description"),
                amount=entry["amount"],
                due_date=entry.get("due_date"),
                position=offset + index,
            )
            for index, entry in enumerate(milestones)
        ]

        stored = self.retry_policy.call(
            f"insert_milestones({task_id})", lambda: self.store.insert_milestones(records)
        )
        logger.info(f"✅ MILESTONES_CREATED: task={task_id} count={len(stored)} total={actual_total}")
        for record in stored:
            self._emit(record.milestone_id, None, record.status)
        return stored

    def fund_milestone(
        self,
        milestone_id: str,
        payer_id: str,
        payee_id: str,
        amount: int,
        method: Union[PaymentMethod, str],
    ) -> MilestoneFunding:
        """
        Capture the milestone amount into escrow and link the payment.

        The payment id is reserved on the pending milestone before any capture,
        so a retry after a failed link, or a concurrent call, reuses the same
        payment instead of capturing a second one.
        """
        milestone = self._get_milestone(milestone_id)
        self.validator.validate_transition(milestone_id, milestone.status, MilestoneStatus.FUNDED.value)
        validate_amount(amount)
        if amount != milestone.amount:
            raise ValidationError(
                f"Funding amount {amount} does not match milestone {milestone_id} amount {milestone.amount}"
            )

        reserved = milestone if milestone.reserved_payment_id else self._reserve_payment_id(milestone_id)
        payment = self._capture_reserved(reserved, payer_id, payee_id, amount, method)
        if payment.status in STALE_FUNDING_STATUSES:
            logger.warning(
                f"🔁 MILESTONE_FUNDING_RESERVATION_STALE: {milestone_id} payment {payment.payment_id} "
                f"is {payment.status}, reserving a new one"
            )
            reserved = self._reserve_payment_id(milestone_id, discard=payment.payment_id)
            payment = self._capture_reserved(reserved, payer_id, payee_id, amount, method)

        linked = self._get_milestone(milestone_id)
        if linked.status == MilestoneStatus.FUNDED.value and linked.payment_id == payment.payment_id:
            logger.info(f"⏭️ MILESTONE_ALREADY_FUNDED: {milestone_id} payment={payment.payment_id}")
            return MilestoneFunding(milestone=linked, payment=payment)

        def apply_funding(record: MilestoneRecord) -> MilestoneRecord:
            self.validator.validate_transition(milestone_id, record.status, MilestoneStatus.FUNDED.value)
            return replace(record, status=MilestoneStatus.FUNDED.value, payment_id=payment.payment_id)

        try:
            previous, funded = self._transition(milestone_id, apply_funding)
        except EscrowError as e:
            logger.error(
                f"❌ MILESTONE_FUNDING_UNLINKED: payment {payment.payment_id} captured for "
                f"milestone {milestone_id} but the milestone write failed, retry to link it: {e}"
            )
            raise

        logger.info(f"💰 MILESTONE_FUNDED: {milestone_id} payment={payment.payment_id} amount={amount}")
        self._emit(milestone_id, previous.status, funded.status)
        return MilestoneFunding(milestone=funded, payment=payment)

    def release_milestone(self, milestone_id: str) -> MilestoneRecord:
        """
        Release the milestone's escrow payment, mark the milestone released and
        roll the task up. Resumable: if the payment was already released by an
        earlier call whose milestone write failed, only the remaining writes run.
        """
        milestone = self._get_milestone(milestone_id)
        if milestone.status == MilestoneStatus.RELEASED.value:
            raise AlreadyReleasedError("milestone", milestone_id)
        if not milestone.payment_id:
            raise NotFundedError(milestone_id)
        self.validator.validate_transition(milestone_id, milestone.status, MilestoneStatus.RELEASED.value)

        payment = self.escrow_manager.get_payment(milestone.payment_id)
        if payment.escrow_released:
            logger.warning(
                f"🔁 MILESTONE_RELEASE_RESUMED: payment {payment.payment_id} already released, "
                f"completing milestone {milestone_id}"
            )
        else:
            self.escrow_manager.release_escrow_payment(milestone.payment_id, milestone.task_id)

        def apply_release(record: MilestoneRecord) -> MilestoneRecord:
            if record.status == MilestoneStatus.RELEASED.value:
                raise AlreadyReleasedError("milestone", milestone_id)
            self.validator.validate_transition(milestone_id, record.status, MilestoneStatus.RELEASED.value)
            return replace(
                record,
                status=MilestoneStatus.RELEASED.value,
                completed_at=datetime.now(timezone.utc),
            )

        previous, released = self._transition(milestone_id, apply_release)
        logger.info(f"🔓 MILESTONE_RELEASED: {milestone_id} task={released.task_id}")
        self._emit(milestone_id, previous.status, released.status)

        self._roll_up_task(released.task_id, milestone_id)
        return released

    def dispute_milestone(self, milestone_id: str, reason: str) -> MilestoneRecord:
        milestone = self._get_milestone(milestone_id)
        if milestone.status == MilestoneStatus.RELEASED.value:
            raise AlreadyReleasedError("milestone", milestone_id)
        self.validator.validate_transition(milestone_id, milestone.status, MilestoneStatus.DISPUTED.value)

        self.escrow_manager.dispute_escrow_payment(milestone.payment_id, milestone.task_id, reason)

        def apply_dispute(record: MilestoneRecord) -> MilestoneRecord:
            self.validator.validate_transition(milestone_id, record.status, MilestoneStatus.DISPUTED.value)
            return replace(record, status=MilestoneStatus.DISPUTED.value)

        previous, disputed = self._transition(milestone_id, apply_dispute)
        logger.warning(f"⚠️ MILESTONE_DISPUTED: {milestone_id} reason={reason}")
        self._emit(milestone_id, previous.status, disputed.status)
        return disputed

    def get_task_milestones(self, task_id: str) -> List[MilestoneRecord]:
        return self.retry_policy.call(
            f"list_milestones_by_task({task_id})", lambda: self.store.list_milestones_by_task(task_id)
        )

    # ------------------------------------------------------------------ helpers

    def all_milestones_released(self, task_id: str) -> bool:
        milestones = self.get_task_milestones(task_id)
        return bool(milestones) and all(m.status == MilestoneStatus.RELEASED.value for m in milestones)

    def _roll_up_task(self, task_id: str, milestone_id: str):
        """Complete the task once every milestone is released (fresh read, guarded write)"""
        if not self.all_milestones_released(task_id):
            return

        completed = self.escrow_manager.update_task_status_best_effort(
            task_id,
            TaskStatus.COMPLETED.value,
            fields={"completed_at": datetime.now(timezone.utc)},
            milestone_id=milestone_id,
            unless_status=TaskStatus.COMPLETED.value,
        )
        if completed:
            logger.info(f"🏁 TASK_ROLLED_UP: {task_id} completed after final milestone {milestone_id}")

    def _get_milestone(self, milestone_id: str) -> MilestoneRecord:
        return self.retry_policy.call(
            f"get_milestone({milestone_id})", lambda: self.store.get_milestone(milestone_id)
        )

    def _reserve_payment_id(self, milestone_id: str, discard: Optional[str] = None) -> MilestoneRecord:
        """Store a payment id on the pending milestone; a reservation made concurrently wins"""

        def reserve(record: MilestoneRecord) -> MilestoneRecord:
            self.validator.validate_transition(milestone_id, record.status, MilestoneStatus.FUNDED.value)
            if record.reserved_payment_id and record.reserved_payment_id != discard:
                return record
            return replace(record, reserved_payment_id=generate_entity_id("PAY"))

        _, reserved = self._transition(milestone_id, reserve)
        logger.debug(f"📌 MILESTONE_PAYMENT_RESERVED: {milestone_id} payment={reserved.reserved_payment_id}")
        return reserved

    def _capture_reserved(
        self,
        milestone: MilestoneRecord,
        payer_id: str,
        payee_id: str,
        amount: int,
        method: Union[PaymentMethod, str],
    ) -> EscrowPaymentRecord:
        """Capture under the reserved id, or return the payment already captured under it"""
        payment_id = milestone.reserved_payment_id
        try:
            payment = self.escrow_manager.get_payment(payment_id)
        except NotFoundError:
            try:
                return self.escrow_manager.create_escrow_payment(
                    milestone.task_id,
                    payer_id,
                    payee_id,
                    amount,
                    method,
                    metadata=MilestoneEscrowMetadata(milestone_id=milestone.milestone_id),
                    payment_id=payment_id,
                )
            except ConcurrentModificationError:
                payment = self.escrow_manager.get_payment(payment_id)

        if payment.status in STALE_FUNDING_STATUSES:
            return payment
        if (payment.payer_id, payment.payee_id, payment.amount) != (payer_id, payee_id, amount):
            raise ConflictError(
                f"Milestone {milestone.milestone_id} is already being funded by payment {payment_id} "
                f"({payment.payer_id} -> {payment.payee_id}, {payment.amount})"
            )
        logger.info(f"🔁 MILESTONE_PAYMENT_REUSED: {milestone.milestone_id} payment={payment_id} status={payment.status}")
        return payment

    def _transition(self, milestone_id: str, mutate: Callable[[MilestoneRecord], MilestoneRecord]):
        """Read-validate-write with one re-read after a lost compare-and-swap"""
        for attempt in (1, 2):
            current = self._get_milestone(milestone_id)
            updated = mutate(current)
            try:
                stored = self.retry_policy.call(
                    f"upsert_milestone({milestone_id})", lambda: self.store.upsert_milestone(updated)
                )
                return current, stored
            except ConcurrentModificationError:
                if attempt == 2:
                    raise
                logger.warning(f"🔒 MILESTONE_VERSION_CONFLICT: {milestone_id} changed concurrently, re-validating")

    def _emit(self, milestone_id: str, from_status: Optional[str], to_status: str):
        self.notifier.emit(TransitionEvent("milestone", milestone_id, from_status, to_status))
