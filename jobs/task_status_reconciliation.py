"""
Task Status Reconciliation
Replays task status writes that failed after their escrow payment was already
committed. Each item is re-checked against the authoritative payment (or the
milestone roll-up) before it is applied, so a stale item never regresses a task.
"""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from config import Config
from models import MilestoneStatus, PaymentStatus, ReconciliationItemStatus, TaskStatus
from services.ledger_store import LedgerStore, ReconciliationItem
from utils.exception_handler import EscrowError

logger = logging.getLogger(__name__)


class TaskReconciliationResult:
    """Result object for reconciliation runs"""

    def __init__(self):
        self.items_checked = 0
        self.items_resolved = 0
        self.items_superseded = 0
        self.items_retried = 0
        self.items_abandoned = 0
        self.execution_time_ms = 0
        self.resolved = []
        self.errors = []

    def add_resolution(self, item: ReconciliationItem, outcome: str):
        """Record an item taken off the queue"""
        if outcome == "superseded":
            self.items_superseded += 1
        else:
            self.items_resolved += 1
        self.resolved.append({
            "item_id": item.item_id,
            "task_id": item.task_id,
            "desired_status": item.desired_status,
            "outcome": outcome,
            "resolved_at": datetime.now(timezone.utc).isoformat()
        })

    def add_error(self, error: str):
        self.errors.append(error)
        logger.error(f"TASK_RECONCILIATION_ERROR: {error}")

    def get_summary(self) -> Dict[str, Any]:
        return {
            "items_checked": self.items_checked,
            "items_resolved": self.items_resolved,
            "items_superseded": self.items_superseded,
            "items_retried": self.items_retried,
            "items_abandoned": self.items_abandoned,
            "execution_time_ms": self.execution_time_ms,
            "error_count": len(self.errors),
        }


class TaskStatusReconciliationMonitor:
    """Drains the task reconciliation queue"""

    @classmethod
    async def run_reconciliation(cls, store: LedgerStore, max_items: Optional[int] = None) -> TaskReconciliationResult:
        """
        Main entry point - replay open reconciliation items

        Args:
            store: Ledger store holding the queue
            max_items: Maximum number of items handled in one run

        Returns:
            TaskReconciliationResult with detailed results
        """
        start_time = datetime.now(timezone.utc)
        result = TaskReconciliationResult()
        limit = max_items or Config.RECONCILIATION_BATCH_SIZE

        try:
            items = store.list_open_reconciliation_items(limit)
        except EscrowError as e:
            result.add_error(f"Could not load reconciliation queue: {e}")
            return result

        if not items:
            logger.info("✅ TASK_RECONCILIATION: queue empty")
            return result

        logger.info(f"🔍 TASK_RECONCILIATION_START: {len(items)} open items")
        for item in items:
            result.items_checked += 1
            await cls._reconcile_item(store, item, result)

        result.execution_time_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        logger.info(
            f"🔧 TASK_RECONCILIATION_COMPLETE: checked {result.items_checked}, resolved {result.items_resolved}, "
            f"superseded {result.items_superseded}, retried {result.items_retried}, "
            f"abandoned {result.items_abandoned} in {result.execution_time_ms}ms"
        )
        return result

    @classmethod
    async def _reconcile_item(cls, store: LedgerStore, item: ReconciliationItem, result: TaskReconciliationResult):
        try:
            if not cls._is_still_justified(store, item):
                store.save_reconciliation_item(replace(
                    item,
                    status=ReconciliationItemStatus.RESOLVED.value,
                    last_error=f"superseded: ledger no longer supports task status {item.desired_status}",
                    resolved_at=datetime.now(timezone.utc),
                ))
                logger.info(f"⏭️ TASK_RECONCILIATION_SUPERSEDED: #{item.item_id} task={item.task_id}")
                result.add_resolution(item, "superseded")
                return

            unless_status = TaskStatus.COMPLETED.value if item.desired_status == TaskStatus.COMPLETED.value else None
            written = store.update_task_status(
                item.task_id, item.desired_status, fields=item.fields or None, unless_status=unless_status
            )
            store.save_reconciliation_item(replace(
                item,
                status=ReconciliationItemStatus.RESOLVED.value,
                resolved_at=datetime.now(timezone.utc),
            ))
            logger.info(
                f"✅ TASK_RECONCILIATION_APPLIED: #{item.item_id} task={item.task_id} -> {item.desired_status}"
                + ("" if written else " (already applied)")
            )
            result.add_resolution(item, "applied" if written else "already_applied")

        except EscrowError as e:
            cls._record_failure(store, item, e, result)

    @classmethod
    def _record_failure(cls, store: LedgerStore, item: ReconciliationItem, error: EscrowError,
                        result: TaskReconciliationResult):
        attempts = item.attempts + 1
        abandoned = attempts >= Config.RECONCILIATION_MAX_ATTEMPTS
        updated = replace(
            item,
            attempts=attempts,
            last_error=str(error),
            status=ReconciliationItemStatus.ABANDONED.value if abandoned else item.status,
        )

        if abandoned:
            result.items_abandoned += 1
            logger.critical(
                f"🚨 TASK_RECONCILIATION_ABANDONED: #{item.item_id} task={item.task_id} "
                f"desired_status={item.desired_status} payment={item.payment_id} "
                f"milestone={item.milestone_id} after {attempts} attempts: {error}"
            )
        else:
            result.items_retried += 1
            logger.warning(
                f"⚠️ TASK_RECONCILIATION_RETRY: #{item.item_id} task={item.task_id} "
                f"attempt {attempts}/{Config.RECONCILIATION_MAX_ATTEMPTS}: {error}"
            )

        try:
            store.save_reconciliation_item(updated)
        except EscrowError as e:
            result.add_error(f"Could not update reconciliation item #{item.item_id}: {e}")

    @staticmethod
    def _is_still_justified(store: LedgerStore, item: ReconciliationItem) -> bool:
        """Whether the ledger still supports writing item.desired_status to the task"""
        desired = item.desired_status

        if desired == TaskStatus.COMPLETED.value and item.milestone_id:
            milestones = store.list_milestones_by_task(item.task_id)
            return bool(milestones) and all(m.status == MilestoneStatus.RELEASED.value for m in milestones)

        if not item.payment_id:
            return True

        payment = store.get_payment(item.payment_id)
        expected: Dict[str, List[str]] = {
            TaskStatus.COMPLETED.value: [PaymentStatus.COMPLETED.value],
            TaskStatus.CANCELLED.value: [PaymentStatus.REFUNDED.value],
            TaskStatus.DISPUTED.value: [PaymentStatus.DISPUTED.value],
            TaskStatus.IN_PROGRESS.value: [PaymentStatus.PROCESSING.value],
        }
        if desired not in expected:
            return True
        if desired == TaskStatus.COMPLETED.value:
            return payment.escrow_released
        return payment.status in expected[desired]


# Main entry point for scheduler
async def reconcile_task_statuses(store: Optional[LedgerStore] = None) -> Dict[str, Any]:
    """
    Main entry point for the task status reconciliation job

    Returns:
        Dictionary with reconciliation results
    """
    if store is None:
        import database
        from services.ledger_store import SqlAlchemyLedgerStore

        if not database.test_connection():
            result = TaskReconciliationResult()
            result.add_error("ledger database unreachable, run skipped")
            return result.get_summary()
        store = SqlAlchemyLedgerStore(database.SessionLocal)

    result = await TaskStatusReconciliationMonitor.run_reconciliation(store)
    summary = result.get_summary()

    if summary["items_abandoned"] > 0 or summary["error_count"] > 0:
        logger.warning(
            f"⚠️ TASK_RECONCILIATION_SUMMARY: abandoned {summary['items_abandoned']}, "
            f"errors {summary['error_count']}"
        )
    else:
        logger.info(f"✅ TASK_RECONCILIATION_SUMMARY: resolved {summary['items_resolved']} items")
    return summary
