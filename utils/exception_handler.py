"""
Exception Handler Module
Provides the escrow error taxonomy and ledger error translation decorators
"""

import logging
import functools
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError, OperationalError, IntegrityError

logger = logging.getLogger(__name__)


class EscrowError(Exception):
    """Base class for every failure surfaced by the settlement core"""

    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(EscrowError):
    """Bad input - never retried, surfaced to the caller immediately"""


class InvalidAmountError(ValidationError):
    def __init__(self, amount: Any):
        self.amount = amount
        super().__init__(f"Amount must be a positive integer, got {amount!r}")


class SamePartyError(ValidationError):
    def __init__(self, party_id: str):
        self.party_id = party_id
        super().__init__(f"Payer and payee must differ (both are {party_id})")


class EmptyMilestoneListError(ValidationError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"At least one milestone is required for task {task_id}")


class MilestoneSumMismatchError(ValidationError):
    def __init__(self, task_id: str, expected_total: int, actual_total: int):
        self.task_id = task_id
        self.expected_total = expected_total
        self.actual_total = actual_total
        super().__init__(
            f"Milestones for task {task_id} sum to {actual_total}, expected {expected_total}"
        )


class NotFoundError(EscrowError):
    """Unknown payment / milestone / task id - never retried"""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class ConflictError(EscrowError):
    """Business rule rejection (double release, refund after release...) - never retried"""


class AlreadyReleasedError(ConflictError):
    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} has already been released")


class NotFundedError(ConflictError):
    def __init__(self, milestone_id: str):
        self.milestone_id = milestone_id
        super().__init__(f"Milestone {milestone_id} has no funded escrow payment")


class InvalidTransitionError(ConflictError):
    def __init__(self, entity_type: str, entity_id: str, from_status: Optional[str], to_status: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid {entity_type} transition for {entity_id}: {from_status} -> {to_status}"
        )


class ConcurrentModificationError(ConflictError):
    """Optimistic lock lost - the record changed between read and write"""

    def __init__(self, entity_type: str, entity_id: str, expected_version: Optional[int]):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"Version conflict for {entity_type} {entity_id}: expected version {expected_version}"
        )


class PersistenceError(EscrowError):
    """Ledger store unavailable or timed out - retryable by the caller with backoff"""

    retryable = True

    def __init__(self, message: str, original_exception: Optional[BaseException] = None):
        self.original_exception = original_exception
        super().__init__(message)


def translate_ledger_errors(func: Callable) -> Callable:
    """
    Decorator for ledger store methods.
    Converts SQLAlchemy failures into PersistenceError so callers only see the
    escrow taxonomy. Escrow errors raised inside the method pass through untouched.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> Any:
        try:
            return func(*args, **kwargs)
        except EscrowError:
            raise
        except OperationalError as e:
            logger.error(f"❌ LEDGER_UNAVAILABLE in {func.__name__}: {e}")
            raise PersistenceError(f"Ledger store unavailable during {func.__name__}: {e}", e) from e
        except IntegrityError as e:
            logger.error(f"❌ LEDGER_INTEGRITY_ERROR in {func.__name__}: {e}")
            raise PersistenceError(f"Ledger integrity failure during {func.__name__}: {e}", e) from e
        except SQLAlchemyError as e:
            logger.error(f"❌ LEDGER_ERROR in {func.__name__}: {type(e).__name__}: {e}")
            raise PersistenceError(f"Ledger failure during {func.__name__}: {e}", e) from e

    return wrapper
