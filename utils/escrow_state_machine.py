"""
Escrow State Machine
Transition maps for escrow payments and milestones
"""

import logging
from typing import Dict, Optional, Set

from models import PaymentStatus, MilestoneStatus
from utils.exception_handler import InvalidTransitionError

logger = logging.getLogger(__name__)


class PaymentStateValidator:
    """Validates escrow payment state transitions and prevents invalid changes"""

    ENTITY_TYPE = "payment"

    # Valid state transition map
    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        # Capture attempt creates the record already processing
        None: {PaymentStatus.PROCESSING.value},
        # pending and failed -> processing belong to the external capture flow
        # (staged captures and capture retries); managers here create records
        # directly as processing and never write these edges
        PaymentStatus.PENDING.value: {
            PaymentStatus.PROCESSING.value,
            PaymentStatus.FAILED.value,
        },
        PaymentStatus.PROCESSING.value: {
            PaymentStatus.COMPLETED.value,  # Release to payee
            PaymentStatus.REFUNDED.value,  # Refund to payer
            PaymentStatus.FAILED.value,  # External capture failed
            PaymentStatus.DISPUTED.value,
        },
        # Dispute resolution
        PaymentStatus.DISPUTED.value: {
            PaymentStatus.COMPLETED.value,  # Resolve to payee
            PaymentStatus.REFUNDED.value,  # Resolve to payer
        },
        # Capture retry (external)
        PaymentStatus.FAILED.value: {PaymentStatus.PROCESSING.value},
        # Terminal states (no transitions allowed)
        PaymentStatus.COMPLETED.value: set(),
        PaymentStatus.REFUNDED.value: set(),
    }

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        """Check if state transition is valid"""
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def get_valid_transitions(cls, current_status: Optional[str]) -> Set[str]:
        """Get all valid next states for current status"""
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        """Check if status is terminal (no further transitions)"""
        return len(cls.VALID_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def validate_transition(cls, entity_id: str, current_status: Optional[str], new_status: str):
        """Raise InvalidTransitionError unless current_status -> new_status is allowed"""
        if not cls.is_valid_transition(current_status, new_status):
            logger.error(
                f"Invalid {cls.ENTITY_TYPE} transition: {current_status} -> {new_status} for {entity_id}"
            )
            raise InvalidTransitionError(cls.ENTITY_TYPE, entity_id, current_status, new_status)


class MilestoneStateValidator(PaymentStateValidator):
    """Validates milestone state transitions"""

    ENTITY_TYPE = "milestone"

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {MilestoneStatus.PENDING.value},
        MilestoneStatus.PENDING.value: {MilestoneStatus.FUNDED.value},
        MilestoneStatus.FUNDED.value: {
            MilestoneStatus.RELEASED.value,
            MilestoneStatus.DISPUTED.value,
        },
        MilestoneStatus.DISPUTED.value: {MilestoneStatus.RELEASED.value},
        MilestoneStatus.RELEASED.value: set(),
    }
