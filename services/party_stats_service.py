"""
Party Stats Service - Ledger-derived payment summaries and trust score inputs
"""

import logging
from dataclasses import dataclass
from typing import List

from config import Config
from models import PaymentStatus
from services.ledger_store import EscrowPaymentRecord, LedgerStore
from services.trust_score_engine import TrustScoreFactors, VerificationLevel

logger = logging.getLogger(__name__)

PENDING_STATUSES = {PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value}


@dataclass
class PaymentSummary:
    party_id: str
    total_earned: int  # net amount received as payee
    total_spent: int  # gross amount paid as payer
    pending_count: int
    currency: str


class PartyStatsService:
    """Aggregates a party's ledger history"""

    def __init__(self, store: LedgerStore):
        self.store = store

    def _payments(self, party_id: str) -> List[EscrowPaymentRecord]:
        return self.store.list_payments_for_party(party_id)

    def get_payment_summary(self, party_id: str) -> PaymentSummary:
        payments = self._payments(party_id)
        completed = [p for p in payments if p.status == PaymentStatus.COMPLETED.value]

        summary = PaymentSummary(
            party_id=party_id,
            total_earned=sum(p.net_amount for p in completed if p.payee_id == party_id),
            total_spent=sum(p.amount for p in completed if p.payer_id == party_id),
            pending_count=sum(1 for p in payments if p.status in PENDING_STATUSES),
            currency=Config.SETTLEMENT_CURRENCY,
        )
        logger.debug(
            f"📊 PAYMENT_SUMMARY: {party_id} earned={summary.total_earned} "
            f"spent={summary.total_spent} pending={summary.pending_count}"
        )
        return summary

    def build_trust_factors(
        self,
        party_id: str,
        verification_level: VerificationLevel,
        average_client_rating: float,
        response_time_minutes: float,
        community_endorsements_count: int,
        has_background_check: bool,
    ) -> TrustScoreFactors:
        """
        Trust inputs for a fulfiller. Task counts come from the payments the
        party received: a task counts as completed when any of its payments
        completed, and as cancelled when one was refunded.
        """
        as_payee = [p for p in self._payments(party_id) if p.payee_id == party_id]

        total_tasks = {p.task_id for p in as_payee}
        completed_tasks = {p.task_id for p in as_payee if p.status == PaymentStatus.COMPLETED.value}
        cancelled_tasks = {p.task_id for p in as_payee if p.status == PaymentStatus.REFUNDED.value}

        return TrustScoreFactors(
            identity_verification_level=verification_level,
            completed_tasks_count=len(completed_tasks),
            average_client_rating=average_client_rating,
            response_time_minutes=response_time_minutes,
            cancelled_tasks_count=len(cancelled_tasks),
            total_tasks_count=len(total_tasks),
            community_endorsements_count=community_endorsements_count,
            has_background_check=has_background_check,
        )
