"""
Party Stats Service Tests
"""

import pytest

from services.party_stats_service import PartyStatsService
from services.trust_score_engine import VerificationLevel, compute_trust_score


@pytest.fixture
def history(escrow_manager):
    """fulfiller: two completed tasks, one refunded, one still open"""
    done_1 = escrow_manager.create_escrow_payment("T-1", "client", "fulfiller", 10000, "mtn_money")
    escrow_manager.release_escrow_payment(done_1.payment_id, "T-1")
    done_2 = escrow_manager.create_escrow_payment("T-2", "client", "fulfiller", 4000, "wave")
    escrow_manager.release_escrow_payment(done_2.payment_id, "T-2")
    refunded = escrow_manager.create_escrow_payment("T-3", "client", "fulfiller", 2000, "wave")
    escrow_manager.refund_escrow_payment(refunded.payment_id, "T-3", "no show")
    escrow_manager.create_escrow_payment("T-4", "client", "fulfiller", 3000, "wave")
    # fulfiller hires someone else once
    spent = escrow_manager.create_escrow_payment("T-5", "fulfiller", "helper", 1500, "wave")
    escrow_manager.release_escrow_payment(spent.payment_id, "T-5")


class TestPartyStats:
    """Ledger aggregates"""

    def test_payment_summary(self, ledger_store, history):
        summary = PartyStatsService(ledger_store).get_payment_summary("fulfiller")
        assert summary.total_earned == 9850 + 4000
        assert summary.total_spent == 1500
        assert summary.pending_count == 1
        assert summary.currency == "FCFA"

    def test_client_summary(self, ledger_store, history):
        summary = PartyStatsService(ledger_store).get_payment_summary("client")
        assert summary.total_spent == 14000
        assert summary.total_earned == 0

    def test_build_trust_factors(self, ledger_store, history):
        factors = PartyStatsService(ledger_store).build_trust_factors(
            "fulfiller",
            verification_level=VerificationLevel.BASIC,
            average_client_rating=4.0,
            response_time_minutes=20,
            community_endorsements_count=0,
            has_background_check=False,
        )
        assert factors.completed_tasks_count == 2
        assert factors.cancelled_tasks_count == 1
        assert factors.total_tasks_count == 4
        assert 0 <= compute_trust_score(factors) <= 100

    def test_unknown_party(self, ledger_store):
        summary = PartyStatsService(ledger_store).get_payment_summary("stranger")
        assert (summary.total_earned, summary.total_spent, summary.pending_count) == (0, 0, 0)
