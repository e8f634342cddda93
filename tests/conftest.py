"""
Shared fixtures for the escrow settlement tests.

Every test gets a fresh in-memory SQLite ledger (single shared connection via
StaticPool), a recording notifier and a retry policy that never sleeps.
"""

import logging
from typing import List, Optional

import pytest

from database import build_engine, build_session_factory
from models import Base
from services.escrow_payment_manager import EscrowPaymentManager
from services.event_notifier import EventNotifier, TransitionEvent
from services.ledger_store import SqlAlchemyLedgerStore
from services.milestone_manager import MilestoneManager
from utils.ledger_retry import LedgerRetryPolicy

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


class RecordingEventNotifier(EventNotifier):
    """Keeps emitted transitions in memory for assertions"""

    def __init__(self):
        self.events: List[TransitionEvent] = []

    def _deliver(self, event: TransitionEvent) -> None:
        self.events.append(event)

    def events_for(self, entity_type: str, entity_id: Optional[str] = None) -> List[TransitionEvent]:
        return [
            event for event in self.events
            if event.entity_type == entity_type and (entity_id is None or event.entity_id == entity_id)
        ]


@pytest.fixture
def engine():
    """In-memory SQLite engine with the full ledger schema"""
    engine = build_engine("sqlite://", echo=False)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def ledger_store(session_factory):
    return SqlAlchemyLedgerStore(session_factory)


@pytest.fixture
def notifier():
    return RecordingEventNotifier()


@pytest.fixture
def sleeps():
    """Backoff delays requested by the retry policy"""
    return []


@pytest.fixture
def retry_policy(sleeps):
    return LedgerRetryPolicy(max_attempts=3, base_delay=0.2, max_delay=5.0, sleep=sleeps.append)


@pytest.fixture
def escrow_manager(ledger_store, notifier, retry_policy):
    return EscrowPaymentManager(ledger_store, notifier=notifier, retry_policy=retry_policy)


@pytest.fixture
def milestone_manager(ledger_store, escrow_manager):
    return MilestoneManager(ledger_store, escrow_manager)


@pytest.fixture
def funded_payment(escrow_manager):
    """A processing full-escrow payment of 10 000 FCFA over MTN mobile money"""
    return escrow_manager.create_escrow_payment(
        "TASK-1", "requester-1", "fulfiller-1", 10000, "mtn_money", description="Garden cleanup"
    )
