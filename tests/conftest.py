"""
Shared fixtures for the trade escrow test suite

Each test gets its own SQLite file database, so threads in the concurrency
tests see each other's commits exactly as separate processes would.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import logging
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import update

import database
from models import ActorRole, Escrow
from services.collaborators import Actor, set_notification_dispatcher
from services.delivery_quality_service import DeliveryQualityService
from services.trade_lifecycle import TradeLifecycleService
from utils.datetime_helpers import get_naive_utc_now
from utils.money import Money
from utils.transaction_state_machine import TransactionEvent

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

BUYER_ID = "buyer-1"
SUPPLIER_ID = "supplier-1"
ADMIN_ID = "admin-1"


class RecordingDispatcher:
    """Captures notifications instead of sending them"""

    def __init__(self):
        self.sent = []

    def notify(self, event, transaction_id, audience):
        self.sent.append((event, transaction_id, audience))

    def events(self, transaction_id=None):
        return [e for e, tid, _ in self.sent if transaction_id is None or tid == transaction_id]


@pytest.fixture
def db(tmp_path):
    """Fresh schema in a per-test SQLite file"""
    database.init_engine(f"sqlite:///{tmp_path / 'escrow_test.db'}")
    database.create_tables()
    yield database.engine
    database.drop_tables()


@pytest.fixture(autouse=True)
def notifications():
    recorder = RecordingDispatcher()
    previous = set_notification_dispatcher(recorder)
    yield recorder
    set_notification_dispatcher(previous)


@pytest.fixture
def buyer():
    return Actor(BUYER_ID, ActorRole.BUYER)


@pytest.fixture
def supplier():
    return Actor(SUPPLIER_ID, ActorRole.SUPPLIER)


@pytest.fixture
def admin():
    return Actor(ADMIN_ID, ActorRole.ADMIN)


@pytest.fixture
def outsider():
    return Actor("buyer-999", ActorRole.BUYER)


STAGES = ("initiated", "held", "shipped", "delivered", "quality_pending")


@pytest.fixture
def make_trade(db, buyer, supplier):
    """
    Drive a new transaction to ``stage`` through the public services.

    Returns the transaction id.
    """
    def _make(amount_minor=10000, currency="USD", stage="held"):
        assert stage in STAGES, stage
        snapshot = TradeLifecycleService.accept_quotation(
            buyer, SUPPLIER_ID, Money.of_minor(amount_minor, currency),
            quotation_id=f"Q-{uuid.uuid4().hex[:8]}",
            buyer_email="buyer@example.com",
            supplier_email="supplier@example.com",
        )
        transaction_id = snapshot.id
        if stage == "initiated":
            return transaction_id

        TradeLifecycleService.capture_payment(transaction_id, f"PAY-{uuid.uuid4().hex[:8]}")
        if stage == "held":
            return transaction_id

        TradeLifecycleService.record_supplier_progress(supplier, transaction_id, TransactionEvent.SHIP)
        if stage == "shipped":
            return transaction_id

        TradeLifecycleService.record_supplier_progress(supplier, transaction_id, TransactionEvent.MARK_DELIVERED)
        if stage == "delivered":
            return transaction_id

        DeliveryQualityService.confirm_delivery(buyer, transaction_id, "Warehouse 7, Lagos")
        return transaction_id

    return _make


@pytest.fixture
def make_due(db):
    """Move an escrow's auto-release date into the past"""
    def _make_due(transaction_id, days_overdue=1):
        with database.managed_session() as session:
            session.execute(
                update(Escrow)
                .where(Escrow.transaction_id == transaction_id)
                .values(auto_release_date=get_naive_utc_now() - timedelta(days=days_overdue))
            )
    return _make_due
