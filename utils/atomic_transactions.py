"""Atomic, per-transaction locked units of work for escrow mutations

The escrow row is the unit of contention. Every money-affecting operation
runs inside ``locked_trade_operation``:

1. an in-process re-entrant lock keyed by transaction id,
2. a database session with the Transaction and Escrow rows loaded
   ``FOR UPDATE`` (row locks on PostgreSQL),
3. compare-and-set on ``escrows.status`` for every status change, so a
   writer that slipped past the first two layers still cannot double-apply.

Notifications queued on the unit of work go out only after commit.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Generator, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from database import SessionLocal
from models import Escrow, Transaction
from services.collaborators import Audience, Notification, dispatch_notifications
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import NotFound

logger = logging.getLogger(__name__)

_registry_guard = threading.Lock()
_trade_locks: Dict[str, threading.RLock] = {}
_active = threading.local()


def _lock_for(transaction_id: str) -> threading.RLock:
    with _registry_guard:
        lock = _trade_locks.get(transaction_id)
        if lock is None:
            lock = threading.RLock()
            _trade_locks[transaction_id] = lock
        return lock


@contextmanager
def trade_lock(transaction_id: str) -> Generator[None, None, None]:
    """In-process exclusive lock for one transaction"""
    lock = _lock_for(transaction_id)
    lock.acquire()
    try:
        yield
    finally:
        lock.release()


@dataclass
class TradeUnitOfWork:
    """Locked rows and the session they live in"""
    session: Session
    transaction: Transaction
    escrow: Optional[Escrow]
    notifications: List[Notification] = field(default_factory=list)

    def notify(self, event: str, audience: Audience):
        self.notifications.append(Notification(event, self.transaction.id, audience))

    def refresh_escrow(self) -> Optional[Escrow]:
        self.escrow = _load_escrow(self.session, self.transaction.id)
        return self.escrow


def _load_transaction(session: Session, transaction_id: str) -> Transaction:
    transaction = (
        session.query(Transaction)
        .filter(Transaction.id == transaction_id)
        .with_for_update()
        .first()
    )
    if transaction is None:
        raise NotFound(f"Transaction {transaction_id} not found")
    return transaction


def _load_escrow(session: Session, transaction_id: str) -> Optional[Escrow]:
    return (
        session.query(Escrow)
        .filter(Escrow.transaction_id == transaction_id)
        .with_for_update()
        .first()
    )


def _active_units() -> Dict[str, TradeUnitOfWork]:
    units = getattr(_active, "units", None)
    if units is None:
        units = {}
        _active.units = units
    return units


@contextmanager
def locked_trade_operation(transaction_id: str) -> Generator[TradeUnitOfWork, None, None]:
    """
    Run a unit of work with the transaction's rows locked.

    Re-entrant: a nested call for the same transaction on the same thread
    joins the outer unit of work and leaves commit to the outermost caller.
    """
    units = _active_units()
    outer = units.get(transaction_id)
    if outer is not None:
        logger.debug(f"Nested locked operation joins outer unit of work for {transaction_id}")
        yield outer
        return

    with trade_lock(transaction_id):
        session = SessionLocal()
        uow = None
        try:
            uow = TradeUnitOfWork(
                session=session,
                transaction=_load_transaction(session, transaction_id),
                escrow=_load_escrow(session, transaction_id),
            )
            logger.debug(f"🔒 TRADE_LOCKED: {transaction_id}")
            units[transaction_id] = uow
            try:
                yield uow
            finally:
                units.pop(transaction_id, None)
            session.commit()
            logger.debug(f"TRADE_OPERATION_COMMITTED: {transaction_id}")
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    if uow is not None and uow.notifications:
        dispatch_notifications(uow.notifications)


def compare_and_set_escrow_status(
    session: Session, escrow: Escrow, expected: str, new: str, **values
) -> bool:
    """
    Move ``escrow`` from ``expected`` to ``new`` only if nobody else moved it first.

    Pending attribute changes on ``escrow`` are flushed before the
    conditional update and the row is reloaded afterwards.
    Returns False when the row was no longer in ``expected``.
    """
    session.flush()
    stmt = (
        update(Escrow)
        .where(Escrow.id == escrow.id, Escrow.status == expected)
        .values(status=new, version=Escrow.version + 1, updated_at=get_naive_utc_now(), **values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    session.refresh(escrow)
    if result.rowcount == 0:
        logger.warning(
            f"🔒 Escrow CAS lost: {escrow.id} expected {expected} but found {escrow.status}"
        )
        return False
    logger.debug(f"Escrow {escrow.id}: {expected} -> {new} (v{escrow.version})")
    return True


__all__ = [
    "trade_lock",
    "TradeUnitOfWork",
    "locked_trade_operation",
    "compare_and_set_escrow_status",
]
