"""
Trade Lifecycle Service
Creates transactions from accepted quotations and drives the steps that
precede and surround the escrow: payment, supplier progress, document
verification and cancellation.
"""

import logging
from datetime import datetime
from typing import List, Optional, Union

from database import get_session, managed_session
from models import (
    ActorRole,
    Escrow,
    EscrowStatus,
    ReleaseCondition,
    Transaction,
    TransactionMilestone,
    TransactionStatus,
    TransactionStatusHistory,
)
from services.collaborators import (
    SYSTEM_ACTOR,
    Actor,
    Audience,
    Notification,
    dispatch_notifications,
    parties_of,
)
from services.escrow_ledger import ConditionResult, EscrowLedger
from services.projections import EscrowSnapshot, MilestoneSnapshot, TransactionSnapshot
from utils.atomic_transactions import locked_trade_operation
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.exceptions import (
    EscrowAlreadyExists,
    InvalidTransition,
    NotFound,
    Unauthorized,
    ValidationError,
)
from utils.money import Money
from utils.transaction_state_machine import (
    TransactionEvent,
    allowed_events,
    apply_transition,
    record_milestone,
)

logger = logging.getLogger(__name__)

SUPPLIER_PROGRESS_EVENTS = frozenset({
    TransactionEvent.START_PRODUCTION,
    TransactionEvent.SHIP,
    TransactionEvent.MARK_IN_TRANSIT,
    TransactionEvent.MARK_DELIVERED,
})


class TradeLifecycleService:
    """Transaction creation, payment and fulfilment steps"""

    @classmethod
    def accept_quotation(
        cls,
        actor: Actor,
        supplier_id: str,
        amount: Money,
        quotation_id: Optional[str] = None,
        requirement_id: Optional[str] = None,
        buyer_email: Optional[str] = None,
        buyer_name: Optional[str] = None,
        supplier_email: Optional[str] = None,
        supplier_name: Optional[str] = None,
        estimated_delivery: Optional[datetime] = None,
    ) -> TransactionSnapshot:
        """Buyer accepts a quotation: transaction INITIATED with a PENDING escrow"""
        if actor.role != ActorRole.BUYER:
            raise Unauthorized("Only a buyer can accept a quotation")
        if not supplier_id:
            raise ValidationError("Supplier is required")
        if supplier_id == actor.user_id:
            raise ValidationError("Buyer and supplier must be different users")
        if amount.is_zero:
            raise ValidationError("Transaction amount must be greater than zero")

        with managed_session() as session:
            if quotation_id is not None:
                existing = (
                    session.query(Transaction.id)
                    .filter(Transaction.quotation_id == quotation_id)
                    .first()
                )
                if existing is not None:
                    raise InvalidTransition(
                        f"Quotation {quotation_id} already accepted as {existing[0]}",
                        error_code="QUOTATION_ALREADY_ACCEPTED",
                    )

            now = get_naive_utc_now()
            transaction = Transaction(
                buyer_id=actor.user_id,
                supplier_id=supplier_id,
                buyer_email=buyer_email,
                buyer_name=buyer_name,
                supplier_email=supplier_email,
                supplier_name=supplier_name,
                quotation_id=quotation_id,
                requirement_id=requirement_id,
                amount_minor=amount.minor_units,
                currency=amount.currency,
                status=TransactionStatus.INITIATED.value,
                estimated_delivery=ensure_naive_datetime(estimated_delivery),
                created_at=now,
                updated_at=now,
            )
            session.add(transaction)
            session.flush()

            session.add(Escrow(
                transaction_id=transaction.id,
                amount_minor=amount.minor_units,
                currency=amount.currency,
                status=EscrowStatus.PENDING.value,
                version=1,
            ))
            record_milestone(session, transaction, TransactionStatus.INITIATED, "Quotation accepted", actor)
            session.add(TransactionStatusHistory(
                transaction_id=transaction.id,
                old_status=None,
                new_status=TransactionStatus.INITIATED.value,
                event="accept_quotation",
                changed_by_id=actor.user_id,
                changed_by_role=actor.role.value,
                created_at=now,
            ))
            session.flush()
            session.refresh(transaction)
            snapshot = TransactionSnapshot.from_model(transaction)
            notification = Notification(
                "transaction.initiated", transaction.id, Audience(parties=parties_of(transaction))
            )

        dispatch_notifications([notification])
        logger.info(f"🤝 TRANSACTION_CREATED: {snapshot.id} {amount} buyer={actor.user_id} supplier={supplier_id}")
        return snapshot

    @classmethod
    def request_payment(cls, actor: Actor, transaction_id: str) -> TransactionSnapshot:
        with locked_trade_operation(transaction_id) as uow:
            apply_transition(uow, actor, TransactionEvent.REQUEST_PAYMENT)
            return TransactionSnapshot.from_model(uow.transaction)

    @classmethod
    def capture_payment(
        cls, transaction_id: str, payment_reference: str, amount: Optional[Money] = None
    ) -> EscrowSnapshot:
        """
        Payment provider confirmed the buyer's funds.

        Transaction -> PAYMENT_RECEIVED -> ESCROW_HELD and the escrow is held,
        all in one unit of work.
        """
        if not payment_reference:
            raise ValidationError("Payment reference is required")

        with locked_trade_operation(transaction_id) as uow:
            escrow = uow.escrow
            if escrow is not None and escrow.status != EscrowStatus.PENDING.value:
                raise EscrowAlreadyExists(
                    f"Escrow for {transaction_id} already exists in status {escrow.status}"
                )

            apply_transition(
                uow, SYSTEM_ACTOR, TransactionEvent.CAPTURE_PAYMENT,
                description=f"Payment {payment_reference} received",
            )
            uow.transaction.payment_reference = payment_reference
            escrow = EscrowLedger._hold_locked(uow, amount or uow.transaction.amount)
            logger.info(f"💳 PAYMENT_CAPTURED: {transaction_id} ref={payment_reference}")
            return EscrowSnapshot.from_model(escrow)

    @classmethod
    def record_supplier_progress(
        cls,
        actor: Actor,
        transaction_id: str,
        event: Union[TransactionEvent, str],
        description: Optional[str] = None,
        estimated_delivery: Optional[datetime] = None,
    ) -> TransactionSnapshot:
        """Production and shipping updates; they never touch the escrow"""
        try:
            event = event if isinstance(event, TransactionEvent) else TransactionEvent(str(event).lower())
        except ValueError:
            raise ValidationError(f"Unknown progress event: {event!r}")
        if event not in SUPPLIER_PROGRESS_EVENTS:
            raise ValidationError(f"{event.value} is not a fulfilment update")

        with locked_trade_operation(transaction_id) as uow:
            apply_transition(uow, actor, event, description=description)
            if estimated_delivery is not None:
                uow.transaction.estimated_delivery = ensure_naive_datetime(estimated_delivery)
            return TransactionSnapshot.from_model(uow.transaction)

    @classmethod
    def verify_documents(cls, actor: Actor, transaction_id: str) -> ConditionResult:
        """Trade documents checked out; satisfies the documents condition"""
        if actor.role not in (ActorRole.ADMIN, ActorRole.SYSTEM):
            raise Unauthorized("Only an admin or the document verifier can verify documents")
        result = EscrowLedger.satisfy_condition(transaction_id, ReleaseCondition.DOCUMENTS_VERIFIED)
        logger.info(f"📄 DOCUMENTS_VERIFIED: {transaction_id} by {actor.label}")
        return result

    @classmethod
    def cancel_transaction(cls, actor: Actor, transaction_id: str, reason: str) -> TransactionSnapshot:
        """Only possible while no funds are held"""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Cancellation reason is required")

        with locked_trade_operation(transaction_id) as uow:
            apply_transition(uow, actor, TransactionEvent.CANCEL, reason=reason)
            uow.transaction.cancellation_reason = reason
            uow.transaction.cancelled_at = get_naive_utc_now()
            logger.info(f"🚫 TRANSACTION_CANCELLED: {transaction_id} by {actor.label}: {reason}")
            return TransactionSnapshot.from_model(uow.transaction)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    @classmethod
    def get_transaction(cls, transaction_id: str) -> TransactionSnapshot:
        session = get_session()
        try:
            transaction = session.query(Transaction).filter(Transaction.id == transaction_id).first()
            if transaction is None:
                raise NotFound(f"Transaction {transaction_id} not found")
            return TransactionSnapshot.from_model(transaction)
        finally:
            session.close()

    @classmethod
    def list_transactions_for_user(
        cls, user_id: str, role: Optional[ActorRole] = None, status: Optional[TransactionStatus] = None
    ) -> List[TransactionSnapshot]:
        session = get_session()
        try:
            query = session.query(Transaction)
            if role == ActorRole.BUYER:
                query = query.filter(Transaction.buyer_id == user_id)
            elif role == ActorRole.SUPPLIER:
                query = query.filter(Transaction.supplier_id == user_id)
            else:
                query = query.filter(
                    (Transaction.buyer_id == user_id) | (Transaction.supplier_id == user_id)
                )
            if status is not None:
                query = query.filter(Transaction.status == status.value)
            transactions = query.order_by(Transaction.created_at.desc()).all()
            return [TransactionSnapshot.from_model(t, with_milestones=False) for t in transactions]
        finally:
            session.close()

    @classmethod
    def get_milestones(cls, transaction_id: str) -> List[MilestoneSnapshot]:
        session = get_session()
        try:
            milestones = (
                session.query(TransactionMilestone)
                .filter(TransactionMilestone.transaction_id == transaction_id)
                .order_by(TransactionMilestone.sequence)
                .all()
            )
            return [MilestoneSnapshot.from_model(m) for m in milestones]
        finally:
            session.close()

    @classmethod
    def available_events(cls, actor: Actor, transaction_id: str) -> List[TransactionEvent]:
        """Events the actor could try next; guards are checked only on apply"""
        transaction = cls.get_transaction(transaction_id)
        return allowed_events(TransactionStatus(transaction.status), actor.role)


__all__ = ["TradeLifecycleService", "SUPPLIER_PROGRESS_EVENTS"]
