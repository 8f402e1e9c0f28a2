"""
Delivery confirmation and buyer quality assessment

Both steps feed release conditions on the escrow. A failing quality rating
does not satisfy its condition; it opens a dispute and freezes the funds in
the same unit of work.
"""

import logging
from datetime import datetime, timedelta
from typing import List, NamedTuple, Optional

from config import Config
from database import get_session
from models import (
    ApprovalStatus,
    EscrowStatus,
    QualityAssessment,
    ReleaseCondition,
    Transaction,
    TransactionStatus,
)
from services.collaborators import SYSTEM_ACTOR, Actor
from services.dispute_resolution import DisputeResolutionService
from services.escrow_ledger import EscrowLedger
from utils.atomic_transactions import locked_trade_operation
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.exceptions import DisputePending, InvalidTransition, NotYetDue, RatingRequired, ValidationError
from utils.transaction_state_machine import TransactionEvent, apply_transition

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5
# Ratings at or above this approve the goods
APPROVAL_THRESHOLD = 3
AUTO_APPROVAL_RATING = 4


class DeliveryResult(NamedTuple):
    transaction_id: str
    transaction_status: str
    escrow_status: str
    released: bool


class QualityResult(NamedTuple):
    transaction_id: str
    assessment_id: str
    approval_status: ApprovalStatus
    transaction_status: str
    escrow_status: str
    released: bool = False
    dispute_id: Optional[str] = None


def approval_for_rating(rating: int) -> ApprovalStatus:
    return ApprovalStatus.APPROVED if rating >= APPROVAL_THRESHOLD else ApprovalStatus.REJECTED


def validate_assessment_input(rating, notes: Optional[str]) -> str:
    """Reject bad input before anything is persisted; returns cleaned notes"""
    if rating is None or rating == 0:
        raise RatingRequired("A quality rating is required")
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise ValidationError(f"Rating must be a whole number, got {rating!r}")
    if not MIN_RATING <= rating <= MAX_RATING:
        raise ValidationError(f"Rating must be between {MIN_RATING} and {MAX_RATING}")

    notes = (notes or "").strip()
    if len(notes) < Config.MIN_QUALITY_NOTES_LENGTH:
        raise ValidationError(
            f"Quality notes must be at least {Config.MIN_QUALITY_NOTES_LENGTH} characters"
        )
    return notes


def rejection_dispute_reason(rating: int, notes: str, issues: List[str]) -> str:
    reason = f"Quality rejected (rating {rating}/{MAX_RATING}): {notes}"
    if issues:
        reason += f" Issues: {'; '.join(issues)}"
    return reason


class DeliveryQualityService:
    """Buyer-side verification of delivered goods"""

    @classmethod
    def confirm_delivery(
        cls, actor: Actor, transaction_id: str, location: str, notes: Optional[str] = None
    ) -> DeliveryResult:
        location = (location or "").strip()
        if not location:
            raise ValidationError("Delivery location is required")

        with locked_trade_operation(transaction_id) as uow:
            transaction = uow.transaction
            apply_transition(uow, actor, TransactionEvent.CONFIRM_DELIVERY, description=f"Delivered to {location}")

            transaction.delivery_location = location
            transaction.delivery_notes = notes
            transaction.delivery_confirmed_at = get_naive_utc_now()

            condition = EscrowLedger._satisfy_condition_locked(uow, ReleaseCondition.DELIVERY_CONFIRMED)
            if not condition.released:
                apply_transition(uow, SYSTEM_ACTOR, TransactionEvent.REQUEST_QUALITY_ASSESSMENT)

            logger.info(f"📦 DELIVERY_CONFIRMED: {transaction_id} at {location} by {actor.label}")
            return DeliveryResult(
                transaction_id=transaction.id,
                transaction_status=transaction.status,
                escrow_status=uow.escrow.status,
                released=condition.released,
            )

    @classmethod
    def submit_quality_assessment(
        cls,
        actor: Actor,
        transaction_id: str,
        rating: Optional[int],
        notes: str,
        issues: Optional[List[str]] = None,
    ) -> QualityResult:
        """
        Record the buyer's verdict.

        rating >= 3 approves and satisfies the quality condition (which may
        release the funds). rating <= 2 rejects, opens a dispute and freezes
        the escrow.
        """
        notes = validate_assessment_input(rating, notes)
        issues = [str(issue).strip() for issue in (issues or []) if str(issue).strip()]
        approval = approval_for_rating(rating)

        with locked_trade_operation(transaction_id) as uow:
            transaction = uow.transaction
            event = (
                TransactionEvent.APPROVE_QUALITY if approval == ApprovalStatus.APPROVED
                else TransactionEvent.REJECT_QUALITY
            )
            apply_transition(uow, actor, event, description=f"Rated {rating}/{MAX_RATING}")

            now = get_naive_utc_now()
            assessment = QualityAssessment(
                transaction_id=transaction.id,
                assessed_by_id=actor.user_id,
                rating=rating,
                notes=notes,
                issues=issues,
                approval_status=approval.value,
                created_at=now,
            )
            uow.session.add(assessment)
            transaction.quality_assessment = assessment
            transaction.quality_assessed_at = now
            uow.session.flush()

            released = False
            dispute_id = None
            if approval == ApprovalStatus.APPROVED:
                condition = EscrowLedger._satisfy_condition_locked(uow, ReleaseCondition.QUALITY_APPROVED)
                released = condition.released
                logger.info(f"✅ QUALITY_APPROVED: {transaction_id} rated {rating}")
            else:
                dispute = DisputeResolutionService._open_dispute_locked(
                    uow, actor, rejection_dispute_reason(rating, notes, issues),
                    description=notes,
                )
                dispute_id = dispute.id
                logger.warning(
                    f"❌ QUALITY_REJECTED: {transaction_id} rated {rating}, dispute {dispute_id} opened"
                )

            return QualityResult(
                transaction_id=transaction.id,
                assessment_id=assessment.id,
                approval_status=approval,
                transaction_status=transaction.status,
                escrow_status=uow.escrow.status,
                released=released,
                dispute_id=dispute_id,
            )

    @classmethod
    def auto_approve_quality(cls, transaction_id: str, now: Optional[datetime] = None) -> QualityResult:
        """
        Approve on the buyer's behalf once the assessment window has lapsed.

        Recorded as a rating of 4 by the system. An open dispute or a window
        that has not yet lapsed leaves the transaction untouched.
        """
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        with locked_trade_operation(transaction_id) as uow:
            transaction = uow.transaction
            if uow.escrow is not None and uow.escrow.status == EscrowStatus.DISPUTED.value:
                raise DisputePending(f"Quality for {transaction_id} is under dispute")
            if transaction.status != TransactionStatus.QUALITY_PENDING.value:
                raise InvalidTransition(
                    f"Transaction {transaction_id} is {transaction.status}, not awaiting quality"
                )
            cutoff = now - timedelta(days=Config.QUALITY_AUTO_APPROVE_DAYS)
            if transaction.delivery_confirmed_at is None or transaction.delivery_confirmed_at > cutoff:
                raise NotYetDue(f"Quality window for {transaction_id} is still open")

            apply_transition(
                uow, SYSTEM_ACTOR, TransactionEvent.APPROVE_QUALITY,
                description=f"Auto-approved after {Config.QUALITY_AUTO_APPROVE_DAYS} days",
            )
            assessment = QualityAssessment(
                transaction_id=transaction.id,
                assessed_by_id=SYSTEM_ACTOR.user_id,
                rating=AUTO_APPROVAL_RATING,
                notes=f"Auto-approved after {Config.QUALITY_AUTO_APPROVE_DAYS}-day assessment period",
                issues=[],
                approval_status=ApprovalStatus.APPROVED.value,
                created_at=now,
            )
            uow.session.add(assessment)
            transaction.quality_assessment = assessment
            transaction.quality_assessed_at = now
            uow.session.flush()

            condition = EscrowLedger._satisfy_condition_locked(uow, ReleaseCondition.QUALITY_APPROVED)
            logger.info(f"🤖 QUALITY_AUTO_APPROVED: {transaction_id} released={condition.released}")
            return QualityResult(
                transaction_id=transaction.id,
                assessment_id=assessment.id,
                approval_status=ApprovalStatus.APPROVED,
                transaction_status=transaction.status,
                escrow_status=uow.escrow.status,
                released=condition.released,
            )

    @classmethod
    def pending_quality_reminders(cls, now: Optional[datetime] = None) -> List[str]:
        """Unreminded transactions waiting on the buyer's assessment past the reminder window"""
        return cls._quality_pending_since(now, Config.QUALITY_REMINDER_DAYS, unreminded_only=True)

    @classmethod
    def overdue_quality_assessments(cls, now: Optional[datetime] = None) -> List[str]:
        """Transactions whose assessment window has lapsed without a verdict"""
        return cls._quality_pending_since(now, Config.QUALITY_AUTO_APPROVE_DAYS)

    @staticmethod
    def _quality_pending_since(now: Optional[datetime], days: int, unreminded_only: bool = False) -> List[str]:
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        cutoff = now - timedelta(days=days)
        session = get_session()
        try:
            query = session.query(Transaction.id).filter(
                Transaction.status == TransactionStatus.QUALITY_PENDING.value,
                Transaction.delivery_confirmed_at.isnot(None),
                Transaction.delivery_confirmed_at <= cutoff,
            )
            if unreminded_only:
                query = query.filter(Transaction.quality_reminder_sent_at.is_(None))
            rows = query.order_by(Transaction.delivery_confirmed_at).all()
            return [row[0] for row in rows]
        finally:
            session.close()


__all__ = [
    "DeliveryQualityService",
    "DeliveryResult",
    "QualityResult",
    "approval_for_rating",
    "validate_assessment_input",
]
