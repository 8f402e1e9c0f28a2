"""
Auto-Release Service
Releases escrow whose grace period has lapsed without a dispute, reminds
buyers who have not assessed delivered goods and approves assessments they
let lapse.

Each escrow is handled independently: one failure is logged and the sweep
moves on to the next row.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from database import get_session, managed_session
from models import Escrow, EscrowStatus, Transaction
from services.collaborators import Audience, Notification, Party, dispatch_notifications
from services.delivery_quality_service import DeliveryQualityService
from services.escrow_ledger import RACE_ERROR_CODES, EscrowLedger
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.exceptions import DisputePending, InvalidTransition, NotYetDue

logger = logging.getLogger(__name__)


@dataclass
class AutoReleaseSweepResult:
    released: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.released) + len(self.skipped) + len(self.failed)


@dataclass
class QualityAutoApprovalResult:
    approved: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.approved) + len(self.skipped) + len(self.failed)


def due_escrow_transaction_ids(now: datetime) -> List[str]:
    session = get_session()
    try:
        rows = (
            session.query(Escrow.transaction_id)
            .filter(
                Escrow.status == EscrowStatus.HELD.value,
                Escrow.auto_release_date.isnot(None),
                Escrow.auto_release_date <= now,
            )
            .order_by(Escrow.auto_release_date)
            .all()
        )
        return [row[0] for row in rows]
    finally:
        session.close()


class AutoReleaseService:
    """Scheduler-driven escrow release and buyer reminders"""

    @classmethod
    def process_auto_release(cls, now: Optional[datetime] = None) -> AutoReleaseSweepResult:
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        result = AutoReleaseSweepResult()
        candidates = due_escrow_transaction_ids(now)
        if not candidates:
            logger.debug("No escrows due for auto-release")
            return result

        logger.info(f"⏰ AUTO_RELEASE_SWEEP: {len(candidates)} escrow(s) due")
        for transaction_id in candidates:
            try:
                EscrowLedger.auto_release(transaction_id, now=now)
                result.released.append(transaction_id)
            except (DisputePending, NotYetDue) as e:
                logger.info(f"Auto-release skipped for {transaction_id}: {e.error_code}")
                result.skipped.append(transaction_id)
            except InvalidTransition as e:
                if e.error_code in RACE_ERROR_CODES:
                    # Settled since the scan
                    logger.info(f"Auto-release skipped for {transaction_id}: {e.error_code}")
                    result.skipped.append(transaction_id)
                else:
                    logger.error(f"❌ Auto-release refused for {transaction_id}: {e}")
                    result.failed.append(transaction_id)
            except Exception as e:
                logger.error(f"❌ Auto-release failed for {transaction_id}: {e}", exc_info=True)
                result.failed.append(transaction_id)

        logger.info(
            f"✅ AUTO_RELEASE_SWEEP done: released={len(result.released)} "
            f"skipped={len(result.skipped)} failed={len(result.failed)}"
        )
        return result

    @classmethod
    def process_quality_auto_approval(cls, now: Optional[datetime] = None) -> QualityAutoApprovalResult:
        """Approve assessments the buyer let lapse; may release the escrow"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        result = QualityAutoApprovalResult()
        candidates = DeliveryQualityService.overdue_quality_assessments(now)
        if not candidates:
            logger.debug("No quality assessments due for auto-approval")
            return result

        logger.info(f"⏰ QUALITY_AUTO_APPROVAL_SWEEP: {len(candidates)} assessment(s) overdue")
        for transaction_id in candidates:
            try:
                DeliveryQualityService.auto_approve_quality(transaction_id, now=now)
                result.approved.append(transaction_id)
            except (DisputePending, NotYetDue, InvalidTransition) as e:
                # Assessed or disputed since the scan
                logger.info(f"Quality auto-approval skipped for {transaction_id}: {e.error_code}")
                result.skipped.append(transaction_id)
            except Exception as e:
                logger.error(f"❌ Quality auto-approval failed for {transaction_id}: {e}", exc_info=True)
                result.failed.append(transaction_id)

        logger.info(
            f"✅ QUALITY_AUTO_APPROVAL_SWEEP done: approved={len(result.approved)} "
            f"skipped={len(result.skipped)} failed={len(result.failed)}"
        )
        return result

    @classmethod
    def send_quality_reminders(cls, now: Optional[datetime] = None) -> int:
        """Nudge buyers stuck in QUALITY_PENDING once each; returns reminders delivered"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        transaction_ids = DeliveryQualityService.pending_quality_reminders(now)
        if not transaction_ids:
            return 0

        with managed_session() as session:
            transactions = (
                session.query(Transaction)
                .filter(
                    Transaction.id.in_(transaction_ids),
                    Transaction.quality_reminder_sent_at.is_(None),
                )
                .all()
            )
            notifications = []
            for transaction in transactions:
                transaction.quality_reminder_sent_at = now
                notifications.append(
                    Notification(
                        "quality.reminder",
                        transaction.id,
                        Audience(parties=[Party.buyer_of(transaction)]),
                    )
                )

        sent = dispatch_notifications(notifications)
        logger.info(f"📨 Quality reminders: {sent}/{len(notifications)} sent")
        return sent


__all__ = [
    "AutoReleaseService",
    "AutoReleaseSweepResult",
    "QualityAutoApprovalResult",
    "due_escrow_transaction_ids",
]
