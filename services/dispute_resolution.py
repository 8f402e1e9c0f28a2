"""
Dispute Resolution Service
Opens disputes (freezing the escrow), carries the message thread, and lets an
admin settle the frozen funds with one of the fixed decisions.

Opening and resolving run inside the transaction's locked unit of work, so
the dispute row, the escrow status and the transaction status always commit
together.
"""

import logging
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple, Union

from config import Config
from database import get_session, managed_session
from models import (
    ActorRole,
    AdminDecision,
    Dispute,
    DisputeMessage,
    DisputeStatus,
    OPEN_DISPUTE_STATUSES,
)
from services.collaborators import (
    Actor,
    Audience,
    Notification,
    dispatch_notifications,
    parties_of,
    party_for_actor,
)
from services.escrow_ledger import EscrowLedger
from services.projections import DisputeMessageSnapshot, DisputeSnapshot
from utils.atomic_transactions import TradeUnitOfWork, locked_trade_operation
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import (
    AmountOutOfRange,
    DisputeAlreadyOpen,
    InvalidTransition,
    MissingAmount,
    NotFound,
    ReasonTooShort,
    Unauthorized,
    ValidationError,
)
from utils.money import Money
from utils.transaction_state_machine import TransactionEvent, apply_transition

logger = logging.getLogger(__name__)

Split = Tuple[Money, Money]  # (buyer, supplier)


class ResolutionResult(NamedTuple):
    """Result of a dispute resolution"""

    dispute_id: str
    transaction_id: str
    decision: AdminDecision
    dispute_status: str
    escrow_status: str
    transaction_status: str
    buyer_amount: Optional[Money] = None
    supplier_amount: Optional[Money] = None


# ============================================================================
# Decision -> split policy
# ============================================================================

def _full_refund(full: Money, resolution_amount: Optional[Money]) -> Split:
    return full, Money.zero(full.currency)


def _full_payment(full: Money, resolution_amount: Optional[Money]) -> Split:
    return Money.zero(full.currency), full


def _split_50_50(full: Money, resolution_amount: Optional[Money]) -> Split:
    return full.split_half()


def _partial_refund(full: Money, resolution_amount: Optional[Money]) -> Split:
    if resolution_amount is None:
        raise MissingAmount("PARTIAL_REFUND requires a resolution amount")
    if resolution_amount > full:
        raise AmountOutOfRange(
            f"Resolution amount {resolution_amount} exceeds transaction amount {full}"
        )
    return resolution_amount, full - resolution_amount


# None: the dispute closes without moving money
SPLIT_POLICIES: Dict[AdminDecision, Optional[Callable[[Money, Optional[Money]], Split]]] = {
    AdminDecision.FULL_REFUND: _full_refund,
    AdminDecision.FULL_PAYMENT: _full_payment,
    AdminDecision.SPLIT_50_50: _split_50_50,
    AdminDecision.PARTIAL_REFUND: _partial_refund,
    AdminDecision.NO_ACTION: None,
}

if set(SPLIT_POLICIES) != set(AdminDecision):
    raise RuntimeError(f"Split policy missing for: {set(AdminDecision) - set(SPLIT_POLICIES)}")


def compute_split(
    decision: AdminDecision, full: Money, resolution_amount: Optional[Money] = None
) -> Optional[Split]:
    """Buyer/supplier amounts for ``decision``, or None for NO_ACTION"""
    policy = SPLIT_POLICIES[decision]
    if policy is None:
        return None
    buyer, supplier = policy(full, resolution_amount)
    if buyer + supplier != full:
        raise RuntimeError(f"{decision.value} produced a split that does not sum to {full}")
    return buyer, supplier


def parse_decision(decision: Union[AdminDecision, str]) -> AdminDecision:
    if isinstance(decision, AdminDecision):
        return decision
    try:
        return AdminDecision(str(decision).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown admin decision: {decision!r}")


def _normalize_resolution_amount(
    amount: Union[Money, int, None], currency: str
) -> Optional[Money]:
    if amount is None or isinstance(amount, Money):
        return amount
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"Resolution amount must be integer minor units, got {amount!r}")
    if amount < 0:
        raise AmountOutOfRange(f"Resolution amount cannot be negative ({amount})")
    return Money(amount, currency)


# ============================================================================
# Dispute status graph (RESOLVED and CLOSED only through resolve)
# ============================================================================

DISPUTE_STATUS_TRANSITIONS: Dict[DisputeStatus, frozenset] = {
    DisputeStatus.PENDING: frozenset({DisputeStatus.UNDER_REVIEW}),
    DisputeStatus.UNDER_REVIEW: frozenset({DisputeStatus.AWAITING_RESPONSE, DisputeStatus.ESCALATED}),
    DisputeStatus.AWAITING_RESPONSE: frozenset({DisputeStatus.UNDER_REVIEW, DisputeStatus.ESCALATED}),
    DisputeStatus.ESCALATED: frozenset(),
    DisputeStatus.RESOLVED: frozenset(),
    DisputeStatus.CLOSED: frozenset(),
}


def _require_admin(actor: Actor, action: str):
    if actor.role != ActorRole.ADMIN:
        raise Unauthorized(f"Only admins may {action}")


def _dispute_transaction_id(dispute_id: str) -> str:
    session = get_session()
    try:
        row = session.query(Dispute.transaction_id).filter(Dispute.id == dispute_id).first()
    finally:
        session.close()
    if row is None:
        raise NotFound(f"Dispute {dispute_id} not found")
    return row[0]


def _load_dispute_locked(uow: TradeUnitOfWork, dispute_id: str) -> Dispute:
    dispute = (
        uow.session.query(Dispute)
        .filter(Dispute.id == dispute_id, Dispute.transaction_id == uow.transaction.id)
        .with_for_update()
        .first()
    )
    if dispute is None:
        raise NotFound(f"Dispute {dispute_id} not found")
    return dispute


class DisputeResolutionService:
    """Dispute lifecycle: open, discuss, escalate, resolve"""

    # ------------------------------------------------------------------
    # open
    # ------------------------------------------------------------------

    @classmethod
    def open_dispute(
        cls,
        actor: Actor,
        transaction_id: str,
        reason: str,
        evidence_urls: Optional[List[str]] = None,
        description: Optional[str] = None,
        requested_resolution: Optional[str] = None,
    ) -> DisputeSnapshot:
        reason = (reason or "").strip()
        if len(reason) < Config.MIN_DISPUTE_REASON_LENGTH:
            raise ReasonTooShort(
                f"Dispute reason must be at least {Config.MIN_DISPUTE_REASON_LENGTH} characters"
            )
        if requested_resolution is not None:
            requested_resolution = parse_decision(requested_resolution).value

        with locked_trade_operation(transaction_id) as uow:
            dispute = cls._open_dispute_locked(
                uow, actor, reason,
                evidence_urls=evidence_urls,
                description=description,
                requested_resolution=requested_resolution,
            )
            return DisputeSnapshot.from_model(dispute)

    @classmethod
    def _open_dispute_locked(
        cls,
        uow: TradeUnitOfWork,
        actor: Actor,
        reason: str,
        evidence_urls: Optional[List[str]] = None,
        description: Optional[str] = None,
        requested_resolution: Optional[str] = None,
    ) -> Dispute:
        """Transaction -> DISPUTE_OPEN, escrow frozen, dispute row created"""
        transaction = uow.transaction
        open_dispute = (
            uow.session.query(Dispute)
            .filter(
                Dispute.transaction_id == transaction.id,
                Dispute.status.in_(OPEN_DISPUTE_STATUSES),
            )
            .first()
        )
        if open_dispute is not None:
            raise DisputeAlreadyOpen(
                f"Transaction {transaction.id} already has open dispute {open_dispute.id}"
            )

        apply_transition(uow, actor, TransactionEvent.DISPUTE, reason=reason)
        EscrowLedger._freeze_locked(uow)

        now = get_naive_utc_now()
        dispute = Dispute(
            transaction_id=transaction.id,
            filed_by_user_id=actor.user_id,
            filed_by_role=actor.role.value,
            reason=reason,
            description=description,
            requested_resolution=requested_resolution,
            evidence_urls=list(evidence_urls or []),
            status=DisputeStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        uow.session.add(dispute)
        uow.session.flush()

        uow.notify("dispute.opened", Audience(parties=parties_of(transaction), include_admins=True))
        logger.warning(
            f"⚠️ DISPUTE_OPENED: {dispute.id} on {transaction.id} by {actor.label}"
        )
        return dispute

    # ------------------------------------------------------------------
    # thread
    # ------------------------------------------------------------------

    @classmethod
    def post_message(
        cls, actor: Actor, dispute_id: str, message: str, is_admin: bool = False
    ) -> DisputeMessageSnapshot:
        """Append to the thread; allowed in any dispute status"""
        message = (message or "").strip()
        if not message:
            raise ValidationError("Message cannot be empty")
        if is_admin:
            _require_admin(actor, "post admin messages")

        with managed_session() as session:
            dispute = session.query(Dispute).filter(Dispute.id == dispute_id).first()
            if dispute is None:
                raise NotFound(f"Dispute {dispute_id} not found")
            transaction = dispute.transaction

            if actor.role != ActorRole.ADMIN and party_for_actor(transaction, actor) is None:
                raise Unauthorized(f"{actor.label} is not a party to dispute {dispute_id}")

            entry = DisputeMessage(
                dispute_id=dispute.id,
                sender_id=actor.user_id,
                is_admin=is_admin,
                message=message,
                created_at=get_naive_utc_now(),
            )
            session.add(entry)
            dispute.updated_at = entry.created_at
            session.flush()
            snapshot = DisputeMessageSnapshot.from_model(entry)
            notification = Notification(
                "dispute.message",
                transaction.id,
                Audience(parties=parties_of(transaction), include_admins=actor.role != ActorRole.ADMIN),
            )

        dispatch_notifications([notification])
        return snapshot

    # ------------------------------------------------------------------
    # review workflow
    # ------------------------------------------------------------------

    @classmethod
    def update_status(
        cls, actor: Actor, dispute_id: str, status: Union[DisputeStatus, str]
    ) -> DisputeSnapshot:
        _require_admin(actor, "change dispute status")
        try:
            target = status if isinstance(status, DisputeStatus) else DisputeStatus(str(status).lower())
        except ValueError:
            raise ValidationError(f"Unknown dispute status: {status!r}")
        if target in (DisputeStatus.RESOLVED, DisputeStatus.CLOSED):
            raise InvalidTransition("Disputes are resolved or closed only through resolve")

        with locked_trade_operation(_dispute_transaction_id(dispute_id)) as uow:
            dispute = _load_dispute_locked(uow, dispute_id)
            current = DisputeStatus(dispute.status)
            if target not in DISPUTE_STATUS_TRANSITIONS[current]:
                raise InvalidTransition(
                    f"Dispute {dispute_id} cannot move from {current.value} to {target.value}"
                )
            dispute.status = target.value
            dispute.updated_at = get_naive_utc_now()
            if dispute.reviewed_by_admin_id is None:
                dispute.reviewed_by_admin_id = actor.user_id

            uow.notify(
                f"dispute.{target.value}",
                Audience(parties=parties_of(uow.transaction), include_admins=True),
            )
            logger.info(f"Dispute {dispute_id}: {current.value} -> {target.value} by {actor.label}")
            uow.session.flush()
            return DisputeSnapshot.from_model(dispute)

    # ------------------------------------------------------------------
    # resolution
    # ------------------------------------------------------------------

    @classmethod
    def resolve(
        cls,
        actor: Actor,
        dispute_id: str,
        decision: Union[AdminDecision, str],
        resolution_amount: Union[Money, int, None] = None,
        resolution_reason: str = "",
    ) -> ResolutionResult:
        """
        Settle an open dispute.

        All validation happens before anything is written: a rejected
        resolution leaves the dispute, the escrow and the transaction as
        they were.
        """
        _require_admin(actor, "resolve disputes")
        resolution_reason = (resolution_reason or "").strip()
        if len(resolution_reason) < Config.MIN_RESOLUTION_REASON_LENGTH:
            raise ReasonTooShort(
                f"Resolution reason must be at least {Config.MIN_RESOLUTION_REASON_LENGTH} characters"
            )
        decision = parse_decision(decision)

        with locked_trade_operation(_dispute_transaction_id(dispute_id)) as uow:
            dispute = _load_dispute_locked(uow, dispute_id)
            if not dispute.is_open:
                raise InvalidTransition(f"Dispute {dispute_id} is already {dispute.status}")

            transaction = uow.transaction
            full = transaction.amount
            amount = _normalize_resolution_amount(resolution_amount, full.currency)
            split = compute_split(decision, full, amount)

            now = get_naive_utc_now()
            dispute.admin_decision = decision.value
            dispute.resolution_reason = resolution_reason
            dispute.reviewed_by_admin_id = actor.user_id
            dispute.resolved_at = now
            dispute.updated_at = now

            if split is None:
                dispute.status = DisputeStatus.CLOSED.value
                apply_transition(uow, actor, TransactionEvent.DISMISS_DISPUTE, reason=resolution_reason)
                EscrowLedger._unfreeze_locked(uow)
            else:
                buyer_amount, supplier_amount = split
                EscrowLedger._resolve_locked(uow, buyer_amount, supplier_amount)
                dispute.status = DisputeStatus.RESOLVED.value
                dispute.buyer_amount_minor = buyer_amount.minor_units
                dispute.supplier_amount_minor = supplier_amount.minor_units
                if amount is not None:
                    dispute.resolution_amount_minor = amount.minor_units

                apply_transition(uow, actor, TransactionEvent.RESOLVE_DISPUTE, reason=resolution_reason)
                settle = (
                    TransactionEvent.SETTLE_REFUNDED if supplier_amount.is_zero
                    else TransactionEvent.SETTLE_COMPLETED
                )
                apply_transition(uow, actor, settle, reason=resolution_reason)
                transaction.resolved_at = now

            uow.session.add(DisputeMessage(
                dispute_id=dispute.id,
                sender_id=actor.user_id,
                is_admin=True,
                message=f"Resolution: {decision.value}. {resolution_reason}",
                created_at=now,
            ))
            uow.notify("dispute.resolved", Audience(parties=parties_of(transaction), include_admins=True))
            logger.info(
                f"⚖️ DISPUTE_RESOLVED: {dispute_id} {decision.value} by {actor.label} "
                f"(transaction {transaction.id} -> {transaction.status})"
            )

            return ResolutionResult(
                dispute_id=dispute.id,
                transaction_id=transaction.id,
                decision=decision,
                dispute_status=dispute.status,
                escrow_status=uow.escrow.status,
                transaction_status=transaction.status,
                buyer_amount=split[0] if split else None,
                supplier_amount=split[1] if split else None,
            )

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    @classmethod
    def get_dispute(cls, dispute_id: str) -> DisputeSnapshot:
        session = get_session()
        try:
            dispute = session.query(Dispute).filter(Dispute.id == dispute_id).first()
            if dispute is None:
                raise NotFound(f"Dispute {dispute_id} not found")
            return DisputeSnapshot.from_model(dispute)
        finally:
            session.close()

    @classmethod
    def list_disputes(cls, transaction_id: str) -> List[DisputeSnapshot]:
        session = get_session()
        try:
            disputes = (
                session.query(Dispute)
                .filter(Dispute.transaction_id == transaction_id)
                .order_by(Dispute.created_at)
                .all()
            )
            return [DisputeSnapshot.from_model(d) for d in disputes]
        finally:
            session.close()


__all__ = [
    "DisputeResolutionService",
    "ResolutionResult",
    "SPLIT_POLICIES",
    "DISPUTE_STATUS_TRANSITIONS",
    "compute_split",
    "parse_decision",
]
