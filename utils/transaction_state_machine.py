#!/usr/bin/env python3
"""
Trade Transaction State Machine
Guarded transitions (status, role, event) -> status with an append-only audit trail
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import (
    ActorRole,
    EscrowStatus,
    Transaction,
    TransactionMilestone,
    TransactionStatus,
    TransactionStatusHistory,
)
from services.collaborators import Actor, Audience, parties_of
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import InvalidTransition, Unauthorized

logger = logging.getLogger(__name__)

TS = TransactionStatus
BUYER, SUPPLIER, ADMIN, SYSTEM = ActorRole.BUYER, ActorRole.SUPPLIER, ActorRole.ADMIN, ActorRole.SYSTEM


class TransactionEvent(Enum):
    """Events that may advance a transaction"""

    # Payment flow
    REQUEST_PAYMENT = "request_payment"  # INITIATED -> PAYMENT_PENDING
    CAPTURE_PAYMENT = "capture_payment"  # INITIATED/PAYMENT_PENDING -> PAYMENT_RECEIVED
    HOLD_ESCROW = "hold_escrow"  # PAYMENT_RECEIVED -> ESCROW_HELD

    # Fulfilment (no effect on money)
    START_PRODUCTION = "start_production"
    SHIP = "ship"
    MARK_IN_TRANSIT = "mark_in_transit"
    MARK_DELIVERED = "mark_delivered"

    # Buyer verification
    CONFIRM_DELIVERY = "confirm_delivery"
    REQUEST_QUALITY_ASSESSMENT = "request_quality_assessment"
    APPROVE_QUALITY = "approve_quality"
    REJECT_QUALITY = "reject_quality"

    # Release
    RELEASE_FUNDS = "release_funds"
    COMPLETE = "complete"

    # Disputes
    DISPUTE = "dispute"
    RESOLVE_DISPUTE = "resolve_dispute"
    SETTLE_COMPLETED = "settle_completed"
    SETTLE_REFUNDED = "settle_refunded"
    DISMISS_DISPUTE = "dismiss_dispute"  # DISPUTE_OPEN -> status before the dispute

    CANCEL = "cancel"


TERMINAL_STATUSES: FrozenSet[TS] = frozenset({TS.COMPLETED, TS.REFUNDED, TS.CANCELLED})

# Statuses in which the escrow holds funds and nothing has been decided yet
FUNDS_HELD_STATUSES: FrozenSet[TS] = frozenset({
    TS.ESCROW_HELD,
    TS.PRODUCTION,
    TS.SHIPPED,
    TS.IN_TRANSIT,
    TS.DELIVERED,
    TS.DELIVERY_CONFIRMED,
    TS.QUALITY_PENDING,
    TS.QUALITY_APPROVED,
    TS.QUALITY_REJECTED,
})

QUALITY_ASSESSMENT_SOURCES: FrozenSet[TS] = frozenset({TS.DELIVERY_CONFIRMED, TS.QUALITY_PENDING})


@dataclass(frozen=True)
class TransitionRule:
    roles: FrozenSet[ActorRole]
    sources: FrozenSet[TS]
    target: Optional[TS]  # None: resolved from context (DISMISS_DISPUTE)


def _rule(roles, sources, target) -> TransitionRule:
    return TransitionRule(frozenset(roles), frozenset(sources), target)


TRANSITION_RULES: Dict[TransactionEvent, TransitionRule] = {
    TransactionEvent.REQUEST_PAYMENT: _rule({BUYER, SYSTEM}, {TS.INITIATED}, TS.PAYMENT_PENDING),
    TransactionEvent.CAPTURE_PAYMENT: _rule(
        {SYSTEM}, {TS.INITIATED, TS.PAYMENT_PENDING}, TS.PAYMENT_RECEIVED
    ),
    TransactionEvent.HOLD_ESCROW: _rule({SYSTEM}, {TS.PAYMENT_RECEIVED}, TS.ESCROW_HELD),
    TransactionEvent.START_PRODUCTION: _rule({SUPPLIER}, {TS.ESCROW_HELD}, TS.PRODUCTION),
    TransactionEvent.SHIP: _rule({SUPPLIER}, {TS.ESCROW_HELD, TS.PRODUCTION}, TS.SHIPPED),
    TransactionEvent.MARK_IN_TRANSIT: _rule({SUPPLIER, SYSTEM}, {TS.SHIPPED}, TS.IN_TRANSIT),
    TransactionEvent.MARK_DELIVERED: _rule(
        {SUPPLIER, SYSTEM}, {TS.SHIPPED, TS.IN_TRANSIT}, TS.DELIVERED
    ),
    TransactionEvent.CONFIRM_DELIVERY: _rule(
        {BUYER}, {TS.DELIVERED, TS.IN_TRANSIT, TS.SHIPPED}, TS.DELIVERY_CONFIRMED
    ),
    TransactionEvent.REQUEST_QUALITY_ASSESSMENT: _rule(
        {SYSTEM}, {TS.DELIVERY_CONFIRMED}, TS.QUALITY_PENDING
    ),
    # SYSTEM auto-approves once the buyer lets the assessment window lapse
    TransactionEvent.APPROVE_QUALITY: _rule({BUYER, SYSTEM}, QUALITY_ASSESSMENT_SOURCES, TS.QUALITY_APPROVED),
    TransactionEvent.REJECT_QUALITY: _rule({BUYER}, QUALITY_ASSESSMENT_SOURCES, TS.QUALITY_REJECTED),
    TransactionEvent.RELEASE_FUNDS: _rule({SYSTEM}, FUNDS_HELD_STATUSES, TS.FUNDS_RELEASING),
    TransactionEvent.COMPLETE: _rule({SYSTEM}, {TS.FUNDS_RELEASING}, TS.COMPLETED),
    TransactionEvent.DISPUTE: _rule({BUYER, SUPPLIER, SYSTEM}, FUNDS_HELD_STATUSES, TS.DISPUTE_OPEN),
    TransactionEvent.RESOLVE_DISPUTE: _rule({ADMIN}, {TS.DISPUTE_OPEN}, TS.DISPUTE_RESOLVED),
    TransactionEvent.SETTLE_COMPLETED: _rule({ADMIN}, {TS.DISPUTE_RESOLVED}, TS.COMPLETED),
    TransactionEvent.SETTLE_REFUNDED: _rule({ADMIN}, {TS.DISPUTE_RESOLVED}, TS.REFUNDED),
    TransactionEvent.DISMISS_DISPUTE: _rule({ADMIN}, {TS.DISPUTE_OPEN}, None),
    TransactionEvent.CANCEL: _rule(
        {BUYER, SUPPLIER, ADMIN},
        {TS.INITIATED, TS.PAYMENT_PENDING, TS.PAYMENT_RECEIVED},
        TS.CANCELLED,
    ),
}

if set(TRANSITION_RULES) != set(TransactionEvent):
    raise RuntimeError(
        f"Transition rules missing for: {set(TransactionEvent) - set(TRANSITION_RULES)}"
    )


DEFAULT_DESCRIPTIONS = {
    TS.PAYMENT_PENDING: "Awaiting buyer payment",
    TS.PAYMENT_RECEIVED: "Payment received",
    TS.ESCROW_HELD: "Funds held in escrow",
    TS.PRODUCTION: "Production started",
    TS.SHIPPED: "Goods shipped",
    TS.IN_TRANSIT: "Shipment in transit",
    TS.DELIVERED: "Shipment delivered",
    TS.DELIVERY_CONFIRMED: "Delivery confirmed by buyer",
    TS.QUALITY_PENDING: "Awaiting quality assessment",
    TS.QUALITY_APPROVED: "Quality approved",
    TS.QUALITY_REJECTED: "Quality rejected",
    TS.FUNDS_RELEASING: "Releasing escrow funds",
    TS.COMPLETED: "Transaction completed",
    TS.DISPUTE_OPEN: "Dispute opened",
    TS.DISPUTE_RESOLVED: "Dispute resolved",
    TS.REFUNDED: "Funds refunded",
    TS.CANCELLED: "Transaction cancelled",
}


@dataclass(frozen=True)
class TransitionContext:
    """Facts outside the status column that guards depend on"""
    escrow_status: Optional[str] = None
    delivery_confirmed: bool = False
    quality_assessed: bool = False
    is_party: bool = False
    restore_status: Optional[TS] = None


def evaluate_transition(
    current: TS, role: ActorRole, event: TransactionEvent, context: TransitionContext
) -> TS:
    """
    Pure guard: return the status ``event`` leads to, or raise.

    Raises Unauthorized for a wrong role or a non-party buyer/supplier, and
    InvalidTransition for every other guard failure.
    """
    rule = TRANSITION_RULES[event]

    if role not in rule.roles:
        raise Unauthorized(f"{role.value} may not trigger {event.value}")
    if role in (BUYER, SUPPLIER) and not context.is_party:
        raise Unauthorized(f"{role.value} is not a party to this transaction")

    if current not in rule.sources:
        raise InvalidTransition(f"Cannot {event.value} from {current.value}")

    if event == TransactionEvent.CONFIRM_DELIVERY and context.delivery_confirmed:
        raise InvalidTransition("Delivery already confirmed")

    if event in (TransactionEvent.APPROVE_QUALITY, TransactionEvent.REJECT_QUALITY):
        if not context.delivery_confirmed:
            raise InvalidTransition("Quality cannot be assessed before delivery is confirmed")
        if context.quality_assessed:
            raise InvalidTransition("Quality has already been assessed")

    if event == TransactionEvent.DISPUTE and context.escrow_status != EscrowStatus.HELD.value:
        raise InvalidTransition(
            f"Disputes require held escrow funds (escrow is {context.escrow_status or 'missing'})"
        )

    if event == TransactionEvent.CANCEL and context.escrow_status not in (None, EscrowStatus.PENDING.value):
        raise InvalidTransition("Cannot cancel once funds are held in escrow")

    if rule.target is not None:
        return rule.target

    restore = context.restore_status
    if restore is None or restore in TERMINAL_STATUSES or restore == TS.DISPUTE_OPEN:
        raise InvalidTransition(f"No valid status to restore to (got {restore})")
    return restore


def allowed_events(current: TS, role: ActorRole) -> List[TransactionEvent]:
    """Events whose role and source status admit (current, role); guards not evaluated"""
    return [
        event for event, rule in TRANSITION_RULES.items()
        if role in rule.roles and current in rule.sources
    ]


def is_party(transaction: Transaction, actor: Actor) -> bool:
    if actor.role == BUYER:
        return actor.user_id == transaction.buyer_id
    if actor.role == SUPPLIER:
        return actor.user_id == transaction.supplier_id
    return False


def record_milestone(
    session: Session, transaction: Transaction, status: TS,
    description: Optional[str] = None, actor: Optional[Actor] = None,
) -> TransactionMilestone:
    """Append a milestone; callers hold the transaction lock so sequence is race-free"""
    session.flush()
    last_sequence = (
        session.query(func.max(TransactionMilestone.sequence))
        .filter(TransactionMilestone.transaction_id == transaction.id)
        .scalar()
    )
    milestone = TransactionMilestone(
        transaction_id=transaction.id,
        sequence=(last_sequence or 0) + 1,
        status=status.value,
        description=description or DEFAULT_DESCRIPTIONS.get(status),
        actor=actor.label if actor else None,
        created_at=get_naive_utc_now(),
    )
    session.add(milestone)
    return milestone


def apply_transition(
    uow,
    actor: Actor,
    event: TransactionEvent,
    description: Optional[str] = None,
    reason: Optional[str] = None,
) -> TS:
    """
    Evaluate and apply ``event`` inside the caller's locked unit of work.

    On success the status changes and exactly one milestone and one history
    row are appended. On failure nothing is touched.
    """
    transaction = uow.transaction
    escrow = uow.escrow
    current = TS(transaction.status)

    context = TransitionContext(
        escrow_status=escrow.status if escrow is not None else None,
        delivery_confirmed=bool(escrow.delivery_confirmed) if escrow is not None else False,
        quality_assessed=transaction.quality_assessment is not None,
        is_party=is_party(transaction, actor),
        restore_status=TS(transaction.pre_dispute_status) if transaction.pre_dispute_status else None,
    )
    new_status = evaluate_transition(current, actor.role, event, context)

    now = get_naive_utc_now()
    if event == TransactionEvent.DISPUTE:
        transaction.pre_dispute_status = current.value
    elif event in (TransactionEvent.DISMISS_DISPUTE, TransactionEvent.RESOLVE_DISPUTE):
        transaction.pre_dispute_status = None

    transaction.status = new_status.value
    transaction.updated_at = now

    record_milestone(uow.session, transaction, new_status, description, actor)
    uow.session.add(TransactionStatusHistory(
        transaction_id=transaction.id,
        old_status=current.value,
        new_status=new_status.value,
        event=event.value,
        changed_by_id=actor.user_id,
        changed_by_role=actor.role.value,
        reason=reason or description,
        created_at=now,
    ))

    uow.notify(f"transaction.{new_status.value}", Audience(parties=parties_of(transaction)))

    logger.info(
        f"Transaction {transaction.id}: {current.value} -> {new_status.value} "
        f"via {event.value} by {actor.label}"
    )
    return new_status


__all__ = [
    "TransactionEvent",
    "TransitionRule",
    "TransitionContext",
    "TRANSITION_RULES",
    "TERMINAL_STATUSES",
    "FUNDS_HELD_STATUSES",
    "evaluate_transition",
    "allowed_events",
    "apply_transition",
    "record_milestone",
    "is_party",
]
