"""Read-only snapshots of persisted rows for queries and command results"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from models import Dispute, DisputeMessage, Escrow, Transaction, TransactionMilestone


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class EscrowSnapshot:
    id: str
    transaction_id: str
    amount_minor: int
    currency: str
    status: str
    delivery_confirmed: bool
    quality_approved: bool
    documents_verified: bool
    hold_date: Optional[str]
    release_date: Optional[str]
    auto_release_date: Optional[str]
    buyer_amount_minor: Optional[int]
    supplier_amount_minor: Optional[int]
    release_reason: Optional[str]
    version: int

    @classmethod
    def from_model(cls, escrow: Escrow) -> "EscrowSnapshot":
        return cls(
            id=escrow.id,
            transaction_id=escrow.transaction_id,
            amount_minor=int(escrow.amount_minor),
            currency=escrow.currency,
            status=escrow.status,
            delivery_confirmed=bool(escrow.delivery_confirmed),
            quality_approved=bool(escrow.quality_approved),
            documents_verified=bool(escrow.documents_verified),
            hold_date=_iso(escrow.hold_date),
            release_date=_iso(escrow.release_date),
            auto_release_date=_iso(escrow.auto_release_date),
            buyer_amount_minor=escrow.buyer_amount_minor,
            supplier_amount_minor=escrow.supplier_amount_minor,
            release_reason=escrow.release_reason,
            version=escrow.version,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class MilestoneSnapshot:
    sequence: int
    status: str
    description: Optional[str]
    actor: Optional[str]
    created_at: Optional[str]

    @classmethod
    def from_model(cls, milestone: TransactionMilestone) -> "MilestoneSnapshot":
        return cls(
            sequence=milestone.sequence,
            status=milestone.status,
            description=milestone.description,
            actor=milestone.actor,
            created_at=_iso(milestone.created_at),
        )


@dataclass(frozen=True)
class TransactionSnapshot:
    id: str
    buyer_id: str
    supplier_id: str
    quotation_id: Optional[str]
    requirement_id: Optional[str]
    amount_minor: int
    currency: str
    status: str
    delivery_location: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]
    escrow: Optional[EscrowSnapshot] = None
    milestones: List[MilestoneSnapshot] = field(default_factory=list)

    @classmethod
    def from_model(cls, transaction: Transaction, with_milestones: bool = True) -> "TransactionSnapshot":
        return cls(
            id=transaction.id,
            buyer_id=transaction.buyer_id,
            supplier_id=transaction.supplier_id,
            quotation_id=transaction.quotation_id,
            requirement_id=transaction.requirement_id,
            amount_minor=int(transaction.amount_minor),
            currency=transaction.currency,
            status=transaction.status,
            delivery_location=transaction.delivery_location,
            created_at=_iso(transaction.created_at),
            updated_at=_iso(transaction.updated_at),
            escrow=EscrowSnapshot.from_model(transaction.escrow) if transaction.escrow else None,
            milestones=(
                [MilestoneSnapshot.from_model(m) for m in transaction.milestones]
                if with_milestones else []
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DisputeMessageSnapshot:
    sender_id: str
    is_admin: bool
    message: str
    created_at: Optional[str]

    @classmethod
    def from_model(cls, message: DisputeMessage) -> "DisputeMessageSnapshot":
        return cls(
            sender_id=message.sender_id,
            is_admin=bool(message.is_admin),
            message=message.message,
            created_at=_iso(message.created_at),
        )


@dataclass(frozen=True)
class DisputeSnapshot:
    id: str
    transaction_id: str
    filed_by_user_id: str
    filed_by_role: str
    reason: str
    status: str
    admin_decision: Optional[str]
    resolution_reason: Optional[str]
    buyer_amount_minor: Optional[int]
    supplier_amount_minor: Optional[int]
    created_at: Optional[str]
    resolved_at: Optional[str]
    messages: List[DisputeMessageSnapshot] = field(default_factory=list)

    @classmethod
    def from_model(cls, dispute: Dispute) -> "DisputeSnapshot":
        return cls(
            id=dispute.id,
            transaction_id=dispute.transaction_id,
            filed_by_user_id=dispute.filed_by_user_id,
            filed_by_role=dispute.filed_by_role,
            reason=dispute.reason,
            status=dispute.status,
            admin_decision=dispute.admin_decision,
            resolution_reason=dispute.resolution_reason,
            buyer_amount_minor=dispute.buyer_amount_minor,
            supplier_amount_minor=dispute.supplier_amount_minor,
            created_at=_iso(dispute.created_at),
            resolved_at=_iso(dispute.resolved_at),
            messages=[DisputeMessageSnapshot.from_model(m) for m in dispute.messages],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
