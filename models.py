"""
Trade Escrow Platform - Database Schema
=======================================

Schema for the escrow-gated trade lifecycle:
- Buyer/supplier transactions created from accepted quotations
- One escrow per transaction with three independent release conditions
- Buyer quality assessments
- Admin-adjudicated disputes with a message thread
- Append-only milestones and status history for audit

Money is stored as integer minor units plus an ISO currency code.
"""

import uuid
from enum import Enum

from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Boolean, Text, JSON,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, relationship

from utils.money import Money


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def generate_id(prefix: str):
    """Column default producing ids like ``TX-4F9C2A81B3D0``"""
    def _generate() -> str:
        return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"
    return _generate


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class TransactionStatus(Enum):
    """Trade transaction lifecycle states"""
    INITIATED = "initiated"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_RECEIVED = "payment_received"
    ESCROW_HELD = "escrow_held"
    PRODUCTION = "production"
    SHIPPED = "shipped"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    DELIVERY_CONFIRMED = "delivery_confirmed"
    QUALITY_PENDING = "quality_pending"
    QUALITY_APPROVED = "quality_approved"
    QUALITY_REJECTED = "quality_rejected"
    FUNDS_RELEASING = "funds_releasing"
    DISPUTE_OPEN = "dispute_open"
    DISPUTE_RESOLVED = "dispute_resolved"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class EscrowStatus(Enum):
    """Escrow hold lifecycle"""
    PENDING = "pending"
    HELD = "held"
    RELEASING = "releasing"
    RELEASED = "released"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


class ReleaseCondition(Enum):
    """The three independently satisfiable release conditions"""
    DELIVERY_CONFIRMED = "delivery_confirmed"
    QUALITY_APPROVED = "quality_approved"
    DOCUMENTS_VERIFIED = "documents_verified"


class ApprovalStatus(Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class DisputeStatus(Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    AWAITING_RESPONSE = "awaiting_response"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    CLOSED = "closed"


class AdminDecision(Enum):
    FULL_REFUND = "full_refund"
    FULL_PAYMENT = "full_payment"
    SPLIT_50_50 = "split_50_50"
    PARTIAL_REFUND = "partial_refund"
    NO_ACTION = "no_action"


class ActorRole(Enum):
    BUYER = "buyer"
    SUPPLIER = "supplier"
    ADMIN = "admin"
    SYSTEM = "system"


TERMINAL_ESCROW_STATUSES = frozenset({EscrowStatus.RELEASED.value, EscrowStatus.REFUNDED.value})
OPEN_DISPUTE_STATUSES = frozenset({
    DisputeStatus.PENDING.value,
    DisputeStatus.UNDER_REVIEW.value,
    DisputeStatus.AWAITING_RESPONSE.value,
    DisputeStatus.ESCALATED.value,
})


# ============================================================================
# MODELS
# ============================================================================

class Transaction(Base):
    """Buyer/supplier trade created from an accepted quotation"""
    __tablename__ = "transactions"

    id = Column(String(32), primary_key=True, default=generate_id("TX"))

    # Participants (referenced, not owned)
    buyer_id = Column(String(64), nullable=False, index=True)
    supplier_id = Column(String(64), nullable=False, index=True)
    buyer_email = Column(String(255), nullable=True)
    buyer_name = Column(String(255), nullable=True)
    supplier_email = Column(String(255), nullable=True)
    supplier_name = Column(String(255), nullable=True)

    requirement_id = Column(String(64), nullable=True)
    quotation_id = Column(String(64), nullable=True, unique=True)

    # Immutable after creation
    amount_minor = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)

    status = Column(String(32), default=TransactionStatus.INITIATED.value, nullable=False)
    # Restored when an admin dismisses a dispute with NO_ACTION
    pre_dispute_status = Column(String(32), nullable=True)

    payment_reference = Column(String(128), nullable=True)
    delivery_location = Column(String(255), nullable=True)
    delivery_notes = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=True)
    estimated_delivery = Column(DateTime, nullable=True)
    delivery_confirmed_at = Column(DateTime, nullable=True)
    quality_assessed_at = Column(DateTime, nullable=True)
    quality_reminder_sent_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    escrow = relationship("Escrow", back_populates="transaction", uselist=False)
    milestones = relationship(
        "TransactionMilestone", back_populates="transaction",
        order_by="TransactionMilestone.sequence",
    )
    quality_assessment = relationship("QualityAssessment", back_populates="transaction", uselist=False)
    disputes = relationship("Dispute", back_populates="transaction", order_by="Dispute.created_at")

    @property
    def amount(self) -> Money:
        return Money(int(self.amount_minor), self.currency)

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_transaction_amount_positive"),
        Index("ix_transactions_status_updated", "status", "updated_at"),
    )

    def __repr__(self):
        return f"<Transaction(id={self.id}, status={self.status}, amount={self.amount_minor} {self.currency})>"


class TransactionMilestone(Base):
    """Immutable audit record appended on every accepted transition"""
    __tablename__ = "transaction_milestones"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(32), ForeignKey("transactions.id"), nullable=False)
    sequence = Column(Integer, nullable=False)
    status = Column(String(32), nullable=False)
    description = Column(Text, nullable=True)
    actor = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False)

    transaction = relationship("Transaction", back_populates="milestones")

    __table_args__ = (
        UniqueConstraint("transaction_id", "sequence", name="uq_milestone_sequence"),
    )


class TransactionStatusHistory(Base):
    """Old/new status pairs with who changed them and why"""
    __tablename__ = "transaction_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(32), ForeignKey("transactions.id"), nullable=False, index=True)
    old_status = Column(String(32), nullable=True)
    new_status = Column(String(32), nullable=False)
    event = Column(String(64), nullable=False)
    changed_by_id = Column(String(64), nullable=True)
    changed_by_role = Column(String(16), nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)


class Escrow(Base):
    """Funds held for a transaction until all release conditions are met"""
    __tablename__ = "escrows"

    id = Column(String(32), primary_key=True, default=generate_id("ES"))
    transaction_id = Column(String(32), ForeignKey("transactions.id"), nullable=False, unique=True)

    amount_minor = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(16), default=EscrowStatus.PENDING.value, nullable=False)

    # Release conditions; never un-set once true
    delivery_confirmed = Column(Boolean, default=False, nullable=False)
    delivery_confirmed_at = Column(DateTime, nullable=True)
    quality_approved = Column(Boolean, default=False, nullable=False)
    quality_approved_at = Column(DateTime, nullable=True)
    documents_verified = Column(Boolean, default=False, nullable=False)
    documents_verified_at = Column(DateTime, nullable=True)

    hold_date = Column(DateTime, nullable=True)
    release_date = Column(DateTime, nullable=True)
    auto_release_date = Column(DateTime, nullable=True)

    buyer_amount_minor = Column(BigInteger, nullable=True)
    supplier_amount_minor = Column(BigInteger, nullable=True)
    release_reason = Column(String(64), nullable=True)

    # Bumped by every compare-and-set status change
    version = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=True)

    transaction = relationship("Transaction", back_populates="escrow")

    @property
    def amount(self) -> Money:
        return Money(int(self.amount_minor), self.currency)

    @property
    def all_conditions_met(self) -> bool:
        return bool(self.delivery_confirmed and self.quality_approved and self.documents_verified)

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_escrow_amount_positive"),
        CheckConstraint(
            "buyer_amount_minor IS NULL OR buyer_amount_minor >= 0",
            name="ck_escrow_buyer_amount_non_negative",
        ),
        CheckConstraint(
            "supplier_amount_minor IS NULL OR supplier_amount_minor >= 0",
            name="ck_escrow_supplier_amount_non_negative",
        ),
        CheckConstraint(
            "buyer_amount_minor IS NULL OR supplier_amount_minor IS NULL "
            "OR buyer_amount_minor + supplier_amount_minor = amount_minor",
            name="ck_escrow_split_sums_to_amount",
        ),
        Index("ix_escrows_status_auto_release", "status", "auto_release_date"),
    )

    def __repr__(self):
        return f"<Escrow(transaction_id={self.transaction_id}, status={self.status})>"


class QualityAssessment(Base):
    """Buyer's one-time quality verdict on delivered goods"""
    __tablename__ = "quality_assessments"

    id = Column(String(32), primary_key=True, default=generate_id("QA"))
    transaction_id = Column(String(32), ForeignKey("transactions.id"), nullable=False, unique=True)
    assessed_by_id = Column(String(64), nullable=False)
    rating = Column(Integer, nullable=False)
    notes = Column(Text, nullable=False)
    issues = Column(JSON, nullable=False, default=list)
    approval_status = Column(String(16), nullable=False)
    created_at = Column(DateTime, nullable=False)

    transaction = relationship("Transaction", back_populates="quality_assessment")

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_quality_rating_range"),
        CheckConstraint(
            "(rating >= 3 AND approval_status = 'approved') OR (rating <= 2 AND approval_status = 'rejected')",
            name="ck_quality_rating_matches_approval",
        ),
    )


class Dispute(Base):
    """Adjudication case that freezes the escrow until an admin decides"""
    __tablename__ = "disputes"

    id = Column(String(32), primary_key=True, default=generate_id("DP"))
    transaction_id = Column(String(32), ForeignKey("transactions.id"), nullable=False)
    filed_by_user_id = Column(String(64), nullable=False)
    filed_by_role = Column(String(16), nullable=False)
    reason = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    requested_resolution = Column(String(32), nullable=True)
    evidence_urls = Column(JSON, nullable=False, default=list)
    status = Column(String(32), default=DisputeStatus.PENDING.value, nullable=False)

    admin_decision = Column(String(32), nullable=True)
    resolution_amount_minor = Column(BigInteger, nullable=True)
    resolution_reason = Column(Text, nullable=True)
    reviewed_by_admin_id = Column(String(64), nullable=True)
    buyer_amount_minor = Column(BigInteger, nullable=True)
    supplier_amount_minor = Column(BigInteger, nullable=True)

    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=True)

    transaction = relationship("Transaction", back_populates="disputes")
    messages = relationship("DisputeMessage", back_populates="dispute", order_by="DisputeMessage.id")

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_DISPUTE_STATUSES

    __table_args__ = (
        Index("ix_disputes_transaction_status", "transaction_id", "status"),
        CheckConstraint(
            "resolution_amount_minor IS NULL OR resolution_amount_minor >= 0",
            name="ck_dispute_resolution_amount_non_negative",
        ),
    )

    def __repr__(self):
        return f"<Dispute(id={self.id}, transaction_id={self.transaction_id}, status={self.status})>"


class DisputeMessage(Base):
    """Messages in the dispute thread"""
    __tablename__ = "dispute_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(String(32), ForeignKey("disputes.id"), nullable=False, index=True)
    sender_id = Column(String(64), nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False)

    dispute = relationship("Dispute", back_populates="messages")

    def __repr__(self):
        return f"<DisputeMessage(dispute_id={self.dispute_id}, sender_id={self.sender_id})>"
