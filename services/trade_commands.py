"""
Command and query facade for the trade escrow engine

Every command returns a ``CommandResult``: expected domain failures come
back with their stable ``error_code`` instead of raising. Database errors
are not domain failures and propagate.
"""

import logging
from dataclasses import asdict, dataclass, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional, Union

from models import ActorRole, AdminDecision, DisputeStatus, TransactionStatus
from services.collaborators import SYSTEM_ACTOR, Actor
from services.delivery_quality_service import DeliveryQualityService
from services.dispute_resolution import DisputeResolutionService
from services.escrow_ledger import EscrowLedger
from services.trade_lifecycle import TradeLifecycleService
from utils.exceptions import EscrowEngineError
from utils.money import Money
from utils.transaction_state_machine import TransactionEvent

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of a command or query"""
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "CommandResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, exc: EscrowEngineError) -> "CommandResult":
        return cls(success=False, error=exc.message, error_code=exc.error_code)


def to_data(value: Any) -> Any:
    """Plain JSON-friendly projection of service results"""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Money):
        return {"minor_units": value.minor_units, "currency": value.currency}
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "_asdict"):
        return {k: to_data(v) for k, v in value._asdict().items()}
    if is_dataclass(value):
        return {k: to_data(getattr(value, k)) for k in asdict(value)}
    if isinstance(value, dict):
        return {k: to_data(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_data(v) for v in value]
    return str(value)


def _execute(command: str, operation: Callable[[], Any]) -> CommandResult:
    try:
        return CommandResult.ok(to_data(operation()))
    except EscrowEngineError as e:
        logger.info(f"Command {command} rejected: {e.error_code} {e.message}")
        return CommandResult.failed(e)


class TradeCommands:
    """Entry points for API handlers and the scheduler"""

    # ---------------------------------------------------------------- lifecycle

    @classmethod
    def accept_quotation(cls, actor: Actor, supplier_id: str, amount: Money, **details) -> CommandResult:
        return _execute(
            "accept_quotation",
            lambda: TradeLifecycleService.accept_quotation(actor, supplier_id, amount, **details),
        )

    @classmethod
    def request_payment(cls, actor: Actor, transaction_id: str) -> CommandResult:
        return _execute("request_payment", lambda: TradeLifecycleService.request_payment(actor, transaction_id))

    @classmethod
    def capture_payment(
        cls, transaction_id: str, payment_reference: str, amount: Optional[Money] = None
    ) -> CommandResult:
        return _execute(
            "capture_payment",
            lambda: TradeLifecycleService.capture_payment(transaction_id, payment_reference, amount),
        )

    @classmethod
    def record_supplier_progress(
        cls, actor: Actor, transaction_id: str, event: Union[TransactionEvent, str],
        description: Optional[str] = None,
    ) -> CommandResult:
        return _execute(
            "record_supplier_progress",
            lambda: TradeLifecycleService.record_supplier_progress(actor, transaction_id, event, description),
        )

    @classmethod
    def verify_documents(cls, transaction_id: str, actor: Actor = SYSTEM_ACTOR) -> CommandResult:
        return _execute("verify_documents", lambda: TradeLifecycleService.verify_documents(actor, transaction_id))

    @classmethod
    def cancel_transaction(cls, actor: Actor, transaction_id: str, reason: str) -> CommandResult:
        return _execute(
            "cancel_transaction",
            lambda: TradeLifecycleService.cancel_transaction(actor, transaction_id, reason),
        )

    # ---------------------------------------------------------------- buyer verification

    @classmethod
    def confirm_delivery(
        cls, actor: Actor, transaction_id: str, location: str, notes: Optional[str] = None
    ) -> CommandResult:
        return _execute(
            "confirm_delivery",
            lambda: DeliveryQualityService.confirm_delivery(actor, transaction_id, location, notes),
        )

    @classmethod
    def submit_quality_assessment(
        cls, actor: Actor, transaction_id: str, rating: Optional[int], notes: str,
        issues: Optional[List[str]] = None,
    ) -> CommandResult:
        return _execute(
            "submit_quality_assessment",
            lambda: DeliveryQualityService.submit_quality_assessment(actor, transaction_id, rating, notes, issues),
        )

    # ---------------------------------------------------------------- disputes

    @classmethod
    def open_dispute(
        cls, actor: Actor, transaction_id: str, reason: str,
        evidence_urls: Optional[List[str]] = None,
        description: Optional[str] = None,
        requested_resolution: Optional[str] = None,
    ) -> CommandResult:
        return _execute(
            "open_dispute",
            lambda: DisputeResolutionService.open_dispute(
                actor, transaction_id, reason, evidence_urls, description, requested_resolution
            ),
        )

    @classmethod
    def post_dispute_message(
        cls, actor: Actor, dispute_id: str, message: str, is_admin: bool = False
    ) -> CommandResult:
        return _execute(
            "post_dispute_message",
            lambda: DisputeResolutionService.post_message(actor, dispute_id, message, is_admin),
        )

    @classmethod
    def update_dispute_status(
        cls, actor: Actor, dispute_id: str, status: Union[DisputeStatus, str]
    ) -> CommandResult:
        return _execute(
            "update_dispute_status",
            lambda: DisputeResolutionService.update_status(actor, dispute_id, status),
        )

    @classmethod
    def resolve_dispute(
        cls, actor: Actor, dispute_id: str, decision: Union[AdminDecision, str],
        resolution_amount: Union[Money, int, None] = None,
        resolution_reason: str = "",
    ) -> CommandResult:
        return _execute(
            "resolve_dispute",
            lambda: DisputeResolutionService.resolve(
                actor, dispute_id, decision, resolution_amount, resolution_reason
            ),
        )

    # ---------------------------------------------------------------- queries

    @classmethod
    def get_transaction(cls, transaction_id: str) -> CommandResult:
        return _execute("get_transaction", lambda: TradeLifecycleService.get_transaction(transaction_id))

    @classmethod
    def get_escrow(cls, transaction_id: str) -> CommandResult:
        return _execute("get_escrow", lambda: EscrowLedger.get_escrow(transaction_id))

    @classmethod
    def get_dispute(cls, dispute_id: str) -> CommandResult:
        return _execute("get_dispute", lambda: DisputeResolutionService.get_dispute(dispute_id))

    @classmethod
    def list_transactions_for_user(
        cls, user_id: str, role: Optional[ActorRole] = None, status: Optional[TransactionStatus] = None
    ) -> CommandResult:
        return _execute(
            "list_transactions_for_user",
            lambda: TradeLifecycleService.list_transactions_for_user(user_id, role, status),
        )

    @classmethod
    def get_milestones(cls, transaction_id: str) -> CommandResult:
        return _execute("get_milestones", lambda: TradeLifecycleService.get_milestones(transaction_id))


__all__ = ["CommandResult", "TradeCommands", "to_data"]
