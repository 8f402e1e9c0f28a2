"""
Escrow Ledger
Holds a transaction's funds and releases them only when every release
condition is met, when the grace period lapses, or when an admin
resolves a dispute.

Every status change goes through ``compare_and_set_escrow_status`` inside a
``locked_trade_operation``. Of a concurrent freeze, last-condition release
and scheduler auto-release, exactly one wins; the others see the post-state
and fail cleanly without moving money twice.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from config import Config
from database import get_session
from models import Escrow, EscrowStatus, ReleaseCondition, TERMINAL_ESCROW_STATUSES, TransactionStatus
from services.collaborators import SYSTEM_ACTOR, Audience, parties_of
from services.projections import EscrowSnapshot
from utils.atomic_transactions import (
    TradeUnitOfWork,
    compare_and_set_escrow_status,
    locked_trade_operation,
)
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.exceptions import (
    CannotFreezeReleased,
    DisputePending,
    EscrowAlreadyExists,
    InvalidTransition,
    NotFound,
    NotYetDue,
    SplitMismatch,
    UnknownCondition,
)
from utils.money import Money
from utils.transaction_state_machine import TransactionEvent, apply_transition

logger = logging.getLogger(__name__)

HELD = EscrowStatus.HELD.value
DISPUTED = EscrowStatus.DISPUTED.value

# Error codes for auto-release attempts that found the escrow already handled
ALREADY_SETTLED = "ESCROW_ALREADY_SETTLED"
RELEASE_RACE_LOST = "RELEASE_RACE_LOST"
RACE_ERROR_CODES = frozenset({ALREADY_SETTLED, RELEASE_RACE_LOST})

# Statuses from which a freeze can never succeed again
_SETTLED_FOR_FREEZE = frozenset({
    EscrowStatus.RELEASING.value,
    EscrowStatus.RELEASED.value,
    EscrowStatus.REFUNDED.value,
})


@dataclass(frozen=True)
class ConditionResult:
    """Outcome of satisfying one release condition"""
    condition: ReleaseCondition
    already_satisfied: bool
    released: bool
    escrow_status: str


def parse_condition(condition: Union[ReleaseCondition, str]) -> ReleaseCondition:
    if isinstance(condition, ReleaseCondition):
        return condition
    try:
        return ReleaseCondition(str(condition).strip().lower())
    except ValueError:
        raise UnknownCondition(f"Unknown release condition: {condition!r}")


def _require_escrow(uow: TradeUnitOfWork) -> Escrow:
    if uow.escrow is None:
        raise NotFound(f"No escrow for transaction {uow.transaction.id}")
    return uow.escrow


class EscrowLedger:
    """Escrow hold, condition tracking, freeze and settlement"""

    # ------------------------------------------------------------------
    # hold
    # ------------------------------------------------------------------

    @classmethod
    def hold(cls, transaction_id: str, amount: Money) -> EscrowSnapshot:
        """Put funds on hold; a second hold for the same transaction fails"""
        with locked_trade_operation(transaction_id) as uow:
            escrow = cls._hold_locked(uow, amount)
            return EscrowSnapshot.from_model(escrow)

    @classmethod
    def _hold_locked(cls, uow: TradeUnitOfWork, amount: Money, now: Optional[datetime] = None) -> Escrow:
        transaction = uow.transaction
        if amount != transaction.amount:
            raise SplitMismatch(
                f"Escrow amount {amount} must equal transaction amount {transaction.amount}"
            )

        escrow = uow.escrow
        if escrow is not None and escrow.status != EscrowStatus.PENDING.value:
            raise EscrowAlreadyExists(
                f"Escrow for {transaction.id} already exists in status {escrow.status}"
            )
        # Funds are held only once the payment is captured
        if transaction.status != TransactionStatus.PAYMENT_RECEIVED.value:
            raise InvalidTransition(
                f"Cannot hold escrow for {transaction.id} in status {transaction.status}; "
                f"payment must be received first"
            )

        now = ensure_naive_datetime(now) or get_naive_utc_now()
        auto_release_date = now + timedelta(days=Config.AUTO_RELEASE_GRACE_DAYS)

        if escrow is None:
            escrow = Escrow(
                transaction_id=transaction.id,
                amount_minor=amount.minor_units,
                currency=amount.currency,
                status=HELD,
                hold_date=now,
                auto_release_date=auto_release_date,
                version=1,
            )
            uow.session.add(escrow)
            uow.session.flush()
            uow.escrow = escrow
        elif not compare_and_set_escrow_status(
            uow.session, escrow, EscrowStatus.PENDING.value, HELD,
            hold_date=now, auto_release_date=auto_release_date,
        ):
            raise EscrowAlreadyExists(f"Escrow for {transaction.id} was held concurrently")

        apply_transition(uow, SYSTEM_ACTOR, TransactionEvent.HOLD_ESCROW)

        uow.notify("escrow.held", Audience(parties=parties_of(transaction)))
        logger.info(
            f"💰 ESCROW_HELD: {transaction.id} {amount} (auto-release {auto_release_date.isoformat()})"
        )
        return escrow

    # ------------------------------------------------------------------
    # release conditions
    # ------------------------------------------------------------------

    @classmethod
    def satisfy_condition(
        cls, transaction_id: str, condition: Union[ReleaseCondition, str]
    ) -> ConditionResult:
        """
        Mark one release condition satisfied; releases when it was the last one.

        Satisfying an already-satisfied condition is a successful no-op.
        While the escrow is DISPUTED the condition is recorded but no release
        happens; resolution decides where the money goes.
        """
        parsed = parse_condition(condition)
        with locked_trade_operation(transaction_id) as uow:
            return cls._satisfy_condition_locked(uow, parsed)

    @classmethod
    def _satisfy_condition_locked(cls, uow: TradeUnitOfWork, condition: ReleaseCondition) -> ConditionResult:
        escrow = _require_escrow(uow)
        column = condition.value

        if getattr(escrow, column):
            logger.info(f"Condition {column} already satisfied for {escrow.transaction_id}")
            return ConditionResult(condition, True, False, escrow.status)

        if escrow.status in TERMINAL_ESCROW_STATUSES:
            raise InvalidTransition(
                f"Escrow for {escrow.transaction_id} is already {escrow.status}"
            )

        setattr(escrow, column, True)
        setattr(escrow, f"{column}_at", get_naive_utc_now())
        uow.session.flush()
        uow.notify(f"escrow.condition.{column}", Audience(parties=parties_of(uow.transaction)))
        logger.info(f"✅ ESCROW_CONDITION: {escrow.transaction_id} {column} satisfied")

        released = False
        if escrow.all_conditions_met and escrow.status == HELD:
            released = cls._release_locked(uow, reason="all_conditions_met")
        elif escrow.all_conditions_met:
            logger.info(
                f"All conditions met for {escrow.transaction_id} but escrow is {escrow.status}; not releasing"
            )

        return ConditionResult(condition, False, released, escrow.status)

    # ------------------------------------------------------------------
    # release
    # ------------------------------------------------------------------

    @classmethod
    def release(cls, transaction_id: str) -> EscrowSnapshot:
        """Pay the supplier in full; requires HELD and every condition met"""
        with locked_trade_operation(transaction_id) as uow:
            escrow = _require_escrow(uow)
            if escrow.status != HELD:
                raise InvalidTransition(f"Cannot release escrow in status {escrow.status}")
            if not escrow.all_conditions_met:
                raise InvalidTransition("Not all release conditions are met", error_code="CONDITIONS_NOT_MET")
            if not cls._release_locked(uow, reason="manual_release"):
                raise InvalidTransition(f"Escrow release lost to concurrent change ({escrow.status})")
            return EscrowSnapshot.from_model(escrow)

    @classmethod
    def _release_locked(cls, uow: TradeUnitOfWork, reason: str) -> bool:
        """HELD -> RELEASING -> RELEASED and advance the transaction; False if the CAS lost"""
        escrow = _require_escrow(uow)
        if not compare_and_set_escrow_status(
            uow.session, escrow, HELD, EscrowStatus.RELEASING.value
        ):
            return False

        now = get_naive_utc_now()
        apply_transition(uow, SYSTEM_ACTOR, TransactionEvent.RELEASE_FUNDS, reason=reason)

        if not compare_and_set_escrow_status(
            uow.session, escrow, EscrowStatus.RELEASING.value, EscrowStatus.RELEASED.value,
            buyer_amount_minor=0,
            supplier_amount_minor=escrow.amount_minor,
            release_date=now,
            release_reason=reason,
        ):
            raise InvalidTransition(f"Escrow {escrow.id} left RELEASING unexpectedly")

        apply_transition(uow, SYSTEM_ACTOR, TransactionEvent.COMPLETE, reason=reason)
        uow.transaction.resolved_at = now

        uow.notify("escrow.released", Audience(parties=parties_of(uow.transaction)))
        logger.info(
            f"💸 ESCROW_RELEASED: {escrow.transaction_id} {escrow.amount} to supplier ({reason})"
        )
        return True

    # ------------------------------------------------------------------
    # freeze / unfreeze
    # ------------------------------------------------------------------

    @classmethod
    def freeze(cls, transaction_id: str) -> EscrowSnapshot:
        """Block every release path until an admin decides"""
        with locked_trade_operation(transaction_id) as uow:
            escrow = cls._freeze_locked(uow)
            return EscrowSnapshot.from_model(escrow)

    @classmethod
    def _freeze_locked(cls, uow: TradeUnitOfWork) -> Escrow:
        escrow = _require_escrow(uow)
        cls._check_freezable(escrow)
        if not compare_and_set_escrow_status(uow.session, escrow, HELD, DISPUTED):
            cls._check_freezable(escrow)
            raise InvalidTransition(f"Escrow freeze lost to concurrent change ({escrow.status})")

        uow.notify("escrow.frozen", Audience(parties=parties_of(uow.transaction), include_admins=True))
        logger.warning(f"🧊 ESCROW_FROZEN: {escrow.transaction_id}")
        return escrow

    @staticmethod
    def _check_freezable(escrow: Escrow):
        if escrow.status in _SETTLED_FOR_FREEZE:
            raise CannotFreezeReleased(
                f"Escrow for {escrow.transaction_id} is already {escrow.status}"
            )
        if escrow.status == DISPUTED:
            raise InvalidTransition(f"Escrow for {escrow.transaction_id} is already frozen")
        if escrow.status != HELD:
            raise InvalidTransition(f"Cannot freeze escrow in status {escrow.status}")

    @classmethod
    def _unfreeze_locked(cls, uow: TradeUnitOfWork) -> bool:
        """
        DISPUTED -> HELD after a dispute closes without fund movement.

        Conditions satisfied while frozen take effect now: returns True when
        the unfreeze immediately released the funds.
        """
        escrow = _require_escrow(uow)
        if escrow.status != DISPUTED:
            raise InvalidTransition(f"Cannot unfreeze escrow in status {escrow.status}")
        if not compare_and_set_escrow_status(uow.session, escrow, DISPUTED, HELD):
            raise InvalidTransition(f"Escrow unfreeze lost to concurrent change ({escrow.status})")

        logger.info(f"Escrow for {escrow.transaction_id} returned to HELD")
        if escrow.all_conditions_met:
            return cls._release_locked(uow, reason="all_conditions_met")
        return False

    # ------------------------------------------------------------------
    # dispute settlement
    # ------------------------------------------------------------------

    @classmethod
    def resolve(cls, transaction_id: str, buyer_amount: Money, supplier_amount: Money) -> EscrowSnapshot:
        with locked_trade_operation(transaction_id) as uow:
            escrow = cls._resolve_locked(uow, buyer_amount, supplier_amount)
            return EscrowSnapshot.from_model(escrow)

    @classmethod
    def _resolve_locked(cls, uow: TradeUnitOfWork, buyer_amount: Money, supplier_amount: Money) -> Escrow:
        """Settle a frozen escrow with an explicit split; terminal"""
        escrow = _require_escrow(uow)
        if escrow.status != DISPUTED:
            raise InvalidTransition(f"Only a disputed escrow can be resolved (status {escrow.status})")

        total = buyer_amount + supplier_amount
        if total != escrow.amount:
            raise SplitMismatch(
                f"Split {buyer_amount} + {supplier_amount} does not equal escrow amount {escrow.amount}"
            )

        new_status = EscrowStatus.REFUNDED if supplier_amount.is_zero else EscrowStatus.RELEASED
        if not compare_and_set_escrow_status(
            uow.session, escrow, DISPUTED, new_status.value,
            buyer_amount_minor=buyer_amount.minor_units,
            supplier_amount_minor=supplier_amount.minor_units,
            release_date=get_naive_utc_now(),
            release_reason="dispute_resolution",
        ):
            raise InvalidTransition(f"Escrow resolve lost to concurrent change ({escrow.status})")

        uow.notify("escrow.resolved", Audience(parties=parties_of(uow.transaction), include_admins=True))
        logger.info(
            f"⚖️ ESCROW_RESOLVED: {escrow.transaction_id} buyer={buyer_amount} "
            f"supplier={supplier_amount} -> {new_status.value}"
        )
        return escrow

    # ------------------------------------------------------------------
    # scheduler entry point
    # ------------------------------------------------------------------

    @classmethod
    def auto_release(cls, transaction_id: str, now: Optional[datetime] = None) -> EscrowSnapshot:
        """Release after the grace period unless a dispute holds the funds"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        with locked_trade_operation(transaction_id) as uow:
            escrow = _require_escrow(uow)
            if escrow.status == DISPUTED:
                raise DisputePending(f"Escrow for {transaction_id} is frozen by an open dispute")
            if escrow.status != HELD:
                raise InvalidTransition(
                    f"Escrow for {transaction_id} is {escrow.status}, nothing to release",
                    error_code=ALREADY_SETTLED,
                )
            if escrow.auto_release_date is None or now < escrow.auto_release_date:
                raise NotYetDue(
                    f"Escrow for {transaction_id} is due at {escrow.auto_release_date}"
                )
            if not cls._release_locked(uow, reason="auto_release"):
                raise InvalidTransition(
                    f"Escrow auto-release lost to concurrent change ({escrow.status})",
                    error_code=RELEASE_RACE_LOST,
                )
            return EscrowSnapshot.from_model(escrow)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    @classmethod
    def get_escrow(cls, transaction_id: str) -> EscrowSnapshot:
        session = get_session()
        try:
            escrow = session.query(Escrow).filter(Escrow.transaction_id == transaction_id).first()
            if escrow is None:
                raise NotFound(f"No escrow for transaction {transaction_id}")
            return EscrowSnapshot.from_model(escrow)
        finally:
            session.close()


__all__ = ["EscrowLedger", "ConditionResult", "parse_condition", "RACE_ERROR_CODES"]
