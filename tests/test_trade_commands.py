"""
Tests for the command facade
Stable error codes, result projection and full trade lifecycles
"""

from dataclasses import dataclass

from models import AdminDecision, DisputeStatus, EscrowStatus, TransactionStatus
from services.trade_commands import CommandResult, TradeCommands, to_data
from utils.exceptions import ReasonTooShort
from utils.money import Money
from utils.transaction_state_machine import TransactionEvent

SUPPLIER_ID = "supplier-1"


class TestCommandResult:
    """Result envelope and data projection"""

    def test_failed_carries_error_code(self):
        result = CommandResult.failed(ReasonTooShort("too short"))
        assert result.success is False
        assert result.error == "too short"
        assert result.error_code == "REASON_TOO_SHORT"

    def test_to_data_projection(self):
        @dataclass
        class Sample:
            status: TransactionStatus
            amount: Money
            tags: tuple

        data = to_data(Sample(TransactionStatus.SHIPPED, Money.of_minor(500, "USD"), ("a", "b")))

        assert data == {
            "status": "shipped",
            "amount": {"minor_units": 500, "currency": "USD"},
            "tags": ["a", "b"],
        }


class TestLifecycleCommands:
    """Happy paths through the facade"""

    def _accept(self, buyer, amount_minor=10000, quotation_id="Q-100"):
        result = TradeCommands.accept_quotation(
            buyer, SUPPLIER_ID, Money.of_minor(amount_minor, "USD"), quotation_id=quotation_id
        )
        assert result.success, result.error
        return result.data["id"]

    def test_full_release_lifecycle(self, db, buyer, supplier):
        transaction_id = self._accept(buyer)

        assert TradeCommands.request_payment(buyer, transaction_id).data["status"] == "payment_pending"
        held = TradeCommands.capture_payment(transaction_id, "PAY-1")
        assert held.data["status"] == EscrowStatus.HELD.value

        for event in (TransactionEvent.START_PRODUCTION, TransactionEvent.SHIP, "mark_in_transit"):
            assert TradeCommands.record_supplier_progress(supplier, transaction_id, event).success
        assert TradeCommands.confirm_delivery(buyer, transaction_id, "Port of Tema, berth 2").success

        quality = TradeCommands.submit_quality_assessment(buyer, transaction_id, 5, "Exactly as specified")
        assert quality.data["approval_status"] == "approved"
        assert quality.data["released"] is False

        documents = TradeCommands.verify_documents(transaction_id)
        assert documents.success
        assert documents.data["released"] is True

        transaction = TradeCommands.get_transaction(transaction_id).data
        assert transaction["status"] == TransactionStatus.COMPLETED.value
        assert transaction["escrow"]["status"] == EscrowStatus.RELEASED.value
        assert transaction["escrow"]["supplier_amount_minor"] == 10000
        assert transaction["escrow"]["buyer_amount_minor"] == 0

        statuses = [m["status"] for m in TradeCommands.get_milestones(transaction_id).data]
        assert statuses[-2:] == [TransactionStatus.FUNDS_RELEASING.value, TransactionStatus.COMPLETED.value]

    def test_dispute_lifecycle_partial_refund(self, db, buyer, supplier, admin):
        transaction_id = self._accept(buyer, amount_minor=24375)
        TradeCommands.capture_payment(transaction_id, "PAY-2")
        TradeCommands.record_supplier_progress(supplier, transaction_id, TransactionEvent.SHIP)

        opened = TradeCommands.open_dispute(buyer, transaction_id, "Half the cartons were water damaged")
        dispute_id = opened.data["id"]
        assert TradeCommands.post_dispute_message(supplier, dispute_id, "Damage happened at the port").success
        assert TradeCommands.update_dispute_status(admin, dispute_id, DisputeStatus.UNDER_REVIEW).success

        too_much = TradeCommands.resolve_dispute(
            admin, dispute_id, "partial_refund", 30000, "Refund the damaged share"
        )
        assert too_much.error_code == "AMOUNT_OUT_OF_RANGE"

        resolved = TradeCommands.resolve_dispute(
            admin, dispute_id, AdminDecision.PARTIAL_REFUND, 12000, "Refund the damaged share"
        )
        assert resolved.data["buyer_amount"] == {"minor_units": 12000, "currency": "USD"}
        assert resolved.data["supplier_amount"] == {"minor_units": 12375, "currency": "USD"}
        assert resolved.data["transaction_status"] == TransactionStatus.COMPLETED.value

        escrow = TradeCommands.get_escrow(transaction_id).data
        assert escrow["status"] == EscrowStatus.RELEASED.value
        assert escrow["release_reason"] == "dispute_resolution"
        assert TradeCommands.get_dispute(dispute_id).data["status"] == DisputeStatus.RESOLVED.value

    def test_list_transactions_for_user(self, db, buyer):
        first = self._accept(buyer, quotation_id="Q-1")
        second = self._accept(buyer, quotation_id="Q-2")
        TradeCommands.capture_payment(second, "PAY-3")

        as_buyer = TradeCommands.list_transactions_for_user(buyer.user_id).data
        assert {t["id"] for t in as_buyer} == {first, second}

        held = TradeCommands.list_transactions_for_user(
            SUPPLIER_ID, status=TransactionStatus.ESCROW_HELD
        ).data
        assert [t["id"] for t in held] == [second]


class TestCommandErrors:
    """Domain failures come back as error codes"""

    def test_quotation_accepted_once(self, db, buyer):
        TradeCommands.accept_quotation(buyer, SUPPLIER_ID, Money.of_minor(100, "USD"), quotation_id="Q-9")
        again = TradeCommands.accept_quotation(buyer, SUPPLIER_ID, Money.of_minor(100, "USD"), quotation_id="Q-9")
        assert again.success is False
        assert again.error_code == "QUOTATION_ALREADY_ACCEPTED"

    def test_only_buyers_accept_quotations(self, db, supplier):
        result = TradeCommands.accept_quotation(supplier, "supplier-2", Money.of_minor(100, "USD"))
        assert result.error_code == "UNAUTHORIZED"

    def test_capture_twice(self, db, make_trade):
        transaction_id = make_trade(stage="held")
        result = TradeCommands.capture_payment(transaction_id, "PAY-dup")
        assert result.error_code == "ESCROW_ALREADY_EXISTS"

    def test_cancel_before_and_after_payment(self, db, make_trade, buyer):
        pending = make_trade(stage="initiated")
        cancelled = TradeCommands.cancel_transaction(buyer, pending, "Supplier unreachable")
        assert cancelled.data["status"] == TransactionStatus.CANCELLED.value
        assert cancelled.data["escrow"]["status"] == EscrowStatus.PENDING.value

        held = make_trade(stage="held")
        refused = TradeCommands.cancel_transaction(buyer, held, "Changed my mind")
        assert refused.error_code == "INVALID_TRANSITION"

    def test_party_cannot_verify_documents(self, db, make_trade, buyer):
        transaction_id = make_trade(stage="held")
        assert TradeCommands.verify_documents(transaction_id, actor=buyer).error_code == "UNAUTHORIZED"

    def test_missing_rating(self, db, make_trade, buyer):
        transaction_id = make_trade(stage="quality_pending")
        result = TradeCommands.submit_quality_assessment(buyer, transaction_id, None, "Looks fine overall")
        assert result.error_code == "RATING_REQUIRED"

    def test_second_dispute(self, db, make_trade, buyer, supplier):
        transaction_id = make_trade(stage="shipped")
        TradeCommands.open_dispute(buyer, transaction_id, "Goods arrived damaged in transit")
        result = TradeCommands.open_dispute(supplier, transaction_id, "Buyer refuses the delivery")
        assert result.error_code == "DISPUTE_ALREADY_OPEN"

    def test_unknown_ids(self, db):
        assert TradeCommands.get_transaction("missing").error_code == "NOT_FOUND"
        assert TradeCommands.get_escrow("missing").error_code == "NOT_FOUND"
        assert TradeCommands.get_dispute("missing").error_code == "NOT_FOUND"

    def test_unknown_decision(self, db, make_trade, buyer, admin):
        transaction_id = make_trade(stage="shipped")
        dispute_id = TradeCommands.open_dispute(buyer, transaction_id, "Goods arrived damaged in transit").data["id"]
        result = TradeCommands.resolve_dispute(admin, dispute_id, "coin_flip", resolution_reason="Let chance decide")
        assert result.error_code == "VALIDATION_ERROR"
