"""
Tests for the auto-release sweep and its scheduler
Grace-period release, dispute blocking, failure isolation and reminders
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

import database

import services.auto_release_service as auto_release_module
from config import Config
from jobs.auto_release_scheduler import AutoReleaseScheduler
from models import ApprovalStatus, EscrowStatus, QualityAssessment, ReleaseCondition, Transaction, TransactionStatus
from services.auto_release_service import AutoReleaseService, due_escrow_transaction_ids
from services.delivery_quality_service import DeliveryQualityService
from services.dispute_resolution import DisputeResolutionService
from services.escrow_ledger import EscrowLedger
from services.trade_lifecycle import TradeLifecycleService
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import DisputePending, NotYetDue


class TestAutoReleaseSweep:
    """process_auto_release over held escrows"""

    def test_nothing_due(self, make_trade):
        make_trade(stage="held")
        result = AutoReleaseService.process_auto_release()
        assert result.total == 0

    def test_releases_overdue_escrow(self, make_trade, make_due, notifications):
        transaction_id = make_trade(stage="shipped")
        make_due(transaction_id)

        result = AutoReleaseService.process_auto_release()

        assert result.released == [transaction_id]
        escrow = EscrowLedger.get_escrow(transaction_id)
        assert escrow.status == EscrowStatus.RELEASED.value
        assert escrow.release_reason == "auto_release"
        assert escrow.supplier_amount_minor == 10000
        assert TradeLifecycleService.get_transaction(transaction_id).status == TransactionStatus.COMPLETED.value
        assert "escrow.released" in notifications.events(transaction_id)

    def test_grace_period_measured_from_hold(self, make_trade):
        transaction_id = make_trade(stage="held")
        escrow = EscrowLedger.get_escrow(transaction_id)
        assert escrow.auto_release_date is not None

        just_before = get_naive_utc_now() + timedelta(days=Config.AUTO_RELEASE_GRACE_DAYS - 1)
        after = get_naive_utc_now() + timedelta(days=Config.AUTO_RELEASE_GRACE_DAYS + 1)
        assert due_escrow_transaction_ids(just_before) == []
        assert due_escrow_transaction_ids(after) == [transaction_id]

    def test_open_dispute_blocks_release(self, make_trade, make_due, buyer):
        transaction_id = make_trade(stage="shipped")
        make_due(transaction_id)
        DisputeResolutionService.open_dispute(buyer, transaction_id, "Goods arrived damaged in transit")
        before = EscrowLedger.get_escrow(transaction_id)

        with pytest.raises(DisputePending):
            EscrowLedger.auto_release(transaction_id)

        result = AutoReleaseService.process_auto_release()
        assert transaction_id not in result.released
        after = EscrowLedger.get_escrow(transaction_id)
        assert after.status == EscrowStatus.DISPUTED.value
        assert after.version == before.version

    def test_stale_candidate_skipped(self, make_trade, make_due, buyer, monkeypatch):
        transaction_id = make_trade(stage="shipped")
        make_due(transaction_id)
        DisputeResolutionService.open_dispute(buyer, transaction_id, "Goods arrived damaged in transit")
        # Frozen between the scan and the release attempt
        monkeypatch.setattr(auto_release_module, "due_escrow_transaction_ids", lambda now: [transaction_id])

        result = AutoReleaseService.process_auto_release()

        assert result.skipped == [transaction_id]
        assert result.released == []

    def test_one_failure_does_not_stop_the_sweep(self, make_trade, make_due, monkeypatch):
        broken = make_trade(stage="held")
        healthy = make_trade(stage="held")
        make_due(broken, days_overdue=2)
        make_due(healthy, days_overdue=1)

        original = EscrowLedger.auto_release

        def flaky_auto_release(transaction_id, now=None):
            if transaction_id == broken:
                raise RuntimeError("ledger unavailable")
            return original(transaction_id, now=now)

        monkeypatch.setattr(EscrowLedger, "auto_release", flaky_auto_release)

        result = AutoReleaseService.process_auto_release()

        assert result.failed == [broken]
        assert result.released == [healthy]
        assert EscrowLedger.get_escrow(broken).status == EscrowStatus.HELD.value
        assert EscrowLedger.get_escrow(healthy).status == EscrowStatus.RELEASED.value

    def test_inconsistent_row_counted_as_failed(self, make_trade, make_due):
        transaction_id = make_trade(stage="held")
        make_due(transaction_id)
        # Escrow says HELD but the transaction never got past INITIATED
        with database.managed_session() as session:
            session.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id)
                .values(status=TransactionStatus.INITIATED.value)
            )

        result = AutoReleaseService.process_auto_release()

        assert result.failed == [transaction_id]
        assert result.skipped == []
        assert EscrowLedger.get_escrow(transaction_id).status == EscrowStatus.HELD.value

    def test_sweep_is_idempotent(self, make_trade, make_due):
        transaction_id = make_trade(stage="held")
        make_due(transaction_id)

        first = AutoReleaseService.process_auto_release()
        second = AutoReleaseService.process_auto_release()

        assert first.released == [transaction_id]
        assert second.total == 0


class TestQualityReminders:
    """Buyer nudges for pending assessments"""

    def test_reminder_sent_to_buyer(self, make_trade, notifications):
        transaction_id = make_trade(stage="quality_pending")
        later = get_naive_utc_now() + timedelta(days=Config.QUALITY_REMINDER_DAYS + 1)

        assert AutoReleaseService.send_quality_reminders(later) == 1

        event, reminded_id, audience = notifications.sent[-1]
        assert event == "quality.reminder"
        assert reminded_id == transaction_id
        assert [party.id for party in audience.parties] == ["buyer-1"]

    def test_no_reminder_inside_window(self, make_trade):
        make_trade(stage="quality_pending")
        assert AutoReleaseService.send_quality_reminders() == 0

    def test_reminder_sent_once(self, make_trade, notifications):
        transaction_id = make_trade(stage="quality_pending")
        later = get_naive_utc_now() + timedelta(days=Config.QUALITY_REMINDER_DAYS + 1)

        assert AutoReleaseService.send_quality_reminders(later) == 1
        assert AutoReleaseService.send_quality_reminders(later + timedelta(hours=1)) == 0

        assert notifications.events(transaction_id).count("quality.reminder") == 1
        assert DeliveryQualityService.pending_quality_reminders(later) == []


def _assessment_for(transaction_id):
    session = database.get_session()
    try:
        return (
            session.query(QualityAssessment)
            .filter(QualityAssessment.transaction_id == transaction_id)
            .first()
        )
    finally:
        session.close()


class TestQualityAutoApproval:
    """Assessments the buyer lets lapse are approved by the system"""

    def _after_window(self):
        return get_naive_utc_now() + timedelta(days=Config.QUALITY_AUTO_APPROVE_DAYS + 1)

    def test_auto_approval_releases_when_documents_verified(self, make_trade, notifications):
        transaction_id = make_trade(stage="quality_pending")
        EscrowLedger.satisfy_condition(transaction_id, ReleaseCondition.DOCUMENTS_VERIFIED)

        result = AutoReleaseService.process_quality_auto_approval(self._after_window())

        assert result.approved == [transaction_id]
        escrow = EscrowLedger.get_escrow(transaction_id)
        assert escrow.quality_approved is True
        assert escrow.status == EscrowStatus.RELEASED.value
        assert escrow.release_reason == "all_conditions_met"
        assert TradeLifecycleService.get_transaction(transaction_id).status == TransactionStatus.COMPLETED.value
        assert "escrow.released" in notifications.events(transaction_id)

        assessment = _assessment_for(transaction_id)
        assert assessment.rating == 4
        assert assessment.assessed_by_id == "system"
        assert assessment.approval_status == ApprovalStatus.APPROVED.value
        assert assessment.notes == "Auto-approved after 10-day assessment period"

    def test_auto_approval_without_documents_waits_for_them(self, make_trade):
        transaction_id = make_trade(stage="quality_pending")

        result = AutoReleaseService.process_quality_auto_approval(self._after_window())

        assert result.approved == [transaction_id]
        escrow = EscrowLedger.get_escrow(transaction_id)
        assert escrow.quality_approved is True
        assert escrow.status == EscrowStatus.HELD.value
        assert TradeLifecycleService.get_transaction(transaction_id).status == TransactionStatus.QUALITY_APPROVED.value

    def test_nothing_approved_inside_window(self, make_trade):
        transaction_id = make_trade(stage="quality_pending")
        inside = get_naive_utc_now() + timedelta(days=Config.QUALITY_AUTO_APPROVE_DAYS - 1)

        assert AutoReleaseService.process_quality_auto_approval(inside).total == 0
        with pytest.raises(NotYetDue):
            DeliveryQualityService.auto_approve_quality(transaction_id, now=inside)
        assert EscrowLedger.get_escrow(transaction_id).quality_approved is False

    def test_disputed_assessment_skipped(self, make_trade, buyer, monkeypatch):
        transaction_id = make_trade(stage="quality_pending")
        EscrowLedger.satisfy_condition(transaction_id, ReleaseCondition.DOCUMENTS_VERIFIED)
        DisputeResolutionService.open_dispute(buyer, transaction_id, "Colour does not match the sample")

        assert AutoReleaseService.process_quality_auto_approval(self._after_window()).total == 0

        # Disputed between the scan and the approval attempt
        monkeypatch.setattr(
            DeliveryQualityService, "overdue_quality_assessments",
            classmethod(lambda cls, now=None: [transaction_id]),
        )
        result = AutoReleaseService.process_quality_auto_approval(self._after_window())

        assert result.skipped == [transaction_id]
        assert result.approved == []
        escrow = EscrowLedger.get_escrow(transaction_id)
        assert escrow.status == EscrowStatus.DISPUTED.value
        assert escrow.quality_approved is False
        assert _assessment_for(transaction_id) is None

    def test_buyer_assessment_wins_over_auto_approval(self, make_trade, buyer):
        transaction_id = make_trade(stage="quality_pending")
        DeliveryQualityService.submit_quality_assessment(buyer, transaction_id, 5, "Matches the sample exactly")

        assert AutoReleaseService.process_quality_auto_approval(self._after_window()).total == 0
        assert _assessment_for(transaction_id).assessed_by_id == "buyer-1"


class TestAutoReleaseScheduler:
    """Job registration and the async sweep wrappers"""

    def test_setup_jobs_registers_sweeps(self):
        scheduler = AutoReleaseScheduler()
        scheduler.setup_jobs()
        scheduler.setup_jobs()

        job_ids = sorted(job.id for job in scheduler.scheduler.get_jobs())
        assert job_ids == ["escrow_auto_release", "quality_auto_approval", "quality_reminders"]

    def test_disabled_auto_release_skips_job(self, monkeypatch):
        monkeypatch.setattr(Config, "AUTO_RELEASE_ENABLED", False)
        scheduler = AutoReleaseScheduler()
        scheduler.setup_jobs()

        assert scheduler.scheduler.get_job("escrow_auto_release") is None
        assert scheduler.scheduler.get_job("quality_reminders") is not None
        assert scheduler.scheduler.get_job("quality_auto_approval") is not None

    @pytest.mark.asyncio
    async def test_run_auto_release(self, make_trade, make_due):
        transaction_id = make_trade(stage="held")
        make_due(transaction_id)

        result = await AutoReleaseScheduler().run_auto_release()

        assert result.released == [transaction_id]

    @pytest.mark.asyncio
    async def test_run_quality_auto_approval(self, make_trade):
        transaction_id = make_trade(stage="quality_pending")
        later = get_naive_utc_now() + timedelta(days=Config.QUALITY_AUTO_APPROVE_DAYS + 1)

        result = await AutoReleaseScheduler().run_quality_auto_approval(later)

        assert result.approved == [transaction_id]

    @pytest.mark.asyncio
    async def test_run_auto_release_swallows_errors(self, monkeypatch):
        def explode(now=None):
            raise RuntimeError("database gone")

        monkeypatch.setattr(AutoReleaseService, "process_auto_release", explode)

        assert await AutoReleaseScheduler().run_auto_release() is None
