"""Tests for charging approved overstay penalties"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import TODAY, FakeGateway
from kitchenhub.domain.overstays import state_machine
from kitchenhub.domain.overstays.charge_executor import ChargeExecutor, ChargePolicy
from kitchenhub.domain.overstays.errors import (
    GatewayError,
    GatewayTerminalError,
    GatewayTransientError,
    InvalidTransitionError,
    OverstayValidationError,
)
from kitchenhub.domain.overstays.notifications import OverstayNotificationDispatcher
from kitchenhub.domain.overstays.repository import OverstayRepository
from kitchenhub.domain.overstays.scanner import OverstayScanner
from kitchenhub.domain.overstays.service import OverstayService
from kitchenhub.models_overstay import ChargeOutcome, OverstayRecord, OverstayStatus, ResolutionType
from kitchenhub.shared.clock import utcnow


def attempts(db, record):
    return OverstayRepository.get_charge_attempts(db, record.id)


class TestSuccessfulCharge:
    @pytest.mark.asyncio
    async def test_approve_discounted_amount_charges_it(self, db, service, gateway, detect, notifier, marketplace):
        record = await detect(days_overdue=4)

        record, outcome = await service.approve(record.id, marketplace["manager"], amount_cents=10000)

        assert outcome.success
        assert outcome.amount_cents == 10000
        assert outcome.idempotency_key == f"overstay_{record.id}_charge_0"
        assert record.status == OverstayStatus.CHARGE_SUCCEEDED
        assert record.final_penalty_cents == 10000
        assert record.resolution_type == ResolutionType.PAID
        assert record.charge_reference == "pi_test_1"
        assert record.pending_idempotency_key is None
        assert [c["amount_cents"] for c in gateway.calls] == [10000]
        assert "penalty_charged" in notifier.templates_for(marketplace["chef"].email)
        assert "penalty_charged" in notifier.templates_for(marketplace["manager"].email)

    @pytest.mark.asyncio
    async def test_charge_includes_kitchen_tax(self, db, service, gateway, detect, marketplace):
        marketplace["kitchen"].tax_rate_percent = Decimal("15")
        db.commit()
        record = await detect(days_overdue=4)

        _, outcome = await service.approve(record.id, marketplace["manager"])

        assert outcome.amount_cents == 13800
        attempt = attempts(db, record)[0]
        assert attempt.amount_cents == 13800
        assert attempt.base_amount_cents == 12000
        assert attempt.tax_amount_cents == 1800
        assert gateway.calls[0]["metadata"]["base_amount_cents"] == 12000

    @pytest.mark.asyncio
    async def test_charge_uses_booking_payment_method(self, db, service, gateway, detect, marketplace):
        record = await detect(days_overdue=4)

        await service.approve(record.id, marketplace["manager"])

        assert gateway.calls[0]["customer"] == "cus_chef"
        assert gateway.calls[0]["payment_method"] == "pm_card_visa"
        assert gateway.calls[0]["metadata"]["type"] == "storage_overstay_penalty"

    @pytest.mark.asyncio
    async def test_succeeded_penalty_cannot_be_charged_again(self, db, service, gateway, detect, marketplace):
        record = await detect(days_overdue=4)
        await service.approve(record.id, marketplace["manager"])

        with pytest.raises(InvalidTransitionError):
            await service.charge(record.id, marketplace["manager"])
        assert len(gateway.calls) == 1


class TestFailedCharge:
    @pytest.mark.asyncio
    async def test_terminal_failure_moves_to_charge_failed(self, db, service, gateway, detect, notifier, marketplace):
        record = await detect(days_overdue=4)
        gateway.fail_with(GatewayTerminalError("Your card was declined"))

        record, outcome = await service.approve(record.id, marketplace["manager"])

        assert not outcome.success
        assert outcome.outcome == ChargeOutcome.TERMINAL_FAILURE
        assert outcome.failure_reason == "Your card was declined"
        assert "retry" in outcome.message
        assert record.status == OverstayStatus.CHARGE_FAILED
        assert record.charge_attempt_count == 1
        assert record.consecutive_terminal_failures == 1
        assert record.last_charge_failure_reason == "Your card was declined"
        assert "charge_failed" in notifier.templates_for(marketplace["manager"].email)

    @pytest.mark.asyncio
    async def test_retry_after_failure_uses_next_key(self, db, service, gateway, detect, marketplace):
        record = await detect(days_overdue=4)
        gateway.fail_with(GatewayTerminalError("Insufficient funds"))
        await service.approve(record.id, marketplace["manager"])

        outcome = await service.charge(record.id, marketplace["manager"])

        assert outcome.success
        assert [c["idempotency_key"] for c in gateway.calls] == [
            f"overstay_{record.id}_charge_0",
            f"overstay_{record.id}_charge_1",
        ]
        assert [a.attempt_number for a in attempts(db, record)] == [1, 2]

    @pytest.mark.asyncio
    async def test_transient_failure_does_not_count_toward_escalation(
        self, db, service, gateway, detect, marketplace
    ):
        record = await detect(days_overdue=4)
        gateway.fail_with(GatewayTerminalError("Declined"), GatewayTerminalError("Declined"))
        await service.approve(record.id, marketplace["manager"])
        await service.charge(record.id, marketplace["manager"])
        gateway.fail_with(GatewayTransientError("Service unavailable"))

        outcome = await service.charge(record.id, marketplace["manager"])
        db.expire_all()

        assert outcome.outcome == ChargeOutcome.TRANSIENT_FAILURE
        assert outcome.escalated is False
        assert record.status == OverstayStatus.CHARGE_FAILED
        assert record.consecutive_terminal_failures == 0

    @pytest.mark.asyncio
    async def test_no_saved_payment_method(self, db, service, gateway, detect, marketplace):
        record = await detect(days_overdue=4, with_payment_method=False)

        record, outcome = await service.approve(record.id, marketplace["manager"])

        assert outcome.failure_reason == "No saved payment method on file"
        assert outcome.outcome == ChargeOutcome.TERMINAL_FAILURE
        assert record.status == OverstayStatus.CHARGE_FAILED
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_reapprove_lower_amount_after_failure(self, db, service, gateway, detect, marketplace):
        record = await detect(days_overdue=4)
        gateway.fail_with(GatewayTerminalError("Insufficient funds"))
        await service.approve(record.id, marketplace["manager"])

        record, outcome = await service.approve(record.id, marketplace["manager"], amount_cents=6000)

        assert outcome.success
        assert record.final_penalty_cents == 6000
        assert gateway.calls[-1]["amount_cents"] == 6000


class TestEscalation:
    @pytest.mark.asyncio
    async def test_three_declines_escalate_and_block_further_charges(
        self, db, service, gateway, detect, notifier, marketplace
    ):
        record = await detect(days_overdue=4)
        gateway.fail_with(*[GatewayTerminalError("Your card was declined") for _ in range(3)])
        manager = marketplace["manager"]

        await service.approve(record.id, manager)
        await service.charge(record.id, manager)
        outcome = await service.charge(record.id, manager)
        db.expire_all()

        assert outcome.escalated is True
        assert outcome.status == OverstayStatus.ESCALATED
        assert outcome.message.endswith("chef notified via payment link")
        assert record.status == OverstayStatus.ESCALATED
        assert record.escalated_at is not None
        assert record.payment_link_url == f"https://pay.test/{record.id}"
        assert gateway.links[0]["amount_cents"] == 12000
        assert "penalty_payment_link" in notifier.templates_for(marketplace["chef"].email)
        assert "penalty_escalated_ops" in notifier.templates_for(marketplace["admin"].email)

        with pytest.raises(InvalidTransitionError):
            await service.charge(record.id, manager)
        assert len(gateway.calls) == 3
        assert len(attempts(db, record)) == 3

    @pytest.mark.asyncio
    async def test_max_attempts_escalates_even_without_declines(
        self, db, gateway, notifier, detect, marketplace
    ):
        policy = ChargePolicy(
            escalation_threshold=3, max_attempts=2, timeout_seconds=0.2, transport_retries=0, retry_backoff_seconds=0
        )
        service = OverstayService(db, gateway, notifier, policy)
        record = await detect(days_overdue=4)
        gateway.fail_with(GatewayTransientError("Rate limited"), GatewayTransientError("Rate limited"))

        await service.approve(record.id, marketplace["manager"])
        outcome = await service.charge(record.id, marketplace["manager"])

        assert outcome.escalated is True
        assert outcome.status == OverstayStatus.ESCALATED

    @pytest.mark.asyncio
    async def test_payment_link_failure_still_escalates(self, db, service, gateway, detect, marketplace, monkeypatch):
        async def broken_link(*args, **kwargs):
            raise GatewayError("Stripe is down")

        monkeypatch.setattr(gateway, "create_payment_link", broken_link)
        record = await detect(days_overdue=4)
        gateway.fail_with(*[GatewayTerminalError("Declined") for _ in range(3)])
        manager = marketplace["manager"]

        await service.approve(record.id, manager)
        await service.charge(record.id, manager)
        outcome = await service.charge(record.id, manager)

        assert outcome.status == OverstayStatus.ESCALATED
        assert outcome.message.endswith("escalated for manual collection")

    @pytest.mark.asyncio
    async def test_reopen_allows_new_approval_and_charge(self, db, service, gateway, detect, marketplace):
        record = await detect(days_overdue=4)
        gateway.fail_with(*[GatewayTerminalError("Declined") for _ in range(3)])
        manager = marketplace["manager"]
        await service.approve(record.id, manager)
        await service.charge(record.id, manager)
        await service.charge(record.id, manager)

        record = await service.reopen(record.id, manager, notes="Chef updated their card")
        assert record.status == OverstayStatus.PENDING_REVIEW
        assert record.consecutive_terminal_failures == 0

        record, outcome = await service.approve(record.id, manager)

        assert outcome.success
        assert outcome.idempotency_key == f"overstay_{record.id}_charge_3"
        assert record.status == OverstayStatus.CHARGE_SUCCEEDED


class TestUnknownOutcome:
    @pytest.mark.asyncio
    async def test_timeout_then_retry_does_not_double_charge(self, db, service, gateway, detect, marketplace):
        record = await detect(days_overdue=4)
        gateway.hang_after_charge = 1

        record, first = await service.approve(record.id, marketplace["manager"])

        assert first.outcome == ChargeOutcome.TRANSIENT_FAILURE
        assert first.outcome_unknown is True
        assert "will not double charge" in first.message
        assert record.status == OverstayStatus.CHARGE_FAILED

        second = await service.charge(record.id, marketplace["manager"])

        assert second.success
        assert second.idempotency_key == first.idempotency_key
        assert second.reference == "pi_test_1"
        assert len(gateway.charges) == 1
        recorded = attempts(db, record)
        assert [a.outcome_unknown for a in recorded] == [True, False]
        assert recorded[0].idempotency_key == recorded[1].idempotency_key

    @pytest.mark.asyncio
    async def test_changed_amount_refused_while_outcome_unknown(self, db, service, gateway, detect, marketplace):
        record = await detect(days_overdue=4)
        gateway.hang_after_charge = 1
        record, first = await service.approve(record.id, marketplace["manager"])

        with pytest.raises(OverstayValidationError) as exc_info:
            await service.approve(record.id, marketplace["manager"], amount_cents=11000)
        db.expire_all()

        assert exc_info.value.message == (
            "The previous charge of $120.00 has an unknown outcome; "
            "retry the charge at the same amount before changing it"
        )
        assert record.status == OverstayStatus.CHARGE_FAILED
        assert record.final_penalty_cents == 12000
        assert len(gateway.calls) == 1
        assert list(gateway.charges) == [first.idempotency_key]

    @pytest.mark.asyncio
    async def test_same_amount_reapproval_reuses_key(self, db, service, gateway, detect, marketplace):
        record = await detect(days_overdue=4)
        gateway.hang_after_charge = 1
        record, first = await service.approve(record.id, marketplace["manager"])

        record, second = await service.approve(record.id, marketplace["manager"], amount_cents=12000)

        assert second.success
        assert second.idempotency_key == first.idempotency_key
        assert len(gateway.charges) == 1

    @pytest.mark.asyncio
    async def test_new_amount_allowed_once_outcome_settled(self, db, service, gateway, detect, marketplace):
        record = await detect(days_overdue=4)
        gateway.fail_with(
            GatewayTransientError("Connection reset", outcome_unknown=True),
            GatewayTerminalError("Your card was declined"),
        )
        record, first = await service.approve(record.id, marketplace["manager"])
        retry = await service.charge(record.id, marketplace["manager"])

        record, third = await service.approve(record.id, marketplace["manager"], amount_cents=9000)

        assert first.outcome_unknown is True
        assert retry.idempotency_key == first.idempotency_key
        assert retry.outcome == ChargeOutcome.TERMINAL_FAILURE
        assert third.success
        assert third.idempotency_key == f"overstay_{record.id}_charge_2"
        assert [c["amount_cents"] for c in gateway.charges.values()] == [9000]

    @pytest.mark.asyncio
    async def test_executor_refuses_different_amount_after_unknown_outcome(
        self, db, gateway, notifier, policy, detect, marketplace
    ):
        record = await detect(days_overdue=4)
        gateway.hang_after_charge = 1
        dispatcher = OverstayNotificationDispatcher(db, notifier)
        executor = ChargeExecutor(db, gateway, dispatcher, policy)
        state_machine.approve(db, record, state_machine.ApprovalDecision(manager_id=None))
        db.commit()
        await executor.execute(record.id)

        state_machine.approve(db, record, state_machine.ApprovalDecision(manager_id=None, amount_cents=9000))
        db.commit()
        with pytest.raises(OverstayValidationError):
            await executor.execute(record.id)
        db.expire_all()

        assert record.status == OverstayStatus.PENALTY_APPROVED
        assert len(gateway.calls) == 1

    @pytest.mark.asyncio
    async def test_transport_retries_reuse_key(self, db, gateway, notifier, detect, marketplace):
        policy = ChargePolicy(
            escalation_threshold=3, max_attempts=5, timeout_seconds=0.2, transport_retries=2, retry_backoff_seconds=0
        )
        service = OverstayService(db, gateway, notifier, policy)
        record = await detect(days_overdue=4)
        gateway.fail_with(
            GatewayTransientError("Connection reset", outcome_unknown=True),
            GatewayTransientError("Connection reset", outcome_unknown=True),
        )

        record, outcome = await service.approve(record.id, marketplace["manager"])

        assert outcome.success
        assert len({c["idempotency_key"] for c in gateway.calls}) == 1
        assert len(gateway.calls) == 3
        assert len(attempts(db, record)) == 1

    @pytest.mark.asyncio
    async def test_exhausted_transport_retries_keep_unknown_flag(self, db, gateway, notifier, detect, marketplace):
        policy = ChargePolicy(
            escalation_threshold=3, max_attempts=5, timeout_seconds=0.2, transport_retries=1, retry_backoff_seconds=0
        )
        service = OverstayService(db, gateway, notifier, policy)
        record = await detect(days_overdue=4)
        gateway.fail_with(
            GatewayTransientError("Connection reset", outcome_unknown=True),
            GatewayTransientError("Rate limited"),
        )

        _, outcome = await service.approve(record.id, marketplace["manager"])

        assert outcome.outcome_unknown is True
        assert outcome.failure_reason == "Rate limited"


class HeldGateway(FakeGateway):
    """Holds every charge call open until release(); the answer is whatever comes next"""

    def __init__(self):
        super().__init__()
        self.in_flight = asyncio.Event()
        self.answer = asyncio.Event()
        self.error = None

    def release(self, error=None):
        self.error = error
        self.answer.set()

    async def charge(self, customer_token, payment_method_token, amount_cents, idempotency_key, metadata):
        self.in_flight.set()
        await self.answer.wait()
        if self.error:
            raise self.error
        return await super().charge(customer_token, payment_method_token, amount_cents, idempotency_key, metadata)


def patient_policy(**overrides) -> ChargePolicy:
    values = {
        "escalation_threshold": 3,
        "max_attempts": 5,
        "timeout_seconds": 5,
        "transport_retries": 0,
        "retry_backoff_seconds": 0,
    }
    values.update(overrides)
    return ChargePolicy(**values)


def mark_stale(session, record_id):
    session.query(OverstayRecord).filter(OverstayRecord.id == record_id).update(
        {OverstayRecord.updated_at: utcnow() - timedelta(hours=2)},
        synchronize_session=False,
    )
    session.commit()


class TestInFlightCharge:
    @pytest.mark.asyncio
    async def test_resolve_refused_while_charge_in_flight(self, db, session_factory, notifier, detect, marketplace):
        held = HeldGateway()
        service = OverstayService(db, held, notifier, patient_policy())
        record = await detect(days_overdue=4)

        charging = asyncio.create_task(service.approve(record.id, marketplace["manager"]))
        await held.in_flight.wait()

        other = session_factory()
        try:
            with pytest.raises(InvalidTransitionError):
                await OverstayService(other, held, notifier, patient_policy()).resolve(
                    record.id, marketplace["manager"], "removed"
                )
            other.rollback()
        finally:
            other.close()

        held.release()
        record, outcome = await charging
        db.expire_all()

        assert outcome.success
        assert record.status == OverstayStatus.CHARGE_SUCCEEDED
        assert record.charge_reference == "pi_test_1"
        assert [a.outcome for a in attempts(db, record)] == [ChargeOutcome.SUCCEEDED]
        assert len(held.charges) == 1

    @pytest.mark.asyncio
    async def test_late_success_after_stale_recovery_settles_as_paid(
        self, db, session_factory, gateway, notifier, detect, marketplace
    ):
        held = HeldGateway()
        service = OverstayService(db, held, notifier, patient_policy())
        record = await detect(days_overdue=4)

        charging = asyncio.create_task(service.approve(record.id, marketplace["manager"]))
        await held.in_flight.wait()

        other = session_factory()
        try:
            mark_stale(other, record.id)
            summary = await OverstayScanner(notifier, gateway, patient_policy()).scan(other, TODAY)
        finally:
            other.close()

        held.release()
        record, outcome = await charging
        db.expire_all()

        assert summary.recovered_charges == 1
        assert outcome.success
        assert record.status == OverstayStatus.CHARGE_SUCCEEDED
        assert record.charge_reference == "pi_test_1"
        assert record.resolution_type == ResolutionType.PAID
        recorded = attempts(db, record)
        assert [a.outcome for a in recorded] == [ChargeOutcome.TRANSIENT_FAILURE, ChargeOutcome.SUCCEEDED]
        assert recorded[0].triggered_by == "recovery"
        assert recorded[1].gateway_reference == "pi_test_1"
        assert len(held.charges) == 1

    @pytest.mark.asyncio
    async def test_late_success_on_escalated_case_is_kept_and_flagged(
        self, db, session_factory, gateway, notifier, detect, marketplace
    ):
        held = HeldGateway()
        service = OverstayService(db, held, notifier, patient_policy())
        record = await detect(days_overdue=4)

        charging = asyncio.create_task(service.approve(record.id, marketplace["manager"]))
        await held.in_flight.wait()

        other = session_factory()
        try:
            mark_stale(other, record.id)
            await OverstayScanner(notifier, gateway, patient_policy(max_attempts=1)).scan(other, TODAY)
        finally:
            other.close()

        held.release()
        record, outcome = await charging
        db.expire_all()

        assert outcome.success
        assert outcome.status == OverstayStatus.ESCALATED
        assert "flagged for reconciliation" in outcome.message
        assert record.status == OverstayStatus.ESCALATED
        assert record.charge_reference == "pi_test_1"
        assert record.charge_succeeded_at is not None
        assert attempts(db, record)[-1].outcome == ChargeOutcome.SUCCEEDED
        assert "charge_unreconciled_ops" in notifier.templates_for(marketplace["admin"].email)
        history = OverstayRepository.get_history(db, record.id)
        assert "late_charge_result" in [h.event_type for h in history]

    @pytest.mark.asyncio
    async def test_late_failure_after_stale_recovery_changes_nothing(
        self, db, session_factory, gateway, notifier, detect, marketplace
    ):
        held = HeldGateway()
        service = OverstayService(db, held, notifier, patient_policy())
        record = await detect(days_overdue=4)

        charging = asyncio.create_task(service.approve(record.id, marketplace["manager"]))
        await held.in_flight.wait()

        other = session_factory()
        try:
            mark_stale(other, record.id)
            await OverstayScanner(notifier, gateway, patient_policy()).scan(other, TODAY)
        finally:
            other.close()

        held.release(GatewayTerminalError("Your card was declined"))
        record, outcome = await charging
        db.expire_all()

        assert not outcome.success
        assert outcome.status == OverstayStatus.CHARGE_FAILED
        assert record.status == OverstayStatus.CHARGE_FAILED
        assert record.charge_attempt_count == 1
        assert record.consecutive_terminal_failures == 0
        assert [a.outcome for a in attempts(db, record)] == [
            ChargeOutcome.TRANSIENT_FAILURE,
            ChargeOutcome.TERMINAL_FAILURE,
        ]


class TestNotificationIsolation:
    @pytest.mark.asyncio
    async def test_notification_failure_keeps_charge(self, db, gateway, notifier, policy, detect, marketplace):
        record = await detect(days_overdue=4)
        notifier.fail = True
        dispatcher = OverstayNotificationDispatcher(db, notifier)
        executor = ChargeExecutor(db, gateway, dispatcher, policy)

        state_machine.approve(db, record, state_machine.ApprovalDecision(manager_id=None))
        db.commit()

        outcome = await executor.execute(record.id)
        db.expire_all()

        assert outcome.success
        assert record.status == OverstayStatus.CHARGE_SUCCEEDED
