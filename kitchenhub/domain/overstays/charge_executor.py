"""
Overstay charge executor

Charges an approved penalty (tax-inclusive) against the chef's saved payment method.

Flow:
1. Lock the record, move it to charge_pending and commit. The committed status is what
   stops a second concurrent charge.
2. Call the gateway with a timeout and bounded transport retries, all with the same
   idempotency key.
3. Re-lock the record, record a ChargeAttempt row and move to charge_succeeded or
   charge_failed, escalating when the failure policy says so. An answer that arrives
   after the record moved on (stale recovery) is still recorded, never dropped.
4. Notify. Notification problems never undo the financial outcome.

Idempotency keys are overstay_{id}_charge_{charge_attempt_count}. When the previous
attempt's outcome is unknown (timeout) the same key is reused so the gateway
deduplicates instead of charging twice, and a different amount is refused until
that outcome is settled.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from ...config import (
    OVERSTAY_CHARGE_RETRY_BACKOFF_SECONDS,
    OVERSTAY_CHARGE_TIMEOUT_SECONDS,
    OVERSTAY_CHARGE_TRANSPORT_RETRIES,
    OVERSTAY_ESCALATION_THRESHOLD,
    OVERSTAY_MAX_CHARGE_ATTEMPTS,
)
from ...models_overstay import ChargeAttempt, ChargeOutcome, OverstayRecord, OverstayStatus
from . import state_machine
from .calculator import format_cents, tax_inclusive_total
from .errors import (
    GatewayError,
    GatewayTerminalError,
    GatewayTransientError,
    InvalidTransitionError,
    OverstayNotFoundError,
    OverstayValidationError,
)
from .gateway import PaymentGateway
from .notifications import OverstayNotificationDispatcher
from .repository import OverstayRepository

logger = logging.getLogger(__name__)

CHARGEABLE_STATUSES = (OverstayStatus.PENALTY_APPROVED, OverstayStatus.CHARGE_FAILED)


@dataclass(frozen=True)
class ChargePolicy:
    escalation_threshold: int = OVERSTAY_ESCALATION_THRESHOLD
    max_attempts: int = OVERSTAY_MAX_CHARGE_ATTEMPTS
    timeout_seconds: float = OVERSTAY_CHARGE_TIMEOUT_SECONDS
    transport_retries: int = OVERSTAY_CHARGE_TRANSPORT_RETRIES
    retry_backoff_seconds: float = OVERSTAY_CHARGE_RETRY_BACKOFF_SECONDS


@dataclass(frozen=True)
class ChargeAttemptOutcome:
    overstay_id: int
    status: OverstayStatus
    outcome: ChargeOutcome
    amount_cents: int
    idempotency_key: str
    message: str
    reference: Optional[str] = None
    failure_reason: Optional[str] = None
    outcome_unknown: bool = False
    escalated: bool = False

    @property
    def success(self) -> bool:
        return self.outcome == ChargeOutcome.SUCCEEDED


class ChargeExecutor:
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        dispatcher: OverstayNotificationDispatcher,
        policy: Optional[ChargePolicy] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.policy = policy or ChargePolicy()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def charge_amount(record: OverstayRecord) -> int:
        """Tax-inclusive total for the frozen final penalty"""
        return tax_inclusive_total(record.final_penalty_cents or 0, record.kitchen_tax_rate_percent)

    def check_unknown_outcome(self, record: OverstayRecord, amount_cents: int) -> None:
        """
        While the last attempt's outcome is unknown the chef may already have paid it.
        Only the same tax-inclusive amount may be sent again, under the same key, so
        the gateway can deduplicate.
        """
        last = OverstayRepository.get_last_charge_attempt(self.db, record.id)
        if last and last.outcome_unknown and last.amount_cents != amount_cents:
            raise OverstayValidationError(
                f"The previous charge of {format_cents(last.amount_cents)} has an unknown outcome; "
                "retry the charge at the same amount before changing it"
            )

    def idempotency_key_for(self, record: OverstayRecord, amount_cents: int) -> str:
        last = OverstayRepository.get_last_charge_attempt(self.db, record.id)
        if last and last.outcome_unknown:
            self.check_unknown_outcome(record, amount_cents)
            return last.idempotency_key
        return f"overstay_{record.id}_charge_{record.charge_attempt_count}"

    @staticmethod
    def payment_tokens(record: OverstayRecord) -> tuple[Optional[str], Optional[str]]:
        booking = record.storage_booking
        customer = booking.stripe_customer_id
        if not customer and booking.chef is not None:
            customer = booking.chef.stripe_customer_id
        return customer, booking.stripe_payment_method_id

    def _log_attempt(
        self,
        record: OverstayRecord,
        amount_cents: int,
        idempotency_key: str,
        outcome: ChargeOutcome,
        triggered_by: str,
        actor_id: Optional[int] = None,
        reference: Optional[str] = None,
        failure: Optional[GatewayError] = None,
    ) -> ChargeAttempt:
        base = record.final_penalty_cents or 0
        attempt = ChargeAttempt(
            overstay_record=record,
            attempt_number=(record.charge_attempt_count or 0) + 1,
            amount_cents=amount_cents,
            base_amount_cents=base,
            tax_amount_cents=amount_cents - base,
            idempotency_key=idempotency_key,
            outcome=outcome,
            outcome_unknown=bool(failure and failure.outcome_unknown),
            failure_reason=failure.message if failure else None,
            gateway_reference=reference,
            triggered_by=triggered_by,
            created_by=actor_id,
        )
        self.db.add(attempt)
        return attempt

    async def _call_gateway(
        self,
        customer: str,
        payment_method: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict,
    ) -> str:
        """One logical attempt: timeout plus transport retries with exponential backoff"""
        retries = 0
        outcome_unknown = False
        while True:
            try:
                return await asyncio.wait_for(
                    self.gateway.charge(customer, payment_method, amount_cents, idempotency_key, metadata),
                    timeout=self.policy.timeout_seconds,
                )
            except asyncio.TimeoutError:
                outcome_unknown = True
                error = GatewayTransientError("Payment provider timed out", outcome_unknown=True)
            except GatewayTransientError as e:
                outcome_unknown = outcome_unknown or e.outcome_unknown
                error = e

            if retries >= self.policy.transport_retries:
                raise GatewayTransientError(error.message, outcome_unknown=outcome_unknown)

            delay = self.policy.retry_backoff_seconds * (2**retries)
            retries += 1
            logger.warning(
                f"🔄 Retrying charge {idempotency_key} in {delay:.1f}s "
                f"({retries}/{self.policy.transport_retries}): {error.message}"
            )
            await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------

    async def execute(
        self, overstay_id: int, triggered_by: str = "manual", actor_id: Optional[int] = None
    ) -> ChargeAttemptOutcome:
        record = OverstayRepository.get_for_update(self.db, overstay_id)
        if not record:
            raise OverstayNotFoundError("Overstay not found")
        if record.status not in CHARGEABLE_STATUSES:
            raise InvalidTransitionError(record.status, OverstayStatus.CHARGE_PENDING, "charge")

        amount = self.charge_amount(record)
        key = self.idempotency_key_for(record, amount)
        state_machine.begin_charge(self.db, record, key, amount, triggered_by, actor_id)
        OverstayRepository.commit(self.db)
        logger.info(f"💳 Charging overstay {record.id}: {format_cents(amount)} (key {key})")

        customer, payment_method = self.payment_tokens(record)
        reference = None
        failure: Optional[GatewayError] = None
        if not customer or not payment_method:
            failure = GatewayTerminalError("No saved payment method on file")
        else:
            metadata = {
                "type": "storage_overstay_penalty",
                "overstay_id": record.id,
                "storage_booking_id": record.storage_booking_id,
                "base_amount_cents": record.final_penalty_cents,
                "days_overdue": record.frozen_days_overdue or record.days_overdue,
            }
            try:
                reference = await self._call_gateway(customer, payment_method, amount, key, metadata)
            except GatewayError as e:
                failure = e

        # The gateway call ran without a lock; settle against the current row
        record = OverstayRepository.get_for_update(self.db, overstay_id)
        if record.status != OverstayStatus.CHARGE_PENDING or record.pending_idempotency_key != key:
            return await self._settle_late(record, amount, key, reference, failure, triggered_by, actor_id)

        if failure is None:
            return await self._succeed(record, amount, key, reference, triggered_by, actor_id)
        return await self._fail(record, amount, key, failure, triggered_by, actor_id)

    async def _succeed(
        self, record, amount, key, reference, triggered_by, actor_id, logged: bool = False
    ) -> ChargeAttemptOutcome:
        if not logged:
            self._log_attempt(
                record, amount, key, ChargeOutcome.SUCCEEDED, triggered_by, actor_id, reference=reference
            )
        state_machine.record_charge_success(self.db, record, reference)
        OverstayRepository.commit(self.db)
        logger.info(f"✅ Overstay {record.id} charged {format_cents(amount)}: {reference}")

        await self.dispatcher.penalty_charged(record, amount)
        return ChargeAttemptOutcome(
            overstay_id=record.id,
            status=OverstayStatus.CHARGE_SUCCEEDED,
            outcome=ChargeOutcome.SUCCEEDED,
            amount_cents=amount,
            idempotency_key=key,
            reference=reference,
            message=f"Charged {format_cents(amount)} successfully",
        )

    async def _fail(self, record, amount, key, failure: GatewayError, triggered_by, actor_id) -> ChargeAttemptOutcome:
        outcome = ChargeOutcome.TRANSIENT_FAILURE if failure.retryable else ChargeOutcome.TERMINAL_FAILURE
        self._log_attempt(record, amount, key, outcome, triggered_by, actor_id, failure=failure)
        state_machine.record_charge_failure(
            self.db,
            record,
            state_machine.ChargeFailure(
                outcome=outcome, reason=failure.message, outcome_unknown=failure.outcome_unknown
            ),
        )
        logger.warning(f"❌ Overstay {record.id} charge failed ({outcome.value}): {failure.message}")

        escalated = state_machine.should_escalate(
            record, self.policy.escalation_threshold, self.policy.max_attempts
        )
        if escalated:
            await self._escalate(record, amount, failure.message)
        OverstayRepository.commit(self.db)

        if escalated:
            await self.dispatcher.escalated(record)
        else:
            await self.dispatcher.charge_failed(record, amount, failure.message)

        return ChargeAttemptOutcome(
            overstay_id=record.id,
            status=record.status,
            outcome=outcome,
            amount_cents=amount,
            idempotency_key=key,
            failure_reason=failure.message,
            outcome_unknown=failure.outcome_unknown,
            escalated=escalated,
            message=self._failure_message(record, failure, escalated),
        )

    async def _settle_late(
        self, record, amount, key, reference, failure: Optional[GatewayError], triggered_by, actor_id
    ) -> ChargeAttemptOutcome:
        """
        The record moved on while the gateway was answering. A failure is only logged.
        A success is always kept: a record back in charge_failed (stale recovery) is
        settled as paid, anything else keeps its status and operations are alerted.
        """
        status = record.status
        if failure is not None:
            outcome = ChargeOutcome.TRANSIENT_FAILURE if failure.retryable else ChargeOutcome.TERMINAL_FAILURE
            self._log_attempt(record, amount, key, outcome, triggered_by, actor_id, failure=failure)
            state_machine.record_late_charge_result(self.db, record, key, outcome, reason=failure.message)
            OverstayRepository.commit(self.db)
            logger.warning(
                f"⚠️ Late charge failure on overstay {record.id} ({key}) ignored, now {status.value}: "
                f"{failure.message}"
            )
            return ChargeAttemptOutcome(
                overstay_id=record.id,
                status=status,
                outcome=outcome,
                amount_cents=amount,
                idempotency_key=key,
                failure_reason=failure.message,
                outcome_unknown=failure.outcome_unknown,
                message=f"{failure.message}; the overstay is now {status.value}, nothing was changed",
            )

        self._log_attempt(
            record, amount, key, ChargeOutcome.SUCCEEDED, triggered_by, actor_id, reference=reference
        )
        if status == OverstayStatus.CHARGE_FAILED:
            state_machine.begin_charge(self.db, record, key, amount, "late_confirmation", actor_id)
            return await self._succeed(record, amount, key, reference, triggered_by, actor_id, logged=True)

        state_machine.record_late_charge_result(
            self.db, record, key, ChargeOutcome.SUCCEEDED, reference=reference
        )
        OverstayRepository.commit(self.db)
        logger.error(
            f"🚨 Overstay {record.id} collected {format_cents(amount)} ({reference}) "
            f"after moving to {status.value}; needs reconciliation"
        )

        await self.dispatcher.unreconciled_charge(record, amount, reference)
        return ChargeAttemptOutcome(
            overstay_id=record.id,
            status=status,
            outcome=ChargeOutcome.SUCCEEDED,
            amount_cents=amount,
            idempotency_key=key,
            reference=reference,
            message=f"Charged {format_cents(amount)} but the overstay is now {status.value}; "
            "flagged for reconciliation",
        )

    async def _escalate(self, record: OverstayRecord, amount: int, reason: str) -> None:
        state_machine.escalate(self.db, record, reason)
        customer, _ = self.payment_tokens(record)
        try:
            record.payment_link_url = await self.gateway.create_payment_link(
                customer,
                amount,
                f"Storage overstay penalty #{record.id}",
                {"type": "storage_overstay_penalty", "overstay_id": record.id},
            )
        except GatewayError as e:
            logger.error(f"❌ Could not create payment link for overstay {record.id}: {e.message}")
        logger.warning(f"🚨 Overstay {record.id} escalated for manual collection")

    @staticmethod
    def _failure_message(record: OverstayRecord, failure: GatewayError, escalated: bool) -> str:
        if escalated:
            if record.payment_link_url:
                return f"{failure.message}; chef notified via payment link"
            return f"{failure.message}; escalated for manual collection"
        if failure.outcome_unknown:
            return f"{failure.message}; outcome unknown, retrying is safe and will not double charge"
        if failure.retryable:
            return f"{failure.message}; temporary problem, retry the charge"
        return f"{failure.message}; retry, re-approve a different amount or escalate"

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def recover_interrupted(self, record: OverstayRecord) -> bool:
        """
        A charge_pending record nobody finished (process died mid-call). Record an
        unknown-outcome transient failure so the next attempt reuses the same key.
        Returns True if the record was escalated. Does not commit.
        """
        amount = self.charge_amount(record)
        key = record.pending_idempotency_key or self.idempotency_key_for(record, amount)
        failure = GatewayTransientError("Charge interrupted before completion", outcome_unknown=True)
        self._log_attempt(record, amount, key, ChargeOutcome.TRANSIENT_FAILURE, "recovery", failure=failure)
        state_machine.record_charge_failure(
            self.db,
            record,
            state_machine.ChargeFailure(
                outcome=ChargeOutcome.TRANSIENT_FAILURE, reason=failure.message, outcome_unknown=True
            ),
        )
        if state_machine.should_escalate(record, self.policy.escalation_threshold, self.policy.max_attempts):
            await self._escalate(record, amount, failure.message)
            return True
        return False
