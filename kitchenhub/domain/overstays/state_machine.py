"""
Overstay workflow state machine

Statuses: detected → grace_period → pending_review → penalty_approved/penalty_waived
→ charge_pending → charge_succeeded/charge_failed → escalated/resolved

Every transition goes through transition(), which checks the table below and appends
an audit history row. The workflow functions here mutate the record but never commit;
callers own the transaction.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models_overstay import (
    ChargeOutcome,
    OverstayHistory,
    OverstayRecord,
    OverstayStatus,
    ResolutionType,
)
from ...shared.clock import utcnow
from .errors import InvalidTransitionError, OverstayValidationError

logger = logging.getLogger(__name__)

S = OverstayStatus

TRANSITIONS: dict[OverstayStatus, frozenset] = {
    S.DETECTED: frozenset({S.GRACE_PERIOD, S.RESOLVED}),
    S.GRACE_PERIOD: frozenset({S.PENDING_REVIEW, S.RESOLVED}),
    S.PENDING_REVIEW: frozenset({S.PENALTY_APPROVED, S.PENALTY_WAIVED}),
    S.PENALTY_APPROVED: frozenset({S.CHARGE_PENDING, S.RESOLVED}),
    # In-flight charges only settle through the gateway answer (or stale recovery)
    S.CHARGE_PENDING: frozenset({S.CHARGE_SUCCEEDED, S.CHARGE_FAILED}),
    S.CHARGE_FAILED: frozenset({S.CHARGE_PENDING, S.PENDING_REVIEW, S.ESCALATED, S.RESOLVED}),
    S.ESCALATED: frozenset({S.PENDING_REVIEW, S.RESOLVED}),
    S.PENALTY_WAIVED: frozenset(),
    S.CHARGE_SUCCEEDED: frozenset(),
    S.RESOLVED: frozenset(),
}

# Resolution types a person may choose; paid/waived are set by the workflow itself
MANUAL_RESOLUTION_TYPES = frozenset(
    {ResolutionType.EXTENDED, ResolutionType.REMOVED, ResolutionType.ESCALATED}
)


# ============================================================================
# TYPED DECISIONS
# ============================================================================


@dataclass(frozen=True)
class ApprovalDecision:
    manager_id: Optional[int]
    amount_cents: Optional[int] = None  # None = approve the calculated amount
    notes: Optional[str] = None


@dataclass(frozen=True)
class WaiverDecision:
    manager_id: Optional[int]
    reason: str
    notes: Optional[str] = None


@dataclass(frozen=True)
class ResolutionDecision:
    actor_id: Optional[int]
    resolution_type: ResolutionType
    notes: Optional[str] = None
    source: str = "manager"


@dataclass(frozen=True)
class ReopenDecision:
    manager_id: Optional[int]
    notes: Optional[str] = None


@dataclass(frozen=True)
class ChargeFailure:
    outcome: ChargeOutcome
    reason: str
    outcome_unknown: bool = False


def _details(decision) -> dict:
    data = asdict(decision)
    return {k: getattr(v, "value", v) for k, v in data.items()}


# ============================================================================
# CORE TRANSITION
# ============================================================================


def can_transition(current: OverstayStatus, target: OverstayStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def assert_transition(record: OverstayRecord, target: OverstayStatus, action: str = None) -> None:
    if not can_transition(record.status, target):
        raise InvalidTransitionError(record.status, target, action)


def record_history(
    db: Session,
    record: OverstayRecord,
    previous_status: Optional[OverstayStatus],
    new_status: OverstayStatus,
    event_type: str,
    event_source: str,
    description: Optional[str] = None,
    details: Optional[dict] = None,
    created_by: Optional[int] = None,
) -> OverstayHistory:
    entry = OverstayHistory(
        overstay_record=record,
        previous_status=previous_status,
        new_status=new_status,
        event_type=event_type,
        event_source=event_source,
        description=description,
        details=details or {},
        created_by=created_by,
    )
    db.add(entry)
    return entry


def transition(
    db: Session,
    record: OverstayRecord,
    target: OverstayStatus,
    event_type: str = "status_change",
    event_source: str = "system",
    description: Optional[str] = None,
    details: Optional[dict] = None,
    actor_id: Optional[int] = None,
    action: str = None,
) -> OverstayRecord:
    """Move record to target, or raise InvalidTransitionError leaving it untouched"""
    assert_transition(record, target, action)
    previous = record.status
    record.status = target
    record_history(
        db, record, previous, target, event_type, event_source, description, details, actor_id
    )
    logger.info(f"🔁 Overstay {record.id} transitioned: {previous.value} → {target.value}")
    return record


# ============================================================================
# ASSESSMENT (scanner driven)
# ============================================================================


def start_grace_period(db: Session, record: OverstayRecord) -> None:
    transition(
        db,
        record,
        S.GRACE_PERIOD,
        event_source="scanner",
        description=f"Grace period started ({record.grace_period_days} days)",
        details={"gracePeriodEndsAt": record.grace_period_ends_at.isoformat()},
    )


def begin_review(db: Session, record: OverstayRecord) -> None:
    transition(
        db,
        record,
        S.PENDING_REVIEW,
        event_source="scanner",
        description=f"Grace period exceeded. Days overdue: {record.days_overdue}",
        details={
            "daysOverdue": record.days_overdue,
            "calculatedPenaltyCents": record.calculated_penalty_cents,
        },
    )


def freeze_penalty(record: OverstayRecord, now: datetime) -> None:
    """calculated_penalty_cents stops tracking days_overdue from here on"""
    if record.penalty_frozen_at is None:
        record.penalty_frozen_at = now
        record.frozen_days_overdue = record.days_overdue


# ============================================================================
# MANAGER DECISIONS
# ============================================================================


def approve(db: Session, record: OverstayRecord, decision: ApprovalDecision) -> int:
    """
    Approve the penalty, freezing final_penalty_cents.

    Allowed from pending_review, or from charge_failed as a re-approval (walks
    charge_failed → pending_review → penalty_approved). The amount may discount
    the calculated penalty but never exceed it.

    Returns the frozen amount in cents.
    """
    if record.status not in (S.PENDING_REVIEW, S.CHARGE_FAILED):
        raise InvalidTransitionError(record.status, S.PENALTY_APPROVED, "approve")

    amount = decision.amount_cents
    if amount is None:
        amount = record.calculated_penalty_cents
    if amount < 0:
        raise OverstayValidationError("Penalty amount cannot be negative")
    if amount > record.calculated_penalty_cents:
        raise OverstayValidationError(
            "Penalty amount cannot exceed the calculated maximum of "
            f"${record.calculated_penalty_cents / 100:.2f}"
        )
    if amount == 0:
        raise OverstayValidationError(
            "Penalty amount must be greater than zero; waive the penalty instead"
        )

    now = utcnow()
    if record.status == S.CHARGE_FAILED:
        transition(
            db,
            record,
            S.PENDING_REVIEW,
            event_source="manager",
            description="Re-approval after failed charge",
            actor_id=decision.manager_id,
        )

    freeze_penalty(record, now)
    record.final_penalty_cents = amount
    record.penalty_approved_by = decision.manager_id
    record.penalty_approved_at = now
    if decision.notes:
        record.manager_notes = decision.notes

    transition(
        db,
        record,
        S.PENALTY_APPROVED,
        event_type="penalty_approved",
        event_source="manager",
        description=f"Manager approved: ${amount / 100:.2f}",
        details={**_details(decision), "finalPenaltyCents": amount},
        actor_id=decision.manager_id,
    )
    return amount


def waive(db: Session, record: OverstayRecord, decision: WaiverDecision) -> None:
    assert_transition(record, S.PENALTY_WAIVED, "waive")
    reason = (decision.reason or "").strip()
    if not reason:
        raise OverstayValidationError("A reason is required to waive a penalty")

    now = utcnow()
    freeze_penalty(record, now)
    record.final_penalty_cents = 0
    record.waive_reason = reason
    if decision.notes:
        record.manager_notes = decision.notes
    record.resolution_type = ResolutionType.WAIVED
    record.resolved_at = now
    record.resolved_by = decision.manager_id

    transition(
        db,
        record,
        S.PENALTY_WAIVED,
        event_type="penalty_waived",
        event_source="manager",
        description=f"Manager waived: {reason}",
        details=_details(decision),
        actor_id=decision.manager_id,
    )


def resolve(db: Session, record: OverstayRecord, decision: ResolutionDecision) -> None:
    assert_transition(record, S.RESOLVED, "resolve")
    if decision.resolution_type not in MANUAL_RESOLUTION_TYPES:
        raise OverstayValidationError(
            "Resolution type must be one of: "
            + ", ".join(sorted(t.value for t in MANUAL_RESOLUTION_TYPES))
        )

    record.resolution_type = decision.resolution_type
    record.resolution_notes = decision.notes
    record.resolved_at = utcnow()
    record.resolved_by = decision.actor_id
    record.pending_idempotency_key = None

    description = f"Resolved: {decision.resolution_type.value}"
    if decision.notes:
        description += f" - {decision.notes}"
    transition(
        db,
        record,
        S.RESOLVED,
        event_type="resolution",
        event_source=decision.source,
        description=description,
        details=_details(decision),
        actor_id=decision.actor_id,
    )


def reopen(db: Session, record: OverstayRecord, decision: ReopenDecision) -> None:
    """Escalated case back to review, with a fresh automatic retry budget"""
    assert_transition(record, S.PENDING_REVIEW, "reopen")
    if record.status != S.ESCALATED:
        raise InvalidTransitionError(record.status, S.PENDING_REVIEW, "reopen")

    record.consecutive_terminal_failures = 0
    record.charge_attempts_at_reopen = record.charge_attempt_count
    if decision.notes:
        record.manager_notes = decision.notes
    transition(
        db,
        record,
        S.PENDING_REVIEW,
        event_type="reopened",
        event_source="manager",
        description="Escalated penalty reopened for review",
        details=_details(decision),
        actor_id=decision.manager_id,
    )


# ============================================================================
# CHARGING
# ============================================================================


def begin_charge(
    db: Session,
    record: OverstayRecord,
    idempotency_key: str,
    amount_cents: int,
    triggered_by: str,
    actor_id: Optional[int] = None,
) -> None:
    assert_transition(record, S.CHARGE_PENDING, "charge")
    if not record.final_penalty_cents or record.final_penalty_cents <= 0:
        raise OverstayValidationError("No approved penalty amount to charge")

    record.pending_idempotency_key = idempotency_key
    transition(
        db,
        record,
        S.CHARGE_PENDING,
        event_type="charge_attempt",
        event_source="manager" if actor_id else "system",
        description=f"Charging ${amount_cents / 100:.2f}",
        details={
            "attemptNumber": record.charge_attempt_count + 1,
            "amountCents": amount_cents,
            "idempotencyKey": idempotency_key,
            "triggeredBy": triggered_by,
        },
        actor_id=actor_id,
    )


def record_charge_success(db: Session, record: OverstayRecord, reference: str) -> None:
    now = utcnow()
    record.charge_reference = reference
    record.charge_succeeded_at = now
    record.consecutive_terminal_failures = 0
    record.last_charge_failure_reason = None
    record.pending_idempotency_key = None
    record.resolution_type = ResolutionType.PAID
    record.resolved_at = now
    transition(
        db,
        record,
        S.CHARGE_SUCCEEDED,
        event_type="charge_attempt",
        event_source="gateway",
        description=f"Payment successful: {reference}",
        details={"gatewayReference": reference},
    )


def record_charge_failure(db: Session, record: OverstayRecord, failure: ChargeFailure) -> None:
    record.charge_attempt_count = (record.charge_attempt_count or 0) + 1
    if failure.outcome == ChargeOutcome.TERMINAL_FAILURE:
        record.consecutive_terminal_failures = (record.consecutive_terminal_failures or 0) + 1
    else:
        record.consecutive_terminal_failures = 0
    record.last_charge_failure_reason = failure.reason
    record.pending_idempotency_key = None
    transition(
        db,
        record,
        S.CHARGE_FAILED,
        event_type="charge_attempt",
        event_source="gateway",
        description=f"Charge failed: {failure.reason}",
        details=_details(failure),
    )


def record_late_charge_result(
    db: Session,
    record: OverstayRecord,
    idempotency_key: str,
    outcome: ChargeOutcome,
    reference: Optional[str] = None,
    reason: Optional[str] = None,
) -> None:
    """
    The gateway answered after the record stopped waiting on this key (stale
    recovery, a newer attempt, or a closed case). Audit only: the status is left
    alone, but a collected payment is always stamped on the record.
    """
    if reference:
        record.charge_reference = reference
        record.charge_succeeded_at = utcnow()

    if outcome == ChargeOutcome.SUCCEEDED:
        description = f"Late payment confirmation {reference} while {record.status.value}"
    else:
        description = f"Late charge failure while {record.status.value}: {reason}"
    record_history(
        db,
        record,
        record.status,
        record.status,
        event_type="late_charge_result",
        event_source="gateway",
        description=description,
        details={
            "idempotencyKey": idempotency_key,
            "outcome": outcome.value,
            "gatewayReference": reference,
            "reason": reason,
        },
    )


def should_escalate(record: OverstayRecord, escalation_threshold: int, max_attempts: int) -> bool:
    if record.status != S.CHARGE_FAILED:
        return False
    if record.consecutive_terminal_failures >= escalation_threshold:
        return True
    attempts_since_reopen = record.charge_attempt_count - (record.charge_attempts_at_reopen or 0)
    return attempts_since_reopen >= max_attempts


def escalate(db: Session, record: OverstayRecord, reason: str) -> None:
    """Freeze automatic retries; manual collection from here"""
    record.escalated_at = utcnow()
    transition(
        db,
        record,
        S.ESCALATED,
        event_type="auto_escalation",
        event_source="system",
        description=f"Escalated after {record.charge_attempt_count} failed charge attempt(s): {reason}",
        details={
            "chargeAttemptCount": record.charge_attempt_count,
            "consecutiveTerminalFailures": record.consecutive_terminal_failures,
            "reason": reason,
        },
    )
