"""
Storage Overstay Models
Overstay cases, their charge attempts and the append-only audit history
"""

import enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    event,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base
from .domain.overstays.errors import AuditLogImmutableError


class OverstayStatus(str, enum.Enum):
    DETECTED = "detected"
    GRACE_PERIOD = "grace_period"
    PENDING_REVIEW = "pending_review"
    PENALTY_APPROVED = "penalty_approved"
    PENALTY_WAIVED = "penalty_waived"
    CHARGE_PENDING = "charge_pending"
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


# Closed cases; everything else counts toward the one-active-record-per-booking rule
CLOSED_STATUSES = frozenset(
    {OverstayStatus.RESOLVED, OverstayStatus.CHARGE_SUCCEEDED, OverstayStatus.PENALTY_WAIVED}
)
ACTIVE_STATUSES = frozenset(s for s in OverstayStatus if s not in CLOSED_STATUSES)
# calculated_penalty_cents may still be recomputed by the scanner
ASSESSMENT_STATUSES = frozenset(
    {OverstayStatus.DETECTED, OverstayStatus.GRACE_PERIOD, OverstayStatus.PENDING_REVIEW}
)


class ResolutionType(str, enum.Enum):
    EXTENDED = "extended"  # chef extended the booking
    REMOVED = "removed"  # chef removed their items
    ESCALATED = "escalated"  # sent to collections
    PAID = "paid"  # set automatically on a successful charge
    WAIVED = "waived"  # set automatically on waiver


class ChargeOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    TRANSIENT_FAILURE = "transient_failure"
    TERMINAL_FAILURE = "terminal_failure"


def _enum_column(enum_cls, **kwargs):
    return Column(
        Enum(
            enum_cls,
            native_enum=False,
            length=32,
            values_callable=lambda members: [m.value for m in members],
        ),
        **kwargs,
    )


class OverstayRecord(Base):
    """One overstay case for a storage booking. Never deleted (financial audit trail)."""

    __tablename__ = "storage_overstay_records"

    id = Column(Integer, primary_key=True, index=True)
    storage_booking_id = Column(
        Integer, ForeignKey("storage_bookings.id"), nullable=False, index=True
    )
    # booking_{id}_overstay_{end date}: the same overdue period is detected once
    detection_key = Column(String(100), unique=True, nullable=False)
    status = _enum_column(OverstayStatus, nullable=False, default=OverstayStatus.DETECTED)

    # Snapshot at detection time - immutable so the penalty stays auditable
    booking_end_date = Column(Date, nullable=False)
    daily_rate_cents = Column(Integer, nullable=False)
    grace_period_days = Column(Integer, nullable=False)
    penalty_rate = Column(Numeric(5, 4), nullable=False)
    max_penalty_days = Column(Integer, nullable=False)
    kitchen_tax_rate_percent = Column(Numeric(6, 3), nullable=False, default=0)

    # Recomputed by the scanner
    days_overdue = Column(Integer, nullable=False, default=0)
    calculated_penalty_cents = Column(Integer, nullable=False, default=0)
    detected_at = Column(DateTime, nullable=False, server_default=func.now())
    grace_period_ends_at = Column(Date, nullable=False)

    # Frozen on approval or waiver
    final_penalty_cents = Column(Integer, nullable=True)
    penalty_frozen_at = Column(DateTime, nullable=True)
    frozen_days_overdue = Column(Integer, nullable=True)  # days_overdue at the freeze
    penalty_approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    penalty_approved_at = Column(DateTime, nullable=True)
    waive_reason = Column(Text, nullable=True)
    manager_notes = Column(Text, nullable=True)

    # Charging
    charge_attempt_count = Column(Integer, nullable=False, default=0)
    consecutive_terminal_failures = Column(Integer, nullable=False, default=0)
    # charge_attempt_count when a manager last reopened the case (fresh retry budget)
    charge_attempts_at_reopen = Column(Integer, nullable=False, default=0)
    # Key of the in-flight attempt, kept so an interrupted charge can be replayed safely
    pending_idempotency_key = Column(String(120), nullable=True)
    last_charge_failure_reason = Column(Text, nullable=True)
    charge_reference = Column(String(255), nullable=True)
    charge_succeeded_at = Column(DateTime, nullable=True)
    escalated_at = Column(DateTime, nullable=True)
    payment_link_url = Column(String(1000), nullable=True)

    # Resolution
    resolution_type = _enum_column(ResolutionType, nullable=True)
    resolution_notes = Column(Text, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    # Notification tracking
    chef_notified_at = Column(DateTime, nullable=True)
    manager_notified_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    storage_booking = relationship("StorageBooking", back_populates="overstay_records")
    history = relationship(
        "OverstayHistory",
        back_populates="overstay_record",
        order_by="OverstayHistory.id",
    )
    charge_attempts = relationship(
        "ChargeAttempt",
        back_populates="overstay_record",
        order_by="ChargeAttempt.attempt_number",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        # At most one active overstay per storage booking
        Index(
            "uq_overstay_active_booking",
            "storage_booking_id",
            unique=True,
            postgresql_where=text(
                "status NOT IN ('resolved', 'charge_succeeded', 'penalty_waived')"
            ),
            sqlite_where=text("status NOT IN ('resolved', 'charge_succeeded', 'penalty_waived')"),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def penalty_is_frozen(self) -> bool:
        return self.penalty_frozen_at is not None


class ChargeAttempt(Base):
    """One automated or manual charge try. Append-only."""

    __tablename__ = "storage_overstay_charge_attempts"

    id = Column(Integer, primary_key=True, index=True)
    overstay_record_id = Column(
        Integer, ForeignKey("storage_overstay_records.id"), nullable=False, index=True
    )
    attempt_number = Column(Integer, nullable=False)
    amount_cents = Column(Integer, nullable=False)  # tax-inclusive total sent to gateway
    base_amount_cents = Column(Integer, nullable=False)
    tax_amount_cents = Column(Integer, nullable=False, default=0)
    idempotency_key = Column(String(120), nullable=False, index=True)
    outcome = _enum_column(ChargeOutcome, nullable=False)
    # Timed out: the gateway may or may not have debited the chef
    outcome_unknown = Column(Boolean, nullable=False, default=False)
    failure_reason = Column(Text, nullable=True)
    gateway_reference = Column(String(255), nullable=True)
    triggered_by = Column(String(20), nullable=False, default="manual")  # approval, manual, recovery
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    overstay_record = relationship("OverstayRecord", back_populates="charge_attempts")


class OverstayHistory(Base):
    """Audit trail of every overstay event. Append-only."""

    __tablename__ = "storage_overstay_history"

    id = Column(Integer, primary_key=True, index=True)
    overstay_record_id = Column(
        Integer, ForeignKey("storage_overstay_records.id"), nullable=False, index=True
    )
    previous_status = _enum_column(OverstayStatus, nullable=True)
    new_status = _enum_column(OverstayStatus, nullable=False)
    # status_change, penalty_approved, penalty_waived, charge_attempt, auto_escalation,
    # notification_sent, resolution, reopened
    event_type = Column(String(50), nullable=False)
    event_source = Column(String(20), nullable=False)  # scanner, manager, admin, system, gateway
    description = Column(Text, nullable=True)
    details = Column(JSON, default=dict, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    overstay_record = relationship("OverstayRecord", back_populates="history")


@event.listens_for(OverstayHistory, "before_update")
@event.listens_for(ChargeAttempt, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditLogImmutableError(f"{type(target).__name__} rows are append-only")


@event.listens_for(OverstayHistory, "before_delete")
@event.listens_for(ChargeAttempt, "before_delete")
@event.listens_for(OverstayRecord, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditLogImmutableError(f"{type(target).__name__} rows are never deleted")
