"""Overstay domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, field_validator

from ...models_overstay import ChargeAttempt, OverstayHistory, OverstayRecord
from ...shared.validators import clean_optional_text
from .calculator import breakdown_for_record
from .charge_executor import ChargeAttemptOutcome


class ApprovePenaltyRequest(BaseModel):
    """Approve the calculated penalty, or a lower amount"""

    amountCents: Optional[int] = None
    notes: Optional[str] = None

    @field_validator("notes")
    @classmethod
    def validate_notes(cls, v):
        return clean_optional_text(v)


class WaivePenaltyRequest(BaseModel):
    # Blank reasons are rejected by the workflow with a readable message
    reason: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("notes")
    @classmethod
    def validate_notes(cls, v):
        return clean_optional_text(v)


class ResolveOverstayRequest(BaseModel):
    resolutionType: str
    notes: Optional[str] = None

    @field_validator("notes")
    @classmethod
    def validate_notes(cls, v):
        return clean_optional_text(v)


class ReopenOverstayRequest(BaseModel):
    notes: Optional[str] = None

    @field_validator("notes")
    @classmethod
    def validate_notes(cls, v):
        return clean_optional_text(v)


class OverstayResponse(BaseModel):
    """Schema for overstay response"""

    id: int
    storageBookingId: int
    status: str
    isActive: bool
    bookingEndDate: date
    daysOverdue: int
    gracePeriodDays: int
    gracePeriodEndsAt: date
    dailyRateCents: int
    penaltyRate: str
    maxPenaltyDays: int
    calculatedPenaltyCents: int
    finalPenaltyCents: Optional[int] = None
    penaltyFrozenAt: Optional[datetime] = None
    breakdown: dict[str, Any]
    chargeAttemptCount: int
    lastChargeFailureReason: Optional[str] = None
    chargeReference: Optional[str] = None
    paymentLinkUrl: Optional[str] = None
    waiveReason: Optional[str] = None
    managerNotes: Optional[str] = None
    resolutionType: Optional[str] = None
    resolutionNotes: Optional[str] = None
    detectedAt: Optional[datetime] = None
    resolvedAt: Optional[datetime] = None
    escalatedAt: Optional[datetime] = None
    storageName: Optional[str] = None
    kitchenName: Optional[str] = None
    locationId: Optional[int] = None
    chefId: Optional[int] = None
    version: int

    @classmethod
    def from_record(cls, record: OverstayRecord) -> "OverstayResponse":
        booking = record.storage_booking
        listing = booking.storage_listing if booking else None
        kitchen = listing.kitchen if listing else None
        return cls(
            id=record.id,
            storageBookingId=record.storage_booking_id,
            status=record.status.value,
            isActive=record.is_active,
            bookingEndDate=record.booking_end_date,
            daysOverdue=record.days_overdue,
            gracePeriodDays=record.grace_period_days,
            gracePeriodEndsAt=record.grace_period_ends_at,
            dailyRateCents=record.daily_rate_cents,
            penaltyRate=str(record.penalty_rate),
            maxPenaltyDays=record.max_penalty_days,
            calculatedPenaltyCents=record.calculated_penalty_cents,
            finalPenaltyCents=record.final_penalty_cents,
            penaltyFrozenAt=record.penalty_frozen_at,
            breakdown=breakdown_for_record(record).to_dict(),
            chargeAttemptCount=record.charge_attempt_count,
            lastChargeFailureReason=record.last_charge_failure_reason,
            chargeReference=record.charge_reference,
            paymentLinkUrl=record.payment_link_url,
            waiveReason=record.waive_reason,
            managerNotes=record.manager_notes,
            resolutionType=record.resolution_type.value if record.resolution_type else None,
            resolutionNotes=record.resolution_notes,
            detectedAt=record.detected_at,
            resolvedAt=record.resolved_at,
            escalatedAt=record.escalated_at,
            storageName=listing.name if listing else None,
            kitchenName=kitchen.name if kitchen else None,
            locationId=kitchen.location_id if kitchen else None,
            chefId=booking.chef_id if booking else None,
            version=record.version,
        )


class OverstayHistoryResponse(BaseModel):
    id: int
    previousStatus: Optional[str] = None
    newStatus: str
    eventType: str
    eventSource: str
    description: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    createdBy: Optional[int] = None
    createdAt: Optional[datetime] = None

    @classmethod
    def from_entry(cls, entry: OverstayHistory) -> "OverstayHistoryResponse":
        return cls(
            id=entry.id,
            previousStatus=entry.previous_status.value if entry.previous_status else None,
            newStatus=entry.new_status.value,
            eventType=entry.event_type,
            eventSource=entry.event_source,
            description=entry.description,
            details=entry.details,
            createdBy=entry.created_by,
            createdAt=entry.created_at,
        )


class ChargeAttemptResponse(BaseModel):
    attemptNumber: int
    amountCents: int
    baseAmountCents: int
    taxAmountCents: int
    idempotencyKey: str
    outcome: str
    outcomeUnknown: bool
    failureReason: Optional[str] = None
    gatewayReference: Optional[str] = None
    triggeredBy: str
    createdAt: Optional[datetime] = None

    @classmethod
    def from_attempt(cls, attempt: ChargeAttempt) -> "ChargeAttemptResponse":
        return cls(
            attemptNumber=attempt.attempt_number,
            amountCents=attempt.amount_cents,
            baseAmountCents=attempt.base_amount_cents,
            taxAmountCents=attempt.tax_amount_cents,
            idempotencyKey=attempt.idempotency_key,
            outcome=attempt.outcome.value,
            outcomeUnknown=attempt.outcome_unknown,
            failureReason=attempt.failure_reason,
            gatewayReference=attempt.gateway_reference,
            triggeredBy=attempt.triggered_by,
            createdAt=attempt.created_at,
        )


class ChargeOutcomeResponse(BaseModel):
    success: bool
    status: str
    outcome: str
    amountCents: int
    message: str
    reference: Optional[str] = None
    failureReason: Optional[str] = None
    outcomeUnknown: bool = False
    escalated: bool = False

    @classmethod
    def from_outcome(cls, outcome: ChargeAttemptOutcome) -> "ChargeOutcomeResponse":
        return cls(
            success=outcome.success,
            status=outcome.status.value,
            outcome=outcome.outcome.value,
            amountCents=outcome.amount_cents,
            message=outcome.message,
            reference=outcome.reference,
            failureReason=outcome.failure_reason,
            outcomeUnknown=outcome.outcome_unknown,
            escalated=outcome.escalated,
        )


class ApprovePenaltyResponse(BaseModel):
    overstay: OverstayResponse
    charge: ChargeOutcomeResponse


class OverstayStatsResponse(BaseModel):
    total: int
    active: int
    byStatus: dict[str, int]
    totalCollectedCents: int
    totalWaivedCents: int

    @classmethod
    def from_stats(cls, stats: dict) -> "OverstayStatsResponse":
        return cls(
            total=stats["total"],
            active=stats["active"],
            byStatus=stats["by_status"],
            totalCollectedCents=stats["total_collected_cents"],
            totalWaivedCents=stats["total_waived_cents"],
        )


class OverstayListResponse(BaseModel):
    overstays: list[OverstayResponse]
    stats: OverstayStatsResponse


class ChefPenaltiesResponse(BaseModel):
    penalties: list[OverstayResponse]
    hasUnpaidPenalties: bool


class ScanSummaryResponse(BaseModel):
    scannedBookings: int
    detected: int
    updated: int
    movedToReview: int
    autoResolved: int
    recoveredCharges: int
    errors: list[dict[str, Any]]
    skipped: bool
