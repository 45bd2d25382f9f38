"""Overstay repository - Database operations for overstay records"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload
from sqlalchemy.orm.exc import StaleDataError

from ...models import Kitchen, Location, PlatformSetting, StorageBooking, StorageListing
from ...models_overstay import (
    ACTIVE_STATUSES,
    ChargeAttempt,
    OverstayHistory,
    OverstayRecord,
    OverstayStatus,
)
from .errors import ConcurrencyConflictError

# Chef has started or finished checking out; the scanner leaves these bookings alone
CHECKOUT_IN_PROGRESS_STATUSES = (
    "checkout_requested",
    "checkout_approved",
    "checkout_claim_filed",
    "completed",
)


def _with_booking():
    return (
        joinedload(OverstayRecord.storage_booking)
        .joinedload(StorageBooking.storage_listing)
        .joinedload(StorageListing.kitchen)
        .joinedload(Kitchen.location)
    )


def _scoped(query, location_ids: Optional[list[int]]):
    """Restrict to records at the given locations; None means no restriction (admin)"""
    if location_ids is None:
        return query
    return (
        query.join(StorageBooking, OverstayRecord.storage_booking_id == StorageBooking.id)
        .join(StorageListing, StorageBooking.storage_listing_id == StorageListing.id)
        .join(Kitchen, StorageListing.kitchen_id == Kitchen.id)
        .filter(Kitchen.location_id.in_(location_ids))
    )


class OverstayRepository:
    """Repository for overstay database operations"""

    @staticmethod
    def get_by_id(db: Session, overstay_id: int) -> Optional[OverstayRecord]:
        return (
            db.query(OverstayRecord)
            .options(_with_booking())
            .filter(OverstayRecord.id == overstay_id)
            .first()
        )

    @staticmethod
    def get_for_update(db: Session, overstay_id: int) -> Optional[OverstayRecord]:
        """Load a record with a row lock (no-op on SQLite) for a state change"""
        return (
            db.query(OverstayRecord)
            .filter(OverstayRecord.id == overstay_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    @staticmethod
    def get_active_for_booking(db: Session, booking_id: int) -> Optional[OverstayRecord]:
        return (
            db.query(OverstayRecord)
            .filter(
                OverstayRecord.storage_booking_id == booking_id,
                OverstayRecord.status.in_(list(ACTIVE_STATUSES)),
            )
            .first()
        )

    @staticmethod
    def get_by_detection_key(db: Session, detection_key: str) -> Optional[OverstayRecord]:
        return db.query(OverstayRecord).filter(OverstayRecord.detection_key == detection_key).first()

    @staticmethod
    def list_records(
        db: Session,
        location_ids: Optional[list[int]] = None,
        statuses: Optional[list[OverstayStatus]] = None,
    ) -> list[OverstayRecord]:
        query = _scoped(db.query(OverstayRecord).options(_with_booking()), location_ids)
        if statuses:
            query = query.filter(OverstayRecord.status.in_(list(statuses)))
        return query.order_by(OverstayRecord.detected_at.desc(), OverstayRecord.id.desc()).all()

    @staticmethod
    def list_active(db: Session) -> list[OverstayRecord]:
        return (
            db.query(OverstayRecord)
            .options(_with_booking())
            .filter(OverstayRecord.status.in_(list(ACTIVE_STATUSES)))
            .order_by(OverstayRecord.id)
            .all()
        )

    @staticmethod
    def list_stale_charge_pending(db: Session, cutoff: datetime) -> list[OverstayRecord]:
        """charge_pending records untouched since cutoff (worker died mid-charge)"""
        return (
            db.query(OverstayRecord)
            .filter(
                OverstayRecord.status == OverstayStatus.CHARGE_PENDING,
                OverstayRecord.updated_at < cutoff,
            )
            .order_by(OverstayRecord.id)
            .all()
        )

    @staticmethod
    def count_by_status(db: Session, location_ids: Optional[list[int]] = None) -> dict[OverstayStatus, int]:
        query = _scoped(
            db.query(OverstayRecord.status, func.count(OverstayRecord.id)), location_ids
        ).group_by(OverstayRecord.status)
        return {OverstayStatus(status): count for status, count in query.all()}

    @staticmethod
    def sum_final_penalty(
        db: Session, status: OverstayStatus, location_ids: Optional[list[int]] = None
    ) -> int:
        query = _scoped(
            db.query(func.coalesce(func.sum(OverstayRecord.final_penalty_cents), 0)), location_ids
        ).filter(OverstayRecord.status == status)
        return int(query.scalar() or 0)

    @staticmethod
    def sum_calculated_penalty(
        db: Session, status: OverstayStatus, location_ids: Optional[list[int]] = None
    ) -> int:
        query = _scoped(
            db.query(func.coalesce(func.sum(OverstayRecord.calculated_penalty_cents), 0)), location_ids
        ).filter(OverstayRecord.status == status)
        return int(query.scalar() or 0)

    @staticmethod
    def list_for_chef(db: Session, chef_id: int) -> list[OverstayRecord]:
        return (
            db.query(OverstayRecord)
            .options(_with_booking())
            .join(StorageBooking, OverstayRecord.storage_booking_id == StorageBooking.id)
            .filter(StorageBooking.chef_id == chef_id)
            .order_by(OverstayRecord.detected_at.desc(), OverstayRecord.id.desc())
            .all()
        )

    @staticmethod
    def count_unpaid_for_chef(db: Session, chef_id: int, statuses) -> int:
        return (
            db.query(func.count(OverstayRecord.id))
            .join(StorageBooking, OverstayRecord.storage_booking_id == StorageBooking.id)
            .filter(StorageBooking.chef_id == chef_id, OverstayRecord.status.in_(list(statuses)))
            .scalar()
        )

    @staticmethod
    def get_history(db: Session, overstay_id: int) -> list[OverstayHistory]:
        return (
            db.query(OverstayHistory)
            .filter(OverstayHistory.overstay_record_id == overstay_id)
            .order_by(OverstayHistory.created_at, OverstayHistory.id)
            .all()
        )

    @staticmethod
    def get_charge_attempts(db: Session, overstay_id: int) -> list[ChargeAttempt]:
        return (
            db.query(ChargeAttempt)
            .filter(ChargeAttempt.overstay_record_id == overstay_id)
            .order_by(ChargeAttempt.attempt_number)
            .all()
        )

    @staticmethod
    def get_last_charge_attempt(db: Session, overstay_id: int) -> Optional[ChargeAttempt]:
        return (
            db.query(ChargeAttempt)
            .filter(ChargeAttempt.overstay_record_id == overstay_id)
            .order_by(ChargeAttempt.attempt_number.desc())
            .first()
        )

    # ------------------------------------------------------------------
    # Marketplace lookups
    # ------------------------------------------------------------------

    @staticmethod
    def get_overdue_bookings(db: Session, today: date) -> list[StorageBooking]:
        """Confirmed storage bookings whose end date has passed"""
        return (
            db.query(StorageBooking)
            .options(
                joinedload(StorageBooking.storage_listing)
                .joinedload(StorageListing.kitchen)
                .joinedload(Kitchen.location)
            )
            .filter(StorageBooking.status == "confirmed", StorageBooking.end_date < today)
            .order_by(StorageBooking.end_date, StorageBooking.id)
            .all()
        )

    @staticmethod
    def get_platform_settings(db: Session, keys: list[str]) -> dict[str, str]:
        rows = db.query(PlatformSetting).filter(PlatformSetting.key.in_(keys)).all()
        return {row.key: row.value for row in rows}

    @staticmethod
    def get_managed_location_ids(db: Session, manager_id: int) -> list[int]:
        return [row.id for row in db.query(Location.id).filter(Location.manager_id == manager_id).all()]

    @staticmethod
    def commit(db: Session) -> None:
        """Commit, translating a lost optimistic-lock race into ConcurrencyConflictError"""
        try:
            db.commit()
        except StaleDataError:
            db.rollback()
            raise ConcurrencyConflictError(
                "This overstay was modified by someone else. Refresh and try again."
            )
