"""
Overstay scanner

Periodic job that:
- recovers charges left in charge_pending by a crashed worker
- auto-resolves detected / grace_period cases whose booking was extended or emptied
- refreshes days_overdue (and the penalty, until frozen) on every active case
- detects newly overdue storage bookings and walks them into the workflow

Safe to run repeatedly: the same booking/end date is only ever detected once, and a
second run on the same date changes nothing.
"""

import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from typing import Optional

import redis
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import OVERSTAY_CHARGE_PENDING_STALE_MINUTES, OVERSTAY_SCAN_LOCK_TIMEOUT_SECONDS
from ...database import SessionLocal
from ...models import StorageBooking
from ...models_overstay import OverstayHistory, OverstayRecord, OverstayStatus, ResolutionType
from ...shared.clock import utc_today, utcnow
from ...shared.redis_client import get_redis_client
from . import calculator, state_machine
from .charge_executor import ChargeExecutor, ChargePolicy
from .defaults import get_effective_penalty_config
from .gateway import PaymentGateway, StripePaymentGateway
from .notifications import EmailNotificationService, NotificationService, OverstayNotificationDispatcher
from .repository import CHECKOUT_IN_PROGRESS_STATUSES, OverstayRepository

logger = logging.getLogger(__name__)

SCAN_LOCK_KEY = "overstay:scan:lock"
# Booking states meaning the chef's items are gone
REMOVED_BOOKING_STATUSES = ("cancelled", "completed")

_scan_lock = threading.Lock()


def detection_key(booking_id: int, end_date: date) -> str:
    return f"booking_{booking_id}_overstay_{end_date.isoformat()}"


@dataclass
class ScanSummary:
    scanned_bookings: int = 0
    detected: int = 0
    updated: int = 0
    moved_to_review: int = 0
    auto_resolved: int = 0
    recovered_charges: int = 0
    errors: list = field(default_factory=list)
    skipped: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class OverstayScanner:
    def __init__(
        self,
        notifier: NotificationService,
        gateway: PaymentGateway,
        policy: Optional[ChargePolicy] = None,
        stale_charge_minutes: int = OVERSTAY_CHARGE_PENDING_STALE_MINUTES,
    ):
        self.notifier = notifier
        self.gateway = gateway
        self.policy = policy
        self.stale_charge_minutes = stale_charge_minutes

    async def scan(self, db: Session, today: Optional[date] = None) -> ScanSummary:
        today = today or utc_today()
        summary = ScanSummary()
        dispatcher = OverstayNotificationDispatcher(db, self.notifier)
        executor = ChargeExecutor(db, self.gateway, dispatcher, self.policy)

        logger.info(f"🔍 Overstay scan started for {today.isoformat()}")
        await self._recover_stale_charges(db, executor, dispatcher, summary)
        await self._refresh_active(db, dispatcher, today, summary)
        await self._detect_new(db, dispatcher, today, summary)
        logger.info(
            f"✅ Overstay scan finished: {summary.detected} detected, {summary.updated} updated, "
            f"{summary.moved_to_review} to review, {summary.auto_resolved} auto-resolved, "
            f"{summary.recovered_charges} recovered, {len(summary.errors)} errors"
        )
        return summary

    # ------------------------------------------------------------------
    # Stale charge recovery
    # ------------------------------------------------------------------

    async def _recover_stale_charges(
        self,
        db: Session,
        executor: ChargeExecutor,
        dispatcher: OverstayNotificationDispatcher,
        summary: ScanSummary,
    ) -> None:
        cutoff = utcnow() - timedelta(minutes=self.stale_charge_minutes)
        for record in OverstayRepository.list_stale_charge_pending(db, cutoff):
            try:
                escalated = await executor.recover_interrupted(record)
                OverstayRepository.commit(db)
                summary.recovered_charges += 1
                logger.warning(f"⚠️ Recovered interrupted charge on overstay {record.id}")
            except Exception as e:
                db.rollback()
                logger.error(f"❌ Failed to recover overstay {record.id}: {e}")
                summary.errors.append({"overstayId": record.id, "error": str(e)})
                continue

            if escalated:
                await dispatcher.escalated(record)
            else:
                await dispatcher.charge_failed(
                    record, executor.charge_amount(record), record.last_charge_failure_reason
                )

    # ------------------------------------------------------------------
    # Active record refresh
    # ------------------------------------------------------------------

    @staticmethod
    def _auto_resolution(booking: StorageBooking, today: date) -> Optional[ResolutionType]:
        if booking.status in REMOVED_BOOKING_STATUSES or booking.checkout_status in CHECKOUT_IN_PROGRESS_STATUSES:
            return ResolutionType.REMOVED
        if booking.end_date >= today:
            return ResolutionType.EXTENDED
        return None

    async def _refresh_active(
        self,
        db: Session,
        dispatcher: OverstayNotificationDispatcher,
        today: date,
        summary: ScanSummary,
    ) -> None:
        for record in OverstayRepository.list_active(db):
            record_id = record.id
            try:
                outcome = self._refresh_record(db, record, today)
                OverstayRepository.commit(db)
            except Exception as e:
                db.rollback()
                logger.error(f"❌ Failed to refresh overstay {record_id}: {e}")
                summary.errors.append({"overstayId": record_id, "error": str(e)})
                continue

            if outcome == "resolved":
                summary.auto_resolved += 1
                await dispatcher.closed(record, f"booking {record.resolution_type.value}")
            elif outcome:
                summary.updated += 1
                if outcome == "review":
                    summary.moved_to_review += 1
                    await dispatcher.pending_review(record)

    def _refresh_record(self, db: Session, record: OverstayRecord, today: date) -> Optional[str]:
        """Returns 'resolved', 'review', 'updated' or None when nothing changed"""
        if record.status in (OverstayStatus.DETECTED, OverstayStatus.GRACE_PERIOD):
            resolution = self._auto_resolution(record.storage_booking, today)
            if resolution is not None:
                state_machine.resolve(
                    db,
                    record,
                    state_machine.ResolutionDecision(
                        actor_id=None,
                        resolution_type=resolution,
                        notes="Auto-resolved by scanner",
                        source="scanner",
                    ),
                )
                logger.info(f"✅ Overstay {record.id} auto-resolved: {resolution.value}")
                return "resolved"

        changed = False
        days = calculator.days_overdue(record.booking_end_date, today)
        if days != record.days_overdue:
            record.days_overdue = days
            changed = True

        if not record.penalty_is_frozen and record.status in (
            OverstayStatus.DETECTED,
            OverstayStatus.GRACE_PERIOD,
            OverstayStatus.PENDING_REVIEW,
        ):
            penalty = calculator.calculate_penalty_cents(
                record.daily_rate_cents,
                record.penalty_rate,
                record.grace_period_days,
                record.max_penalty_days,
                days,
            )
            if penalty != record.calculated_penalty_cents:
                record.calculated_penalty_cents = penalty
                changed = True

        if record.status == OverstayStatus.DETECTED:
            state_machine.start_grace_period(db, record)
            changed = True
        if record.status == OverstayStatus.GRACE_PERIOD and not calculator.is_in_grace_period(
            days, record.grace_period_days
        ):
            state_machine.begin_review(db, record)
            return "review"

        return "updated" if changed else None

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def _detect_new(
        self,
        db: Session,
        dispatcher: OverstayNotificationDispatcher,
        today: date,
        summary: ScanSummary,
    ) -> None:
        for booking in OverstayRepository.get_overdue_bookings(db, today):
            summary.scanned_bookings += 1
            booking_id = booking.id

            if booking.checkout_status in CHECKOUT_IN_PROGRESS_STATUSES:
                logger.info(
                    f"⏭️ Skipping booking {booking_id} - checkout in progress ({booking.checkout_status})"
                )
                continue
            if OverstayRepository.get_active_for_booking(db, booking_id):
                continue
            key = detection_key(booking_id, booking.end_date)
            if OverstayRepository.get_by_detection_key(db, key):
                continue

            try:
                record = self._create_record(db, booking, key, today)
                OverstayRepository.commit(db)
            except IntegrityError:
                # Another scanner created it first
                db.rollback()
                logger.info(f"⏭️ Booking {booking_id} already detected by a concurrent scan")
                continue
            except Exception as e:
                db.rollback()
                logger.error(f"❌ Failed to process booking {booking_id}: {e}")
                summary.errors.append({"bookingId": booking_id, "error": str(e)})
                continue

            summary.detected += 1
            logger.info(
                f"🚨 Overstay detected for booking {booking_id}: {record.days_overdue} days overdue "
                f"({record.status.value})"
            )
            await dispatcher.overstay_detected(record)
            if record.status == OverstayStatus.PENDING_REVIEW:
                summary.moved_to_review += 1
                await dispatcher.pending_review(record)

    def _create_record(
        self, db: Session, booking: StorageBooking, key: str, today: date
    ) -> OverstayRecord:
        listing = booking.storage_listing
        config = get_effective_penalty_config(db, listing)
        tax_rate = calculator.to_decimal(listing.kitchen.tax_rate_percent or 0)
        days = calculator.days_overdue(booking.end_date, today)

        record = OverstayRecord(
            storage_booking=booking,
            detection_key=key,
            status=OverstayStatus.DETECTED,
            booking_end_date=booking.end_date,
            daily_rate_cents=listing.daily_rate_cents or 0,
            grace_period_days=config.grace_period_days,
            penalty_rate=config.penalty_rate,
            max_penalty_days=config.max_penalty_days,
            kitchen_tax_rate_percent=tax_rate,
            days_overdue=days,
            calculated_penalty_cents=calculator.calculate_penalty_cents(
                listing.daily_rate_cents or 0,
                config.penalty_rate,
                config.grace_period_days,
                config.max_penalty_days,
                days,
            ),
            grace_period_ends_at=calculator.grace_period_ends_at(booking.end_date, config.grace_period_days),
            charge_attempt_count=0,
            consecutive_terminal_failures=0,
            charge_attempts_at_reopen=0,
        )
        db.add(record)
        db.add(
            OverstayHistory(
                overstay_record=record,
                previous_status=None,
                new_status=OverstayStatus.DETECTED,
                event_type="status_change",
                event_source="scanner",
                description=f"Overstay detected: {days} days past booking end",
                details={
                    "detectionKey": key,
                    "gracePeriodDays": config.grace_period_days,
                    "penaltyRate": str(config.penalty_rate),
                    "maxPenaltyDays": config.max_penalty_days,
                    "dailyRateCents": record.daily_rate_cents,
                },
            )
        )
        db.flush()

        state_machine.start_grace_period(db, record)
        if not calculator.is_in_grace_period(days, config.grace_period_days):
            state_machine.begin_review(db, record)
        return record


# ============================================================================
# SINGLE-FLIGHT ENTRY POINT
# ============================================================================


def _acquire_redis_lock():
    """
    Returns the held lock, False if another process holds it, or None when Redis
    is unavailable (the in-process lock still applies).
    """
    try:
        client = get_redis_client()
        lock = client.lock(SCAN_LOCK_KEY, timeout=OVERSTAY_SCAN_LOCK_TIMEOUT_SECONDS)
        if lock.acquire(blocking=False):
            return lock
        return False
    except redis.RedisError as e:
        logger.warning(f"⚠️ Redis unavailable for scan lock, using in-process lock only: {e}")
        return None


async def run_overstay_scan(
    today: Optional[date] = None,
    notifier: Optional[NotificationService] = None,
    gateway: Optional[PaymentGateway] = None,
    session_factory=SessionLocal,
) -> ScanSummary:
    """Run one scan unless another is already in flight (then skipped=True)"""
    if not _scan_lock.acquire(blocking=False):
        logger.info("⏭️ Overstay scan already running in this process - skipping")
        return ScanSummary(skipped=True)

    redis_lock = None
    try:
        redis_lock = _acquire_redis_lock()
        if redis_lock is False:
            logger.info("⏭️ Overstay scan already running in another process - skipping")
            return ScanSummary(skipped=True)

        scanner = OverstayScanner(
            notifier or EmailNotificationService(),
            gateway or StripePaymentGateway(),
        )
        db = session_factory()
        try:
            return await scanner.scan(db, today)
        finally:
            db.close()
    finally:
        if redis_lock:
            try:
                redis_lock.release()
            except redis.exceptions.LockError as e:
                logger.warning(f"⚠️ Scan lock expired before release: {e}")
        _scan_lock.release()
