"""Overstay service - Manager decisions, stats and chef-facing reads"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ...models import User
from ...models_overstay import (
    ACTIVE_STATUSES,
    ChargeAttempt,
    OverstayHistory,
    OverstayRecord,
    OverstayStatus,
    ResolutionType,
)
from . import state_machine
from .calculator import tax_inclusive_total
from .charge_executor import ChargeAttemptOutcome, ChargeExecutor, ChargePolicy
from .errors import OverstayNotFoundError, OverstayPermissionError, OverstayValidationError
from .gateway import PaymentGateway
from .notifications import NotificationService, OverstayNotificationDispatcher
from .repository import OverstayRepository

logger = logging.getLogger(__name__)


class OverstayService:
    """Service layer for overstay business logic"""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        notifier: NotificationService,
        policy: Optional[ChargePolicy] = None,
    ):
        self.db = db
        self.repo = OverstayRepository()
        self.dispatcher = OverstayNotificationDispatcher(db, notifier)
        self.executor = ChargeExecutor(db, gateway, self.dispatcher, policy)

    # ============================================================================
    # ACCESS
    # ============================================================================

    def _location_scope(self, user: User) -> Optional[list[int]]:
        """Location ids the user may see; None means all (admin)"""
        if user.role == "admin":
            return None
        if user.role == "manager":
            return self.repo.get_managed_location_ids(self.db, user.id)
        raise OverstayPermissionError("Only kitchen managers can manage overstay penalties")

    @staticmethod
    def _location_id(record: OverstayRecord) -> int:
        return record.storage_booking.storage_listing.kitchen.location_id

    def _check_access(self, record: OverstayRecord, user: User) -> None:
        scope = self._location_scope(user)
        if scope is not None and self._location_id(record) not in scope:
            logger.warning(f"⚠️ User {user.id} denied access to overstay {record.id}")
            raise OverstayPermissionError("You do not have access to this overstay")

    def _load(self, overstay_id: int, user: User, for_update: bool = False) -> OverstayRecord:
        record = self.repo.get_by_id(self.db, overstay_id)
        if not record:
            raise OverstayNotFoundError("Overstay not found")
        self._check_access(record, user)
        if for_update:
            record = self.repo.get_for_update(self.db, overstay_id)
        return record

    # ============================================================================
    # READS
    # ============================================================================

    def list_overstays(
        self,
        user: User,
        location_id: Optional[int] = None,
        status: Optional[str] = None,
        active_only: bool = False,
    ) -> list[OverstayRecord]:
        scope = self._location_scope(user)
        if location_id is not None:
            if scope is not None and location_id not in scope:
                raise OverstayPermissionError("You do not have access to this location")
            scope = [location_id]

        statuses = None
        if status:
            statuses = [self._parse_status(status)]
        elif active_only:
            statuses = list(ACTIVE_STATUSES)
        return self.repo.list_records(self.db, scope, statuses)

    def get_stats(self, user: User, location_id: Optional[int] = None) -> dict:
        scope = self._location_scope(user)
        if location_id is not None:
            if scope is not None and location_id not in scope:
                raise OverstayPermissionError("You do not have access to this location")
            scope = [location_id]

        counts = self.repo.count_by_status(self.db, scope)
        by_status = {status.value: counts.get(status, 0) for status in OverstayStatus}
        return {
            "total": sum(by_status.values()),
            "active": sum(counts.get(status, 0) for status in ACTIVE_STATUSES),
            "by_status": by_status,
            "total_collected_cents": self.repo.sum_final_penalty(
                self.db, OverstayStatus.CHARGE_SUCCEEDED, scope
            ),
            "total_waived_cents": self.repo.sum_calculated_penalty(
                self.db, OverstayStatus.PENALTY_WAIVED, scope
            ),
        }

    def get_overstay(self, overstay_id: int, user: User) -> OverstayRecord:
        return self._load(overstay_id, user)

    def get_history(self, overstay_id: int, user: User) -> list[OverstayHistory]:
        self._load(overstay_id, user)
        return self.repo.get_history(self.db, overstay_id)

    def get_charge_attempts(self, overstay_id: int, user: User) -> list[ChargeAttempt]:
        self._load(overstay_id, user)
        return self.repo.get_charge_attempts(self.db, overstay_id)

    def list_escalated(self) -> list[OverstayRecord]:
        return self.repo.list_records(self.db, None, [OverstayStatus.ESCALATED])

    # ============================================================================
    # MANAGER DECISIONS
    # ============================================================================

    async def approve(
        self,
        overstay_id: int,
        manager: User,
        amount_cents: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> tuple[OverstayRecord, ChargeAttemptOutcome]:
        """Approve (optionally at a discount) and charge immediately"""
        record = self._load(overstay_id, manager, for_update=True)
        base = record.calculated_penalty_cents if amount_cents is None else amount_cents
        if record.charge_attempt_count and 0 < base <= record.calculated_penalty_cents:
            self.executor.check_unknown_outcome(
                record, tax_inclusive_total(base, record.kitchen_tax_rate_percent)
            )
        amount = state_machine.approve(
            self.db,
            record,
            state_machine.ApprovalDecision(manager_id=manager.id, amount_cents=amount_cents, notes=notes),
        )
        self.repo.commit(self.db)
        logger.info(f"✅ Overstay {overstay_id} approved by manager {manager.id}: {amount} cents")

        outcome = await self.executor.execute(overstay_id, triggered_by="approval", actor_id=manager.id)
        return self.repo.get_by_id(self.db, overstay_id), outcome

    async def waive(
        self, overstay_id: int, manager: User, reason: str, notes: Optional[str] = None
    ) -> OverstayRecord:
        record = self._load(overstay_id, manager, for_update=True)
        state_machine.waive(
            self.db,
            record,
            state_machine.WaiverDecision(manager_id=manager.id, reason=reason, notes=notes),
        )
        self.repo.commit(self.db)
        logger.info(f"✅ Overstay {overstay_id} waived by manager {manager.id}")

        await self.dispatcher.closed(record, "penalty waived", record.waive_reason)
        return record

    async def charge(self, overstay_id: int, manager: User) -> ChargeAttemptOutcome:
        """Manual charge / retry of an approved or failed penalty"""
        self._load(overstay_id, manager)
        return await self.executor.execute(overstay_id, triggered_by="manual", actor_id=manager.id)

    async def resolve(
        self,
        overstay_id: int,
        actor: User,
        resolution_type: str,
        notes: Optional[str] = None,
    ) -> OverstayRecord:
        try:
            resolution = ResolutionType(resolution_type)
        except ValueError:
            raise OverstayValidationError(f"Unknown resolution type: {resolution_type}")

        record = self._load(overstay_id, actor, for_update=True)
        state_machine.resolve(
            self.db,
            record,
            state_machine.ResolutionDecision(
                actor_id=actor.id,
                resolution_type=resolution,
                notes=notes,
                source="admin" if actor.role == "admin" else "manager",
            ),
        )
        self.repo.commit(self.db)
        logger.info(f"✅ Overstay {overstay_id} resolved by {actor.id}: {resolution.value}")

        await self.dispatcher.closed(record, f"resolved ({resolution.value})", notes)
        return record

    async def reopen(self, overstay_id: int, manager: User, notes: Optional[str] = None) -> OverstayRecord:
        record = self._load(overstay_id, manager, for_update=True)
        state_machine.reopen(
            self.db, record, state_machine.ReopenDecision(manager_id=manager.id, notes=notes)
        )
        self.repo.commit(self.db)
        logger.info(f"🔁 Overstay {overstay_id} reopened by manager {manager.id}")

        await self.dispatcher.pending_review(record)
        return record

    # ============================================================================
    # CHEF-FACING
    # ============================================================================

    def get_chef_penalties(self, chef_id: int, unpaid_only: bool = False) -> list[OverstayRecord]:
        records = self.repo.list_for_chef(self.db, chef_id)
        if unpaid_only:
            records = [r for r in records if r.is_active]
        return records

    def has_chef_unpaid_penalties(self, chef_id: int) -> bool:
        """Any open case blocks new bookings for the chef"""
        return self.repo.count_unpaid_for_chef(self.db, chef_id, ACTIVE_STATUSES) > 0

    @staticmethod
    def _parse_status(status: str) -> OverstayStatus:
        try:
            return OverstayStatus(status)
        except ValueError:
            raise OverstayValidationError(f"Unknown overstay status: {status}")
