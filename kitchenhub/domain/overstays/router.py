"""Overstay router - FastAPI endpoints for managers, chefs and admins"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import get_current_admin, get_current_manager, get_current_user
from ...database import SessionLocal, get_db
from ...models import User
from .gateway import PaymentGateway, StripePaymentGateway
from .notifications import EmailNotificationService, NotificationService
from .scanner import run_overstay_scan
from .schemas import (
    ApprovePenaltyRequest,
    ApprovePenaltyResponse,
    ChargeAttemptResponse,
    ChargeOutcomeResponse,
    ChefPenaltiesResponse,
    OverstayHistoryResponse,
    OverstayListResponse,
    OverstayResponse,
    OverstayStatsResponse,
    ReopenOverstayRequest,
    ResolveOverstayRequest,
    ScanSummaryResponse,
    WaivePenaltyRequest,
)
from .service import OverstayService

logger = logging.getLogger(__name__)

manager_router = APIRouter(prefix="/manager/overstays", tags=["Overstays"])
chef_router = APIRouter(prefix="/chef/overstays", tags=["Overstays"])
admin_router = APIRouter(prefix="/admin/overstays", tags=["Overstays"])


def get_payment_gateway() -> PaymentGateway:
    return StripePaymentGateway()


def get_notification_service() -> NotificationService:
    return EmailNotificationService()


def get_session_factory():
    return SessionLocal


def get_overstay_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationService = Depends(get_notification_service),
) -> OverstayService:
    """Dependency injection for OverstayService"""
    return OverstayService(db, gateway, notifier)


# ============================================================================
# MANAGER
# ============================================================================


@manager_router.get("", response_model=OverstayListResponse)
async def list_overstays(
    location_id: Optional[int] = Query(None, alias="locationId"),
    status: Optional[str] = Query(None),
    active_only: bool = Query(False, alias="activeOnly"),
    current_user: User = Depends(get_current_manager),
    service: OverstayService = Depends(get_overstay_service),
):
    """Overstays at the manager's locations, newest first, with summary stats"""
    records = service.list_overstays(current_user, location_id, status, active_only)
    stats = service.get_stats(current_user, location_id)
    return OverstayListResponse(
        overstays=[OverstayResponse.from_record(r) for r in records],
        stats=OverstayStatsResponse.from_stats(stats),
    )


@manager_router.get("/stats", response_model=OverstayStatsResponse)
async def get_overstay_stats(
    location_id: Optional[int] = Query(None, alias="locationId"),
    current_user: User = Depends(get_current_manager),
    service: OverstayService = Depends(get_overstay_service),
):
    return OverstayStatsResponse.from_stats(service.get_stats(current_user, location_id))


@manager_router.get("/{overstay_id}", response_model=OverstayResponse)
async def get_overstay(
    overstay_id: int,
    current_user: User = Depends(get_current_manager),
    service: OverstayService = Depends(get_overstay_service),
):
    return OverstayResponse.from_record(service.get_overstay(overstay_id, current_user))


@manager_router.get("/{overstay_id}/history", response_model=list[OverstayHistoryResponse])
async def get_overstay_history(
    overstay_id: int,
    current_user: User = Depends(get_current_manager),
    service: OverstayService = Depends(get_overstay_service),
):
    return [OverstayHistoryResponse.from_entry(e) for e in service.get_history(overstay_id, current_user)]


@manager_router.get("/{overstay_id}/charge-attempts", response_model=list[ChargeAttemptResponse])
async def get_charge_attempts(
    overstay_id: int,
    current_user: User = Depends(get_current_manager),
    service: OverstayService = Depends(get_overstay_service),
):
    attempts = service.get_charge_attempts(overstay_id, current_user)
    return [ChargeAttemptResponse.from_attempt(a) for a in attempts]


@manager_router.post("/{overstay_id}/approve", response_model=ApprovePenaltyResponse)
async def approve_penalty(
    overstay_id: int,
    data: ApprovePenaltyRequest,
    current_user: User = Depends(get_current_manager),
    service: OverstayService = Depends(get_overstay_service),
):
    """Approve the penalty (optionally discounted) and charge the chef immediately"""
    record, outcome = await service.approve(overstay_id, current_user, data.amountCents, data.notes)
    return ApprovePenaltyResponse(
        overstay=OverstayResponse.from_record(record),
        charge=ChargeOutcomeResponse.from_outcome(outcome),
    )


@manager_router.post("/{overstay_id}/waive", response_model=OverstayResponse)
async def waive_penalty(
    overstay_id: int,
    data: WaivePenaltyRequest,
    current_user: User = Depends(get_current_manager),
    service: OverstayService = Depends(get_overstay_service),
):
    record = await service.waive(overstay_id, current_user, data.reason, data.notes)
    return OverstayResponse.from_record(record)


@manager_router.post("/{overstay_id}/charge", response_model=ChargeOutcomeResponse)
async def charge_penalty(
    overstay_id: int,
    current_user: User = Depends(get_current_manager),
    service: OverstayService = Depends(get_overstay_service),
):
    """Retry the charge of an approved or failed penalty"""
    outcome = await service.charge(overstay_id, current_user)
    return ChargeOutcomeResponse.from_outcome(outcome)


@manager_router.post("/{overstay_id}/resolve", response_model=OverstayResponse)
async def resolve_overstay(
    overstay_id: int,
    data: ResolveOverstayRequest,
    current_user: User = Depends(get_current_manager),
    service: OverstayService = Depends(get_overstay_service),
):
    record = await service.resolve(overstay_id, current_user, data.resolutionType, data.notes)
    return OverstayResponse.from_record(record)


@manager_router.post("/{overstay_id}/reopen", response_model=OverstayResponse)
async def reopen_overstay(
    overstay_id: int,
    data: ReopenOverstayRequest,
    current_user: User = Depends(get_current_manager),
    service: OverstayService = Depends(get_overstay_service),
):
    """Send an escalated penalty back to review"""
    record = await service.reopen(overstay_id, current_user, data.notes)
    return OverstayResponse.from_record(record)


# ============================================================================
# CHEF
# ============================================================================


@chef_router.get("", response_model=ChefPenaltiesResponse)
async def get_my_penalties(
    unpaid_only: bool = Query(False, alias="unpaidOnly"),
    current_user: User = Depends(get_current_user),
    service: OverstayService = Depends(get_overstay_service),
):
    records = service.get_chef_penalties(current_user.id, unpaid_only)
    return ChefPenaltiesResponse(
        penalties=[OverstayResponse.from_record(r) for r in records],
        hasUnpaidPenalties=service.has_chef_unpaid_penalties(current_user.id),
    )


# ============================================================================
# ADMIN
# ============================================================================


@admin_router.get("/escalated", response_model=list[OverstayResponse])
async def list_escalated(
    current_user: User = Depends(get_current_admin),
    service: OverstayService = Depends(get_overstay_service),
):
    return [OverstayResponse.from_record(r) for r in service.list_escalated()]


@admin_router.post("/scan", response_model=ScanSummaryResponse)
async def trigger_scan(
    current_user: User = Depends(get_current_admin),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationService = Depends(get_notification_service),
    session_factory=Depends(get_session_factory),
):
    """Run an overstay scan now (skipped if one is already running)"""
    logger.info(f"🔍 Manual overstay scan triggered by admin {current_user.id}")
    summary = await run_overstay_scan(notifier=notifier, gateway=gateway, session_factory=session_factory)
    return ScanSummaryResponse(
        scannedBookings=summary.scanned_bookings,
        detected=summary.detected,
        updated=summary.updated,
        movedToReview=summary.moved_to_review,
        autoResolved=summary.auto_resolved,
        recoveredCharges=summary.recovered_charges,
        errors=summary.errors,
        skipped=summary.skipped,
    )
