"""
Overstay API Endpoints

Manager-facing review, decision, charging and resolution of storage overstays.
Errors raised by the services are rendered by the application's AppException
handler.
"""

from typing import Optional, List
from datetime import date
import asyncio
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from overstay_engine.dependencies import get_db, get_payment_service, StripePaymentService
from overstay_engine.schemas.base import ErrorResponse
from overstay_engine.schemas.overstay import (
    OverstayRecordResponse,
    OverstayHistoryResponse,
    PendingOverstayReview,
    ChefPenaltyStatus,
    OverstayStats,
    ManagerDecisionRequest,
    ManagerPenaltyDecision,
    DecisionResult,
    ChargeResult,
    RetryChargeRequest,
    ResolveOverstayRequest,
    DetectionRunResponse
)
from overstay_engine.services.overstay_detection_service import OverstayDetectionService
from overstay_engine.services.manager_decision_service import ManagerDecisionService
from overstay_engine.services.penalty_charge_service import PenaltyChargeService
from overstay_engine.services.overstay_query_service import OverstayQueryService
from overstay_engine.services.overstay_resolution_service import OverstayResolutionService
from overstay_engine.core.scheduler import scheduler, OVERSTAY_DETECTION_TASK

router = APIRouter(
    prefix="/overstays",
    tags=["Overstays"],
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}}
)


@router.get("/pending", response_model=List[PendingOverstayReview])
async def get_pending_overstays(
    location_id: Optional[int] = Query(None),
    db: Session = Depends(get_db)
):
    """Records waiting for a manager decision, most overdue first"""
    return OverstayQueryService.get_pending_reviews(db, location_id=location_id)


@router.get("/stats", response_model=OverstayStats)
async def get_overstay_stats(
    location_id: Optional[int] = Query(None),
    db: Session = Depends(get_db)
):
    return OverstayQueryService.get_stats(db, location_id=location_id)


@router.get("/chefs/{chef_id}", response_model=List[OverstayRecordResponse])
async def get_chef_overstays(
    chef_id: int,
    db: Session = Depends(get_db)
):
    """All overstay penalties on one chef's bookings"""
    return OverstayQueryService.get_chef_penalties(db, chef_id)


@router.get("/chefs/{chef_id}/unpaid", response_model=ChefPenaltyStatus)
async def get_chef_unpaid_overstays(
    chef_id: int,
    db: Session = Depends(get_db)
):
    """Open penalties that block the chef from new bookings"""
    penalties = OverstayQueryService.get_chef_unpaid_penalties(db, chef_id)
    return ChefPenaltyStatus(
        chef_id=chef_id,
        has_unpaid_penalties=OverstayQueryService.has_chef_unpaid_penalties(db, chef_id),
        penalties=penalties
    )


@router.post("/detect", response_model=DetectionRunResponse)
async def trigger_overstay_detection(
    run_date: Optional[date] = Query(None, description="Evaluate as of this date (defaults to today)"),
    db: Session = Depends(get_db)
):
    """Run the detection sweep now unless a sweep is already in progress"""
    async def sweep():
        # Blocking database work runs off the event loop
        return await asyncio.to_thread(OverstayDetectionService.detect_overstays, db, run_date)

    outcome = await scheduler.run_exclusive(OVERSTAY_DETECTION_TASK, sweep)
    if not outcome["started"]:
        return DetectionRunResponse(started=False, message="Overstay detection is already running")

    results = outcome["result"]
    return DetectionRunResponse(
        started=True,
        processed=len(results),
        results=results,
        message=f"Processed {len(results)} overstay bookings"
    )


@router.get("/", response_model=List[OverstayRecordResponse])
async def list_overstays(
    status: Optional[str] = Query(None),
    location_id: Optional[int] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db)
):
    return OverstayQueryService.get_all_records(
        db,
        status=status,
        location_id=location_id,
        skip=skip,
        limit=limit
    )


@router.get("/{overstay_id}", response_model=OverstayRecordResponse)
async def get_overstay(
    overstay_id: int,
    db: Session = Depends(get_db)
):
    return OverstayQueryService.get_record(db, overstay_id)


@router.get("/{overstay_id}/history", response_model=List[OverstayHistoryResponse])
async def get_overstay_history(
    overstay_id: int,
    db: Session = Depends(get_db)
):
    """Chronological audit trail of a record"""
    return OverstayQueryService.get_history(db, overstay_id)


@router.post("/{overstay_id}/decision", response_model=DecisionResult)
async def decide_overstay(
    overstay_id: int,
    data: ManagerDecisionRequest,
    db: Session = Depends(get_db)
):
    """Approve, adjust or waive a penalty"""
    decision = ManagerPenaltyDecision(
        overstay_record_id=overstay_id,
        **data.model_dump()
    )
    return ManagerDecisionService.process_decision(db, decision)


@router.post("/{overstay_id}/charge", response_model=ChargeResult)
def charge_overstay(
    overstay_id: int,
    db: Session = Depends(get_db),
    gateway: StripePaymentService = Depends(get_payment_service)
):
    """Charge the approved penalty to the chef's saved payment method"""
    return PenaltyChargeService.charge_penalty(db, overstay_id, gateway)


@router.post("/{overstay_id}/retry-charge", response_model=ChargeResult)
def retry_overstay_charge(
    overstay_id: int,
    data: RetryChargeRequest,
    db: Session = Depends(get_db),
    gateway: StripePaymentService = Depends(get_payment_service)
):
    return PenaltyChargeService.retry_failed_charge(db, overstay_id, data.manager_id, gateway)


@router.post("/{overstay_id}/resolve", response_model=OverstayRecordResponse)
async def resolve_overstay(
    overstay_id: int,
    data: ResolveOverstayRequest,
    db: Session = Depends(get_db)
):
    """Close a record without charging (booking extended, items removed, zero penalty)"""
    return OverstayResolutionService.resolve_overstay(
        db,
        overstay_id,
        resolution_type=data.resolution_type,
        resolution_notes=data.resolution_notes,
        resolved_by=data.resolved_by
    )
