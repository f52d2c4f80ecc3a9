"""
Booking lifecycle endpoints - release, issues, activation, partner response,
completion, cancellation and the audit trail.
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from typing import List, Optional

from ..database import get_db
from ..exceptions import NotFoundError, UnauthorizedError
from ..models.booking import Booking
from ..services import booking_state_machine, history_recorder, issue_log, vehicle_assignment
from ..services.actors import is_financial_staff, owns_booking
from ..schemas.booking import (
    ActivateRequest,
    ActivateResponse,
    ActivationReadinessResponse,
    CancelBookingRequest,
    ChangeVehicleRequest,
    ChangeVehicleResponse,
    HistoryEntryResponse,
    IssueResponse,
    PartnerResponseRequest,
    PartnerResponseResult,
    ReleaseVehicleRequest,
    ReleaseVehicleResponse,
    ReportIssueRequest,
    ReportIssueResponse,
    ReturnRequest,
    ReturnResponse,
    TerminationResponse,
)
from ..utils.dependencies import Actor, get_current_actor
from ..utils.rate_limiter import limiter, get_rate_limit


router = APIRouter(prefix="/api/bookings", tags=["Bookings"])


def _ensure_booking_access(db: Session, booking_id: str, actor: Actor) -> Booking:
    """Read access: the booking's parties, their financial staff, operators"""
    booking = db.query(Booking).filter(Booking.id == booking_id).first()
    if not booking:
        raise NotFoundError("Booking not found", booking_id=booking_id)

    if actor.type == "partner_staff":
        allowed = is_financial_staff(db, booking.partner_id, actor.id)
    else:
        allowed = owns_booking(db, booking, actor.id, actor.type)
    if not allowed:
        raise UnauthorizedError("You do not have access to this booking", booking_id=booking_id)
    return booking


@router.post("/{booking_id}/release-vehicle", response_model=ReleaseVehicleResponse)
@router.post("/{booking_id}/release-vehicle/", response_model=ReleaseVehicleResponse)
@limiter.limit(get_rate_limit("release_vehicle"))
async def release_vehicle(
    request: Request,
    booking_id: str,
    payload: Optional[ReleaseVehicleRequest] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Release the vehicle bound to a booking (driver, partner or operator)"""
    result = vehicle_assignment.release_vehicle(
        db,
        booking_id=booking_id,
        released_by=actor.id,
        released_by_type=actor.type,
        reason=payload.reason if payload else None,
    )
    return ReleaseVehicleResponse(**result)


@router.post("/{booking_id}/issues", response_model=ReportIssueResponse, status_code=201)
@router.post("/{booking_id}/issues/", response_model=ReportIssueResponse, status_code=201)
@limiter.limit(get_rate_limit("report_issue"))
async def report_issue(
    request: Request,
    booking_id: str,
    payload: ReportIssueRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Report an issue against a booking"""
    result = issue_log.report_issue(
        db,
        booking_id=booking_id,
        issue_type=payload.issue_type,
        description=payload.description,
        reported_by=actor.id,
        reported_by_type=actor.type,
        severity=payload.severity,
        images=payload.images,
    )
    return ReportIssueResponse(
        success=result["success"],
        booking_id=result["booking_id"],
        issue=IssueResponse.model_validate(result["issue"]),
        vehicle_maintenance_forced=result["vehicle_maintenance_forced"],
    )


@router.get("/{booking_id}/issues", response_model=List[IssueResponse])
@router.get("/{booking_id}/issues/", response_model=List[IssueResponse])
async def get_issues(
    booking_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    _ensure_booking_access(db, booking_id, actor)
    return issue_log.list_issues(db, booking_id)


@router.get("/{booking_id}/activation-readiness", response_model=ActivationReadinessResponse)
@router.get("/{booking_id}/activation-readiness/", response_model=ActivationReadinessResponse)
@limiter.limit(get_rate_limit("readiness"))
async def get_activation_readiness(
    request: Request,
    booking_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Which activation requirements are met, without changing anything"""
    _ensure_booking_access(db, booking_id, actor)
    return booking_state_machine.check_activation_readiness(db, booking_id)


@router.post("/{booking_id}/activate", response_model=ActivateResponse)
@router.post("/{booking_id}/activate/", response_model=ActivateResponse)
@limiter.limit(get_rate_limit("activate"))
async def activate_booking(
    request: Request,
    booking_id: str,
    payload: Optional[ActivateRequest] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Partner activates a booking; calling it again on an active booking is a no-op"""
    payload = payload or ActivateRequest()
    result = booking_state_machine.activate(
        db,
        booking_id=booking_id,
        partner_id=actor.id,
        triggered_by=payload.triggered_by,
        bypass_requirements=payload.bypass_requirements,
    )
    return ActivateResponse(**result)


@router.post("/{booking_id}/partner-response", response_model=PartnerResponseResult)
@router.post("/{booking_id}/partner-response/", response_model=PartnerResponseResult)
@limiter.limit(get_rate_limit("partner_response"))
async def partner_response(
    request: Request,
    booking_id: str,
    payload: PartnerResponseRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Partner accepts or rejects a booking awaiting approval"""
    result = booking_state_machine.respond_to_booking(
        db,
        booking_id=booking_id,
        partner_id=actor.id,
        accept=payload.accept,
        rejection_reason=payload.rejection_reason,
        override_insurance=payload.override_insurance,
    )
    return PartnerResponseResult(**result)


@router.post("/{booking_id}/change-vehicle", response_model=ChangeVehicleResponse)
@router.post("/{booking_id}/change-vehicle/", response_model=ChangeVehicleResponse)
@limiter.limit(get_rate_limit("change_vehicle"))
async def change_vehicle(
    request: Request,
    booking_id: str,
    payload: ChangeVehicleRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Partner moves a booking onto another vehicle of its fleet"""
    result = vehicle_assignment.change_vehicle(
        db,
        booking_id=booking_id,
        partner_id=actor.id,
        new_vehicle_id=payload.new_vehicle_id,
        reason=payload.reason,
        adjustment_type=payload.adjustment_type,
    )
    return ChangeVehicleResponse(**result)


@router.post("/{booking_id}/return", response_model=ReturnResponse)
@router.post("/{booking_id}/return/", response_model=ReturnResponse)
@limiter.limit(get_rate_limit("return"))
async def booking_return(
    request: Request,
    booking_id: str,
    payload: Optional[ReturnRequest] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Request an early return, or approve / reject the other party's request"""
    payload = payload or ReturnRequest()
    result = booking_state_machine.handle_return(
        db,
        booking_id,
        actor.id,
        actor.type,
        action=payload.action,
        reason=payload.reason,
    )
    return ReturnResponse(**result)


@router.post("/{booking_id}/complete", response_model=TerminationResponse)
@router.post("/{booking_id}/complete/", response_model=TerminationResponse)
async def complete_booking(
    booking_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    result = booking_state_machine.complete_booking(db, booking_id, actor.id, actor.type)
    return TerminationResponse(**result)


@router.post("/{booking_id}/cancel", response_model=TerminationResponse)
@router.post("/{booking_id}/cancel/", response_model=TerminationResponse)
async def cancel_booking(
    booking_id: str,
    payload: Optional[CancelBookingRequest] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    result = booking_state_machine.cancel_booking(
        db,
        booking_id,
        actor.id,
        actor.type,
        reason=payload.reason if payload else None,
    )
    return TerminationResponse(**result)


@router.get("/{booking_id}/history", response_model=List[HistoryEntryResponse])
@router.get("/{booking_id}/history/", response_model=List[HistoryEntryResponse])
@limiter.limit(get_rate_limit("history"))
async def get_booking_history(
    request: Request,
    booking_id: str,
    action: Optional[str] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Audit trail of a booking, oldest first"""
    _ensure_booking_access(db, booking_id, actor)
    return history_recorder.get_history(db, booking_id, action=action)
