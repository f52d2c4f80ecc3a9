from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal


# ============ Vehicle release ============

class ReleaseVehicleRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500, description="Why the vehicle is released")


class ReleaseVehicleResponse(BaseModel):
    success: bool
    booking_id: str
    vehicle_id: str
    booking_status: str
    released_at: datetime
    released_by: str
    released_by_type: str
    reason: str
    vehicle_status: Optional[str] = None
    vehicle_updated: bool


# ============ Issues ============

class ReportIssueRequest(BaseModel):
    issue_type: str = Field(..., description="mechanical, damage, cleanliness, documentation or other")
    description: str = Field(..., max_length=2000)
    severity: str = "medium"
    images: List[str] = Field(default_factory=list)


class IssueResponse(BaseModel):
    id: str
    booking_id: str
    type: str
    description: str
    severity: str
    status: str
    reported_by: str
    reported_by_type: str
    reported_by_name: Optional[str] = None
    reported_at: Optional[datetime] = None
    images: Optional[List[str]] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None

    class Config:
        from_attributes = True


class ReportIssueResponse(BaseModel):
    success: bool
    booking_id: str
    issue: IssueResponse
    vehicle_maintenance_forced: bool


# ============ Activation ============

class ReadinessChecks(BaseModel):
    valid_status: bool
    payment_confirmed: bool
    insurance_valid: bool
    documents_approved: bool
    vehicle_available: bool = True


class ActivationReadinessResponse(BaseModel):
    booking_id: str
    status: str
    payment_status: Optional[str] = None
    ready: bool
    already_active: bool
    checks: ReadinessChecks
    unmet: List[str]


class ActivateRequest(BaseModel):
    triggered_by: str = Field("manual", max_length=30)
    bypass_requirements: bool = False


class ActivateResponse(BaseModel):
    success: bool
    already_active: bool
    booking_id: str
    status: str
    activated_at: Optional[datetime] = None
    vehicle_id: Optional[str] = None
    bypassed: bool = False
    unmet: List[str] = []


# ============ Partner response / termination ============

class PartnerResponseRequest(BaseModel):
    accept: bool
    rejection_reason: Optional[str] = Field(None, max_length=500)
    override_insurance: bool = False


class PartnerResponseResult(BaseModel):
    success: bool
    booking_id: str
    status: str
    accepted: bool
    refund_instruction_ids: List[str] = []


class CancelBookingRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class TerminationResponse(BaseModel):
    success: bool
    booking_id: str
    status: str
    previous_status: str
    vehicle_freed: bool


# ============ Vehicle change / returns ============

class ChangeVehicleRequest(BaseModel):
    new_vehicle_id: str
    reason: str = Field(..., max_length=500)
    adjustment_type: str = Field("prorated", description="prorated, immediate or next_cycle")


class ChangeVehicleResponse(BaseModel):
    success: bool
    booking_id: str
    old_vehicle_id: Optional[str] = None
    new_vehicle_id: str
    old_weekly_rate: Decimal
    new_weekly_rate: Decimal
    adjustment_type: str
    adjustment_amount: Decimal
    remaining_days: int
    adjustment_instruction_id: Optional[str] = None
    reason: str


class ReturnRequest(BaseModel):
    action: str = Field("request", description="request, approve or reject")
    reason: Optional[str] = Field(None, max_length=500)


class ReturnResponse(BaseModel):
    success: bool
    booking_id: str
    action: str
    status: str
    return_requested: bool
    vehicle_freed: bool


# ============ History ============

class HistoryEntryResponse(BaseModel):
    id: str
    booking_id: str
    action: str
    performed_by: Optional[str] = None
    performed_by_type: str
    description: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True
