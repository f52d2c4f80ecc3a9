"""
Payment instruction endpoints - weekly set-up, mark sent, bank transfer
confirmation and deposit refunds.
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from typing import Dict

from ..database import get_db
from ..services import payment_ledger
from ..schemas.payment import (
    ConfirmBankTransferRequest,
    ConfirmBankTransferResponse,
    CreateWeeklyInstructionRequest,
    InstructionResult,
    MarkSentResponse,
    PaymentInstructionResponse,
    RefundDepositRequest,
    RefundDepositResponse,
    RejectRefundRequest,
    RejectRefundResponse,
)
from ..utils.dependencies import Actor, get_current_actor
from ..utils.rate_limiter import limiter, get_rate_limit


router = APIRouter(prefix="/api/payments", tags=["Payments"])


def _with_instruction(result: Dict) -> Dict:
    result = dict(result)
    result["instruction"] = PaymentInstructionResponse.model_validate(result["instruction"])
    return result


@router.post("/weekly-instructions", response_model=InstructionResult, status_code=201)
@router.post("/weekly-instructions/", response_model=InstructionResult, status_code=201)
@limiter.limit(get_rate_limit("create_instruction"))
async def create_weekly_instruction(
    request: Request,
    payload: CreateWeeklyInstructionRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Set up the weekly payment for a booking (driver or operator)"""
    result = payment_ledger.create_weekly_instruction(
        db,
        booking_id=payload.booking_id,
        method=payload.method,
        requested_by=actor.id,
    )
    return InstructionResult(**_with_instruction(result))


@router.post("/instructions/{instruction_id}/mark-sent", response_model=MarkSentResponse)
@router.post("/instructions/{instruction_id}/mark-sent/", response_model=MarkSentResponse)
@limiter.limit(get_rate_limit("mark_sent"))
async def mark_sent(
    request: Request,
    instruction_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Driver marks a bank transfer as sent"""
    result = payment_ledger.mark_sent(db, instruction_id=instruction_id, driver_id=actor.id)
    return MarkSentResponse(**_with_instruction(result))


@router.post("/confirm-bank-transfer", response_model=ConfirmBankTransferResponse)
@router.post("/confirm-bank-transfer/", response_model=ConfirmBankTransferResponse)
@limiter.limit(get_rate_limit("confirm_transfer"))
async def confirm_bank_transfer(
    request: Request,
    payload: ConfirmBankTransferRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    """Partner, financial staff or operator confirms a transfer arrived"""
    result = payment_ledger.confirm_bank_transfer(
        db,
        booking_id=payload.booking_id,
        instruction_id=payload.instruction_id,
        confirmed_by=actor.id,
    )
    return ConfirmBankTransferResponse(**_with_instruction(result))


@router.post("/instructions/{instruction_id}/refund-deposit", response_model=RefundDepositResponse)
@router.post("/instructions/{instruction_id}/refund-deposit/", response_model=RefundDepositResponse)
@limiter.limit(get_rate_limit("refund"))
async def refund_deposit(
    request: Request,
    instruction_id: str,
    payload: RefundDepositRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    result = payment_ledger.refund_deposit(
        db,
        instruction_id=instruction_id,
        refund_amount=payload.refund_amount,
        partner_id=actor.id,
    )
    return RefundDepositResponse(**_with_instruction(result))


@router.post("/instructions/{instruction_id}/reject-refund", response_model=RejectRefundResponse)
@router.post("/instructions/{instruction_id}/reject-refund/", response_model=RejectRefundResponse)
@limiter.limit(get_rate_limit("refund"))
async def reject_refund(
    request: Request,
    instruction_id: str,
    payload: RejectRefundRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor)
):
    result = payment_ledger.reject_refund(
        db,
        instruction_id=instruction_id,
        partner_id=actor.id,
        reason=payload.reason,
    )
    return RejectRefundResponse(**_with_instruction(result))
