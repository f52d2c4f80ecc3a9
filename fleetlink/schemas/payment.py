from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal


class PaymentInstructionResponse(BaseModel):
    id: str
    booking_id: str
    driver_id: str
    partner_id: str
    method: str
    frequency: str
    type: str
    amount: Decimal
    status: str
    vehicle_reg: Optional[str] = None
    bank_account_name: Optional[str] = None
    bank_account_number: Optional[str] = None
    bank_sort_code: Optional[str] = None
    next_due_date: Optional[datetime] = None
    last_sent_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    refunded_amount: Optional[Decimal] = None
    refunded_at: Optional[datetime] = None
    refund_rejection_reason: Optional[str] = None
    refund_rejected_at: Optional[datetime] = None
    source_instruction_id: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CreateWeeklyInstructionRequest(BaseModel):
    booking_id: str = Field(..., min_length=1, max_length=36)
    method: str = Field(..., description="bank_transfer or direct_debit")


class InstructionResult(BaseModel):
    success: bool
    booking_id: str
    instruction: PaymentInstructionResponse


class MarkSentResponse(InstructionResult):
    booking_status: Optional[str] = None
    booking_promoted: bool
    partner_acceptance_deadline: Optional[datetime] = None


class ConfirmBankTransferRequest(BaseModel):
    booking_id: str = Field(..., min_length=1, max_length=36)
    instruction_id: str = Field(..., min_length=1, max_length=36)


class ConfirmBankTransferResponse(InstructionResult):
    payment_status: str
    next_due_date: Optional[datetime] = None
    additional_confirmed: int


class RefundDepositRequest(BaseModel):
    refund_amount: Decimal


class RefundDepositResponse(InstructionResult):
    refund_amount: Decimal
    transactions_created: bool


class RejectRefundRequest(BaseModel):
    reason: str = Field(..., max_length=1000)


class RejectRefundResponse(InstructionResult):
    reason: str
