"""
Pydantic schemas for API requests
"""

from decimal import Decimal
from typing import Any, Optional
from pydantic import BaseModel, Field


class ApplyLoanRequest(BaseModel):
    amount: Decimal = Field(..., description="Requested principal")
    phone_number: str = Field(..., description="Mobile money number for the fee and the payout")
    description: Optional[str] = None
    payment_method: str = Field("mobile_money_push", description="How the processing fee is paid")


class PayFeeRequest(BaseModel):
    payment_method: Optional[str] = None


class RejectLoanRequest(BaseModel):
    reason: str = Field(..., description="Shown to the borrower")


class DisbursementCallbackRequest(BaseModel):
    success: bool


class SettleLoanRequest(BaseModel):
    defaulted: bool = False


class UpdateSettingRequest(BaseModel):
    value: Any = None
