from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum


class LimitType(str, Enum):
    MAX_TOTAL_LOAN_AMOUNT = "maxTotalLoanAmount"
    MAX_ACTIVE_LOANS = "maxActiveLoans"
    MAX_LOAN_AMOUNT_PER_REQUEST = "maxLoanAmountPerRequest"


class LoanLimits(BaseModel):
    """Per-user lending caps; 0 means unlimited"""
    max_total_loan_amount: Decimal
    max_active_loans: int
    max_loan_amount_per_request: Decimal
    last_updated: Optional[datetime] = None
    updated_by: Optional[int] = None


class LimitViolation(BaseModel):
    limit_type: LimitType
    limit_value: Decimal
    current_value: Decimal
    message: str


class LimitUsage(BaseModel):
    total_outstanding: Decimal
    active_loan_count: int


class EligibilityRequest(BaseModel):
    requested_amount: Decimal = Field(..., gt=0)


class EligibilityResult(BaseModel):
    eligible: bool
    violations: List[LimitViolation] = []
    usage: LimitUsage
    limits: LoanLimits


class LoanLimitsUpdate(BaseModel):
    max_total_loan_amount: Optional[Decimal] = Field(None, ge=0)
    max_active_loans: Optional[int] = Field(None, ge=0)
    max_loan_amount_per_request: Optional[Decimal] = Field(None, ge=0)
    change_reason: Optional[str] = Field(None, max_length=500)


class LimitHistoryEntry(BaseModel):
    id: int
    limit_type: LimitType
    old_value: Decimal
    new_value: Decimal
    changed_by: Optional[int] = None
    change_reason: str
    changed_at: datetime

    class Config:
        from_attributes = True


class LoanLimitsResponse(BaseModel):
    user_id: int
    limits: LoanLimits
    history: List[LimitHistoryEntry] = []


class LoanLimitsUpdateResponse(BaseModel):
    message: str = "Loan limits updated successfully"
    user_id: int
    limits: LoanLimits
    changes: List[LimitHistoryEntry]
