from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from app.modules.limits.schemas import LoanLimits
from app.modules.loans.models import LoanStatus, LoanCategory, PaymentRequestStatus, PaymentSource


class LoanApplicationRequest(BaseModel):
    loan_amount: Decimal = Field(..., gt=0)


class LoanUpdateRequest(BaseModel):
    loan_amount: Decimal = Field(..., gt=0)
    repayment_date: Optional[datetime] = None


class LoanDefaultRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class LoanCategoryRequest(BaseModel):
    category: LoanCategory


class PaymentRequestResponse(BaseModel):
    correlation_id: str
    merchant_request_id: Optional[str] = None
    amount: Decimal
    phone: str
    status: PaymentRequestStatus
    result_code: Optional[int] = None
    result_description: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentResponse(BaseModel):
    amount: Decimal
    excess_amount: Decimal
    reference: str
    phone: Optional[str] = None
    transaction_date: Optional[str] = None
    correlation_id: Optional[str] = None
    source: PaymentSource
    created_at: datetime

    class Config:
        from_attributes = True


class LoanResponse(BaseModel):
    id: int
    user_id: int
    loan_amount: Decimal
    interest: Decimal
    total_repayment: Decimal
    paid_amount: Decimal
    remaining_balance: Decimal
    status: LoanStatus
    category: LoanCategory
    repayment_date: datetime
    extension_count: int
    extension_month: Optional[str] = None
    approved_at: Optional[datetime] = None
    is_defaulted: bool
    defaulted_at: Optional[datetime] = None
    default_reason: Optional[str] = None
    created_at: datetime
    payment_requests: List[PaymentRequestResponse] = []
    payments: List[PaymentResponse] = []

    class Config:
        from_attributes = True


class LoanApplicationResponse(BaseModel):
    message: str = "Loan application submitted successfully!"
    loan: LoanResponse
    interest_rate: str
    limit_info: LoanLimits


class LoanListResponse(BaseModel):
    loans: List[LoanResponse]
    limit_info: LoanLimits


class AdminLoanListResponse(BaseModel):
    loans: List[LoanResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class MessageResponse(BaseModel):
    message: str
