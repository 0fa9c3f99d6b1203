from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from decimal import Decimal
from enum import Enum


# ============================================================
# Borrower payment initiation
# ============================================================

class PaymentInitiationRequest(BaseModel):
    loan_id: int
    phone: str = Field(..., min_length=9, max_length=20)
    amount: Decimal = Field(..., gt=0)


class PaymentInitiationResponse(BaseModel):
    correlation_id: str
    merchant_request_id: Optional[str] = None
    amount: Decimal
    loan_id: int
    customer_message: Optional[str] = None


class ManualPaymentRequest(BaseModel):
    """Cash or bank repayment captured by an admin"""
    amount: Decimal = Field(..., gt=0)
    reference: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = Field(None, max_length=20)


class ExpireStaleResponse(BaseModel):
    expired: int


# ============================================================
# Daraja STK callback envelope
# ============================================================

class CallbackItem(BaseModel):
    name: str = Field(..., alias="Name")
    value: Optional[Any] = Field(None, alias="Value")

    class Config:
        populate_by_name = True


class CallbackMetadata(BaseModel):
    items: List[CallbackItem] = Field(default_factory=list, alias="Item")

    class Config:
        populate_by_name = True


class StkCallback(BaseModel):
    merchant_request_id: Optional[str] = Field(None, alias="MerchantRequestID")
    checkout_request_id: str = Field(..., alias="CheckoutRequestID")
    result_code: int = Field(..., alias="ResultCode")
    result_desc: Optional[str] = Field(None, alias="ResultDesc")
    callback_metadata: Optional[CallbackMetadata] = Field(None, alias="CallbackMetadata")

    class Config:
        populate_by_name = True

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    def metadata(self) -> Dict[str, Any]:
        if not self.callback_metadata:
            return {}
        return {item.name: item.value for item in self.callback_metadata.items}


class CallbackBody(BaseModel):
    stk_callback: StkCallback = Field(..., alias="stkCallback")

    class Config:
        populate_by_name = True


class StkCallbackEnvelope(BaseModel):
    body: CallbackBody = Field(..., alias="Body")

    class Config:
        populate_by_name = True


class ReconcileReason(str, Enum):
    APPLIED = "applied"
    GATEWAY_FAILURE = "gateway_failure"
    ALREADY_PROCESSED_OR_UNKNOWN = "already_processed_or_unknown"
    MALFORMED_PAYLOAD = "malformed_payload"
    LOAN_NOT_PAYABLE = "loan_not_payable"


class ReconcileResult(BaseModel):
    applied: bool
    reason: ReconcileReason
    loan_id: Optional[int] = None
    correlation_id: Optional[str] = None


class CallbackAck(BaseModel):
    """Acknowledgement returned to the gateway for every delivery"""
    ResultCode: int = 0
    ResultDesc: str = "Accepted"
