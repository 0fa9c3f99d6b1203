# Loans module
from app.modules.loans.models import (
    Loan, LoanPaymentRequest, LoanPayment,
    LoanStatus, LoanCategory, PaymentRequestStatus, PaymentSource
)

__all__ = [
    "Loan", "LoanPaymentRequest", "LoanPayment",
    "LoanStatus", "LoanCategory", "PaymentRequestStatus", "PaymentSource",
]
