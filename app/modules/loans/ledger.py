"""
Invariant-preserving mutators for the Loan aggregate.

These functions only touch the in-memory aggregate. Callers own the
session and commit or roll back the whole unit of work.

Invariants kept after every mutator:
    remaining_balance == total_repayment - paid_amount
    remaining_balance >= 0
    paid_amount == sum(payment.amount for payment in payments)
"""
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from dateutil.relativedelta import relativedelta

from app.core.exceptions import ValidationError
from app.modules.loans.models import (
    Loan, LoanPayment, LoanPaymentRequest, LoanStatus, LoanCategory,
    PaymentRequestStatus, PaymentSource, utcnow
)
from app.modules.loans import state_machine
from app.modules.loans.state_machine import LoanAction

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class LedgerInvariantError(RuntimeError):
    """Raised when a mutation would leave the aggregate inconsistent"""


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def price_loan(loan_amount: Decimal, interest_rate: Decimal) -> Tuple[Decimal, Decimal, Decimal]:
    """Return (principal, interest, total_repayment)"""
    principal = to_money(loan_amount)
    if principal <= 0:
        raise ValidationError("Loan amount must be greater than zero", code="INVALID_AMOUNT")
    interest = to_money(principal * Decimal(str(interest_rate)))
    return principal, interest, principal + interest


def open_loan(
    user_id: int,
    loan_amount: Decimal,
    interest_rate: Decimal,
    repayment_date: datetime
) -> Loan:
    """Build a new pending loan"""
    principal, interest, total = price_loan(loan_amount, interest_rate)
    loan = Loan(
        user_id=user_id,
        loan_amount=principal,
        interest=interest,
        total_repayment=total,
        paid_amount=ZERO,
        remaining_balance=total,
        status=LoanStatus.PENDING,
        category=LoanCategory.PERMANENT,
        repayment_date=repayment_date,
        extension_count=0,
        is_defaulted=False,
        payment_requests=[],
        payments=[],
    )
    check_invariants(loan)
    return loan


def reprice(
    loan: Loan,
    loan_amount: Decimal,
    interest_rate: Decimal,
    repayment_date: Optional[datetime] = None
) -> Loan:
    """Borrower edit of a pending or rejected loan; resets status to pending"""
    state_machine.ensure_allowed(loan.status, LoanAction.EDIT)
    principal, interest, total = price_loan(loan_amount, interest_rate)

    loan.loan_amount = principal
    loan.interest = interest
    loan.total_repayment = total
    loan.paid_amount = _sum_payments(loan)
    loan.remaining_balance = total - loan.paid_amount
    if repayment_date is not None:
        loan.repayment_date = repayment_date
    state_machine.transition(loan, LoanAction.EDIT)
    check_invariants(loan)
    return loan


def approve(loan: Loan, now: Optional[datetime] = None) -> Loan:
    state_machine.transition(loan, LoanAction.APPROVE)
    loan.approved_at = now or utcnow()
    return loan


def reject(loan: Loan) -> Loan:
    state_machine.transition(loan, LoanAction.REJECT)
    return loan


def record_payment_request(
    loan: Loan,
    correlation_id: str,
    amount: Decimal,
    phone: str,
    merchant_request_id: Optional[str] = None
) -> LoanPaymentRequest:
    """Attach a pending push-payment request to the loan"""
    state_machine.ensure_allowed(loan.status, LoanAction.INITIATE_PAYMENT)
    if not correlation_id:
        raise ValidationError("Gateway did not return a correlation id", code="MISSING_CORRELATION_ID")

    request = LoanPaymentRequest(
        correlation_id=correlation_id,
        merchant_request_id=merchant_request_id,
        amount=to_money(amount),
        phone=phone,
        status=PaymentRequestStatus.PENDING,
    )
    loan.payment_requests.append(request)
    return request


def apply_payment(
    loan: Loan,
    amount: Decimal,
    reference: str,
    phone: Optional[str] = None,
    transaction_date: Optional[str] = None,
    correlation_id: Optional[str] = None,
    source: PaymentSource = PaymentSource.MPESA
) -> LoanPayment:
    """
    Credit a repayment to the loan and derive its new status.

    Anything above the remaining balance is kept on the payment record as
    ``excess_amount`` rather than credited.
    """
    reported = to_money(amount)
    if reported <= 0:
        raise ValidationError("Payment amount must be greater than zero", code="INVALID_AMOUNT")
    state_machine.ensure_allowed(loan.status, LoanAction.APPLY_PAYMENT)

    remaining = to_money(loan.remaining_balance)
    applied = min(reported, remaining)
    excess = reported - applied

    payment = LoanPayment(
        amount=applied,
        excess_amount=excess,
        reference=reference,
        phone=phone,
        transaction_date=transaction_date,
        correlation_id=correlation_id,
        source=source,
    )
    loan.payments.append(payment)
    loan.paid_amount = to_money(loan.paid_amount) + applied
    loan.remaining_balance = to_money(loan.total_repayment) - loan.paid_amount
    state_machine.transition(loan, LoanAction.APPLY_PAYMENT)
    check_invariants(loan)
    return payment


def mark_fully_paid(loan: Loan, reference: str = "ADMIN-OVERRIDE") -> Loan:
    """
    Admin override: force paid_amount to total_repayment.

    The shortfall is recorded as an adjustment payment so the payment
    history still sums to paid_amount.
    """
    state_machine.ensure_allowed(loan.status, LoanAction.MARK_FULLY_PAID)
    shortfall = to_money(loan.total_repayment) - to_money(loan.paid_amount)
    if shortfall > 0:
        loan.payments.append(LoanPayment(
            amount=shortfall,
            excess_amount=ZERO,
            reference=reference,
            source=PaymentSource.ADJUSTMENT,
        ))
    loan.paid_amount = to_money(loan.total_repayment)
    loan.remaining_balance = ZERO
    state_machine.transition(loan, LoanAction.MARK_FULLY_PAID)
    check_invariants(loan)
    return loan


def mark_defaulted(loan: Loan, reason: Optional[str] = None, now: Optional[datetime] = None) -> Loan:
    state_machine.transition(loan, LoanAction.MARK_DEFAULTED)
    loan.is_defaulted = True
    loan.defaulted_at = now or utcnow()
    loan.default_reason = reason or "Repayment period exceeded"
    return loan


def extend_repayment(loan: Loan, now: Optional[datetime] = None) -> Loan:
    """Push the repayment date out by one calendar month"""
    state_machine.ensure_allowed(loan.status, LoanAction.EXTEND)
    now = now or utcnow()
    loan.repayment_date = loan.repayment_date + relativedelta(months=1)
    loan.extension_count = (loan.extension_count or 0) + 1
    loan.extension_month = now.strftime("%Y-%m")
    return loan


def assign_category(loan: Loan, category: LoanCategory) -> Loan:
    state_machine.ensure_allowed(loan.status, LoanAction.ASSIGN_CATEGORY)
    loan.category = LoanCategory(category)
    return loan


def _sum_payments(loan: Loan) -> Decimal:
    return sum((to_money(p.amount) for p in loan.payments), ZERO)


def check_invariants(loan: Loan) -> None:
    total = to_money(loan.total_repayment)
    paid = to_money(loan.paid_amount)
    remaining = to_money(loan.remaining_balance)

    if remaining != total - paid:
        raise LedgerInvariantError(
            f"remaining_balance {remaining} != total_repayment {total} - paid_amount {paid}"
        )
    if remaining < 0:
        raise LedgerInvariantError(f"remaining_balance {remaining} is negative")
    if paid != _sum_payments(loan):
        raise LedgerInvariantError(
            f"paid_amount {paid} does not match recorded payments {_sum_payments(loan)}"
        )
