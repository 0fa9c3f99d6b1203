"""
Loan lifecycle state machine.

Every status change goes through ``transition`` (or ``ensure_allowed`` for
actions that keep the status), so illegal moves fail before any field of
the loan is touched.
"""
from decimal import Decimal
import enum
from typing import Dict, FrozenSet, Optional

from app.core.exceptions import InvalidTransitionError
from app.modules.loans.models import LoanStatus


class LoanAction(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
    APPLY_PAYMENT = "apply_payment"
    MARK_FULLY_PAID = "mark_fully_paid"
    MARK_DEFAULTED = "mark_defaulted"
    EDIT = "edit"
    DELETE = "delete"
    EXTEND = "extend"
    ASSIGN_CATEGORY = "assign_category"
    INITIATE_PAYMENT = "initiate_payment"


TERMINAL_STATES: FrozenSet[LoanStatus] = frozenset({
    LoanStatus.REJECTED,
    LoanStatus.FULLY_PAID,
    LoanStatus.DEFAULTED,
})

# Loans that block a new application for the same borrower
ACTIVE_STATES: FrozenSet[LoanStatus] = frozenset({
    LoanStatus.PENDING,
    LoanStatus.APPROVED,
    LoanStatus.PARTIALLY_PAID,
})

# Loans that count towards outstanding balance and active loan limits
OUTSTANDING_STATES: FrozenSet[LoanStatus] = frozenset({
    LoanStatus.APPROVED,
    LoanStatus.PARTIALLY_PAID,
})

_REPAYABLE = frozenset({LoanStatus.APPROVED, LoanStatus.PARTIALLY_PAID})
_BORROWER_EDITABLE = frozenset({LoanStatus.PENDING, LoanStatus.REJECTED})

ALLOWED_SOURCES: Dict[LoanAction, FrozenSet[LoanStatus]] = {
    LoanAction.APPROVE: frozenset({LoanStatus.PENDING}),
    LoanAction.REJECT: frozenset({LoanStatus.PENDING}),
    LoanAction.APPLY_PAYMENT: _REPAYABLE,
    # Admin correction is also accepted on defaulted loans
    LoanAction.MARK_FULLY_PAID: _REPAYABLE | {LoanStatus.DEFAULTED},
    LoanAction.MARK_DEFAULTED: _REPAYABLE,
    LoanAction.EDIT: _BORROWER_EDITABLE,
    LoanAction.DELETE: _BORROWER_EDITABLE,
    LoanAction.EXTEND: _REPAYABLE,
    LoanAction.ASSIGN_CATEGORY: frozenset({LoanStatus.APPROVED}),
    LoanAction.INITIATE_PAYMENT: _REPAYABLE,
}

_FIXED_TARGETS: Dict[LoanAction, LoanStatus] = {
    LoanAction.APPROVE: LoanStatus.APPROVED,
    LoanAction.REJECT: LoanStatus.REJECTED,
    LoanAction.MARK_FULLY_PAID: LoanStatus.FULLY_PAID,
    LoanAction.MARK_DEFAULTED: LoanStatus.DEFAULTED,
    LoanAction.EDIT: LoanStatus.PENDING,
}


def can(status: LoanStatus, action: LoanAction) -> bool:
    return LoanStatus(status) in ALLOWED_SOURCES[action]


def ensure_allowed(status: LoanStatus, action: LoanAction) -> None:
    """Raise InvalidTransitionError unless ``action`` may run from ``status``"""
    if not can(status, action):
        raise InvalidTransitionError(LoanStatus(status).value, action.value)


def status_after_payment(remaining_balance: Decimal) -> LoanStatus:
    if remaining_balance <= 0:
        return LoanStatus.FULLY_PAID
    return LoanStatus.PARTIALLY_PAID


def next_status(
    status: LoanStatus,
    action: LoanAction,
    remaining_balance: Optional[Decimal] = None
) -> LoanStatus:
    """Resolve the target status of ``action`` from ``status``"""
    ensure_allowed(status, action)

    if action == LoanAction.APPLY_PAYMENT:
        if remaining_balance is None:
            raise ValueError("remaining_balance is required to apply a payment")
        return status_after_payment(remaining_balance)

    return _FIXED_TARGETS.get(action, LoanStatus(status))


def transition(loan, action: LoanAction) -> LoanStatus:
    """Move ``loan`` to the status implied by ``action`` and return it"""
    target = next_status(loan.status, action, loan.remaining_balance)
    loan.status = target
    return target


def is_terminal(status: LoanStatus) -> bool:
    return LoanStatus(status) in TERMINAL_STATES
