"""
Unit tests for the loan lifecycle state machine
"""
import pytest
from decimal import Decimal
from types import SimpleNamespace

from app.core.exceptions import InvalidTransitionError
from app.modules.loans import state_machine
from app.modules.loans.models import LoanStatus
from app.modules.loans.state_machine import LoanAction


class TestTransitions:
    """Tests for allowed and rejected status changes"""

    @pytest.mark.unit
    @pytest.mark.parametrize("action,target", [
        (LoanAction.APPROVE, LoanStatus.APPROVED),
        (LoanAction.REJECT, LoanStatus.REJECTED),
    ])
    def test_pending_decisions(self, action, target):
        """Test approve and reject from pending"""
        assert state_machine.next_status(LoanStatus.PENDING, action) == target

    @pytest.mark.unit
    def test_partial_payment_moves_to_partially_paid(self):
        status = state_machine.next_status(
            LoanStatus.APPROVED, LoanAction.APPLY_PAYMENT, remaining_balance=Decimal("700.00")
        )
        assert status == LoanStatus.PARTIALLY_PAID

    @pytest.mark.unit
    def test_final_payment_moves_to_fully_paid(self):
        status = state_machine.next_status(
            LoanStatus.PARTIALLY_PAID, LoanAction.APPLY_PAYMENT, remaining_balance=Decimal("0.00")
        )
        assert status == LoanStatus.FULLY_PAID

    @pytest.mark.unit
    def test_edit_resubmits_rejected_loan(self):
        assert state_machine.next_status(LoanStatus.REJECTED, LoanAction.EDIT) == LoanStatus.PENDING

    @pytest.mark.unit
    def test_admin_can_close_defaulted_loan(self):
        assert state_machine.next_status(
            LoanStatus.DEFAULTED, LoanAction.MARK_FULLY_PAID
        ) == LoanStatus.FULLY_PAID

    @pytest.mark.unit
    @pytest.mark.parametrize("status", [LoanStatus.PENDING, LoanStatus.REJECTED, LoanStatus.FULLY_PAID, LoanStatus.DEFAULTED])
    def test_payment_rejected_unless_repayable(self, status):
        """Test payments only apply to approved or partially paid loans"""
        with pytest.raises(InvalidTransitionError) as exc_info:
            state_machine.next_status(status, LoanAction.APPLY_PAYMENT, remaining_balance=Decimal("1"))

        assert exc_info.value.current_status == status.value
        assert exc_info.value.status_code == 409

    @pytest.mark.unit
    def test_approve_twice_rejected(self):
        with pytest.raises(InvalidTransitionError):
            state_machine.next_status(LoanStatus.APPROVED, LoanAction.APPROVE)

    @pytest.mark.unit
    def test_category_only_on_approved(self):
        assert state_machine.can(LoanStatus.APPROVED, LoanAction.ASSIGN_CATEGORY)
        assert not state_machine.can(LoanStatus.PARTIALLY_PAID, LoanAction.ASSIGN_CATEGORY)

    @pytest.mark.unit
    def test_terminal_states(self):
        assert state_machine.is_terminal(LoanStatus.FULLY_PAID)
        assert state_machine.is_terminal(LoanStatus.REJECTED)
        assert state_machine.is_terminal(LoanStatus.DEFAULTED)
        assert not state_machine.is_terminal(LoanStatus.PARTIALLY_PAID)

    @pytest.mark.unit
    def test_transition_leaves_loan_untouched_on_failure(self):
        """Test an illegal move does not change the status"""
        loan = SimpleNamespace(status=LoanStatus.FULLY_PAID, remaining_balance=Decimal("0.00"))

        with pytest.raises(InvalidTransitionError):
            state_machine.transition(loan, LoanAction.MARK_DEFAULTED)

        assert loan.status == LoanStatus.FULLY_PAID

    @pytest.mark.unit
    def test_error_message(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            state_machine.ensure_allowed(LoanStatus.FULLY_PAID, LoanAction.APPLY_PAYMENT)

        assert str(exc_info.value) == "Action 'apply_payment' is not allowed for a loan in 'fully paid' status"
