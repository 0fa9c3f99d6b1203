"""
Tests for borrower payment initiation
"""
import pytest
from decimal import Decimal

from sqlalchemy import select, func

from app.core.exceptions import GatewayError, InvalidTransitionError, NotFoundError, ValidationError
from app.modules.loans.models import LoanPaymentRequest, PaymentRequestStatus
from app.modules.loans.services import LoanService
from app.modules.payments.gateway import PaymentGateway
from app.modules.payments.services import PaymentService


class FailingGateway(PaymentGateway):
    async def initiate(self, phone, amount, account_reference, description="Payment"):
        raise GatewayError("Payment initiation failed: Invalid Access Token", provider_message="Invalid Access Token")


async def request_count(db_session) -> int:
    result = await db_session.execute(select(func.count(LoanPaymentRequest.id)))
    return result.scalar()


class TestPaymentInitiation:
    """Tests for STK push initiation against a loan"""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initiation_records_pending_request(self, db_session, test_user, approved_loan, fake_gateway):
        service = PaymentService(db_session, fake_gateway)

        response = await service.initiate_payment(test_user.id, approved_loan.id, "0712345678", Decimal("500"))

        assert response.correlation_id == "ws_CO_TEST_0001"
        assert response.loan_id == approved_loan.id

        call = fake_gateway.calls[0]
        assert call["phone"] == "254712345678"
        assert call["amount"] == Decimal("500.00")
        assert call["account_reference"].startswith(f"LOAN-{approved_loan.id}-")
        assert call["description"] == f"Loan payment for {approved_loan.id}"

        result = await db_session.execute(select(LoanPaymentRequest))
        request = result.scalar_one()
        assert request.status == PaymentRequestStatus.PENDING
        assert request.amount == Decimal("500.00")
        assert request.merchant_request_id == "MR-0001"

        # Nothing is credited until the callback arrives
        await db_session.refresh(approved_loan)
        assert approved_loan.paid_amount == Decimal("0.00")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_amount_above_balance_rejected(self, db_session, test_user, approved_loan, fake_gateway):
        with pytest.raises(ValidationError) as exc_info:
            await PaymentService(db_session, fake_gateway).initiate_payment(
                test_user.id, approved_loan.id, "0712345678", Decimal("1500")
            )

        assert exc_info.value.code == "AMOUNT_EXCEEDS_BALANCE"
        assert fake_gateway.calls == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pending_request_reserves_balance(self, db_session, test_user, approved_loan, fake_gateway):
        """Test a second push cannot promise more than the unreserved balance"""
        service = PaymentService(db_session, fake_gateway)
        await service.initiate_payment(test_user.id, approved_loan.id, "0712345678", Decimal("1000"))

        with pytest.raises(ValidationError) as exc_info:
            await service.initiate_payment(test_user.id, approved_loan.id, "0712345678", Decimal("500"))

        assert exc_info.value.code == "PAYMENT_IN_PROGRESS"
        assert len(fake_gateway.calls) == 1

        # The unreserved remainder can still be paid
        await service.initiate_payment(test_user.id, approved_loan.id, "0712345678", Decimal("200"))
        assert await request_count(db_session) == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pending_loan_not_payable(self, db_session, test_user, fake_gateway):
        loan = await LoanService(db_session).apply_for_loan(test_user.id, Decimal("1000"))

        with pytest.raises(InvalidTransitionError):
            await PaymentService(db_session, fake_gateway).initiate_payment(
                test_user.id, loan.id, "0712345678", Decimal("100")
            )

        assert fake_gateway.calls == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_other_borrowers_loan(self, db_session, admin_user, approved_loan, fake_gateway):
        with pytest.raises(NotFoundError):
            await PaymentService(db_session, fake_gateway).initiate_payment(
                admin_user.id, approved_loan.id, "0712345678", Decimal("100")
            )

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize("phone", ["", "12345", "0812345678", "+1555123456"])
    async def test_invalid_phone(self, db_session, test_user, approved_loan, fake_gateway, phone):
        with pytest.raises(ValidationError):
            await PaymentService(db_session, fake_gateway).initiate_payment(
                test_user.id, approved_loan.id, phone, Decimal("100")
            )

        assert fake_gateway.calls == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_failure_records_nothing(self, db_session, test_user, approved_loan):
        with pytest.raises(GatewayError) as exc_info:
            await PaymentService(db_session, FailingGateway()).initiate_payment(
                test_user.id, approved_loan.id, "0712345678", Decimal("100")
            )

        assert exc_info.value.provider_message == "Invalid Access Token"
        assert await request_count(db_session) == 0
