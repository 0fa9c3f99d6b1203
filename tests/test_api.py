"""
API endpoint tests
"""
import pytest
from decimal import Decimal

from sqlalchemy import select

from app.modules.loans.models import LoanPaymentRequest, LoanStatus


class TestHealthEndpoints:
    """Tests for health check endpoints"""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_health_check(self, client):
        """Test health check endpoint"""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert "version" in data


class TestAuthRequired:
    """Tests that verify auth is required"""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_loans_requires_auth(self, client):
        response = await client.get("/api/v1/loans")

        assert response.status_code == 401

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stkpush_requires_auth(self, client):
        response = await client.post("/api/v1/payments/stkpush", json={})

        assert response.status_code == 401

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_routes_require_admin(self, client, auth_headers):
        response = await client.get("/api/v1/admin/loans", headers=auth_headers)

        assert response.status_code == 403


class TestLoanEndpoints:
    """Tests for borrower loan endpoints"""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_apply_and_list(self, client, auth_headers):
        response = await client.post("/api/v1/loans/apply", json={"loan_amount": "1000"}, headers=auth_headers)

        assert response.status_code == 201
        data = response.json()
        assert data["message"] == "Loan application submitted successfully!"
        assert data["interest_rate"] == "20%"
        assert Decimal(data["loan"]["total_repayment"]) == Decimal("1200.00")
        assert data["loan"]["status"] == "pending"

        response = await client.get("/api/v1/loans", headers=auth_headers)
        assert response.status_code == 200
        assert len(response.json()["loans"]) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_limit_violation_response(self, client, auth_headers):
        response = await client.post("/api/v1/loans/apply", json={"loan_amount": "25000"}, headers=auth_headers)

        assert response.status_code == 400
        data = response.json()
        assert data["code"] == "LOAN_LIMIT_EXCEEDED"
        assert data["violations"][0]["limit_type"] == "maxLoanAmountPerRequest"
        assert "limit_info" in data

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_loan_is_404(self, client, auth_headers):
        response = await client.get("/api/v1/loans/9999", headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["code"] == "LOAN_NOT_FOUND"


class TestPaymentEndpoints:
    """Tests for STK push and callback endpoints"""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stkpush(self, client, auth_headers, approved_loan, fake_gateway):
        response = await client.post(
            "/api/v1/payments/stkpush",
            json={"loan_id": approved_loan.id, "phone": "0712345678", "amount": "300"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["correlation_id"] == "ws_CO_TEST_0001"
        assert fake_gateway.calls[0]["phone"] == "254712345678"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stkpush_on_closed_loan_is_409(self, client, auth_headers, admin_headers, approved_loan):
        await client.put(f"/api/v1/admin/loans/{approved_loan.id}/mark-paid", headers=admin_headers)

        response = await client.post(
            "/api/v1/payments/stkpush",
            json={"loan_id": approved_loan.id, "phone": "0712345678", "amount": "300"},
            headers=auth_headers,
        )

        assert response.status_code == 409

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_callback_applies_payment(self, client, db_session, approved_loan, pending_request, make_callback):
        response = await client.post(
            "/api/v1/payments/callback",
            json=make_callback(pending_request.correlation_id, 500),
        )

        assert response.status_code == 200
        assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

        await db_session.refresh(approved_loan)
        assert approved_loan.status == LoanStatus.PARTIALLY_PAID
        assert approved_loan.remaining_balance == Decimal("700.00")

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b"not json", b"[]", b'{"Body": null}'])
    async def test_callback_always_acknowledged(self, client, body):
        response = await client.post(
            "/api/v1/payments/callback",
            content=body,
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["ResultCode"] == 0


class TestAdminEndpoints:
    """Tests for admin loan, limit and payment endpoints"""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approve_flow(self, client, auth_headers, admin_headers):
        created = await client.post("/api/v1/loans/apply", json={"loan_amount": "1000"}, headers=auth_headers)
        loan_id = created.json()["loan"]["id"]

        response = await client.put(f"/api/v1/admin/loans/{loan_id}/approve", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "approved"

        response = await client.put(f"/api/v1/admin/loans/{loan_id}/approve", headers=admin_headers)
        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_TRANSITION"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_list_loans(self, client, admin_headers, approved_loan):
        response = await client.get("/api/v1/admin/loans", params={"status": "approved"}, headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["total_pages"] == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_manual_payment(self, client, admin_headers, approved_loan):
        response = await client.post(
            f"/api/v1/admin/loans/{approved_loan.id}/payments",
            json={"amount": "1200", "reference": "BANK-77"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "fully paid"
        assert data["payments"][0]["source"] == "manual"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_update_and_read_limits(self, client, admin_headers, test_user):
        response = await client.put(
            f"/api/v1/admin/users/{test_user.id}/loan-limits",
            json={"max_loan_amount_per_request": "30000", "change_reason": "Salary review"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["limits"]["max_loan_amount_per_request"]) == Decimal("30000")
        assert data["changes"][0]["limit_type"] == "maxLoanAmountPerRequest"

        response = await client.get(f"/api/v1/admin/users/{test_user.id}/loan-limits", headers=admin_headers)
        assert len(response.json()["history"]) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_check_eligibility(self, client, admin_headers, test_user):
        response = await client.post(
            f"/api/v1/admin/users/{test_user.id}/check-eligibility",
            json={"requested_amount": "25000"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["eligible"] is False
        assert data["violations"][0]["limit_type"] == "maxLoanAmountPerRequest"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expire_stale(self, client, db_session, admin_headers, pending_request):
        response = await client.post(
            "/api/v1/admin/payments/expire-stale",
            params={"older_than_minutes": 60},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json() == {"expired": 0}

        result = await db_session.execute(select(LoanPaymentRequest.status))
        assert result.scalar_one().value == "pending"
