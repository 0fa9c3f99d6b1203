"""
Admin loan management endpoints.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from app.core.database import get_db
from app.modules.loans.models import LoanStatus
from app.modules.loans.schemas import (
    LoanResponse, AdminLoanListResponse, LoanDefaultRequest, LoanCategoryRequest
)
from app.modules.loans.services import LoanService
from app.modules.payments.schemas import ManualPaymentRequest

router = APIRouter(prefix="/loans", tags=["admin-loans"])


@router.get("", response_model=AdminLoanListResponse)
async def list_loans(
    status: Optional[LoanStatus] = None,
    user_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db)
):
    """List all loans with filtering"""
    loans, total = await LoanService(db).list_loans(status, user_id, page, page_size)
    return {
        "loans": loans,
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": (total + page_size - 1) // page_size
    }


@router.get("/overdue", response_model=List[LoanResponse])
async def list_overdue_loans(db: AsyncSession = Depends(get_db)):
    """Outstanding loans past their repayment date"""
    return await LoanService(db).list_overdue()


@router.get("/{loan_id}", response_model=LoanResponse)
async def get_loan(loan_id: int, db: AsyncSession = Depends(get_db)):
    return await LoanService(db).get_loan(loan_id)


@router.put("/{loan_id}/approve", response_model=LoanResponse)
async def approve_loan(loan_id: int, db: AsyncSession = Depends(get_db)):
    return await LoanService(db).approve_loan(loan_id)


@router.put("/{loan_id}/reject", response_model=LoanResponse)
async def reject_loan(loan_id: int, db: AsyncSession = Depends(get_db)):
    return await LoanService(db).reject_loan(loan_id)


@router.put("/{loan_id}/mark-paid", response_model=LoanResponse)
async def mark_loan_paid(loan_id: int, db: AsyncSession = Depends(get_db)):
    """Close a loan as fully paid; any shortfall is booked as an adjustment"""
    return await LoanService(db).mark_fully_paid(loan_id)


@router.put("/{loan_id}/mark-defaulted", response_model=LoanResponse)
async def mark_loan_defaulted(
    loan_id: int,
    data: Optional[LoanDefaultRequest] = None,
    db: AsyncSession = Depends(get_db)
):
    reason = data.reason if data else None
    return await LoanService(db).mark_defaulted(loan_id, reason)


@router.put("/{loan_id}/extend", response_model=LoanResponse)
async def extend_loan(loan_id: int, db: AsyncSession = Depends(get_db)):
    """Push the repayment date out by one calendar month"""
    return await LoanService(db).extend_repayment(loan_id)


@router.put("/{loan_id}/category", response_model=LoanResponse)
async def assign_loan_category(
    loan_id: int,
    data: LoanCategoryRequest,
    db: AsyncSession = Depends(get_db)
):
    return await LoanService(db).assign_category(loan_id, data.category)


@router.post("/{loan_id}/payments", response_model=LoanResponse)
async def record_manual_payment(
    loan_id: int,
    data: ManualPaymentRequest,
    db: AsyncSession = Depends(get_db)
):
    """Record a repayment collected outside M-Pesa"""
    return await LoanService(db).record_manual_payment(
        loan_id, data.amount, reference=data.reference, phone=data.phone
    )
