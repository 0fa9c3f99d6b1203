from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_db
from app.core.dependencies import get_current_active_user
from app.modules.limits.services import limits_of
from app.modules.users.models import User
from app.modules.loans.schemas import (
    LoanApplicationRequest, LoanApplicationResponse, LoanUpdateRequest,
    LoanResponse, LoanListResponse, MessageResponse
)
from app.modules.loans.services import LoanService

router = APIRouter(prefix="/api/v1/loans", tags=["loans"])


@router.post("/apply", response_model=LoanApplicationResponse, status_code=status.HTTP_201_CREATED)
async def apply_for_loan(
    data: LoanApplicationRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """
    Apply for a loan.

    - Rejects the request if the borrower already has an active loan
    - Checks per-request, active-loan and total-outstanding limits
    - Interest is charged once; repayment is due after the loan term
    """
    service = LoanService(db)
    loan = await service.apply_for_loan(current_user.id, data.loan_amount)
    return LoanApplicationResponse(
        loan=LoanResponse.model_validate(loan),
        interest_rate=f"{settings.LOAN_INTEREST_RATE * 100:.0f}%",
        limit_info=limits_of(current_user),
    )


@router.get("", response_model=LoanListResponse)
async def read_my_loans(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    service = LoanService(db)
    loans = await service.get_user_loans(current_user.id)
    return LoanListResponse(
        loans=[LoanResponse.model_validate(loan) for loan in loans],
        limit_info=limits_of(current_user),
    )


@router.get("/{loan_id}", response_model=LoanResponse)
async def read_loan(
    loan_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    service = LoanService(db)
    return await service.get_user_loan(current_user.id, loan_id)


@router.put("/{loan_id}", response_model=LoanResponse)
async def update_loan(
    loan_id: int,
    data: LoanUpdateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Edit a pending or rejected loan; it is resubmitted as pending"""
    service = LoanService(db)
    return await service.update_loan(current_user.id, loan_id, data.loan_amount, data.repayment_date)


@router.delete("/{loan_id}", response_model=MessageResponse)
async def delete_loan(
    loan_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    service = LoanService(db)
    await service.delete_loan(current_user.id, loan_id)
    return MessageResponse(message="Loan deleted successfully")
