"""
Admin loan limit endpoints.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.dependencies import require_admin
from app.modules.users.models import User
from app.modules.limits.schemas import (
    LoanLimitsResponse, LoanLimitsUpdate, LoanLimitsUpdateResponse,
    EligibilityRequest, EligibilityResult, LimitHistoryEntry
)
from app.modules.limits.services import LimitService, LimitValidator, limits_of

router = APIRouter(prefix="/users", tags=["admin-limits"])


@router.get("/{user_id}/loan-limits", response_model=LoanLimitsResponse)
async def get_loan_limits(user_id: int, db: AsyncSession = Depends(get_db)):
    """Current limits and their change history"""
    return await LimitService(db).get_limits(user_id)


@router.put("/{user_id}/loan-limits", response_model=LoanLimitsUpdateResponse)
async def update_loan_limits(
    user_id: int,
    data: LoanLimitsUpdate,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin)
):
    """Change one or more limits; 0 removes a limit"""
    user, changes = await LimitService(db).update_limits(user_id, data, admin.id)
    return LoanLimitsUpdateResponse(
        user_id=user.id,
        limits=limits_of(user),
        changes=[LimitHistoryEntry.model_validate(entry) for entry in changes],
    )


@router.post("/{user_id}/check-eligibility", response_model=EligibilityResult)
async def check_eligibility(
    user_id: int,
    data: EligibilityRequest,
    db: AsyncSession = Depends(get_db)
):
    """Dry-run the limit checks for a prospective loan amount"""
    user = await LimitService(db).get_user(user_id)
    return await LimitValidator(db).check_eligibility(user, data.requested_amount)
