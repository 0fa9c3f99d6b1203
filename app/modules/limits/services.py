"""
Lending limit evaluation and administration.

The eligibility check is a snapshot read of the borrower's outstanding
loans followed by creation in the caller's transaction. Other users' data
is irrelevant to the check, and applications by the same borrower are
serialized by the user row lock taken in ``LoanService.apply_for_loan``;
an admin approval step follows before any money moves.
"""
import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import LimitExceededError, NotFoundError, ValidationError
from app.modules.limits.models import LoanLimitHistory
from app.modules.limits.schemas import (
    LimitType, LimitViolation, LimitUsage, LoanLimits, EligibilityResult,
    LoanLimitsUpdate, LoanLimitsResponse, LimitHistoryEntry
)
from app.modules.loans.models import Loan, utcnow
from app.modules.loans.ledger import to_money
from app.modules.loans.state_machine import OUTSTANDING_STATES
from app.modules.users.models import User

logger = logging.getLogger(__name__)

LIMIT_COLUMNS = {
    LimitType.MAX_TOTAL_LOAN_AMOUNT: "max_total_loan_amount",
    LimitType.MAX_ACTIVE_LOANS: "max_active_loans",
    LimitType.MAX_LOAN_AMOUNT_PER_REQUEST: "max_loan_amount_per_request",
}


def limits_of(user: User) -> LoanLimits:
    return LoanLimits(**user.loan_limits)


def evaluate_limits(limits: LoanLimits, requested_amount: Decimal, usage: LimitUsage) -> List[LimitViolation]:
    """Return every limit the request would break; a limit of 0 is never checked"""
    violations = []
    requested = to_money(requested_amount)

    per_request = to_money(limits.max_loan_amount_per_request)
    if per_request > 0 and requested > per_request:
        violations.append(LimitViolation(
            limit_type=LimitType.MAX_LOAN_AMOUNT_PER_REQUEST,
            limit_value=per_request,
            current_value=requested,
            message=f"Requested amount exceeds your per-loan limit of {per_request}",
        ))

    max_active = limits.max_active_loans
    if max_active > 0 and usage.active_loan_count >= max_active:
        violations.append(LimitViolation(
            limit_type=LimitType.MAX_ACTIVE_LOANS,
            limit_value=Decimal(max_active),
            current_value=Decimal(usage.active_loan_count),
            message=f"You already have {usage.active_loan_count} active loans (limit: {max_active})",
        ))

    max_total = to_money(limits.max_total_loan_amount)
    projected = to_money(usage.total_outstanding) + requested
    if max_total > 0 and projected > max_total:
        violations.append(LimitViolation(
            limit_type=LimitType.MAX_TOTAL_LOAN_AMOUNT,
            limit_value=max_total,
            current_value=projected,
            message=f"This loan would exceed your total outstanding limit of {max_total}",
        ))

    return violations


class LimitValidator:
    """Evaluates a borrower's configured limits against their outstanding loans"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def usage(self, user_id: int) -> LimitUsage:
        result = await self.db.execute(
            select(Loan.remaining_balance).where(
                Loan.user_id == user_id,
                Loan.status.in_(list(OUTSTANDING_STATES)),
            )
        )
        balances = [to_money(balance) for balance in result.scalars().all()]
        return LimitUsage(
            total_outstanding=sum(balances, Decimal("0.00")),
            active_loan_count=len(balances),
        )

    async def check_eligibility(self, user: User, requested_amount: Decimal) -> EligibilityResult:
        """Dry run: report violations without changing anything"""
        usage = await self.usage(user.id)
        limits = limits_of(user)
        violations = evaluate_limits(limits, requested_amount, usage)
        return EligibilityResult(
            eligible=not violations,
            violations=violations,
            usage=usage,
            limits=limits,
        )

    async def enforce(self, user: User, requested_amount: Decimal) -> EligibilityResult:
        """Raise LimitExceededError if any limit would be violated"""
        result = await self.check_eligibility(user, requested_amount)
        if not result.eligible:
            first = result.violations[0]
            logger.info(
                f"Loan request of {requested_amount} by user {user.id} rejected: "
                f"{', '.join(v.limit_type.value for v in result.violations)}"
            )
            raise LimitExceededError(
                first.message,
                violations=[v.model_dump(mode="json") for v in result.violations],
                code="LOAN_LIMIT_EXCEEDED",
                limit_info=limits_of(user).model_dump(mode="json"),
                current_usage=result.usage.model_dump(mode="json"),
            )
        return result


class LimitService:
    """Admin management of per-user lending limits"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user(self, user_id: int, for_update: bool = False) -> User:
        query = select(User).where(User.id == user_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFoundError("User not found", code="USER_NOT_FOUND", user_id=user_id)
        return user

    async def get_history(self, user_id: int) -> List[LoanLimitHistory]:
        result = await self.db.execute(
            select(LoanLimitHistory)
            .where(LoanLimitHistory.user_id == user_id)
            .order_by(LoanLimitHistory.changed_at.desc(), LoanLimitHistory.id.desc())
        )
        return list(result.scalars().all())

    async def get_limits(self, user_id: int) -> LoanLimitsResponse:
        user = await self.get_user(user_id)
        history = await self.get_history(user_id)
        return LoanLimitsResponse(
            user_id=user.id,
            limits=limits_of(user),
            history=[LimitHistoryEntry.model_validate(h) for h in history],
        )

    async def update_limits(
        self,
        user_id: int,
        data: LoanLimitsUpdate,
        changed_by: Optional[int]
    ) -> Tuple[User, List[LoanLimitHistory]]:
        """Apply limit changes and their audit rows in one transaction"""
        requested = {
            limit_type: getattr(data, column)
            for limit_type, column in LIMIT_COLUMNS.items()
            if getattr(data, column) is not None
        }
        if not requested:
            raise ValidationError("At least one limit value must be provided", code="MISSING_FIELDS")

        reason = data.change_reason or "No reason provided"
        try:
            user = await self.get_user(user_id, for_update=True)
            now = utcnow()
            changes = []
            for limit_type, new_value in requested.items():
                column = LIMIT_COLUMNS[limit_type]
                old_value = getattr(user, column) or 0
                setattr(user, column, new_value)
                entry = LoanLimitHistory(
                    user_id=user.id,
                    limit_type=limit_type.value,
                    old_value=Decimal(str(old_value)),
                    new_value=Decimal(str(new_value)),
                    changed_by=changed_by,
                    change_reason=reason,
                    changed_at=now,
                )
                self.db.add(entry)
                changes.append(entry)

            user.limits_updated_at = now
            user.limits_updated_by = changed_by
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        for entry in changes:
            await self.db.refresh(entry)
        logger.info(
            f"Loan limits for user {user_id} changed by {changed_by}: "
            f"{', '.join(f'{t.value}={v}' for t, v in requested.items())}"
        )
        return user, changes
