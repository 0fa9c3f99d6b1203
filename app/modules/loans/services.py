import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import LimitExceededError, NotFoundError, ValidationError
from app.modules.limits.services import LimitService, LimitValidator, limits_of
from app.modules.loans import ledger, state_machine
from app.modules.loans.models import Loan, LoanStatus, LoanCategory, PaymentSource, utcnow
from app.modules.loans.state_machine import ACTIVE_STATES, OUTSTANDING_STATES, LoanAction

logger = logging.getLogger(__name__)


async def lock_loan(db: AsyncSession, loan_id: int) -> Optional[Loan]:
    """Load a loan with its owned records, holding a row lock until commit"""
    result = await db.execute(
        select(Loan)
        .where(Loan.id == loan_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


class LoanService:
    """Loan applications, borrower edits and admin lifecycle actions"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ============================================================
    # Queries
    # ============================================================

    async def get_loan(self, loan_id: int) -> Loan:
        result = await self.db.execute(select(Loan).where(Loan.id == loan_id))
        loan = result.scalar_one_or_none()
        if loan is None:
            raise NotFoundError("Loan not found", code="LOAN_NOT_FOUND", loan_id=loan_id)
        return loan

    async def get_user_loan(self, user_id: int, loan_id: int) -> Loan:
        loan = await self.get_loan(loan_id)
        if loan.user_id != user_id:
            raise NotFoundError("Loan not found", code="LOAN_NOT_FOUND", loan_id=loan_id)
        return loan

    async def get_user_loans(self, user_id: int) -> List[Loan]:
        result = await self.db.execute(
            select(Loan).where(Loan.user_id == user_id).order_by(Loan.created_at.desc(), Loan.id.desc())
        )
        return list(result.scalars().all())

    async def list_loans(
        self,
        status: Optional[LoanStatus] = None,
        user_id: Optional[int] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[Loan], int]:
        """List all loans with filtering"""
        query = select(Loan)
        if status:
            query = query.where(Loan.status == status)
        if user_id:
            query = query.where(Loan.user_id == user_id)

        count_result = await self.db.execute(select(func.count()).select_from(query.subquery()))
        total = count_result.scalar()

        query = query.order_by(Loan.created_at.desc(), Loan.id.desc())
        query = query.offset((page - 1) * page_size).limit(page_size)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def list_overdue(self, as_of: Optional[datetime] = None) -> List[Loan]:
        """Outstanding loans past their repayment date; defaulting them stays an admin decision"""
        as_of = as_of or utcnow()
        result = await self.db.execute(
            select(Loan)
            .where(Loan.status.in_(list(OUTSTANDING_STATES)), Loan.repayment_date < as_of)
            .order_by(Loan.repayment_date.asc())
        )
        return list(result.scalars().all())

    # ============================================================
    # Borrower actions
    # ============================================================

    async def apply_for_loan(self, user_id: int, loan_amount) -> Loan:
        """
        Create a pending loan after the limit checks.

        The borrower's user row stays locked until commit so two concurrent
        applications from the same borrower cannot both pass the checks.
        """
        amount = _parse_amount(loan_amount, "Loan amount is required")

        try:
            user = await LimitService(self.db).get_user(user_id, for_update=True)
            await self._ensure_no_active_loan(user)
            await LimitValidator(self.db).enforce(user, amount)

            loan = ledger.open_loan(
                user_id=user.id,
                loan_amount=amount,
                interest_rate=settings.LOAN_INTEREST_RATE,
                repayment_date=utcnow() + timedelta(days=settings.LOAN_TERM_DAYS),
            )
            self.db.add(loan)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(loan)
        logger.info(f"Loan {loan.id} of {loan.loan_amount} created for user {user_id}")
        return loan

    async def update_loan(
        self,
        user_id: int,
        loan_id: int,
        loan_amount,
        repayment_date: Optional[datetime] = None
    ) -> Loan:
        """Borrower edit of a pending or rejected loan; the loan goes back to pending"""
        amount = _parse_amount(loan_amount, "Loan amount is required")

        try:
            loan = await lock_loan(self.db, loan_id)
            if loan is None or loan.user_id != user_id:
                raise NotFoundError("Loan not found", code="LOAN_NOT_FOUND", loan_id=loan_id)
            state_machine.ensure_allowed(loan.status, LoanAction.EDIT)

            user = await LimitService(self.db).get_user(user_id, for_update=True)
            await self._ensure_no_active_loan(user, exclude_loan_id=loan.id)
            await LimitValidator(self.db).enforce(user, amount)

            ledger.reprice(loan, amount, settings.LOAN_INTEREST_RATE, repayment_date)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Loan {loan_id} updated by user {user_id}")
        return loan

    async def _ensure_no_active_loan(self, user, exclude_loan_id: Optional[int] = None) -> None:
        """Refuse a second pending, approved or partially paid loan for the borrower"""
        query = select(Loan.id).where(
            Loan.user_id == user.id,
            Loan.status.in_(list(ACTIVE_STATES)),
        )
        if exclude_loan_id is not None:
            query = query.where(Loan.id != exclude_loan_id)

        active = await self.db.execute(query.limit(1))
        if active.scalar_one_or_none() is not None:
            raise LimitExceededError(
                "You already have an active loan",
                code="ACTIVE_LOAN_EXISTS",
                limit_info=limits_of(user).model_dump(mode="json"),
            )

    async def delete_loan(self, user_id: int, loan_id: int) -> None:
        try:
            loan = await lock_loan(self.db, loan_id)
            if loan is None or loan.user_id != user_id:
                raise NotFoundError("Loan not found", code="LOAN_NOT_FOUND", loan_id=loan_id)
            state_machine.ensure_allowed(loan.status, LoanAction.DELETE)

            await self.db.delete(loan)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Loan {loan_id} deleted by user {user_id}")

    # ============================================================
    # Admin actions
    # ============================================================

    async def _mutate(self, loan_id: int, action: str, mutator: Callable[[Loan], object]) -> Loan:
        """Lock the loan, apply ``mutator`` and commit, or roll everything back"""
        try:
            loan = await lock_loan(self.db, loan_id)
            if loan is None:
                raise NotFoundError("Loan not found", code="LOAN_NOT_FOUND", loan_id=loan_id)
            mutator(loan)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Loan {loan_id}: {action} -> '{loan.status.value}'")
        return loan

    async def approve_loan(self, loan_id: int) -> Loan:
        return await self._mutate(loan_id, "approve", ledger.approve)

    async def reject_loan(self, loan_id: int) -> Loan:
        return await self._mutate(loan_id, "reject", ledger.reject)

    async def mark_fully_paid(self, loan_id: int) -> Loan:
        return await self._mutate(loan_id, "mark fully paid", ledger.mark_fully_paid)

    async def mark_defaulted(self, loan_id: int, reason: Optional[str] = None) -> Loan:
        return await self._mutate(
            loan_id, "mark defaulted", lambda loan: ledger.mark_defaulted(loan, reason)
        )

    async def extend_repayment(self, loan_id: int) -> Loan:
        return await self._mutate(loan_id, "extend repayment", ledger.extend_repayment)

    async def assign_category(self, loan_id: int, category: LoanCategory) -> Loan:
        return await self._mutate(
            loan_id, f"assign category {LoanCategory(category).value}",
            lambda loan: ledger.assign_category(loan, category)
        )

    async def record_manual_payment(
        self,
        loan_id: int,
        amount,
        reference: Optional[str] = None,
        phone: Optional[str] = None
    ) -> Loan:
        """Apply a repayment collected outside the push-payment flow"""
        amount = _parse_amount(amount, "Payment amount is required")

        def apply(loan: Loan) -> None:
            if amount > ledger.to_money(loan.remaining_balance):
                raise ValidationError(
                    "Payment amount exceeds remaining balance",
                    code="AMOUNT_EXCEEDS_BALANCE",
                    remaining_balance=loan.remaining_balance,
                )
            ledger.apply_payment(
                loan,
                amount,
                reference=reference or f"MANUAL-{loan.id}-{len(loan.payments) + 1}",
                phone=phone,
                source=PaymentSource.MANUAL,
            )

        return await self._mutate(loan_id, f"manual payment of {amount}", apply)


def _parse_amount(value, missing_message: str) -> Decimal:
    if value is None or value == "":
        raise ValidationError(missing_message, code="MISSING_FIELDS")
    try:
        amount = ledger.to_money(value)
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be a number", code="INVALID_AMOUNT")
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero", code="INVALID_AMOUNT")
    return amount
