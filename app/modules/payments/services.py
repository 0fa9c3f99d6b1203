"""
Payment initiation and callback reconciliation.

The reconciler never reads a payment request and then writes it back.
A request is claimed with one conditional UPDATE keyed on
``status = 'pending'``; only the delivery whose UPDATE matched a row goes on
to credit the loan, in the same transaction.
"""
import logging
import time
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    DuplicateOrUnknownCallback, InvalidTransitionError, NotFoundError, ValidationError
)
from app.core.security import mask_phone
from app.modules.loans import ledger, state_machine
from app.modules.loans.models import (
    LoanPaymentRequest, PaymentRequestStatus, PaymentSource, utcnow
)
from app.modules.loans.services import lock_loan
from app.modules.loans.state_machine import LoanAction
from app.modules.payments.gateway import PaymentGateway, normalize_phone
from app.modules.payments.schemas import (
    StkCallbackEnvelope, StkCallback, ReconcileResult, ReconcileReason,
    PaymentInitiationResponse
)

logger = logging.getLogger(__name__)


class PaymentService:
    """Borrower-initiated push payments"""

    def __init__(self, db: AsyncSession, gateway: PaymentGateway):
        self.db = db
        self.gateway = gateway

    async def reserved_amount(self, loan_id: int) -> Decimal:
        """Sum of recent pending requests that still hold part of the balance"""
        cutoff = utcnow() - timedelta(seconds=settings.PAYMENT_REQUEST_HOLD_SECONDS)
        result = await self.db.execute(
            select(func.coalesce(func.sum(LoanPaymentRequest.amount), 0)).where(
                LoanPaymentRequest.loan_id == loan_id,
                LoanPaymentRequest.status == PaymentRequestStatus.PENDING,
                LoanPaymentRequest.created_at >= cutoff,
            )
        )
        return ledger.to_money(result.scalar() or 0)

    async def initiate_payment(
        self,
        user_id: int,
        loan_id: int,
        phone: str,
        amount
    ) -> PaymentInitiationResponse:
        """
        Push a payment prompt to the borrower's phone.

        Initiations for the same loan are serialized by the loan row lock,
        and amounts already promised by recent pending requests are not
        available to a second initiation.
        """
        try:
            amount = ledger.to_money(amount)
        except (InvalidOperation, ValueError):
            raise ValidationError("Please enter a valid payment amount", code="INVALID_AMOUNT")
        if amount <= 0:
            raise ValidationError("Please enter a valid payment amount", code="INVALID_AMOUNT")
        normalized_phone = normalize_phone(phone)

        try:
            loan = await lock_loan(self.db, loan_id)
            if loan is None or loan.user_id != user_id:
                raise NotFoundError("Loan not found", code="LOAN_NOT_FOUND", loan_id=loan_id)

            state_machine.ensure_allowed(loan.status, LoanAction.INITIATE_PAYMENT)

            remaining = ledger.to_money(loan.remaining_balance)
            if amount > remaining:
                raise ValidationError(
                    f"Amount exceeds remaining balance of {remaining}",
                    code="AMOUNT_EXCEEDS_BALANCE",
                    remaining_balance=remaining,
                )

            reserved = await self.reserved_amount(loan.id)
            if amount > remaining - reserved:
                raise ValidationError(
                    "A pending payment request already covers part of this balance",
                    code="PAYMENT_IN_PROGRESS",
                    remaining_balance=remaining,
                    pending_amount=reserved,
                )

            account_reference = f"LOAN-{loan.id}-{int(time.time() * 1000) % 10000:04d}"
            result = await self.gateway.initiate(
                normalized_phone,
                amount,
                account_reference,
                f"Loan payment for {loan.id}",
            )

            ledger.record_payment_request(
                loan,
                correlation_id=result.correlation_id,
                amount=amount,
                phone=normalized_phone,
                merchant_request_id=result.provider_request_id,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Payment request {result.correlation_id} of {amount} recorded for loan {loan_id} "
            f"({mask_phone(normalized_phone)})"
        )
        return PaymentInitiationResponse(
            correlation_id=result.correlation_id,
            merchant_request_id=result.provider_request_id,
            amount=amount,
            loan_id=loan_id,
            customer_message=result.customer_message,
        )


class PaymentReconciler:
    """Applies gateway callbacks to loans exactly once per correlation id"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def apply(self, payload: Dict[str, Any]) -> ReconcileResult:
        try:
            callback = StkCallbackEnvelope.model_validate(payload).body.stk_callback
        except PydanticValidationError as e:
            logger.warning(f"Discarding malformed payment callback: {e.error_count()} validation errors")
            return ReconcileResult(applied=False, reason=ReconcileReason.MALFORMED_PAYLOAD)

        correlation_id = callback.checkout_request_id

        if not callback.succeeded:
            marked = await self._mark_failed(correlation_id, callback.result_code, callback.result_desc)
            logger.info(
                f"Payment {correlation_id} failed at gateway "
                f"(code {callback.result_code}: {callback.result_desc}); request updated: {marked}"
            )
            return ReconcileResult(
                applied=False,
                reason=ReconcileReason.GATEWAY_FAILURE,
                correlation_id=correlation_id,
            )

        metadata = callback.metadata()
        try:
            amount = ledger.to_money(metadata.get("Amount"))
        except (InvalidOperation, ValueError, TypeError):
            amount = None
        if amount is None or amount <= 0:
            logger.warning(f"Callback {correlation_id} carries no usable amount")
            return ReconcileResult(
                applied=False,
                reason=ReconcileReason.MALFORMED_PAYLOAD,
                correlation_id=correlation_id,
            )

        try:
            loan_id = await self._claim(correlation_id, callback)
        except DuplicateOrUnknownCallback:
            await self.db.rollback()
            logger.info(f"Callback {correlation_id} already processed or unknown; ignoring")
            return ReconcileResult(
                applied=False,
                reason=ReconcileReason.ALREADY_PROCESSED_OR_UNKNOWN,
                correlation_id=correlation_id,
            )
        except Exception:
            await self.db.rollback()
            raise

        try:
            loan = await lock_loan(self.db, loan_id)
            payment = ledger.apply_payment(
                loan,
                amount,
                reference=_text(metadata.get("MpesaReceiptNumber")) or correlation_id,
                phone=_text(metadata.get("PhoneNumber")),
                transaction_date=_text(metadata.get("TransactionDate")),
                correlation_id=correlation_id,
                source=PaymentSource.MPESA,
            )
            await self.db.commit()
        except InvalidTransitionError as e:
            await self.db.rollback()
            await self._mark_failed(
                correlation_id,
                callback.result_code,
                f"Loan not payable: {e.current_status}",
            )
            logger.error(
                f"Payment {correlation_id} of {amount} received for loan {loan_id} in "
                f"'{e.current_status}' status; needs manual reconciliation"
            )
            return ReconcileResult(
                applied=False,
                reason=ReconcileReason.LOAN_NOT_PAYABLE,
                loan_id=loan_id,
                correlation_id=correlation_id,
            )
        except Exception:
            await self.db.rollback()
            logger.exception(f"Failed to apply payment {correlation_id}; changes rolled back")
            raise

        if payment.excess_amount > 0:
            logger.warning(
                f"Payment {correlation_id} overpaid loan {loan_id} by {payment.excess_amount}"
            )
        logger.info(
            f"Applied {payment.amount} to loan {loan_id} from {correlation_id}; "
            f"remaining {loan.remaining_balance}, status '{loan.status.value}'"
        )
        return ReconcileResult(
            applied=True,
            reason=ReconcileReason.APPLIED,
            loan_id=loan_id,
            correlation_id=correlation_id,
        )

    async def _claim(self, correlation_id: str, callback: StkCallback) -> int:
        """Compare-and-swap the request from pending to completed; return its loan id"""
        result = await self.db.execute(
            update(LoanPaymentRequest)
            .where(
                LoanPaymentRequest.correlation_id == correlation_id,
                LoanPaymentRequest.status == PaymentRequestStatus.PENDING,
            )
            .values(
                status=PaymentRequestStatus.COMPLETED,
                processed_at=utcnow(),
                result_code=callback.result_code,
                result_description=callback.result_desc,
            )
            .returning(LoanPaymentRequest.loan_id)
        )
        loan_id = result.scalar_one_or_none()
        if loan_id is None:
            raise DuplicateOrUnknownCallback(f"No pending payment request {correlation_id}")
        return loan_id

    async def _mark_failed(self, correlation_id: str, result_code: int, description: Optional[str]) -> bool:
        """Compare-and-swap the request from pending to failed"""
        try:
            result = await self.db.execute(
                update(LoanPaymentRequest)
                .where(
                    LoanPaymentRequest.correlation_id == correlation_id,
                    LoanPaymentRequest.status == PaymentRequestStatus.PENDING,
                )
                .values(
                    status=PaymentRequestStatus.FAILED,
                    processed_at=utcnow(),
                    result_code=result_code,
                    result_description=(description or "")[:255],
                )
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return result.rowcount > 0

    async def expire_stale_requests(self, older_than_minutes: Optional[int] = None) -> int:
        """Fail pending requests that never received a callback"""
        minutes = older_than_minutes if older_than_minutes is not None else settings.PAYMENT_REQUEST_EXPIRY_MINUTES
        cutoff = utcnow() - timedelta(minutes=minutes)
        try:
            result = await self.db.execute(
                update(LoanPaymentRequest)
                .where(
                    LoanPaymentRequest.status == PaymentRequestStatus.PENDING,
                    LoanPaymentRequest.created_at < cutoff,
                )
                .values(
                    status=PaymentRequestStatus.FAILED,
                    processed_at=utcnow(),
                    result_description="expired",
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if result.rowcount:
            logger.info(f"Expired {result.rowcount} stale payment requests older than {minutes} minutes")
        return result.rowcount


async def handle_callback(db: AsyncSession, payload: Dict[str, Any]) -> Optional[ReconcileResult]:
    """Entry point for gateway deliveries; never raises"""
    try:
        return await PaymentReconciler(db).apply(payload)
    except Exception:
        logger.exception("Unhandled error while reconciling payment callback")
        return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)
