import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.dependencies import get_current_active_user
from app.modules.users.models import User
from app.modules.payments.gateway import PaymentGateway, get_payment_gateway
from app.modules.payments.schemas import (
    PaymentInitiationRequest, PaymentInitiationResponse, CallbackAck
)
from app.modules.payments.services import PaymentService, handle_callback

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


@router.post("/stkpush", response_model=PaymentInitiationResponse)
async def initiate_stk_push(
    data: PaymentInitiationRequest,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    current_user: User = Depends(get_current_active_user)
):
    """
    Send an M-Pesa payment prompt for one of the borrower's loans.

    The loan is credited only when the gateway confirms the payment
    through the callback endpoint.
    """
    service = PaymentService(db, gateway)
    return await service.initiate_payment(current_user.id, data.loan_id, data.phone, data.amount)


@router.post("/callback", response_model=CallbackAck)
async def payment_callback(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """
    Gateway delivery endpoint.

    Always acknowledged so the gateway stops retrying; duplicates, unknown
    ids and malformed bodies are logged and dropped.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Discarding payment callback with a non-JSON body")
        return CallbackAck()

    result = await handle_callback(db, payload if isinstance(payload, dict) else {})
    if result is not None:
        logger.debug(f"Callback outcome: {result.reason.value}")
    return CallbackAck()
