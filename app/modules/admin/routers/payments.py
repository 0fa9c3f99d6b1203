"""
Admin payment request maintenance.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from app.core.database import get_db
from app.modules.payments.schemas import ExpireStaleResponse
from app.modules.payments.services import PaymentReconciler

router = APIRouter(prefix="/payments", tags=["admin-payments"])


@router.post("/expire-stale", response_model=ExpireStaleResponse)
async def expire_stale_payment_requests(
    older_than_minutes: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db)
):
    """Mark pending payment requests that never got a callback as failed"""
    expired = await PaymentReconciler(db).expire_stale_requests(older_than_minutes)
    return ExpireStaleResponse(expired=expired)
