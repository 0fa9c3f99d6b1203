"""
Admin module sub-routers organized by domain.
"""
from fastapi import APIRouter, Depends

from app.core.dependencies import require_admin
from app.modules.admin.routers.loans import router as loans_router
from app.modules.admin.routers.limits import router as limits_router
from app.modules.admin.routers.payments import router as payments_router

# Main admin router; every endpoint requires the admin role
router = APIRouter(prefix="/api/v1/admin", tags=["admin"], dependencies=[Depends(require_admin)])

# Include all sub-routers
router.include_router(loans_router)
router.include_router(limits_router)
router.include_router(payments_router)
