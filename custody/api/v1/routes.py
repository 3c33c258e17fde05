from fastapi import APIRouter
from custody.api.v1.endpoints import accounts, admin, transfers

router = APIRouter()

router.include_router(accounts.router, prefix="/accounts", tags=["accounts"])
router.include_router(transfers.router, tags=["transfers"])
router.include_router(admin.router, prefix="/admin", tags=["admin"])
