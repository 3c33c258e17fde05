from fastapi import APIRouter, Depends, Request

from custody.dependencies import get_orchestrator
from custody.middlewares.rate_limit import limiter
from custody.schemas.account import StatsOut, TransferOut, TransferRequest
from custody.services.orchestrator import WalletOrchestrator

router = APIRouter()


@router.post("/transfers", response_model=TransferOut)
@limiter.limit("20/minute")
def request_transfer(request: Request, payload: TransferRequest, wallet: WalletOrchestrator = Depends(get_orchestrator)):
    return wallet.request_transfer(payload.from_account_id, payload.to_account_id, payload.amount, payload.description)


@router.get("/stats", response_model=StatsOut)
def get_stats(wallet: WalletOrchestrator = Depends(get_orchestrator)):
    return wallet.get_stats()
