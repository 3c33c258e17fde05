from fastapi import APIRouter, Depends, Query, Request

from custody.dependencies import get_orchestrator
from custody.middlewares.rate_limit import limiter
from custody.schemas.account import (
    BalanceOut,
    DepositInstructionsOut,
    TransactionOut,
    WithdrawalOut,
    WithdrawalRequest,
)
from custody.services.orchestrator import WalletOrchestrator

router = APIRouter()


@router.get("/{account_id}/balance", response_model=BalanceOut)
def get_balance(account_id: int, wallet: WalletOrchestrator = Depends(get_orchestrator)):
    return {"account_id": account_id, "balance": wallet.get_balance(account_id)}


@router.get("/{account_id}/history", response_model=list[TransactionOut])
def get_history(
    account_id: int,
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    wallet: WalletOrchestrator = Depends(get_orchestrator),
):
    # Transfers store the sender's balance on the row; show each side its own.
    return [
        {**TransactionOut.model_validate(row).model_dump(), "balance_after": row.balance_after_for(account_id)}
        for row in wallet.get_history(account_id, limit=limit, offset=offset)
    ]


@router.post("/{account_id}/deposit-address", response_model=DepositInstructionsOut)
def request_deposit(account_id: int, wallet: WalletOrchestrator = Depends(get_orchestrator)):
    return wallet.request_deposit(account_id)


@router.post("/{account_id}/withdrawals", response_model=WithdrawalOut)
@limiter.limit("5/minute")
def request_withdrawal(
    request: Request,
    account_id: int,
    payload: WithdrawalRequest,
    wallet: WalletOrchestrator = Depends(get_orchestrator),
):
    return wallet.request_withdrawal(account_id, payload.address, payload.amount)
