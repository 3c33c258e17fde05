import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from custody.dependencies import (
    get_deposit_scanner,
    get_lock_manager,
    get_orchestrator,
    get_reconciler,
    require_admin,
)
from custody.models import DepositStatus
from custody.schemas.account import TransactionOut, WithdrawalOut
from custody.schemas.admin import (
    AssignDepositRequest,
    DepositOut,
    DepositOutcomeOut,
    LockOut,
    LockReleaseOut,
    ReconciliationOut,
    ScanReportOut,
    SettleWithdrawalRequest,
    SweepOut,
)
from custody.services.deposits import DepositScanner
from custody.services.locks import AccountLockManager, ReleaseMode
from custody.services.orchestrator import WalletOrchestrator
from custody.services.reconciler import Reconciler

router = APIRouter(dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


def _coerce_status(value: Optional[str]) -> Optional[DepositStatus]:
    if value is None:
        return None
    raw = value.strip()
    if not raw:
        return None
    for member in DepositStatus:
        if raw.lower() == member.value:
            return member
    raise HTTPException(status_code=400, detail="Invalid status")


@router.get("/locks", response_model=list[LockOut])
def list_locks(locks: AccountLockManager = Depends(get_lock_manager)):
    return locks.active_locks()


@router.delete("/locks/{account_id}", response_model=LockReleaseOut)
def release_lock(
    account_id: int,
    mode: ReleaseMode = Query(default=ReleaseMode.FORCE),
    external_ref: Optional[str] = Query(default=None, max_length=128),
    locks: AccountLockManager = Depends(get_lock_manager),
):
    released = locks.release(account_id, external_ref=external_ref, mode=mode)
    if mode == ReleaseMode.FORCE and released:
        logger.warning("Admin force-released lock account=%s", account_id)
    return {"account_id": account_id, "released": released}


@router.post("/locks/sweep", response_model=SweepOut)
def sweep_locks(locks: AccountLockManager = Depends(get_lock_manager)):
    return {"swept": locks.sweep_expired()}


@router.get("/deposits", response_model=list[DepositOut])
def list_deposits(
    status: Optional[str] = None,
    unclaimed: bool = False,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    scanner: DepositScanner = Depends(get_deposit_scanner),
):
    return scanner.list_deposits(status=_coerce_status(status), unclaimed_only=unclaimed, limit=limit, offset=offset)


@router.post("/deposits/scan", response_model=ScanReportOut)
def scan_deposits(scanner: DepositScanner = Depends(get_deposit_scanner)):
    report = scanner.poll()
    return {
        "seen": report.seen,
        "credited": report.credited,
        "unclaimed": report.unclaimed,
        "duplicates": report.duplicates,
        "discarded": report.discarded,
        "failed": report.failed,
        "last_seen_height": report.last_seen_height,
    }


@router.post("/deposits/{tx_id}/check", response_model=DepositOutcomeOut)
def check_deposit(tx_id: str, scanner: DepositScanner = Depends(get_deposit_scanner)):
    return scanner.scan_transaction(tx_id)


@router.post("/deposits/{tx_id}/reprocess", response_model=DepositOutcomeOut)
def reprocess_deposit(tx_id: str, scanner: DepositScanner = Depends(get_deposit_scanner)):
    return scanner.reprocess(tx_id)


@router.post("/deposits/{tx_id}/assign", response_model=DepositOut)
def assign_deposit(tx_id: str, payload: AssignDepositRequest, scanner: DepositScanner = Depends(get_deposit_scanner)):
    return scanner.assign_unclaimed(tx_id, payload.account_id)


@router.post("/reconcile", response_model=ReconciliationOut)
def reconcile(reconciler: Reconciler = Depends(get_reconciler)):
    return reconciler.reconcile_and_alert()


@router.get("/withdrawals/pending", response_model=list[TransactionOut])
def list_pending_withdrawals(
    limit: int = Query(default=100, ge=1, le=500),
    wallet: WalletOrchestrator = Depends(get_orchestrator),
):
    return wallet.pending_withdrawals(limit=limit)


@router.post("/withdrawals/{transaction_id}/settle", response_model=WithdrawalOut)
def settle_withdrawal(
    transaction_id: int,
    payload: SettleWithdrawalRequest,
    wallet: WalletOrchestrator = Depends(get_orchestrator),
):
    return wallet.resolve_withdrawal(transaction_id, payload.action, payload.reason)
