import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException

from custody.core.config import get_settings
from custody.core.database import SessionLocal
from custody.services.chain import RestChainGateway
from custody.services.deposits import DepositScanner
from custody.services.ledger import LedgerStore
from custody.services.locks import AccountLockManager
from custody.services.orchestrator import WalletOrchestrator
from custody.services.reconciler import Reconciler


def get_session_factory():
    return SessionLocal


def get_chain_gateway():
    # Signing lives outside this service; without a signer withdrawals are refunded.
    return RestChainGateway()


def get_ledger(session_factory=Depends(get_session_factory)) -> LedgerStore:
    return LedgerStore(session_factory)


def get_lock_manager(session_factory=Depends(get_session_factory), chain=Depends(get_chain_gateway)) -> AccountLockManager:
    return AccountLockManager(session_factory, chain=chain)


def get_deposit_scanner(
    ledger: LedgerStore = Depends(get_ledger),
    chain=Depends(get_chain_gateway),
    session_factory=Depends(get_session_factory),
) -> DepositScanner:
    return DepositScanner(ledger, chain, session_factory)


def get_orchestrator(
    ledger: LedgerStore = Depends(get_ledger),
    locks: AccountLockManager = Depends(get_lock_manager),
    chain=Depends(get_chain_gateway),
    deposits: DepositScanner = Depends(get_deposit_scanner),
) -> WalletOrchestrator:
    return WalletOrchestrator(ledger, locks, chain, deposits=deposits)


def get_reconciler(ledger: LedgerStore = Depends(get_ledger), chain=Depends(get_chain_gateway)) -> Reconciler:
    return Reconciler(ledger, chain)


def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> None:
    expected = get_settings().admin_api_key
    if not expected:
        raise HTTPException(status_code=403, detail="Admin access is disabled")
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        raise HTTPException(status_code=403, detail="Admin access required")
