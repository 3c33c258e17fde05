from custody.models.account import Account, SystemAccount
from custody.models.ledger_transaction import LedgerTransaction, TransactionKind, TransactionStatus
from custody.models.processed_deposit import ProcessedDeposit, DepositStatus
from custody.models.account_lock import AccountLock, LockKind

__all__ = [
    "Account",
    "SystemAccount",
    "LedgerTransaction",
    "TransactionKind",
    "TransactionStatus",
    "ProcessedDeposit",
    "DepositStatus",
    "AccountLock",
    "LockKind",
]
