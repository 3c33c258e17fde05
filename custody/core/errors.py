"""Error taxonomy for ledger, lock, deposit and withdrawal operations.

Every error carries the HTTP status the API layer answers with, so services
stay free of FastAPI imports while endpoints can surface them unchanged.
"""
from decimal import Decimal
from typing import Any, Optional


class CustodyError(Exception):
    status_code = 400

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InvalidAmount(CustodyError):
    pass


class InvalidTransfer(CustodyError):
    pass


class InvalidAddress(CustodyError):
    pass


class InsufficientBalance(CustodyError):
    def __init__(self, message: str, *, balance: Decimal, requested: Decimal):
        super().__init__(message)
        self.balance = balance
        self.requested = requested


class LockConflict(CustodyError):
    """Another operation holds the account. Callers retry later."""

    status_code = 423

    def __init__(self, message: str, *, account_id: int, held_kind: Optional[str] = None, expires_at=None):
        super().__init__(message)
        self.account_id = account_id
        self.held_kind = held_kind
        self.expires_at = expires_at


class LockNotReleased(CustodyError):
    """Verify-mode release could not confirm the external transfer yet."""

    status_code = 409

    def __init__(self, message: str, *, account_id: int, external_ref: Optional[str] = None):
        super().__init__(message)
        self.account_id = account_id
        self.external_ref = external_ref


class DuplicateDeposit(CustodyError):
    status_code = 409

    def __init__(self, external_tx_id: str):
        super().__init__(f"Deposit {external_tx_id} already processed")
        self.external_tx_id = external_tx_id


class InvalidRoutingToken(CustodyError):
    status_code = 422

    def __init__(self, token: Optional[str]):
        super().__init__(f"No account routing token in memo: {token!r}")
        self.token = token


class ExternalTransferFailed(CustodyError):
    """Broadcast or on-chain rejection. The debit has already been refunded."""

    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        balance: Optional[Decimal] = None,
        external_ref: Optional[str] = None,
        transaction_id: Optional[int] = None,
    ):
        super().__init__(message)
        self.balance = balance
        self.external_ref = external_ref
        self.transaction_id = transaction_id


class ReconciliationMismatch(CustodyError):
    status_code = 409

    def __init__(self, message: str, *, report: Any = None):
        super().__init__(message)
        self.report = report


class InvalidTransition(CustodyError):
    status_code = 409


class NotFound(CustodyError):
    status_code = 404
