import enum
import logging
import re
from dataclasses import dataclass
from decimal import Decimal

from custody.core.config import get_settings, parse_account_ids
from custody.core.errors import CustodyError, ExternalTransferFailed, InvalidAddress, InvalidTransfer, InvalidTransition
from custody.models import AccountLock, LedgerTransaction, LockKind, SystemAccount, TransactionKind, TransactionStatus
from custody.services.chain import BroadcastTimeout, ChainGatewayError
from custody.services.ledger import TransferOutcome
from custody.services.precision import format_amount, from_base_units, parse_amount, to_base_units


logger = logging.getLogger(__name__)


class SettleAction(str, enum.Enum):
    VERIFY = "verify"
    COMPLETE = "complete"
    FAIL = "fail"


@dataclass(frozen=True)
class WithdrawalOutcome:
    status: str
    transaction_id: int
    external_ref: str | None
    balance: Decimal
    lock_released: bool


@dataclass(frozen=True)
class DepositInstructions:
    address: str
    routing_token: str
    memo: str
    denom: str


@dataclass(frozen=True)
class WalletStats:
    wallet_address: str
    on_chain_balance: Decimal | None
    internal_total: Decimal
    treasury_balance: Decimal
    unclaimed_balance: Decimal
    active_accounts: int
    pending_deposits: int
    active_locks: int
    reconciled: bool


class WalletOrchestrator:
    """Entry point for balance-changing commands from the chat layer."""

    def __init__(self, ledger, locks, chain, settings=None, deposits=None):
        settings = settings or get_settings()
        self._ledger = ledger
        self._locks = locks
        self._chain = chain
        self._deposits = deposits
        self.custodial_address = settings.custodial_address
        self.denom = settings.chain_denom
        self.display_symbol = settings.chain_display_symbol
        self.max_account_id = int(settings.max_account_id)
        self.alert_threshold = Decimal(str(settings.reconcile_alert_threshold))
        self.excluded_accounts = parse_account_ids(settings.reconcile_excluded_accounts)
        self._address_pattern = re.compile(rf"^{re.escape(settings.chain_address_prefix)}1[0-9a-z]{{38}}$")

    def _validate_address(self, address: str) -> str:
        address = str(address or "").strip()
        if not self._address_pattern.fullmatch(address):
            raise InvalidAddress(f"Invalid destination address: {address!r}")
        if address == self.custodial_address:
            raise InvalidAddress("Cannot withdraw to the custodial wallet")
        return address

    def _validate_user_account(self, account_id: int) -> int:
        account_id = int(account_id)
        if account_id <= 0 or account_id > self.max_account_id:
            raise InvalidTransfer(f"Invalid account id: {account_id}")
        return account_id

    # -- withdrawals -----------------------------------------------------

    def request_withdrawal(self, account_id: int, address: str, amount) -> WithdrawalOutcome:
        account_id = self._validate_user_account(account_id)
        address = self._validate_address(address)
        amount = parse_amount(amount)
        units = to_base_units(amount)

        lock = self._locks.acquire(
            account_id,
            LockKind.WITHDRAWAL,
            metadata={"address": address, "amount": format_amount(amount)},
        )
        try:
            entry = self._ledger.debit(
                account_id,
                amount,
                TransactionKind.WITHDRAWAL,
                description=f"Withdrawal to {address}",
                status=TransactionStatus.PENDING,
                external_address=address,
            )
        except Exception:
            self._locks.release(account_id, token=lock.token)
            raise

        # The hash is known before anything leaves, so every later path can look the transfer up.
        try:
            signed = self._chain.prepare_transfer(address, units)
            self._ledger.set_external_ref(entry.id, signed.tx_id)
            self._locks.attach_external_ref(account_id, signed.tx_id, token=lock.token)
        except ChainGatewayError as exc:
            raise self._refund(lock, entry, exc.message) from exc
        except Exception as exc:
            logger.exception("Unexpected withdrawal signing error account=%s tx=%s", account_id, entry.id)
            raise self._refund(lock, entry, "Unexpected error while preparing the transfer") from exc

        try:
            result = self._chain.broadcast_prepared(signed)
        except BroadcastTimeout as exc:
            # No refund: the transfer may still land. Settlement happens by hash lookup.
            logger.warning(
                "Withdrawal broadcast outcome unknown account=%s tx=%s amount=%s ref=%s error=%s",
                account_id,
                entry.id,
                format_amount(amount),
                signed.tx_id,
                exc.message,
            )
            self._ledger.attach_metadata(entry.id, broadcast_error=exc.message)
            return self._pending_outcome(entry, signed.tx_id)
        except ChainGatewayError as exc:
            raise self._refund(lock, entry, exc.message, external_ref=signed.tx_id) from exc
        except Exception as exc:
            logger.exception("Unexpected withdrawal error account=%s tx=%s", account_id, entry.id)
            raise self._refund(
                lock, entry, "Unexpected error while sending the transfer", external_ref=signed.tx_id
            ) from exc

        if not result.accepted:
            raise self._refund(
                lock,
                entry,
                f"Transfer rejected by chain (code {result.status}): {result.raw_log}".strip(),
                external_ref=result.tx_id or signed.tx_id,
            )

        if result.tx_id and result.tx_id != signed.tx_id:
            logger.warning("Chain reported hash %s for prepared %s tx=%s", result.tx_id, signed.tx_id, entry.id)
        logger.info(
            "Withdrawal sent account=%s amount=%s to=%s ref=%s",
            account_id,
            format_amount(amount),
            address,
            signed.tx_id,
        )
        # Accepted into the mempool only. The entry completes once the chain confirms it.
        outcome = self.settle_withdrawal(entry.id)
        if outcome.status == TransactionStatus.FAILED.value:
            raise ExternalTransferFailed(
                "Withdrawal failed on chain. Your balance has been restored.",
                balance=outcome.balance,
                external_ref=outcome.external_ref,
                transaction_id=entry.id,
            )
        return outcome

    def _pending_outcome(self, entry: LedgerTransaction, external_ref: str | None) -> WithdrawalOutcome:
        return WithdrawalOutcome(
            status=TransactionStatus.PENDING.value,
            transaction_id=entry.id,
            external_ref=external_ref,
            balance=entry.balance_after,
            lock_released=False,
        )

    def _refund(
        self, lock: AccountLock, entry: LedgerTransaction, reason: str, external_ref: str | None = None
    ) -> ExternalTransferFailed:
        account_id = lock.account_id
        logger.warning("Withdrawal failed account=%s tx=%s reason=%s", account_id, entry.id, reason)
        try:
            refund = self._ledger.refund_pending(entry.id, reason, external_ref=external_ref)
        except Exception:
            # Leave the lock in place so nothing else moves this account's funds before review.
            logger.exception(
                "Refund failed account=%s tx=%s amount=%s", account_id, entry.id, format_amount(entry.amount)
            )
            return ExternalTransferFailed(
                f"Withdrawal failed: {reason}. The refund could not be completed and is pending review.",
                external_ref=external_ref,
                transaction_id=entry.id,
            )
        self._locks.release(account_id, token=lock.token)
        return ExternalTransferFailed(
            f"Withdrawal failed: {reason}. Your balance has been restored.",
            balance=refund.balance_after,
            external_ref=external_ref,
            transaction_id=entry.id,
        )

    def _pending_withdrawal(self, transaction_id: int) -> LedgerTransaction:
        entry = self._ledger.get_transaction(transaction_id)
        if entry.kind != TransactionKind.WITHDRAWAL or entry.status != TransactionStatus.PENDING:
            raise InvalidTransition(
                f"Transaction {transaction_id} is a {entry.status.value} {entry.kind.value}, not a pending withdrawal"
            )
        return entry

    def _release_withdrawal_lock(self, entry: LedgerTransaction) -> bool:
        # Only the lock taken for this withdrawal; a newer holder keeps its lease.
        lock = self._locks.get_lock(entry.from_account_id, include_expired=True)
        if lock is None or lock.kind != LockKind.WITHDRAWAL or lock.external_ref != entry.external_ref:
            return False
        return self._locks.release(entry.from_account_id, entry.external_ref, token=lock.token)

    def _complete_withdrawal(self, entry: LedgerTransaction) -> WithdrawalOutcome:
        self._ledger.mark_completed(entry.id, entry.external_ref)
        released = self._release_withdrawal_lock(entry)
        return WithdrawalOutcome(
            status=TransactionStatus.COMPLETED.value,
            transaction_id=entry.id,
            external_ref=entry.external_ref,
            balance=self._ledger.get_balance(entry.from_account_id),
            lock_released=released,
        )

    def _fail_withdrawal(self, entry: LedgerTransaction, reason: str) -> WithdrawalOutcome:
        refund = self._ledger.refund_pending(entry.id, reason, external_ref=entry.external_ref)
        released = self._release_withdrawal_lock(entry)
        logger.warning(
            "Withdrawal refunded account=%s tx=%s ref=%s reason=%s",
            entry.from_account_id,
            entry.id,
            entry.external_ref,
            reason,
        )
        return WithdrawalOutcome(
            status=TransactionStatus.FAILED.value,
            transaction_id=entry.id,
            external_ref=entry.external_ref,
            balance=refund.balance_after,
            lock_released=released,
        )

    def settle_withdrawal(self, transaction_id: int) -> WithdrawalOutcome:
        """Complete or refund a pending withdrawal from its on-chain result.

        Stays pending while the hash is unknown to the chain or the lookup fails.
        """
        entry = self._pending_withdrawal(transaction_id)
        if not entry.external_ref:
            return self._pending_outcome(entry, None)
        try:
            transfer = self._chain.get_transfer_by_hash(entry.external_ref)
        except ChainGatewayError as exc:
            logger.warning("Withdrawal lookup failed tx=%s ref=%s error=%s", entry.id, entry.external_ref, exc.message)
            return self._pending_outcome(entry, entry.external_ref)
        if transfer is None:
            return self._pending_outcome(entry, entry.external_ref)
        if not transfer.succeeded:
            return self._fail_withdrawal(entry, f"Transfer failed on chain with code {transfer.status}")
        return self._complete_withdrawal(entry)

    def resolve_withdrawal(self, transaction_id: int, action, reason: str | None = None) -> WithdrawalOutcome:
        """Operator settlement for withdrawals the chain cannot settle on its own."""
        action = SettleAction(action)
        if action == SettleAction.VERIFY:
            return self.settle_withdrawal(transaction_id)
        entry = self._pending_withdrawal(transaction_id)
        logger.warning("Operator %s for withdrawal tx=%s ref=%s", action.value, entry.id, entry.external_ref)
        if action == SettleAction.COMPLETE:
            return self._complete_withdrawal(entry)
        return self._fail_withdrawal(entry, reason or "Failed by operator")

    def pending_withdrawals(self, limit: int = 100) -> list[LedgerTransaction]:
        return self._ledger.pending_withdrawals(limit=limit)

    def verify_pending_withdrawals(self) -> int:
        settled = 0
        for entry in self._ledger.pending_withdrawals():
            if not entry.external_ref:
                continue
            try:
                outcome = self.settle_withdrawal(entry.id)
            except CustodyError as exc:
                logger.warning("Withdrawal settlement skipped tx=%s: %s", entry.id, exc.message)
                continue
            if outcome.status != TransactionStatus.PENDING.value:
                settled += 1
        return settled

    # -- internal transfers ----------------------------------------------

    def _transfer(self, from_account_id: int, to_account_id: int, amount, description: str, kind) -> TransferOutcome:
        if from_account_id == to_account_id:
            raise InvalidTransfer("Cannot transfer to the same account")
        amount = parse_amount(amount)
        # System accounts only ever receive here, so they are not locked.
        lockable = [account_id for account_id in (from_account_id, to_account_id) if account_id > 0]
        held = self._locks.acquire_many(lockable, LockKind.TRANSFER)
        try:
            return self._ledger.transfer(from_account_id, to_account_id, amount, description, kind=kind)
        finally:
            self._locks.release_many(held)

    def request_transfer(
        self, from_account_id: int, to_account_id: int, amount, description: str | None = None
    ) -> TransferOutcome:
        from_account_id = self._validate_user_account(from_account_id)
        to_account_id = self._validate_user_account(to_account_id)
        return self._transfer(
            from_account_id,
            to_account_id,
            amount,
            description or f"Transfer from {from_account_id} to {to_account_id}",
            TransactionKind.TRANSFER,
        )

    def pay_treasury(self, account_id: int, amount, reason: str) -> TransferOutcome:
        account_id = self._validate_user_account(account_id)
        return self._transfer(account_id, SystemAccount.TREASURY, amount, reason or "Fee", TransactionKind.FEE)

    # -- reads -----------------------------------------------------------

    def get_balance(self, account_id: int) -> Decimal:
        return self._ledger.get_balance(account_id)

    def get_history(self, account_id: int, limit: int = 10, offset: int = 0) -> list[LedgerTransaction]:
        return self._ledger.history(account_id, limit=limit, offset=offset)

    def request_deposit(self, account_id: int) -> DepositInstructions:
        account_id = self._validate_user_account(account_id)
        token = str(account_id)
        return DepositInstructions(
            address=self.custodial_address,
            routing_token=token,
            memo=token,
            denom=self.display_symbol,
        )

    def get_stats(self) -> WalletStats:
        internal_total = self._ledger.total_balance(exclude_accounts=self.excluded_accounts)
        try:
            on_chain = from_base_units(self._chain.get_balance(self.custodial_address))
        except ChainGatewayError as exc:
            logger.warning("On-chain balance unavailable for stats: %s", exc.message)
            on_chain = None
        reconciled = on_chain is not None and abs(internal_total - on_chain) <= self.alert_threshold
        return WalletStats(
            wallet_address=self.custodial_address,
            on_chain_balance=on_chain,
            internal_total=internal_total,
            treasury_balance=self._ledger.get_balance(SystemAccount.TREASURY),
            unclaimed_balance=self._ledger.get_balance(SystemAccount.UNCLAIMED),
            active_accounts=self._ledger.count_active_accounts(),
            pending_deposits=self._deposits.count_pending() if self._deposits is not None else 0,
            active_locks=len(self._locks.active_locks()),
            reconciled=reconciled,
        )
