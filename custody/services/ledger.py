import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from custody.core.database import insert_ignore, session_scope
from custody.core.errors import InsufficientBalance, InvalidTransfer, InvalidTransition, NotFound
from custody.models import Account, LedgerTransaction, SystemAccount, TransactionKind, TransactionStatus
from custody.services.precision import ZERO, as_amount, format_amount, parse_amount


logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 100


@dataclass(frozen=True)
class TransferOutcome:
    transaction_id: int
    from_balance: Decimal
    to_balance: Decimal


class LedgerStore:
    """Balances and the append-only transaction journal.

    Every public method is one database transaction. Balance checks and
    balance writes happen in a single conditional UPDATE so two debits racing
    on the same account can never both pass the check.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def session_scope(self):
        return session_scope(self._session_factory)

    # -- row helpers -----------------------------------------------------

    def _ensure_row(self, session: Session, account_id: int) -> None:
        if insert_ignore(session, Account, {"id": account_id, "balance": ZERO}, ["id"]):
            logger.info("Provisioned ledger account account=%s", account_id)

    def _read_balance(self, session: Session, account_id: int, *, lock: bool = False) -> Decimal | None:
        stmt = select(Account.balance).where(Account.id == account_id)
        if lock:
            stmt = stmt.with_for_update()
        value = session.execute(stmt).scalar_one_or_none()
        return None if value is None else as_amount(value)

    def _add(self, session: Session, account_id: int, amount: Decimal) -> Decimal:
        self._ensure_row(session, account_id)
        session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance=Account.balance + amount)
            .execution_options(synchronize_session=False)
        )
        return self._read_balance(session, account_id, lock=True)

    def _subtract(self, session: Session, account_id: int, amount: Decimal) -> Decimal:
        result = session.execute(
            update(Account)
            .where(Account.id == account_id, Account.balance >= amount)
            .values(balance=Account.balance - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            balance = self._read_balance(session, account_id) or ZERO
            raise InsufficientBalance(
                f"Insufficient balance: have {format_amount(balance)}, need {format_amount(amount)}",
                balance=balance,
                requested=amount,
            )
        return self._read_balance(session, account_id, lock=True)

    def _append(
        self,
        session: Session,
        *,
        kind,
        amount: Decimal,
        balance_after: Decimal,
        from_account_id: int | None = None,
        to_account_id: int | None = None,
        reference: str | None = None,
        description: str | None = None,
        external_ref: str | None = None,
        external_address: str | None = None,
        status=TransactionStatus.COMPLETED,
        metadata: dict | None = None,
    ) -> LedgerTransaction:
        entry = LedgerTransaction(
            kind=TransactionKind(kind),
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            amount=amount,
            balance_after=balance_after,
            description=(description or "")[:255],
            reference=reference,
            external_ref=external_ref,
            external_address=external_address,
            status=TransactionStatus(status),
            meta=metadata,
        )
        session.add(entry)
        session.flush()
        return entry

    # -- money movement --------------------------------------------------

    def post_credit(
        self,
        session: Session,
        account_id: int,
        amount,
        kind=TransactionKind.DEPOSIT,
        reference: str | None = None,
        description: str | None = None,
        *,
        external_ref: str | None = None,
        external_address: str | None = None,
        metadata: dict | None = None,
    ) -> LedgerTransaction:
        """Credit inside a caller-owned session. Nothing is committed here."""
        amount = parse_amount(amount)
        balance = self._add(session, account_id, amount)
        return self._append(
            session,
            kind=kind,
            amount=amount,
            balance_after=balance,
            to_account_id=account_id,
            reference=reference,
            description=description,
            external_ref=external_ref,
            external_address=external_address,
            metadata=metadata,
        )

    def credit(
        self,
        account_id: int,
        amount,
        kind=TransactionKind.DEPOSIT,
        reference: str | None = None,
        description: str | None = None,
        *,
        external_ref: str | None = None,
        external_address: str | None = None,
        metadata: dict | None = None,
    ) -> LedgerTransaction:
        with self.session_scope() as session:
            entry = self.post_credit(
                session,
                account_id,
                amount,
                kind,
                reference,
                description,
                external_ref=external_ref,
                external_address=external_address,
                metadata=metadata,
            )
        logger.info(
            "Ledger credit account=%s amount=%s kind=%s balance=%s tx=%s",
            account_id,
            format_amount(entry.amount),
            entry.kind.value,
            format_amount(entry.balance_after),
            entry.id,
        )
        return entry

    def debit(
        self,
        account_id: int,
        amount,
        kind=TransactionKind.WITHDRAWAL,
        reference: str | None = None,
        description: str | None = None,
        *,
        status=TransactionStatus.COMPLETED,
        external_address: str | None = None,
        metadata: dict | None = None,
    ) -> LedgerTransaction:
        amount = parse_amount(amount)
        with self.session_scope() as session:
            balance = self._subtract(session, account_id, amount)
            entry = self._append(
                session,
                kind=kind,
                amount=amount,
                balance_after=balance,
                from_account_id=account_id,
                reference=reference,
                description=description,
                external_address=external_address,
                status=status,
                metadata=metadata,
            )
        logger.info(
            "Ledger debit account=%s amount=%s kind=%s status=%s balance=%s tx=%s",
            account_id,
            format_amount(amount),
            entry.kind.value,
            entry.status.value,
            format_amount(balance),
            entry.id,
        )
        return entry

    def post_transfer(
        self,
        session: Session,
        from_account_id: int,
        to_account_id: int,
        amount,
        description: str | None = None,
        *,
        kind=TransactionKind.TRANSFER,
        reference: str | None = None,
        metadata: dict | None = None,
    ) -> TransferOutcome:
        """Move funds inside a caller-owned session. Nothing is committed here."""
        if from_account_id == to_account_id:
            raise InvalidTransfer("Cannot transfer to the same account")
        amount = parse_amount(amount)

        # Touch rows in ascending id order so crossing transfers cannot deadlock.
        if from_account_id < to_account_id:
            from_balance = self._subtract(session, from_account_id, amount)
            to_balance = self._add(session, to_account_id, amount)
        else:
            to_balance = self._add(session, to_account_id, amount)
            from_balance = self._subtract(session, from_account_id, amount)

        entry = self._append(
            session,
            kind=kind,
            amount=amount,
            balance_after=from_balance,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            reference=reference,
            description=description,
            metadata={**(metadata or {}), "to_balance_after": format_amount(to_balance)},
        )
        return TransferOutcome(transaction_id=entry.id, from_balance=from_balance, to_balance=to_balance)

    def transfer(
        self,
        from_account_id: int,
        to_account_id: int,
        amount,
        description: str | None = None,
        *,
        kind=TransactionKind.TRANSFER,
        reference: str | None = None,
        metadata: dict | None = None,
    ) -> TransferOutcome:
        with self.session_scope() as session:
            outcome = self.post_transfer(
                session,
                from_account_id,
                to_account_id,
                amount,
                description,
                kind=kind,
                reference=reference,
                metadata=metadata,
            )
        logger.info(
            "Ledger transfer from=%s to=%s amount=%s tx=%s",
            from_account_id,
            to_account_id,
            format_amount(amount),
            outcome.transaction_id,
        )
        return outcome

    # -- pending withdrawals ---------------------------------------------

    def _pending_entry(self, session: Session, transaction_id: int) -> LedgerTransaction:
        entry = session.execute(
            select(LedgerTransaction).where(LedgerTransaction.id == transaction_id).with_for_update()
        ).scalar_one_or_none()
        if entry is None:
            raise NotFound(f"Transaction {transaction_id} not found")
        if entry.status != TransactionStatus.PENDING:
            raise InvalidTransition(
                f"Transaction {transaction_id} is {entry.status.value}, only pending entries can change status"
            )
        return entry

    def mark_completed(self, transaction_id: int, external_ref: str | None = None) -> LedgerTransaction:
        with self.session_scope() as session:
            entry = self._pending_entry(session, transaction_id)
            entry.status = TransactionStatus.COMPLETED
            if external_ref:
                entry.external_ref = external_ref
        logger.info("Ledger transaction completed tx=%s ref=%s", transaction_id, external_ref)
        return entry

    def mark_failed(
        self, transaction_id: int, external_ref: str | None = None, reason: str | None = None
    ) -> LedgerTransaction:
        with self.session_scope() as session:
            entry = self._pending_entry(session, transaction_id)
            entry.status = TransactionStatus.FAILED
            if external_ref:
                entry.external_ref = external_ref
            if reason:
                entry.meta = {**(entry.meta or {}), "failure_reason": reason[:500]}
        logger.info("Ledger transaction failed tx=%s ref=%s reason=%s", transaction_id, external_ref, reason)
        return entry

    def refund_pending(
        self, transaction_id: int, reason: str, external_ref: str | None = None
    ) -> LedgerTransaction:
        """Fail a pending debit and credit its amount back in one transaction."""
        with self.session_scope() as session:
            original = self._pending_entry(session, transaction_id)
            refund = self.post_credit(
                session,
                original.from_account_id,
                as_amount(original.amount),
                TransactionKind.REFUND,
                reference=str(transaction_id),
                description=f"Refund for failed {original.kind.value} #{transaction_id}",
                external_ref=external_ref,
                metadata={"refund_of": transaction_id, "reason": (reason or "")[:500]},
            )
            original.status = TransactionStatus.FAILED
            if external_ref:
                original.external_ref = external_ref
            original.meta = {**(original.meta or {}), "failure_reason": (reason or "")[:500]}
        logger.info(
            "Ledger refund account=%s amount=%s tx=%s refund_tx=%s balance=%s",
            refund.to_account_id,
            format_amount(refund.amount),
            transaction_id,
            refund.id,
            format_amount(refund.balance_after),
        )
        return refund

    def set_external_ref(self, transaction_id: int, external_ref: str) -> LedgerTransaction:
        with self.session_scope() as session:
            entry = self._pending_entry(session, transaction_id)
            entry.external_ref = external_ref
        return entry

    def get_transaction(self, transaction_id: int) -> LedgerTransaction:
        with self.session_scope() as session:
            entry = session.get(LedgerTransaction, transaction_id)
        if entry is None:
            raise NotFound(f"Transaction {transaction_id} not found")
        return entry

    def pending_withdrawals(self, limit: int = 100) -> list[LedgerTransaction]:
        with self.session_scope() as session:
            return list(
                session.execute(
                    select(LedgerTransaction)
                    .where(
                        LedgerTransaction.kind == TransactionKind.WITHDRAWAL,
                        LedgerTransaction.status == TransactionStatus.PENDING,
                    )
                    .order_by(LedgerTransaction.id)
                    .limit(max(1, int(limit)))
                ).scalars()
            )

    def attach_metadata(self, transaction_id: int, **values) -> None:
        with self.session_scope() as session:
            entry = session.get(LedgerTransaction, transaction_id)
            if entry is None:
                raise NotFound(f"Transaction {transaction_id} not found")
            entry.meta = {**(entry.meta or {}), **values}

    # -- reads -----------------------------------------------------------

    def get_balance(self, account_id: int) -> Decimal:
        with self.session_scope() as session:
            return self._read_balance(session, account_id) or ZERO

    def ensure_account(self, account_id: int) -> Account:
        with self.session_scope() as session:
            self._ensure_row(session, account_id)
            return session.get(Account, account_id)

    def ensure_system_accounts(self) -> None:
        with self.session_scope() as session:
            for account_id in SystemAccount.ALL:
                self._ensure_row(session, account_id)

    def account_exists(self, account_id: int) -> bool:
        with self.session_scope() as session:
            return self._read_balance(session, account_id) is not None

    def total_balance(self, *, include_system: bool = True, exclude_accounts: Iterable[int] = ()) -> Decimal:
        stmt = select(func.coalesce(func.sum(Account.balance), 0))
        if not include_system:
            stmt = stmt.where(Account.id >= 0)
        excluded = [int(account_id) for account_id in exclude_accounts]
        if excluded:
            stmt = stmt.where(Account.id.not_in(excluded))
        with self.session_scope() as session:
            return as_amount(session.execute(stmt).scalar_one())

    def history(self, account_id: int, limit: int = 10, offset: int = 0) -> list[LedgerTransaction]:
        limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))
        offset = max(0, int(offset))
        with self.session_scope() as session:
            rows = (
                session.query(LedgerTransaction)
                .filter(
                    or_(
                        LedgerTransaction.from_account_id == account_id,
                        LedgerTransaction.to_account_id == account_id,
                    )
                )
                .order_by(LedgerTransaction.id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
        return rows

    def replay_balance(self, account_id: int) -> Decimal:
        with self.session_scope() as session:
            rows = (
                session.query(LedgerTransaction)
                .filter(
                    or_(
                        LedgerTransaction.from_account_id == account_id,
                        LedgerTransaction.to_account_id == account_id,
                    )
                )
                .all()
            )
        total = ZERO
        for row in rows:
            total += as_amount(row.signed_amount(account_id))
        return total

    def audit(self, account_id: int) -> tuple[Decimal, Decimal]:
        return self.get_balance(account_id), self.replay_balance(account_id)

    def count_active_accounts(self) -> int:
        with self.session_scope() as session:
            return session.execute(
                select(func.count()).select_from(Account).where(Account.id > 0, Account.balance > 0)
            ).scalar_one()
