import enum
from decimal import Decimal

from sqlalchemy import Column, Integer, BigInteger, Numeric, String, Enum, JSON, Index, CheckConstraint
from custody.core.database import Base
from custody.models.base import TimestampMixin


class TransactionKind(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"
    FEE = "fee"
    CREDIT_ADJUSTMENT = "credit_adjustment"
    REFUND = "refund"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class LedgerTransaction(Base, TimestampMixin):
    __tablename__ = "ledger_transactions"
    __table_args__ = (CheckConstraint("amount > 0", name="ck_ledger_transactions_amount_positive"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(Enum(TransactionKind, values_callable=lambda e: [m.value for m in e]), nullable=False)
    from_account_id = Column(BigInteger, nullable=True, index=True)
    to_account_id = Column(BigInteger, nullable=True, index=True)
    amount = Column(Numeric(24, 6), nullable=False)
    balance_after = Column(Numeric(24, 6), nullable=False)
    description = Column(String(255), nullable=False, default="")
    reference = Column(String(128), nullable=True, index=True)
    external_ref = Column(String(128), nullable=True, index=True)
    external_address = Column(String(128), nullable=True)
    status = Column(
        Enum(TransactionStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=TransactionStatus.COMPLETED,
    )
    meta = Column("metadata", JSON, nullable=True)

    def signed_amount(self, account_id: int):
        if self.from_account_id == account_id and self.to_account_id == account_id:
            return 0

    def balance_after_for(self, account_id: int):
        """Balance of ``account_id`` right after this entry posted."""
        if self.to_account_id == account_id and self.from_account_id != account_id:
            receiver_balance = (self.meta or {}).get("to_balance_after")
            if receiver_balance is not None:
                return Decimal(str(receiver_balance))
        return self.balance_after
        if self.to_account_id == account_id:
            return self.amount
        if self.from_account_id == account_id:
            return -self.amount
        return 0


Index("ix_ledger_transactions_kind_status", LedgerTransaction.kind, LedgerTransaction.status)
