from sqlalchemy import Column, BigInteger, Numeric, Index, CheckConstraint
from custody.core.database import Base
from custody.models.base import TimestampMixin


class SystemAccount:
    TREASURY = -1
    RESERVE = -2
    UNCLAIMED = -3

    ALL = (TREASURY, RESERVE, UNCLAIMED)
    LABELS = {
        TREASURY: "treasury",
        RESERVE: "reserve",
        UNCLAIMED: "unclaimed_deposits",
    }


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),)

    # Ids come from the chat layer; negative ids are reserved for SystemAccount.
    id = Column(BigInteger, primary_key=True, autoincrement=False)
    balance = Column(Numeric(24, 6), default=0, nullable=False)

    @property
    def is_system(self) -> bool:
        return self.id is not None and self.id < 0


Index("ix_accounts_balance", Account.balance)
