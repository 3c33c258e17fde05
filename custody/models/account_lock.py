import enum
from sqlalchemy import Column, BigInteger, String, Enum, DateTime, JSON
from custody.core.database import Base


class LockKind(str, enum.Enum):
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"
    # Reserved for operator-held locks around manual deposit credits; the scanner
    # relies on the processed_deposits key instead.
    DEPOSIT_CREDIT = "deposit_credit"


class AccountLock(Base):
    __tablename__ = "account_locks"

    # At most one row per account; the insert race is settled by this key.
    account_id = Column(BigInteger, primary_key=True, autoincrement=False)
    kind = Column(Enum(LockKind, values_callable=lambda e: [m.value for m in e]), nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    meta = Column("metadata", JSON, nullable=True)
    external_ref = Column(String(128), nullable=True)
    # Fresh per acquire; a release carrying a stale token leaves a newer holder alone.
    token = Column(String(32), nullable=False)
