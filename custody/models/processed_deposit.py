import enum
from sqlalchemy import Column, BigInteger, Numeric, String, Enum, Index, Text
from custody.core.database import Base
from custody.models.base import TimestampMixin


class DepositStatus(str, enum.Enum):
    PENDING = "pending"
    CREDITED = "credited"
    FAILED = "failed"


class ProcessedDeposit(Base, TimestampMixin):
    __tablename__ = "processed_deposits"

    # Primary key on the chain hash is the only double-credit guard.
    external_tx_id = Column(String(128), primary_key=True)
    account_id = Column(BigInteger, nullable=True, index=True)
    amount = Column(Numeric(24, 6), nullable=False)
    source_address = Column(String(128), nullable=False, default="")
    routing_token = Column(String(256), nullable=True)
    chain_height = Column(BigInteger, nullable=False, index=True)
    status = Column(
        Enum(DepositStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=DepositStatus.PENDING,
    )
    error = Column(Text, nullable=True)


Index("ix_processed_deposits_status_account", ProcessedDeposit.status, ProcessedDeposit.account_id)
