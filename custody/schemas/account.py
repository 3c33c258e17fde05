from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from custody.services.precision import as_amount


class BalanceOut(BaseModel):
    account_id: int
    balance: Decimal


class TransactionOut(BaseModel):
    id: int
    kind: str
    from_account_id: int | None = None
    to_account_id: int | None = None
    amount: Decimal
    balance_after: Decimal
    description: str
    external_ref: str | None = None
    external_address: str | None = None
    status: str
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("amount", "balance_after", mode="before")
    @classmethod
    def quantize_amounts(cls, value):
        return as_amount(value)


class DepositInstructionsOut(BaseModel):
    address: str
    routing_token: str
    memo: str
    denom: str


class WithdrawalRequest(BaseModel):
    address: str = Field(min_length=1, max_length=128)
    # Kept as a string so sub-unit precision is rejected instead of rounded.
    amount: str = Field(min_length=1, max_length=40)


class WithdrawalOut(BaseModel):
    status: str
    transaction_id: int
    external_ref: str | None = None
    balance: Decimal
    lock_released: bool


class TransferRequest(BaseModel):
    from_account_id: int
    to_account_id: int
    amount: str = Field(min_length=1, max_length=40)
    description: str | None = Field(default=None, max_length=200)


class TransferOut(BaseModel):
    transaction_id: int
    from_balance: Decimal
    to_balance: Decimal


class StatsOut(BaseModel):
    wallet_address: str
    on_chain_balance: Decimal | None = None
    internal_total: Decimal
    treasury_balance: Decimal
    unclaimed_balance: Decimal
    active_accounts: int
    pending_deposits: int
    active_locks: int
    reconciled: bool
