from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from custody.services.orchestrator import SettleAction
from custody.services.precision import as_amount


class LockOut(BaseModel):
    account_id: int
    kind: str
    acquired_at: datetime
    expires_at: datetime
    external_ref: str | None = None

    model_config = ConfigDict(from_attributes=True)


class LockReleaseOut(BaseModel):
    account_id: int
    released: bool


class SweepOut(BaseModel):
    swept: int


class DepositOut(BaseModel):
    external_tx_id: str
    account_id: int | None = None
    amount: Decimal
    source_address: str
    routing_token: str | None = None
    chain_height: int
    status: str
    error: str | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("amount", mode="before")
    @classmethod
    def quantize_amount(cls, value):
        return as_amount(value)


class DepositOutcomeOut(BaseModel):
    tx_id: str
    status: str
    account_id: int | None = None
    amount: Decimal | None = None
    routing_token: str | None = None
    error: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ScanReportOut(BaseModel):
    seen: int
    credited: int
    unclaimed: int
    duplicates: int
    discarded: int
    failed: int
    last_seen_height: int


class AssignDepositRequest(BaseModel):
    account_id: int


class ReconciliationOut(BaseModel):
    internal_total: Decimal
    on_chain_total: Decimal
    difference: Decimal
    matched: bool
    alert: bool
    checked_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SettleWithdrawalRequest(BaseModel):
    action: SettleAction = SettleAction.VERIFY
    reason: str | None = Field(default=None, max_length=500)
