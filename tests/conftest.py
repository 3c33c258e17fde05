import os

CUSTODIAL_ADDRESS = "juno1" + "q" * 38


def _set_test_env() -> None:
    defaults = {
        "APP_NAME": "Custody Ledger Test",
        "ENVIRONMENT": "test",
        "AUTO_CREATE_TABLES": "false",
        "BACKGROUND_JOBS_ENABLED": "false",
        "DATABASE_URL": "sqlite:///:memory:",
        "CHAIN_RPC_URL": "https://rpc.example.test",
        "CHAIN_REST_URL": "https://rest.example.test",
        "CHAIN_TIMEOUT_SECONDS": "5",
        "CHAIN_RETRY_COUNT": "1",
        "CHAIN_DENOM": "ujuno",
        "CHAIN_ADDRESS_PREFIX": "juno",
        "CUSTODIAL_ADDRESS": CUSTODIAL_ADDRESS,
        "ADMIN_API_KEY": "admin-test-key",
        "CORS_ORIGINS": "http://localhost:5173,http://localhost:3000",
    }
    for key, value in defaults.items():
        os.environ.setdefault(key, value)


_set_test_env()

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from custody.core.config import get_settings  # noqa: E402
from custody.core.database import Base, build_engine  # noqa: E402
import custody.models  # noqa: E402,F401
from custody.services.chain import BroadcastResult, ChainTransfer, Coin, SignedTransfer, TransferMessage  # noqa: E402
from custody.services.deposits import DepositScanner  # noqa: E402
from custody.services.ledger import LedgerStore  # noqa: E402
from custody.services.locks import AccountLockManager  # noqa: E402
from custody.services.orchestrator import WalletOrchestrator  # noqa: E402


SENDER_ADDRESS = "juno1" + "s" * 38


class FakeChainGateway:
    """In-memory chain: canned transfers, a settable balance and recorded broadcasts."""

    def __init__(self, custodial_address: str = CUSTODIAL_ADDRESS):
        self.custodial_address = custodial_address
        self.transfers: dict[str, ChainTransfer] = {}
        self.balance_units = 0
        self.balance_error: Exception | None = None
        self.search_error: Exception | None = None
        self.broadcast_error: Exception | None = None
        self.prepare_error: Exception | None = None
        self.broadcast_status = 0
        self.delivery_status = 0
        self.confirm_broadcasts = False
        self.prepared: dict[str, dict] = {}
        self.broadcasts: list[dict] = []
        self.search_calls: list[int] = []

    def add_transfer(
        self,
        tx_id: str,
        height: int,
        units: int,
        *,
        memo: str | None = None,
        raw_bytes: bytes = b"",
        denom: str = "ujuno",
        status: int = 0,
        to_address: str | None = None,
        sender: str = SENDER_ADDRESS,
    ) -> ChainTransfer:
        transfer = ChainTransfer(
            tx_id=tx_id,
            height=height,
            status=status,
            messages=[
                TransferMessage(
                    type_url="transfer",
                    from_address=sender,
                    to_address=to_address or self.custodial_address,
                    coins=[Coin(denom=denom, amount=units)],
                )
            ],
            raw_bytes=raw_bytes,
            memo=memo,
        )
        self.transfers[tx_id] = transfer
        return transfer

    def confirm(self, tx_id: str, status: int = 0) -> None:
        self.transfers[tx_id] = ChainTransfer(tx_id=tx_id, height=10_000, status=status)

    def search_transfers(self, to_address, since_height):
        self.search_calls.append(since_height)
        if self.search_error is not None:
            raise self.search_error
        return [
            transfer
            for transfer in self.transfers.values()
            if transfer.height > since_height and any(m.to_address == to_address for m in transfer.messages)
        ]

    def get_transfer_by_hash(self, tx_id):
        return self.transfers.get(tx_id)

    def get_balance(self, address):
        if self.balance_error is not None:
            raise self.balance_error
        return self.balance_units

    def prepare_transfer(self, to_address, amount_units, memo=None):
        if self.prepare_error is not None:
            raise self.prepare_error
        tx_id = f"BCAST{len(self.prepared) + 1:04d}"
        self.prepared[tx_id] = {"to_address": to_address, "amount_units": amount_units, "memo": memo}
        return SignedTransfer(tx_id=tx_id, tx_bytes=f"{to_address}:{amount_units}:{memo or ''}".encode())

    def broadcast_prepared(self, signed):
        self.broadcasts.append({"tx_id": signed.tx_id, **self.prepared[signed.tx_id]})
        if self.broadcast_error is not None:
            raise self.broadcast_error
        if self.confirm_broadcasts and self.broadcast_status == 0:
            self.confirm(signed.tx_id, status=self.delivery_status)
        return BroadcastResult(
            tx_id=signed.tx_id,
            status=self.broadcast_status,
            raw_log="" if self.broadcast_status == 0 else "out of gas",
        )

    def broadcast_transfer(self, to_address, amount_units, memo=None):
        return self.broadcast_prepared(self.prepare_transfer(to_address, amount_units, memo))


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def session_factory(tmp_path):
    # A file database so worker threads share state the way Postgres connections do.
    engine = build_engine(f"sqlite:///{tmp_path / 'custody.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def chain():
    return FakeChainGateway()


@pytest.fixture
def ledger(session_factory):
    store = LedgerStore(session_factory)
    store.ensure_system_accounts()
    return store


@pytest.fixture
def locks(session_factory, chain, settings):
    return AccountLockManager(session_factory, chain=chain, settings=settings)


@pytest.fixture
def scanner(ledger, chain, session_factory, settings):
    return DepositScanner(ledger, chain, session_factory, settings=settings)


@pytest.fixture
def wallet(ledger, locks, chain, scanner, settings):
    return WalletOrchestrator(ledger, locks, chain, settings=settings, deposits=scanner)
