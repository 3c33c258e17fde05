import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import and_, func, or_, select, update

from custody.core.clock import utcnow
from custody.core.config import get_settings
from custody.core.database import insert_ignore, session_scope
from custody.core.errors import DuplicateDeposit, InvalidRoutingToken, InvalidTransfer, InvalidTransition, NotFound
from custody.models import DepositStatus, ProcessedDeposit, SystemAccount, TransactionKind
from custody.services.chain import ChainTransfer
from custody.services.precision import as_amount, format_amount, from_base_units
from custody.services.routing import extract_routing_token, parse_routing_token


logger = logging.getLogger(__name__)

CREDITED = "credited"
UNCLAIMED = "unclaimed"
DUPLICATE = "duplicate"
DISCARDED = "discarded"
FAILED = "failed"


@dataclass
class DepositOutcome:
    tx_id: str
    status: str
    account_id: int | None = None
    amount: Decimal | None = None
    routing_token: str | None = None
    error: str | None = None


@dataclass
class ScanReport:
    seen: int = 0
    credited: int = 0
    unclaimed: int = 0
    duplicates: int = 0
    discarded: int = 0
    failed: int = 0
    last_seen_height: int = 0
    outcomes: list[DepositOutcome] = field(default_factory=list)

    def record(self, outcome: DepositOutcome) -> None:
        self.seen += 1
        self.outcomes.append(outcome)
        if outcome.status == CREDITED:
            self.credited += 1
        elif outcome.status == UNCLAIMED:
            self.unclaimed += 1
        elif outcome.status == DUPLICATE:
            self.duplicates += 1
        elif outcome.status == DISCARDED:
            self.discarded += 1
        elif outcome.status == FAILED:
            self.failed += 1


class DepositScanner:
    """Credits inbound transfers to the custodial wallet exactly once.

    The ``processed_deposits`` primary key is the idempotency gate: the row is
    committed before the ledger is touched, so a transaction seen by two polls
    (or two scanner processes) is credited by whichever inserted it first.
    """

    def __init__(self, ledger, chain, session_factory, settings=None):
        settings = settings or get_settings()
        self._ledger = ledger
        self._chain = chain
        self._session_factory = session_factory
        self.custodial_address = settings.custodial_address
        self.denom = settings.chain_denom
        self.min_digits = int(settings.routing_token_min_digits)
        self.max_digits = int(settings.routing_token_max_digits)
        self.max_account_id = int(settings.max_account_id)
        self.require_existing_account = bool(settings.deposit_require_existing_account)
        self.pending_grace = timedelta(seconds=int(settings.deposit_pending_grace_seconds))
        self.last_seen_height = self._recover_watermark()

    def _recover_watermark(self) -> int:
        with session_scope(self._session_factory) as session:
            height = session.execute(select(func.max(ProcessedDeposit.chain_height))).scalar_one()
        return int(height or 0)

    def poll(self) -> ScanReport:
        transfers = self._chain.search_transfers(self.custodial_address, self.last_seen_height)
        report = ScanReport(last_seen_height=self.last_seen_height)
        for transfer in sorted(transfers, key=lambda item: item.height):
            report.record(self._process(transfer))
            if transfer.height > self.last_seen_height:
                self.last_seen_height = transfer.height
        report.last_seen_height = self.last_seen_height
        if report.seen:
            logger.info(
                "Deposit scan seen=%s credited=%s unclaimed=%s duplicates=%s discarded=%s failed=%s height=%s",
                report.seen,
                report.credited,
                report.unclaimed,
                report.duplicates,
                report.discarded,
                report.failed,
                report.last_seen_height,
            )
        return report

    def scan_transaction(self, external_tx_id: str) -> DepositOutcome:
        """Process one transaction by hash outside the polling cycle."""
        transfer = self._chain.get_transfer_by_hash(external_tx_id)
        if transfer is None:
            raise NotFound(f"Transaction {external_tx_id} not found on chain")
        return self._process(transfer)

    def _routing_token(self, transfer: ChainTransfer, units: int) -> str | None:
        if transfer.memo is not None:
            token = transfer.memo
        else:
            token = extract_routing_token(transfer.raw_bytes, units, self.min_digits, self.max_digits)
        token = (token or "").strip()
        return token or None

    def _process(self, transfer: ChainTransfer) -> DepositOutcome:
        if not transfer.succeeded:
            logger.info("Skipping failed chain transaction tx=%s code=%s", transfer.tx_id, transfer.status)
            return DepositOutcome(tx_id=transfer.tx_id, status=DISCARDED, error=f"code {transfer.status}")

        units = transfer.received_units(self.custodial_address, self.denom)
        if units <= 0:
            logger.info("Skipping transaction without %s to custodial wallet tx=%s", self.denom, transfer.tx_id)
            return DepositOutcome(tx_id=transfer.tx_id, status=DISCARDED, error=f"no {self.denom} received")

        amount = from_base_units(units)
        token = self._routing_token(transfer, units)
        source_address = transfer.sender_for(self.custodial_address)

        with session_scope(self._session_factory) as session:
            inserted = insert_ignore(
                session,
                ProcessedDeposit,
                {
                    "external_tx_id": transfer.tx_id,
                    "amount": amount,
                    "source_address": source_address,
                    "routing_token": token,
                    "chain_height": transfer.height,
                    "status": DepositStatus.PENDING,
                },
                ["external_tx_id"],
            )
        if not inserted:
            logger.debug("Deposit already processed tx=%s", transfer.tx_id)
            return DepositOutcome(tx_id=transfer.tx_id, status=DUPLICATE, amount=amount, routing_token=token)

        return self._credit(transfer.tx_id, amount, token, source_address)

    def _resolve_account(self, token: str | None) -> int | None:
        account_id = parse_routing_token(token)
        if account_id is not None and account_id > self.max_account_id:
            account_id = None
        if account_id is not None and self.require_existing_account and not self._ledger.account_exists(account_id):
            account_id = None
        if account_id is None:
            logger.info("Deposit routed to unclaimed: %s", InvalidRoutingToken(token).message)
        return account_id

    def _credit(self, tx_id: str, amount: Decimal, token: str | None, source_address: str) -> DepositOutcome:
        try:
            account_id = self._resolve_account(token)
            target = account_id if account_id is not None else SystemAccount.UNCLAIMED
            description = f"Deposit from {source_address or 'unknown sender'}"
            if token:
                description = f"{description} (memo: {token})"
            with self._ledger.session_scope() as session:
                self._ledger.post_credit(
                    session,
                    target,
                    amount,
                    TransactionKind.DEPOSIT,
                    reference=f"deposit:{tx_id}",
                    description=description,
                    external_ref=tx_id,
                    external_address=source_address or None,
                    metadata={"routing_token": token} if token else None,
                )
                result = session.execute(
                    update(ProcessedDeposit)
                    .where(
                        ProcessedDeposit.external_tx_id == tx_id,
                        ProcessedDeposit.status == DepositStatus.PENDING,
                    )
                    .values(status=DepositStatus.CREDITED, account_id=account_id, error=None)
                )
                if result.rowcount != 1:
                    # Another worker settled this row first; roll the credit back.
                    raise DuplicateDeposit(tx_id)
        except DuplicateDeposit:
            logger.warning("Deposit settled by another worker tx=%s", tx_id)
            return DepositOutcome(tx_id=tx_id, status=DUPLICATE, amount=amount, routing_token=token)
        except Exception as exc:
            logger.exception("Deposit credit failed tx=%s amount=%s", tx_id, format_amount(amount))
            with session_scope(self._session_factory) as session:
                session.execute(
                    update(ProcessedDeposit)
                    .where(
                        ProcessedDeposit.external_tx_id == tx_id,
                        ProcessedDeposit.status == DepositStatus.PENDING,
                    )
                    .values(status=DepositStatus.FAILED, error=str(exc)[:2000])
                )
            return DepositOutcome(tx_id=tx_id, status=FAILED, amount=amount, routing_token=token, error=str(exc))

        status = CREDITED if account_id is not None else UNCLAIMED
        logger.info(
            "Deposit %s tx=%s account=%s amount=%s",
            status,
            tx_id,
            account_id if account_id is not None else SystemAccount.UNCLAIMED,
            format_amount(amount),
        )
        return DepositOutcome(tx_id=tx_id, status=status, account_id=account_id, amount=amount, routing_token=token)

    def reprocess(self, external_tx_id: str) -> DepositOutcome:
        """Retry a failed deposit, or one left pending past the grace period.

        The status change is a compare-and-set, so only one caller wins the retry.
        """
        now = utcnow()
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(ProcessedDeposit)
                .where(
                    ProcessedDeposit.external_tx_id == external_tx_id,
                    or_(
                        ProcessedDeposit.status == DepositStatus.FAILED,
                        and_(
                            ProcessedDeposit.status == DepositStatus.PENDING,
                            ProcessedDeposit.updated_at < now - self.pending_grace,
                        ),
                    ),
                )
                .values(status=DepositStatus.PENDING, updated_at=now)
            )
            claimed = result.rowcount == 1
            row = session.get(ProcessedDeposit, external_tx_id)
        if row is None:
            raise NotFound(f"Deposit {external_tx_id} not found")
        if not claimed:
            raise InvalidTransition(
                f"Deposit {external_tx_id} is {row.status.value}, only failed or stalled deposits can be reprocessed"
            )
        logger.info("Reprocessing deposit tx=%s", external_tx_id)
        return self._credit(external_tx_id, as_amount(row.amount), row.routing_token, row.source_address)

    def recover_stalled(self) -> list[DepositOutcome]:
        """Retry deposits whose credit never finished, e.g. after a crash mid-credit."""
        with session_scope(self._session_factory) as session:
            stalled = list(
                session.execute(
                    select(ProcessedDeposit.external_tx_id)
                    .where(
                        ProcessedDeposit.status == DepositStatus.PENDING,
                        ProcessedDeposit.updated_at < utcnow() - self.pending_grace,
                    )
                    .order_by(ProcessedDeposit.chain_height)
                ).scalars()
            )
        outcomes = []
        for tx_id in stalled:
            logger.warning("Recovering stalled deposit tx=%s", tx_id)
            try:
                outcomes.append(self.reprocess(tx_id))
            except InvalidTransition:
                logger.info("Stalled deposit claimed elsewhere tx=%s", tx_id)
        return outcomes

    def assign_unclaimed(self, external_tx_id: str, account_id: int) -> ProcessedDeposit:
        """Move an unclaimed deposit to the account the operator identified."""
        account_id = int(account_id)
        if account_id <= 0 or account_id > self.max_account_id:
            raise InvalidTransfer(f"Deposits can only be assigned to user accounts, got {account_id}")
        with self._ledger.session_scope() as session:
            row = session.execute(
                select(ProcessedDeposit).where(ProcessedDeposit.external_tx_id == external_tx_id).with_for_update()
            ).scalar_one_or_none()
            if row is None:
                raise NotFound(f"Deposit {external_tx_id} not found")
            if row.status != DepositStatus.CREDITED or row.account_id is not None:
                raise InvalidTransition(f"Deposit {external_tx_id} is not an unclaimed credited deposit")
            self._ledger.post_transfer(
                session,
                SystemAccount.UNCLAIMED,
                account_id,
                as_amount(row.amount),
                f"Unclaimed deposit {external_tx_id} assigned",
                reference=f"deposit:{external_tx_id}",
            )
            row.account_id = account_id
        logger.info(
            "Unclaimed deposit assigned tx=%s account=%s amount=%s",
            external_tx_id,
            account_id,
            format_amount(row.amount),
        )
        return row

    def list_deposits(
        self,
        status=None,
        unclaimed_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ProcessedDeposit]:
        stmt = select(ProcessedDeposit)
        if status is not None:
            stmt = stmt.where(ProcessedDeposit.status == DepositStatus(status))
        if unclaimed_only:
            stmt = stmt.where(
                ProcessedDeposit.account_id.is_(None), ProcessedDeposit.status == DepositStatus.CREDITED
            )
        stmt = (
            stmt.order_by(ProcessedDeposit.chain_height.desc(), ProcessedDeposit.external_tx_id)
            .offset(max(0, int(offset)))
            .limit(max(1, min(int(limit), 200)))
        )
        with session_scope(self._session_factory) as session:
            return list(session.execute(stmt).scalars())

    def count_pending(self) -> int:
        with session_scope(self._session_factory) as session:
            return session.execute(
                select(func.count())
                .select_from(ProcessedDeposit)
                .where(ProcessedDeposit.status == DepositStatus.PENDING)
            ).scalar_one()
