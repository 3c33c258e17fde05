import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from custody.core.config import get_settings
from custody.core.database import SessionLocal
from custody.services.chain import ChainGatewayError, RestChainGateway
from custody.services.deposits import DepositScanner
from custody.services.ledger import LedgerStore
from custody.services.locks import AccountLockManager
from custody.services.orchestrator import WalletOrchestrator
from custody.services.reconciler import Reconciler


logger = logging.getLogger(__name__)


class CustodyScheduler:
    """Runs the deposit scanner, reconciler and lock housekeeping on intervals.

    Jobs only talk to each other through the database. Each job is single
    instance and coalesced, so a slow chain node delays runs instead of
    stacking them.
    """

    def __init__(self, session_factory=None, chain=None, settings=None):
        self.settings = settings or get_settings()
        session_factory = session_factory or SessionLocal
        self.chain = chain or RestChainGateway(settings=self.settings)
        self.ledger = LedgerStore(session_factory)
        self.locks = AccountLockManager(session_factory, chain=self.chain, settings=self.settings)
        self.scanner = DepositScanner(self.ledger, self.chain, session_factory, settings=self.settings)
        self.reconciler = Reconciler(self.ledger, self.chain, settings=self.settings)
        self.wallet = WalletOrchestrator(
            self.ledger, self.locks, self.chain, settings=self.settings, deposits=self.scanner
        )
        self.scheduler = BackgroundScheduler(
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
            timezone="UTC",
        )

    def setup_jobs(self) -> None:
        start = datetime.now(timezone.utc) + timedelta(seconds=5)
        jobs = (
            (self.scan_deposits, self.settings.deposit_poll_seconds, "scan_deposits", "Scan Deposits"),
            (self.reconcile, self.settings.reconcile_seconds, "reconcile", "Reconcile Ledger"),
            (self.sweep_locks, self.settings.lock_sweep_seconds, "sweep_locks", "Sweep Expired Locks"),
            (self.verify_withdrawals, self.settings.lock_verify_seconds, "verify_withdrawals", "Verify Withdrawals"),
        )
        for func, seconds, job_id, name in jobs:
            self.scheduler.add_job(
                func,
                trigger=IntervalTrigger(seconds=int(seconds), start_date=start),
                id=job_id,
                name=name,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )

    def start(self) -> None:
        if not self.settings.custodial_address:
            logger.warning("CUSTODIAL_ADDRESS is not set; background jobs not started")
            return
        self.ledger.ensure_system_accounts()
        self.setup_jobs()
        self.scheduler.start()
        logger.info("Background jobs started (watermark height=%s)", self.scanner.last_seen_height)

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Background jobs stopped")

    def scan_deposits(self) -> None:
        try:
            self.scanner.poll()
            self.scanner.recover_stalled()
        except ChainGatewayError as exc:
            logger.warning("Deposit scan skipped, chain unavailable: %s", exc.message)
        except Exception:
            logger.exception("Deposit scan failed")

    def reconcile(self) -> None:
        try:
            self.reconciler.reconcile_and_alert()
        except ChainGatewayError as exc:
            logger.warning("Reconciliation skipped, chain unavailable: %s", exc.message)
        except Exception:
            logger.exception("Reconciliation failed")

    def sweep_locks(self) -> None:
        try:
            self.locks.sweep_expired()
        except Exception:
            logger.exception("Lock sweep failed")

    def verify_withdrawals(self) -> None:
        try:
            settled = self.wallet.verify_pending_withdrawals()
            if settled:
                logger.info("Settled %s pending withdrawals", settled)
            released = self.locks.verify_pending()
            if released:
                logger.info("Released %s verified withdrawal locks", released)
        except Exception:
            logger.exception("Withdrawal verification failed")
