import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from custody.core.clock import utcnow
from custody.core.config import get_settings, parse_account_ids
from custody.core.errors import ReconciliationMismatch
from custody.services.precision import format_amount, from_base_units


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationReport:
    internal_total: Decimal
    on_chain_total: Decimal
    difference: Decimal
    matched: bool
    alert: bool
    checked_at: datetime


class Reconciler:
    """Compares the ledger total with the custodial wallet balance.

    Reports only. Differences usually mean in-flight withdrawals or gas spent
    by the custodial wallet, so balances are never adjusted here.
    """

    def __init__(self, ledger, chain, settings=None):
        settings = settings or get_settings()
        self._ledger = ledger
        self._chain = chain
        self.custodial_address = settings.custodial_address
        self.tolerance = Decimal(str(settings.reconcile_tolerance))
        self.alert_threshold = Decimal(str(settings.reconcile_alert_threshold))
        self.excluded_accounts = parse_account_ids(settings.reconcile_excluded_accounts)

    def reconcile(self) -> ReconciliationReport:
        internal_total = self._ledger.total_balance(exclude_accounts=self.excluded_accounts)
        on_chain_total = from_base_units(self._chain.get_balance(self.custodial_address))
        difference = abs(internal_total - on_chain_total)
        return ReconciliationReport(
            internal_total=internal_total,
            on_chain_total=on_chain_total,
            difference=difference,
            matched=difference < self.tolerance,
            alert=difference > self.alert_threshold,
            checked_at=utcnow(),
        )

    def reconcile_and_alert(self, strict: bool = False) -> ReconciliationReport:
        report = self.reconcile()
        if report.alert:
            error = ReconciliationMismatch(
                f"Ledger total {format_amount(report.internal_total)} differs from on-chain "
                f"{format_amount(report.on_chain_total)} by {format_amount(report.difference)}",
                report=report,
            )
            logger.warning("ReconciliationMismatch: %s", error.message)
            if strict:
                raise error
        elif report.matched:
            logger.info("Reconciliation matched total=%s", format_amount(report.internal_total))
        else:
            logger.info(
                "Reconciliation within alert threshold internal=%s on_chain=%s difference=%s",
                format_amount(report.internal_total),
                format_amount(report.on_chain_total),
                format_amount(report.difference),
            )
        return report
