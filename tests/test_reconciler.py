from decimal import Decimal

import pytest

from custody.core.errors import ReconciliationMismatch
from custody.models import SystemAccount
from custody.services.chain import ChainGatewayError
from custody.services.reconciler import Reconciler


@pytest.fixture
def reconciler(ledger, chain, settings):
    ledger.credit(1, "100")
    ledger.credit(2, "50")
    ledger.credit(SystemAccount.TREASURY, "25")
    return Reconciler(ledger, chain, settings=settings)


def test_matching_totals(reconciler, chain):
    chain.balance_units = 175_000_000

    report = reconciler.reconcile()

    assert report.internal_total == Decimal("175.000000")
    assert report.on_chain_total == Decimal("175.000000")
    assert report.difference == Decimal("0")
    assert report.matched is True
    assert report.alert is False


def test_mismatch_is_reported_not_corrected(reconciler, chain, ledger):
    chain.balance_units = 150_000_000

    report = reconciler.reconcile_and_alert()

    assert report.difference == Decimal("25.000000")
    assert report.matched is False
    assert report.alert is True
    assert ledger.get_balance(SystemAccount.TREASURY) == Decimal("25.000000")


def test_strict_mode_raises(reconciler, chain):
    chain.balance_units = 150_000_000
    with pytest.raises(ReconciliationMismatch) as exc:
        reconciler.reconcile_and_alert(strict=True)
    assert exc.value.report.difference == Decimal("25.000000")


def test_drift_below_alert_threshold(reconciler, chain):
    # Gas paid by the custodial wallet shows up as a small shortfall.
    chain.balance_units = 174_995_000
    report = reconciler.reconcile_and_alert(strict=True)
    assert report.matched is False
    assert report.alert is False


def test_excluded_accounts(ledger, chain, settings):
    ledger.credit(1, "100")
    ledger.credit(2, "50")
    chain.balance_units = 100_000_000
    reconciler = Reconciler(ledger, chain, settings=settings.model_copy(update={"reconcile_excluded_accounts": "2"}))
    assert reconciler.reconcile().matched is True


def test_chain_error_propagates(reconciler, chain):
    chain.balance_error = ChainGatewayError("rest down", status_code=503)
    with pytest.raises(ChainGatewayError):
        reconciler.reconcile()
