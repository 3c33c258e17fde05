from decimal import Decimal

import pytest

from custody.core.errors import (
    ExternalTransferFailed,
    InsufficientBalance,
    InvalidAddress,
    InvalidAmount,
    InvalidTransfer,
    InvalidTransition,
    LockConflict,
)
from custody.models import LockKind, SystemAccount, TransactionKind, TransactionStatus
from custody.services.chain import BroadcastTimeout, ChainGatewayError, SigningUnavailable

from conftest import CUSTODIAL_ADDRESS

DESTINATION = "juno1" + "d" * 38


def _funded(ledger, account_id=1, amount="10"):
    ledger.credit(account_id, amount, TransactionKind.DEPOSIT, "seed")


def test_withdrawal_success_releases_confirmed_lock(wallet, ledger, locks, chain):
    _funded(ledger)
    chain.confirm_broadcasts = True

    outcome = wallet.request_withdrawal(1, DESTINATION, "4")

    assert outcome.status == "completed"
    assert outcome.external_ref == "BCAST0001"
    assert outcome.balance == Decimal("6.000000")
    assert outcome.lock_released is True
    assert locks.get_lock(1) is None
    assert chain.broadcasts[0]["amount_units"] == 4_000_000
    entry = ledger.history(1)[0]
    assert entry.status == TransactionStatus.COMPLETED
    assert entry.external_ref == "BCAST0001"
    assert entry.external_address == DESTINATION


def test_withdrawal_lock_held_until_confirmation(wallet, ledger, locks, chain):
    _funded(ledger)

    outcome = wallet.request_withdrawal(1, DESTINATION, "4")

    assert outcome.status == "pending"
    assert outcome.external_ref == "BCAST0001"
    assert outcome.lock_released is False
    assert ledger.history(1)[0].status == TransactionStatus.PENDING
    lock = locks.get_lock(1)
    assert lock.kind == LockKind.WITHDRAWAL
    assert lock.external_ref == "BCAST0001"
    with pytest.raises(LockConflict):
        wallet.request_withdrawal(1, DESTINATION, "1")

    chain.confirm("BCAST0001")
    assert wallet.verify_pending_withdrawals() == 1
    assert locks.get_lock(1) is None
    assert ledger.history(1)[0].status == TransactionStatus.COMPLETED
    assert ledger.get_balance(1) == Decimal("6.000000")


@pytest.mark.parametrize(
    "attribute, error",
    [
        ("broadcast_error", ChainGatewayError("node returned 500", status_code=500)),
        ("prepare_error", SigningUnavailable("No transaction signer configured")),
    ],
)
def test_broadcast_failure_refunds(wallet, ledger, locks, chain, attribute, error):
    _funded(ledger)
    setattr(chain, attribute, error)

    with pytest.raises(ExternalTransferFailed) as exc:
        wallet.request_withdrawal(1, DESTINATION, "4")

    assert exc.value.balance == Decimal("10.000000")
    assert exc.value.status_code == 502
    assert ledger.get_balance(1) == Decimal("10.000000")
    assert locks.get_lock(1) is None
    refund, withdrawal = ledger.history(1, limit=2)
    assert refund.kind == TransactionKind.REFUND
    assert withdrawal.status == TransactionStatus.FAILED
    balance, replayed = ledger.audit(1)
    assert balance == replayed


def test_rejected_transaction_refunds_with_hash(wallet, ledger, locks, chain):
    _funded(ledger)
    chain.broadcast_status = 11

    with pytest.raises(ExternalTransferFailed) as exc:
        wallet.request_withdrawal(1, DESTINATION, "4")

    assert exc.value.external_ref == "BCAST0001"
    assert "out of gas" in exc.value.message
    assert ledger.get_balance(1) == Decimal("10.000000")
    assert locks.get_lock(1) is None


def test_broadcast_timeout_leaves_withdrawal_pending(wallet, ledger, locks, chain):
    _funded(ledger)
    chain.broadcast_error = BroadcastTimeout("timed out waiting for node")

    outcome = wallet.request_withdrawal(1, DESTINATION, "4")

    assert outcome.status == "pending"
    assert outcome.external_ref == "BCAST0001"
    assert outcome.lock_released is False
    assert ledger.get_balance(1) == Decimal("6.000000")
    assert locks.get_lock(1).external_ref == "BCAST0001"
    assert locks.get_lock(1) is not None
    entry = ledger.history(1)[0]
    assert entry.status == TransactionStatus.PENDING
    assert entry.external_ref == "BCAST0001"
    assert entry.meta["broadcast_error"] == "timed out waiting for node"


def test_refund_failure_keeps_lock(wallet, ledger, locks, chain, monkeypatch):
    _funded(ledger)
    chain.broadcast_error = ChainGatewayError("node returned 500", status_code=500)

    def broken(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(ledger, "refund_pending", broken)
    with pytest.raises(ExternalTransferFailed) as exc:
        wallet.request_withdrawal(1, DESTINATION, "4")

    assert exc.value.balance is None
    assert locks.get_lock(1) is not None


def test_withdrawal_failing_on_chain_is_refunded(wallet, ledger, locks, chain):
    _funded(ledger)
    chain.confirm_broadcasts = True
    chain.delivery_status = 11

    with pytest.raises(ExternalTransferFailed) as exc:
        wallet.request_withdrawal(1, DESTINATION, "4")

    assert exc.value.balance == Decimal("10.000000")
    assert exc.value.external_ref == "BCAST0001"
    assert locks.get_lock(1) is None
    refund, withdrawal = ledger.history(1, limit=2)
    assert refund.kind == TransactionKind.REFUND
    assert withdrawal.status == TransactionStatus.FAILED
    balance, replayed = ledger.audit(1)
    assert balance == replayed == Decimal("10.000000")


def test_late_on_chain_failure_refunds_pending_withdrawal(wallet, ledger, locks, chain):
    _funded(ledger)
    outcome = wallet.request_withdrawal(1, DESTINATION, "4")
    assert outcome.status == "pending"

    chain.confirm("BCAST0001", status=5)
    settled = wallet.settle_withdrawal(outcome.transaction_id)

    assert settled.status == "failed"
    assert settled.balance == Decimal("10.000000")
    assert settled.lock_released is True
    assert locks.get_lock(1) is None
    entry = ledger.get_transaction(outcome.transaction_id)
    assert entry.status == TransactionStatus.FAILED
    assert entry.meta["failure_reason"] == "Transfer failed on chain with code 5"


def test_unconfirmed_withdrawal_stays_pending(wallet, ledger, locks, chain):
    _funded(ledger)
    outcome = wallet.request_withdrawal(1, DESTINATION, "4")

    settled = wallet.settle_withdrawal(outcome.transaction_id)

    assert settled.status == "pending"
    assert settled.lock_released is False
    assert locks.get_lock(1) is not None
    assert wallet.verify_pending_withdrawals() == 0


def test_timed_out_withdrawal_settles_by_prepared_hash(wallet, ledger, locks, chain):
    _funded(ledger)
    chain.broadcast_error = BroadcastTimeout("timed out waiting for node")
    outcome = wallet.request_withdrawal(1, DESTINATION, "4")

    chain.confirm(outcome.external_ref)

    assert wallet.verify_pending_withdrawals() == 1
    assert ledger.get_transaction(outcome.transaction_id).status == TransactionStatus.COMPLETED
    assert locks.get_lock(1) is None
    assert ledger.get_balance(1) == Decimal("6.000000")


def test_operator_completes_pending_withdrawal(wallet, ledger, locks, chain):
    _funded(ledger)
    chain.broadcast_error = BroadcastTimeout("timed out waiting for node")
    outcome = wallet.request_withdrawal(1, DESTINATION, "4")
    assert [entry.id for entry in wallet.pending_withdrawals()] == [outcome.transaction_id]

    resolved = wallet.resolve_withdrawal(outcome.transaction_id, "complete")

    assert resolved.status == "completed"
    assert resolved.balance == Decimal("6.000000")
    assert resolved.lock_released is True
    assert locks.get_lock(1) is None
    assert wallet.pending_withdrawals() == []


def test_operator_fails_pending_withdrawal(wallet, ledger, locks, chain):
    _funded(ledger)
    chain.broadcast_error = BroadcastTimeout("timed out waiting for node")
    outcome = wallet.request_withdrawal(1, DESTINATION, "4")

    resolved = wallet.resolve_withdrawal(outcome.transaction_id, "fail", "Never reached the chain")

    assert resolved.status == "failed"
    assert resolved.balance == Decimal("10.000000")
    assert locks.get_lock(1) is None
    assert ledger.get_transaction(outcome.transaction_id).meta["failure_reason"] == "Never reached the chain"
    with pytest.raises(InvalidTransition):
        wallet.resolve_withdrawal(outcome.transaction_id, "complete")
    balance, replayed = ledger.audit(1)
    assert balance == replayed


def test_settling_old_withdrawal_keeps_newer_lock(wallet, ledger, locks, chain):
    _funded(ledger)
    chain.broadcast_error = BroadcastTimeout("timed out waiting for node")
    first = wallet.request_withdrawal(1, DESTINATION, "4")
    locks.release(1)
    chain.broadcast_error = None
    second = wallet.request_withdrawal(1, DESTINATION, "1")
    assert second.external_ref == "BCAST0002"

    chain.confirm("BCAST0001")
    settled = wallet.settle_withdrawal(first.transaction_id)

    assert settled.status == "completed"
    assert settled.lock_released is False
    assert locks.get_lock(1).external_ref == "BCAST0002"


def test_settle_rejects_non_withdrawals(wallet, ledger):
    entry = ledger.credit(1, "1")
    with pytest.raises(InvalidTransition):
        wallet.settle_withdrawal(entry.id)


def test_insufficient_balance_releases_lock(wallet, ledger, locks, chain):
    _funded(ledger, amount="1")

    with pytest.raises(InsufficientBalance):
        wallet.request_withdrawal(1, DESTINATION, "4")

    assert locks.get_lock(1) is None
    assert chain.broadcasts == []


@pytest.mark.parametrize("address", ["", "cosmos1" + "d" * 38, "juno1tooshort", CUSTODIAL_ADDRESS])
def test_withdrawal_rejects_bad_address(wallet, ledger, address):
    _funded(ledger)
    with pytest.raises(InvalidAddress):
        wallet.request_withdrawal(1, address, "1")
    assert ledger.get_balance(1) == Decimal("10.000000")


@pytest.mark.parametrize("amount", ["0", "-1", "abc", "0.0000001"])
def test_withdrawal_rejects_bad_amount(wallet, ledger, locks, amount):
    _funded(ledger)
    with pytest.raises(InvalidAmount):
        wallet.request_withdrawal(1, DESTINATION, amount)
    assert locks.get_lock(1) is None


def test_withdrawal_from_system_account_rejected(wallet):
    with pytest.raises(InvalidTransfer):
        wallet.request_withdrawal(SystemAccount.TREASURY, DESTINATION, "1")


def test_transfer_moves_funds_and_releases_locks(wallet, ledger, locks):
    _funded(ledger)

    outcome = wallet.request_transfer(1, 2, "2.5")

    assert outcome.from_balance == Decimal("7.500000")
    assert outcome.to_balance == Decimal("2.500000")
    assert locks.active_locks() == []


def test_transfer_blocked_by_pending_withdrawal(wallet, ledger, locks):
    _funded(ledger)
    locks.acquire(2, LockKind.WITHDRAWAL)

    with pytest.raises(LockConflict):
        wallet.request_transfer(1, 2, "1")

    assert ledger.get_balance(1) == Decimal("10.000000")
    assert [lock.account_id for lock in locks.active_locks()] == [2]


def test_transfer_failure_releases_locks(wallet, ledger, locks):
    _funded(ledger, amount="1")
    with pytest.raises(InsufficientBalance):
        wallet.request_transfer(1, 2, "5")
    assert locks.active_locks() == []


def test_transfer_to_self_rejected(wallet, ledger):
    _funded(ledger)
    with pytest.raises(InvalidTransfer):
        wallet.request_transfer(1, 1, "1")


def test_pay_treasury(wallet, ledger):
    _funded(ledger)

    outcome = wallet.pay_treasury(1, "0.25", "Game fee")

    assert outcome.from_balance == Decimal("9.750000")
    assert ledger.get_balance(SystemAccount.TREASURY) == Decimal("0.250000")
    assert ledger.history(1)[0].kind == TransactionKind.FEE


def test_request_deposit_instructions(wallet):
    instructions = wallet.request_deposit(42)
    assert instructions.address == CUSTODIAL_ADDRESS
    assert instructions.memo == "42"
    assert instructions.routing_token == "42"
    assert instructions.denom == "JUNO"


def test_stats_reconciled_against_chain(wallet, ledger, chain):
    _funded(ledger, 1, "100")
    _funded(ledger, 2, "50")
    chain.balance_units = 150_000_000

    stats = wallet.get_stats()

    assert stats.on_chain_balance == Decimal("150.000000")
    assert stats.internal_total == Decimal("150.000000")
    assert stats.active_accounts == 2
    assert stats.reconciled is True


def test_stats_without_chain_balance(wallet, ledger, chain):
    _funded(ledger)
    chain.balance_error = ChainGatewayError("rest down", status_code=502)

    stats = wallet.get_stats()

    assert stats.on_chain_balance is None
    assert stats.reconciled is False
    assert stats.internal_total == Decimal("10.000000")
