import threading
from datetime import timedelta

import pytest
from sqlalchemy import update

from custody.core.clock import utcnow
from custody.core.database import session_scope
from custody.core.errors import LockConflict, LockNotReleased
from custody.models import AccountLock, LockKind
from custody.services.chain import ChainGatewayError
from custody.services.locks import ReleaseMode


def _expire(session_factory, account_id):
    with session_scope(session_factory) as session:
        session.execute(
            update(AccountLock)
            .where(AccountLock.account_id == account_id)
            .values(expires_at=utcnow() - timedelta(seconds=1))
        )


def test_acquire_then_conflict(locks):
    lock = locks.acquire(1, LockKind.WITHDRAWAL)
    assert lock.kind == LockKind.WITHDRAWAL
    with pytest.raises(LockConflict) as exc:
        locks.acquire(1, LockKind.TRANSFER)
    assert exc.value.held_kind == "withdrawal"
    assert exc.value.status_code == 423


def test_default_ttls_follow_settings(locks, settings):
    assert locks.default_ttl(LockKind.WITHDRAWAL) == settings.lock_ttl_withdrawal_seconds
    assert locks.default_ttl("transfer") == settings.lock_ttl_transfer_seconds


def test_force_release_unlocks(locks):
    locks.acquire(1, LockKind.TRANSFER)
    assert locks.release(1) is True
    assert locks.release(1) is False
    locks.acquire(1, LockKind.TRANSFER)


def test_expired_lock_is_replaced_on_acquire(locks, session_factory):
    locks.acquire(1, LockKind.TRANSFER)
    _expire(session_factory, 1)
    assert locks.get_lock(1) is None
    replacement = locks.acquire(1, LockKind.WITHDRAWAL)
    assert replacement.kind == LockKind.WITHDRAWAL


def test_stale_holder_cannot_release_replacement_lock(locks, session_factory):
    first = locks.acquire(1, LockKind.TRANSFER)
    _expire(session_factory, 1)
    second = locks.acquire(1, LockKind.WITHDRAWAL)
    assert second.token != first.token

    assert locks.release(1, token=first.token) is False
    assert locks.release_many([first]) == 0
    assert locks.attach_external_ref(1, "OLD", token=first.token) is False

    held = locks.get_lock(1)
    assert held.kind == LockKind.WITHDRAWAL
    assert held.external_ref is None
    assert locks.release(1, token=second.token) is True


def test_deposit_credit_kind_is_available_to_operators(locks, settings):
    lock = locks.acquire(7, LockKind.DEPOSIT_CREDIT)
    assert (lock.expires_at - lock.acquired_at).total_seconds() == settings.lock_ttl_deposit_credit_seconds
    with pytest.raises(LockConflict):
        locks.acquire(7, LockKind.WITHDRAWAL)


def test_sweep_expired_is_idempotent(locks, session_factory):
    locks.acquire(1, LockKind.TRANSFER)
    locks.acquire(2, LockKind.TRANSFER)
    _expire(session_factory, 1)
    assert locks.sweep_expired() == 1
    assert locks.sweep_expired() == 0
    assert [lock.account_id for lock in locks.active_locks()] == [2]


def test_acquire_many_orders_and_rolls_back(locks):
    locks.acquire(5, LockKind.WITHDRAWAL)
    with pytest.raises(LockConflict):
        locks.acquire_many([9, 5, 3], LockKind.TRANSFER)
    # 3 was taken before 5 conflicted and must have been released again.
    assert locks.get_lock(3) is None
    assert locks.get_lock(9) is None

    acquired = locks.acquire_many([9, 3, 3], LockKind.TRANSFER)
    assert [lock.account_id for lock in acquired] == [3, 9]


def test_verify_release_without_reference_releases(locks):
    locks.acquire(1, LockKind.WITHDRAWAL)
    assert locks.release(1, mode=ReleaseMode.VERIFY) is True


def test_verify_release_waits_for_confirmation(locks, chain):
    locks.acquire(1, LockKind.WITHDRAWAL)
    locks.attach_external_ref(1, "HASH1")
    with pytest.raises(LockNotReleased):
        locks.release(1, mode=ReleaseMode.VERIFY)
    assert locks.get_lock(1) is not None

    chain.confirm("HASH1", status=5)
    with pytest.raises(LockNotReleased):
        locks.release(1, mode="verify")

    chain.confirm("HASH1")
    assert locks.release(1, mode="verify") is True
    assert locks.get_lock(1) is None


def test_verify_release_treats_lookup_failure_as_unconfirmed(locks, chain, monkeypatch):
    locks.acquire(1, LockKind.WITHDRAWAL)

    def _boom(tx_id):
        raise ChainGatewayError("node down", status_code=503)

    monkeypatch.setattr(chain, "get_transfer_by_hash", _boom)
    with pytest.raises(LockNotReleased):
        locks.release(1, external_ref="HASH2", mode=ReleaseMode.VERIFY)


def test_verify_pending_releases_confirmed_withdrawals(locks, chain):
    locks.acquire(1, LockKind.WITHDRAWAL)
    locks.acquire(2, LockKind.WITHDRAWAL)
    locks.acquire(3, LockKind.TRANSFER)
    locks.attach_external_ref(1, "OK1")
    locks.attach_external_ref(2, "LATER2")
    chain.confirm("OK1")

    assert locks.verify_pending() == 1
    assert [lock.account_id for lock in locks.active_locks()] == [2, 3]


def test_concurrent_acquire_has_single_winner(locks):
    workers = 8
    barrier = threading.Barrier(workers)
    results = []
    results_lock = threading.Lock()

    def _worker():
        barrier.wait()
        try:
            locks.acquire(77, LockKind.WITHDRAWAL)
            outcome = "won"
        except LockConflict:
            outcome = "conflict"
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=_worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert results.count("won") == 1
    assert results.count("conflict") == workers - 1
