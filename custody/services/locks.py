import enum
import logging
import uuid
from datetime import timedelta
from typing import Iterable

from sqlalchemy import delete, select, update

from custody.core.clock import as_utc, utcnow
from custody.core.config import get_settings
from custody.core.database import insert_ignore, session_scope
from custody.core.errors import LockConflict, LockNotReleased
from custody.models import AccountLock, LockKind
from custody.services.chain import ChainGatewayError


logger = logging.getLogger(__name__)


class ReleaseMode(str, enum.Enum):
    FORCE = "force"
    VERIFY = "verify"


class AccountLockManager:
    """Per-account leases stored in ``account_locks``.

    The primary key on ``account_id`` settles concurrent acquires: whichever
    insert lands first holds the account until release or expiry.
    """

    def __init__(self, session_factory, chain=None, settings=None):
        self._session_factory = session_factory
        self._chain = chain
        settings = settings or get_settings()
        self._ttls = {
            LockKind.WITHDRAWAL: int(settings.lock_ttl_withdrawal_seconds),
            LockKind.TRANSFER: int(settings.lock_ttl_transfer_seconds),
            LockKind.DEPOSIT_CREDIT: int(settings.lock_ttl_deposit_credit_seconds),
        }

    def default_ttl(self, kind) -> int:
        return self._ttls[LockKind(kind)]

    def acquire(self, account_id: int, kind, ttl: int | None = None, metadata: dict | None = None) -> AccountLock:
        kind = LockKind(kind)
        ttl = int(ttl or self.default_ttl(kind))
        now = utcnow()
        with session_scope(self._session_factory) as session:
            session.execute(
                delete(AccountLock).where(AccountLock.account_id == account_id, AccountLock.expires_at <= now)
            )
            inserted = insert_ignore(
                session,
                AccountLock,
                {
                    "account_id": account_id,
                    "kind": kind,
                    "acquired_at": now,
                    "expires_at": now + timedelta(seconds=ttl),
                    "metadata": metadata,
                    "token": uuid.uuid4().hex,
                },
                ["account_id"],
            )
            if not inserted:
                holder = session.get(AccountLock, account_id)
                held_kind = holder.kind.value if holder is not None else None
                expires_at = as_utc(holder.expires_at) if holder is not None else None
                logger.warning(
                    "Lock conflict account=%s requested=%s held=%s expires=%s",
                    account_id,
                    kind.value,
                    held_kind,
                    expires_at,
                )
                raise LockConflict(
                    f"Account {account_id} is busy with another {held_kind or 'operation'}, try again shortly",
                    account_id=account_id,
                    held_kind=held_kind,
                    expires_at=expires_at,
                )
            lock = session.get(AccountLock, account_id)
        logger.info("Lock acquired account=%s kind=%s ttl=%ss", account_id, kind.value, ttl)
        return lock

    def acquire_many(
        self, account_ids: Iterable[int], kind, ttl: int | None = None, metadata: dict | None = None
    ) -> list[AccountLock]:
        # Ascending order keeps two crossing transfers from holding one lock each.
        ordered = sorted(set(int(account_id) for account_id in account_ids))
        acquired: list[AccountLock] = []
        try:
            for account_id in ordered:
                acquired.append(self.acquire(account_id, kind, ttl=ttl, metadata=metadata))
        except LockConflict:
            self.release_many(acquired)
            raise
        return acquired

    def release(
        self, account_id: int, external_ref: str | None = None, mode=ReleaseMode.FORCE, *, token: str | None = None
    ) -> bool:
        mode = ReleaseMode(mode)
        if mode == ReleaseMode.VERIFY:
            lock = self.get_lock(account_id, include_expired=True)
            if lock is None:
                return False
            ref = external_ref or lock.external_ref
            if ref:
                self._confirm_transfer(account_id, ref)
            token = token or lock.token

        with session_scope(self._session_factory) as session:
            stmt = delete(AccountLock).where(AccountLock.account_id == account_id)
            if token is not None:
                stmt = stmt.where(AccountLock.token == token)
            result = session.execute(stmt)
            released = result.rowcount > 0
        if released:
            logger.info("Lock released account=%s mode=%s ref=%s", account_id, mode.value, external_ref)
        return released

    def _confirm_transfer(self, account_id: int, external_ref: str) -> None:
        if self._chain is None:
            raise LockNotReleased(
                f"No chain gateway to verify {external_ref}", account_id=account_id, external_ref=external_ref
            )
        try:
            transfer = self._chain.get_transfer_by_hash(external_ref)
        except ChainGatewayError as exc:
            logger.warning("Lock verification lookup failed account=%s ref=%s error=%s", account_id, external_ref, exc)
            raise LockNotReleased(
                f"Could not look up {external_ref}: {exc}", account_id=account_id, external_ref=external_ref
            ) from exc
        if transfer is None:
            raise LockNotReleased(
                f"Transaction {external_ref} not found on chain yet", account_id=account_id, external_ref=external_ref
            )
        if not transfer.succeeded:
            logger.warning(
                "Lock verification found failed transaction account=%s ref=%s code=%s",
                account_id,
                external_ref,
                transfer.status,
            )
            raise LockNotReleased(
                f"Transaction {external_ref} failed on chain with code {transfer.status}",
                account_id=account_id,
                external_ref=external_ref,
            )

    def release_many(self, locks: Iterable[AccountLock]) -> int:
        released = 0
        for lock in locks:
            if self.release(lock.account_id, token=lock.token):
                released += 1
        return released

    def attach_external_ref(self, account_id: int, external_ref: str, *, token: str | None = None) -> bool:
        stmt = update(AccountLock).where(AccountLock.account_id == account_id)
        if token is not None:
            stmt = stmt.where(AccountLock.token == token)
        with session_scope(self._session_factory) as session:
            result = session.execute(stmt.values(external_ref=external_ref))
            return result.rowcount > 0

    def sweep_expired(self) -> int:
        with session_scope(self._session_factory) as session:
            result = session.execute(delete(AccountLock).where(AccountLock.expires_at <= utcnow()))
            swept = result.rowcount or 0
        if swept:
            logger.warning("Swept %s expired account locks", swept)
        return swept

    def get_lock(self, account_id: int, *, include_expired: bool = False) -> AccountLock | None:
        stmt = select(AccountLock).where(AccountLock.account_id == account_id)
        if not include_expired:
            stmt = stmt.where(AccountLock.expires_at > utcnow())
        with session_scope(self._session_factory) as session:
            return session.execute(stmt).scalar_one_or_none()

    def active_locks(self) -> list[AccountLock]:
        with session_scope(self._session_factory) as session:
            return list(
                session.execute(
                    select(AccountLock)
                    .where(AccountLock.expires_at > utcnow())
                    .order_by(AccountLock.acquired_at, AccountLock.account_id)
                ).scalars()
            )

    def verify_pending(self) -> int:
        released = 0
        for lock in self.active_locks():
            if not lock.external_ref:
                continue
            try:
                if self.release(lock.account_id, mode=ReleaseMode.VERIFY):
                    released += 1
            except LockNotReleased as exc:
                logger.info("Lock still pending verification account=%s detail=%s", lock.account_id, exc.message)
        return released
