"""
Idempotency ledger for exactly-once-effect request handling.

Each client-supplied key owns one row in ``idempotency_keys``. The ``locked``
flag on that row is the only mutual-exclusion primitive for a key and is
flipped with compare-and-swap updates, so it holds across processes and
restarts:

- No row: insert a locked row -> Proceed
- Different request hash: Conflict, whatever the lock state
- Same hash, stored response: Replay the exact stored text and status
- Same hash, still locked: in-progress Conflict, unless the lock is stale,
  in which case one caller may take it over

A crash between Proceed and Release leaves the row locked; locks older than
``idempotency_lock_stale_after_seconds`` are eligible for takeover or
force-release.
"""
import hashlib
import json
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Mapping, Optional, Union

import structlog
from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payflow.config import Settings, get_settings
from payflow.core.exceptions import PaymentSystemError, StorageError
from payflow.database.models import IdempotencyKey, utcnow
from payflow.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class IdempotencyError(Exception):
    """Raised when the ledger is used incorrectly (e.g. double release)."""

    pass


@dataclass
class LockToken:
    """Handle returned by a successful acquire; must be released exactly once."""

    key: str
    token: uuid.UUID
    released: bool = False
    # Set when the release joined a caller transaction that has not committed yet
    pending_commit: bool = False

    def mark_committed(self) -> None:
        self.pending_commit = False


@dataclass(frozen=True)
class Proceed:
    lock: LockToken


@dataclass(frozen=True)
class Replay:
    body: str
    status_code: int


@dataclass(frozen=True)
class Conflict:
    reason: str  # "mismatch" or "in_progress"


AcquireOutcome = Union[Proceed, Replay, Conflict]


def compute_request_hash(body: Mapping[str, Any]) -> str:
    """SHA-256 hex digest of the canonical JSON form of a request body."""
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def serialize_response(body: Any) -> str:
    """Serialize a response body once; the stored text is what replays return."""
    return json.dumps(body, ensure_ascii=False, separators=(",", ":"), default=str)


def lock_is_stale(locked_at: Optional[datetime], now: datetime, threshold_seconds: int) -> bool:
    """A held lock is stale once it is at least ``threshold_seconds`` old."""
    if locked_at is None:
        return True
    return now - locked_at >= timedelta(seconds=threshold_seconds)


class IdempotencyLedger:
    """
    Guards request-level exactly-once-effect semantics.

    Acquire commits on its own so the lock is visible to concurrent callers;
    release can join the caller's transaction so the stored response commits
    atomically with the work it describes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    @property
    def stale_after_seconds(self) -> int:
        return self.settings.idempotency_lock_stale_after_seconds

    async def acquire(
        self,
        key: str,
        request_hash: str,
        *,
        endpoint: str = "/payments",
        method: str = "POST",
        now: Optional[datetime] = None,
    ) -> AcquireOutcome:
        """
        Acquire the ledger entry for ``key``.

        Args:
            key: Client-supplied idempotency key
            request_hash: Digest of the canonical request body
            endpoint: Endpoint the key is used on
            method: HTTP method the key is used with
            now: Clock override

        Returns:
            Proceed, Replay or Conflict

        Raises:
            StorageError: If the ledger cannot be read or written
        """
        now = now or utcnow()

        # A row can disappear between insert and read (purge); retry a few times
        for _ in range(3):
            outcome = await self._try_insert(key, request_hash, endpoint, method, now)
            if outcome is None:
                outcome = await self._resolve_existing(key, request_hash, now)
            if outcome is not None:
                self._record_outcome(key, outcome)
                return outcome

        raise StorageError(f"Could not settle idempotency record for key {key}")

    async def _try_insert(
        self, key: str, request_hash: str, endpoint: str, method: str, now: datetime
    ) -> Optional[Proceed]:
        token = uuid.uuid4()
        async with self.session_factory() as db:
            db.add(
                IdempotencyKey(
                    key=key,
                    request_hash=request_hash,
                    endpoint=endpoint,
                    method=method,
                    locked=True,
                    lock_token=token,
                    locked_at=now,
                    created_at=now,
                    last_used_at=now,
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return None
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error("idempotency_insert_failed", idempotency_key=key, error=str(e))
                raise StorageError(f"Failed to write idempotency record: {e}") from e

        return Proceed(LockToken(key=key, token=token))

    async def _resolve_existing(
        self, key: str, request_hash: str, now: datetime
    ) -> Optional[AcquireOutcome]:
        try:
            async with self.session_factory() as db:
                result = await db.execute(select(IdempotencyKey).where(IdempotencyKey.key == key))
                record = result.scalar_one_or_none()
                if record is None:
                    return None

                if record.request_hash != request_hash:
                    return Conflict(reason="mismatch")

                if not record.locked and record.response_body is not None:
                    await db.execute(
                        update(IdempotencyKey)
                        .where(IdempotencyKey.key == key)
                        .values(last_used_at=now)
                    )
                    await db.commit()
                    return Replay(body=record.response_body, status_code=record.status_code or 200)

                if record.locked and not lock_is_stale(
                    record.locked_at, now, self.stale_after_seconds
                ):
                    return Conflict(reason="in_progress")

                # Stale lock takeover, or a force-released row with no response
                if record.locked:
                    condition = and_(
                        IdempotencyKey.locked.is_(True),
                        IdempotencyKey.lock_token == record.lock_token,
                    )
                    logger.warning(
                        "idempotency_stale_lock_takeover",
                        idempotency_key=key,
                        locked_at=record.locked_at.isoformat() if record.locked_at else None,
                    )
                else:
                    condition = and_(
                        IdempotencyKey.locked.is_(False),
                        IdempotencyKey.response_body.is_(None),
                    )

                token = uuid.uuid4()
                cas = await db.execute(
                    update(IdempotencyKey)
                    .where(IdempotencyKey.key == key, condition)
                    .values(locked=True, lock_token=token, locked_at=now, last_used_at=now)
                )
                await db.commit()

                if cas.rowcount == 1:
                    return Proceed(LockToken(key=key, token=token))
                return Conflict(reason="in_progress")

        except SQLAlchemyError as e:
            logger.error("idempotency_lookup_failed", idempotency_key=key, error=str(e))
            raise StorageError(f"Failed to read idempotency record: {e}") from e

    @staticmethod
    def _record_outcome(key: str, outcome: AcquireOutcome) -> None:
        if isinstance(outcome, Proceed):
            label = "proceed"
        elif isinstance(outcome, Replay):
            label = "replay"
        elif outcome.reason == "mismatch":
            label = "conflict"
        else:
            label = "in_progress"
        metrics.record_idempotency_outcome(label)
        logger.info("idempotency_acquire", idempotency_key=key, outcome=label)

    async def release(
        self,
        lock: LockToken,
        body: Any,
        status_code: int,
        *,
        session: Optional[AsyncSession] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Store the final response and clear the lock.

        Args:
            lock: Token returned by acquire
            body: Response body (dict) or its already-serialized text
            status_code: HTTP status code to replay
            session: Join this session's transaction instead of committing
            now: Clock override

        Returns:
            bool: False if the lock had been taken over and nothing was stored

        Raises:
            IdempotencyError: If the lock was already released
            StorageError: If the write fails
        """
        if lock.released and not lock.pending_commit:
            raise IdempotencyError(f"Lock for key {lock.key} already released")

        now = now or utcnow()
        response_text = body if isinstance(body, str) else serialize_response(body)
        stmt = (
            update(IdempotencyKey)
            .where(
                IdempotencyKey.key == lock.key,
                IdempotencyKey.lock_token == lock.token,
                IdempotencyKey.locked.is_(True),
            )
            .values(
                locked=False,
                lock_token=None,
                locked_at=None,
                response_body=response_text,
                status_code=status_code,
                last_used_at=now,
            )
        )

        try:
            if session is not None:
                result = await session.execute(stmt)
            else:
                async with self.session_factory() as db:
                    result = await db.execute(stmt)
                    await db.commit()
        except SQLAlchemyError as e:
            logger.error("idempotency_release_failed", idempotency_key=lock.key, error=str(e))
            raise StorageError(f"Failed to release idempotency lock: {e}") from e

        lock.released = True
        lock.pending_commit = session is not None

        if result.rowcount != 1:
            logger.warning("idempotency_lock_lost", idempotency_key=lock.key)
            return False

        logger.info(
            "idempotency_lock_released",
            idempotency_key=lock.key,
            status_code=status_code,
        )
        return True

    @asynccontextmanager
    async def guard(self, lock: LockToken) -> AsyncIterator[LockToken]:
        """
        Scoped acquisition: the lock is released on every exit path.

        If the block raises (or is cancelled) before a committed release, the
        lock is released with an error response derived from the exception.
        """
        try:
            yield lock
        except BaseException as exc:
            if not lock.released or lock.pending_commit:
                if isinstance(exc, PaymentSystemError):
                    error = exc
                elif isinstance(exc, SQLAlchemyError):
                    error = StorageError()
                else:
                    error = PaymentSystemError()
                await self._release_quietly(lock, error.to_dict(), error.http_status)
            raise
        else:
            if not lock.released:
                logger.error("idempotency_lock_not_released", idempotency_key=lock.key)
                error = PaymentSystemError()
                await self._release_quietly(lock, error.to_dict(), error.http_status)
            lock.mark_committed()

    async def _release_quietly(self, lock: LockToken, body: Any, status_code: int) -> None:
        try:
            await self.release(lock, body, status_code)
        except Exception as e:
            # Left for the stale-lock policy
            logger.error("idempotency_guard_release_failed", idempotency_key=lock.key, error=str(e))

    async def release_stale_locks(self, now: Optional[datetime] = None) -> int:
        """
        Force-release locks held longer than the staleness threshold.

        The row is unlocked without a stored response so the same key and
        body can proceed again.

        Returns:
            int: Number of locks released
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.stale_after_seconds)
        async with self.session_factory() as db:
            result = await db.execute(
                update(IdempotencyKey)
                .where(IdempotencyKey.locked.is_(True), IdempotencyKey.locked_at <= cutoff)
                .values(locked=False, lock_token=None, locked_at=None)
            )
            await db.commit()

        released = result.rowcount or 0
        if released:
            logger.warning("idempotency_stale_locks_released", count=released)
            metrics.record_stale_locks_released(released)
        return released

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """
        Delete completed records unused for longer than the retention window.

        Returns:
            int: Number of records deleted
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.settings.idempotency_retention_seconds)
        async with self.session_factory() as db:
            result = await db.execute(
                delete(IdempotencyKey).where(
                    IdempotencyKey.locked.is_(False),
                    IdempotencyKey.last_used_at < cutoff,
                )
            )
            await db.commit()

        purged = result.rowcount or 0
        if purged:
            logger.info("idempotency_records_purged", count=purged)
        return purged
