"""
Concurrency control utilities for payment state changes.

Two complementary mechanisms:

1. **Distributed Locks** (DistributedLock)
   - Redis-based mutual exclusion across worker processes
   - TTL so a crashed worker never blocks the next sweep
   - Use for: reconciliation sweeps, trial-expiry sweeps

2. **Optimistic Locking** (save_with_version_check, retry_on_conflict)
   - Conditional ``UPDATE ... WHERE version = expected``
   - Detects concurrent writers at write time without blocking
   - One local re-read and retry, then TransitionConflictError
   - Use for: every booking, refund, transaction and subscription transition

Usage:

    from payments.locks import DistributedLock, retry_on_conflict

    with DistributedLock("reconciliation:run", ttl=600, blocking=False):
        sweep()

    def apply():
        booking = Booking.objects.get(pk=booking_id)
        expected = booking.version
        booking.mark_deposit_paid(amount_cents)
        save_with_version_check(
            booking, expected, ["payment_status", "amount_paid_cents"]
        )
        return booking

    booking = retry_on_conflict(apply, label=f"booking:{booking_id}")
"""

from __future__ import annotations

import logging
import time
import uuid as uuid_module
from typing import TYPE_CHECKING, TypeVar

from django.db import models
from django.db.models import F
from django.utils import timezone

from django_redis import get_redis_connection

from payments.exceptions import (
    LockAcquisitionError,
    StaleRecordError,
    TransitionConflictError,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from typing import Any

    from redis import Redis

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=models.Model)


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis-based distributed lock with TTL.

    Token-based ownership means only the holder can release or extend the
    lock; the TTL releases it automatically if the holder dies.

    Example:
        with DistributedLock("reconciliation:run", ttl=600, blocking=False):
            run_sweep()

        lock = DistributedLock("trials:check", ttl=300, blocking=True, timeout=5.0)
        try:
            with lock:
                check_trials()
        except LockAcquisitionError:
            logger.info("Another worker is checking trials")

    Args:
        key: Lock identifier (will be prefixed with "lock:")
        ttl: Lock TTL in seconds (auto-releases after this time)
        blocking: If True, acquire() waits until lock is available
        timeout: Maximum wait time in seconds (only if blocking=True)
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    EXTEND_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("expire", KEYS[1], ARGV[2])
    else
        return 0
    end
    """

    def __init__(
        self,
        key: str,
        ttl: int = 30,
        blocking: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.key = f"lock:{key}"
        self.ttl = ttl
        self.blocking = blocking
        self.timeout = timeout
        self._token: str | None = None
        self._redis: Redis | None = None

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Returns:
            True once the lock is held

        Raises:
            LockAcquisitionError: Lock held elsewhere (non-blocking) or not
                obtained within ``timeout`` (blocking)
        """
        self._token = str(uuid_module.uuid4())
        redis = self._get_redis()

        if self.blocking:
            end_time = time.monotonic() + self.timeout
            while time.monotonic() < end_time:
                if self._try_acquire(redis):
                    return True
                time.sleep(0.05)

            self._token = None
            raise LockAcquisitionError(
                f"Failed to acquire lock '{self.key}' within {self.timeout}s",
                details={"key": self.key, "timeout": self.timeout},
            )

        if not self._try_acquire(redis):
            self._token = None
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"key": self.key},
            )
        return True

    def _try_acquire(self, redis: Redis) -> bool:
        return bool(redis.set(self.key, self._token, nx=True, ex=self.ttl))

    def release(self) -> bool:
        """Release the lock if we still own it. Safe to call repeatedly."""
        if self._token is None:
            return False

        result = self._get_redis().eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    def extend(self, additional_ttl: int | None = None) -> bool:
        """
        Reset the lock TTL if we still own it.

        Long sweeps call this between batches so the lock outlives them.
        """
        if self._token is None:
            return False

        ttl = additional_ttl or self.ttl
        result = self._get_redis().eval(
            self.EXTEND_SCRIPT, 1, self.key, self._token, ttl
        )
        return bool(result)

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        self.release()
        return False


# =============================================================================
# Optimistic Locking
# =============================================================================


def save_with_version_check(
    instance: M,
    expected_version: int,
    fields: Iterable[str],
) -> M:
    """
    Persist ``fields`` only if the row still carries ``expected_version``.

    Issues a single conditional UPDATE that also bumps ``version`` and
    ``updated_at``. Zero affected rows means another writer got there first.

    Args:
        instance: Model instance holding the new field values
        expected_version: Version read before the in-memory change
        fields: Field names to write

    Returns:
        The instance with ``version`` advanced

    Raises:
        StaleRecordError: The stored version no longer matches
    """
    model_class = type(instance)
    values: dict[str, Any] = {}
    for name in fields:
        field = model_class._meta.get_field(name)
        values[field.attname] = getattr(instance, field.attname)

    now = timezone.now()
    values["version"] = F("version") + 1
    if any(f.name == "updated_at" for f in model_class._meta.concrete_fields):
        values["updated_at"] = now

    updated = model_class.objects.filter(
        pk=instance.pk, version=expected_version
    ).update(**values)

    if updated == 0:
        raise StaleRecordError(
            f"{model_class.__name__} {instance.pk} was modified concurrently",
            details={
                "pk": str(instance.pk),
                "model": model_class.__name__,
                "expected_version": expected_version,
            },
        )

    instance.version = expected_version + 1
    if "updated_at" in values:
        instance.updated_at = now
    return instance


def retry_on_conflict(
    operation: Callable[[], T],
    attempts: int = 2,
    label: str = "",
) -> T:
    """
    Run a read-modify-write ``operation``, retrying on StaleRecordError.

    ``operation`` must re-read the record itself so each attempt sees the
    latest version. After ``attempts`` stale writes the conflict is surfaced
    as TransitionConflictError.

    Raises:
        TransitionConflictError: Every attempt lost the race
    """
    last_error: StaleRecordError | None = None
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except StaleRecordError as e:
            last_error = e
            logger.info(
                "Version conflict, re-reading",
                extra={"label": label, "attempt": attempt, "details": e.details},
            )

    logger.warning(
        "Version conflict persisted after retry",
        extra={"label": label, "attempts": attempts},
    )
    raise TransitionConflictError(
        f"Concurrent modification of {label or 'record'}",
        details=last_error.details if last_error else {},
    )


__all__ = [
    "DistributedLock",
    "save_with_version_check",
    "retry_on_conflict",
]
