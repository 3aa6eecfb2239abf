"""
Concurrency control utilities for escrow operations.

Two complementary mechanisms:

1. **Optimistic Locking** (check_version)
   - Per-transaction version compare under select_for_update
   - Transitions on different transactions never wait on each other
   - Use for: every state machine transition

2. **Distributed Locks** (DistributedLock)
   - Redis-based mutual exclusion across processes/servers
   - TTL prevents deadlocks from crashed workers
   - Use for: the deadline sweep (no overlapping runs), payout dispatch,
     payment initiation (one provider call per transaction)

Usage:

    from escrow.locks import DistributedLock, check_version

    with transaction.atomic():
        txn = check_version(EscrowTransaction, txn_id, expected_version=3)
        txn.accept(shipping_window)
        txn.save()  # version becomes 4

    with DistributedLock("escrow:deadline-sweep", ttl=300, blocking=False):
        run_sweep()
"""

from __future__ import annotations

import time
import uuid as uuid_module
from typing import TYPE_CHECKING, TypeVar

from django.db import models, transaction

from django_redis import get_redis_connection

from core.exceptions import NotFoundError
from escrow.exceptions import LockAcquisitionError, StaleRecordError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

T = TypeVar("T", bound=models.Model)


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis-based distributed lock with TTL.

    Ownership is tracked with a random token so a worker can never release
    a lock that expired and was re-acquired by someone else.

    Example:
        # Context manager (recommended)
        with DistributedLock("escrow:instruction:123", ttl=60):
            dispatch()

        # Non-blocking: fail fast when another worker holds the lock
        lock = DistributedLock("escrow:deadline-sweep", ttl=300, blocking=False)
        try:
            lock.acquire()
        except LockAcquisitionError:
            return {"status": "skipped"}

    Args:
        key: Lock identifier (prefixed with "lock:")
        ttl: Lock TTL in seconds
        blocking: If True, acquire() polls until the lock is free
        timeout: Maximum wait in seconds (only if blocking=True)
    """

    # Atomic check-and-delete
    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    # Atomic check-and-expire
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
        """Get Redis connection (lazy initialization)."""
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Returns:
            True once the lock is held

        Raises:
            LockAcquisitionError: If the lock couldn't be acquired
        """
        token = str(uuid_module.uuid4())
        redis = self._get_redis()

        if self.blocking:
            end_time = time.time() + self.timeout
            while time.time() < end_time:
                if self._try_acquire(redis, token):
                    return True
                time.sleep(0.05)

            raise LockAcquisitionError(
                f"Failed to acquire lock '{self.key}' within {self.timeout}s",
                details={"key": self.key, "timeout": self.timeout},
            )

        if not self._try_acquire(redis, token):
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"key": self.key},
            )
        return True

    def _try_acquire(self, redis: Redis, token: str) -> bool:
        """Try once to acquire the lock, recording the token on success."""
        if redis.set(self.key, token, nx=True, ex=self.ttl):
            self._token = token
            return True
        return False

    def release(self) -> bool:
        """
        Release the lock if we hold it.

        Returns:
            True if released, False if we didn't hold it
        """
        if self._token is None:
            return False

        redis = self._get_redis()
        result = redis.eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    def extend(self, additional_ttl: int | None = None) -> bool:
        """
        Reset the lock TTL if we hold it.

        Long sweeps call this between batches so the lock doesn't lapse
        mid-run.
        """
        if self._token is None:
            return False

        ttl = additional_ttl or self.ttl
        redis = self._get_redis()
        result = redis.eval(self.EXTEND_SCRIPT, 1, self.key, self._token, ttl)
        return bool(result)

    @property
    def is_held(self) -> bool:
        """Check if we currently hold the lock."""
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


def check_version(
    model_class: type[T],
    pk: Any,
    expected_version: int | None,
) -> T:
    """
    Lock a record for update and verify its version.

    Combines optimistic locking (version compare) with a row lock
    (select_for_update) held until the surrounding transaction ends, so two
    triggers racing on the same record cannot both pass.

    Args:
        model_class: Django model class with a ``version`` field
        pk: Primary key of the record
        expected_version: Version the caller read; None locks whatever is
            current (used by provider callbacks, which carry no version)

    Returns:
        The locked model instance

    Raises:
        StaleRecordError: Version doesn't match (concurrent modification)
        NotFoundError: Record doesn't exist

    Note:
        Must be called inside transaction.atomic() for the row lock to
        outlive this function.
    """
    model_name = model_class.__name__
    queryset = model_class.objects.select_for_update().filter(pk=pk)

    with transaction.atomic():
        instance = queryset.first()

        if instance is None:
            raise NotFoundError(
                f"{model_name} {pk} not found",
                details={"model": model_name, "pk": str(pk)},
            )

        if expected_version is not None and instance.version != expected_version:
            raise StaleRecordError(
                f"{model_name} {pk} has been modified "
                f"(expected version {expected_version}, current {instance.version})",
                details={
                    "pk": str(pk),
                    "expected_version": expected_version,
                    "current_version": instance.version,
                },
            )

        return instance


__all__ = [
    "DistributedLock",
    "check_version",
]
