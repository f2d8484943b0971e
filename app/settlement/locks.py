"""
Per-order mutual exclusion for settlement operations.

Two layers guard every orchestrator operation:

1. **OrderLock** - a Redis lock keyed by order id, held across the whole
   operation including the processor call. Two concurrent "accept" calls
   for one order cannot both pass the precondition check.

2. **Row lock + version check** (lock_order / check_version) - the order
   row is re-read with select_for_update inside each local transaction,
   so a process that lost its Redis lock (TTL expiry) still cannot commit
   over a newer version.

Usage:
    from settlement.locks import order_lock, lock_order

    with order_lock(order_id):
        with transaction.atomic():
            order = lock_order(order_id)
            ...
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING, TypeVar

from django.conf import settings
from django.db import models, transaction

from django_redis import get_redis_connection

from core.exceptions import NotFoundError
from settlement.exceptions import LockAcquisitionError, StaleRecordError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

    from settlement.models import Order

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=models.Model)


# =============================================================================
# Distributed Lock
# =============================================================================


class DistributedLock:
    """
    Redis lock with TTL and token ownership.

    The key is stored with SET NX EX; release deletes it only when the
    stored token is ours, so a lock that expired and was re-acquired by
    another process is never released by the first holder.

    Args:
        key: Lock identifier (stored under "lock:<key>")
        ttl: Seconds before Redis drops the lock on its own
        blocking: Wait for the lock instead of failing at once
        timeout: Maximum wait in blocking mode

    Raises:
        LockAcquisitionError: From acquire()/__enter__ when the lock is held
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    POLL_INTERVAL = 0.05

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

    def _try_acquire(self, redis: Redis) -> bool:
        return bool(redis.set(self.key, self._token, nx=True, ex=self.ttl))

    def acquire(self) -> bool:
        self._token = uuid.uuid4().hex
        redis = self._get_redis()

        if not self.blocking:
            if self._try_acquire(redis):
                return True
            self._token = None
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"key": self.key},
            )

        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            if self._try_acquire(redis):
                return True
            time.sleep(self.POLL_INTERVAL)

        self._token = None
        logger.warning(
            "Lock acquisition timed out",
            extra={"lock_key": self.key, "timeout": self.timeout},
        )
        raise LockAcquisitionError(
            f"Failed to acquire lock '{self.key}' within {self.timeout}s",
            details={"key": self.key, "timeout": self.timeout},
        )

    def release(self) -> bool:
        """Release the lock if we still own it. Safe to call twice."""
        if self._token is None:
            return False
        result = self._get_redis().eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False


def order_lock(order_id: Any, blocking: bool = True) -> DistributedLock:
    """
    Build the lock guarding one order's settlement operations.

    TTL and wait time come from SETTLEMENT_LOCK_TTL_SECONDS and
    SETTLEMENT_LOCK_TIMEOUT_SECONDS.
    """
    return DistributedLock(
        f"settlement:order:{order_id}",
        ttl=settings.SETTLEMENT_LOCK_TTL_SECONDS,
        blocking=blocking,
        timeout=settings.SETTLEMENT_LOCK_TIMEOUT_SECONDS,
    )


# =============================================================================
# Row Locks
# =============================================================================


def check_version(model_class: type[T], pk: Any, expected_version: int) -> T:
    """
    Lock a row for update, requiring it to still be at expected_version.

    Must run inside transaction.atomic(); the row lock lasts until the
    surrounding transaction ends.

    Raises:
        NotFoundError: No row with that pk
        StaleRecordError: The row was modified since expected_version was read
    """
    instance = (
        model_class.objects.select_for_update()
        .filter(pk=pk, version=expected_version)
        .first()
    )
    if instance is not None:
        return instance

    model_name = model_class.__name__
    current = model_class.objects.filter(pk=pk).values_list("version", flat=True).first()
    if current is None:
        raise NotFoundError(
            f"{model_name} {pk} not found",
            error_code=f"{model_name.upper()}_NOT_FOUND",
            details={"pk": str(pk)},
        )
    raise StaleRecordError(
        f"{model_name} {pk} has been modified "
        f"(expected version {expected_version}, current {current})",
        details={
            "pk": str(pk),
            "expected_version": expected_version,
            "current_version": current,
        },
    )


def lock_order(order_id: Any, expected_version: int | None = None) -> Order:
    """
    Fetch an Order with a row lock, optionally checking its version.

    Raises:
        NotFoundError: Unknown order
        StaleRecordError: expected_version given and no longer current
    """
    from settlement.models import Order

    if not transaction.get_connection().in_atomic_block:
        raise RuntimeError("lock_order() must be called inside transaction.atomic()")

    if expected_version is not None:
        return check_version(Order, order_id, expected_version)

    order = Order.objects.select_for_update().filter(pk=order_id).first()
    if order is None:
        raise NotFoundError(
            f"Order {order_id} not found",
            error_code="ORDER_NOT_FOUND",
            details={"order_id": str(order_id)},
        )
    return order


__all__ = [
    "DistributedLock",
    "order_lock",
    "check_version",
    "lock_order",
]
