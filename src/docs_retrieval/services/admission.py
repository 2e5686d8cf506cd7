"""Admission control for search and indexing operations.

Two independent pools bound how many operations of each kind run at once.
Work beyond capacity waits in a FIFO queue; a queued operation whose
deadline passes is rejected without ever running. Admitted work races its
own deadline and always frees its slot, which immediately promotes the next
queued operation of the same kind.

All pool state is mutated without intervening awaits, so the event loop
serializes access without an explicit lock.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
import logging
import time
from typing import TYPE_CHECKING, Any, TypeVar

from ..domain.operation import Deadline, OperationKind, OperationToken
from ..errors import OperationCancelledError, OperationTimeoutError
from ..observability.metrics import ADMISSION_ACTIVE, ADMISSION_QUEUED, OPERATION_TIMEOUTS


if TYPE_CHECKING:
    from ..config import Settings


logger = logging.getLogger(__name__)

T = TypeVar("T")

OperationFunc = Callable[[OperationToken], Awaitable[T]]

QUEUE_FACTOR = 2
SLOW_FACTOR = 0.5
TIMEOUT_RATE_LIMIT = 0.1


@dataclass
class PoolStats:
    total: int = 0
    completed: int = 0
    failed: int = 0
    timeouts: int = 0
    queued_timeouts: int = 0
    average_time: float = 0.0

    def record_completion(self, elapsed: float) -> None:
        self.completed += 1
        self.average_time += (elapsed - self.average_time) / self.completed

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "timeouts": self.timeouts,
            "queued_timeouts": self.queued_timeouts,
            "average_time_ms": round(self.average_time * 1000, 2),
        }


@dataclass
class _Pool:
    kind: OperationKind
    capacity: int
    configured_capacity: int
    timeout: float
    active: dict[str, OperationToken] = field(default_factory=dict)
    queue: deque[tuple[OperationToken, asyncio.Future[None]]] = field(default_factory=deque)
    stats: PoolStats = field(default_factory=PoolStats)


@dataclass(frozen=True)
class AdmissionHealth:
    search_queue_too_long: bool
    searches_too_slow: bool
    too_many_timeouts: bool

    @property
    def healthy(self) -> bool:
        return not (self.search_queue_too_long or self.searches_too_slow or self.too_many_timeouts)

    def __bool__(self) -> bool:
        return self.healthy

    def as_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "issues": {
                "search_queue_too_long": self.search_queue_too_long,
                "searches_too_slow": self.searches_too_slow,
                "too_many_timeouts": self.too_many_timeouts,
            },
        }


class AdmissionController:
    """Bounds concurrent searches and indexing and sheds indexing capacity under search load."""

    def __init__(
        self,
        max_concurrent_searches: int = 50,
        max_concurrent_indexing: int = 5,
        search_timeout: float = 30.0,
        indexing_timeout: float = 300.0,
        monitor_interval: float = 30.0,
    ):
        if max_concurrent_searches < 1 or max_concurrent_indexing < 1:
            raise ValueError("Pool capacities must be positive")
        self._pools = {
            OperationKind.SEARCH: _Pool(
                OperationKind.SEARCH, max_concurrent_searches, max_concurrent_searches, search_timeout
            ),
            OperationKind.INDEXING: _Pool(
                OperationKind.INDEXING, max_concurrent_indexing, max_concurrent_indexing, indexing_timeout
            ),
        }
        self.monitor_interval = monitor_interval
        self._monitor_task: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> AdmissionController:
        return cls(
            max_concurrent_searches=settings.max_concurrent_searches,
            max_concurrent_indexing=settings.max_concurrent_indexing,
            search_timeout=settings.search_timeout_seconds,
            indexing_timeout=settings.indexing_timeout_seconds,
            monitor_interval=settings.monitor_interval_seconds,
        )

    @property
    def max_concurrent_searches(self) -> int:
        return self._pools[OperationKind.SEARCH].capacity

    @property
    def max_concurrent_indexing(self) -> int:
        return self._pools[OperationKind.INDEXING].capacity

    def active_count(self, kind: OperationKind) -> int:
        return len(self._pools[kind].active)

    def queued_count(self, kind: OperationKind) -> int:
        return len(self._pools[kind].queue)

    async def run_search(self, func: OperationFunc[T], *, timeout: float | None = None, operation: str = "search") -> T:
        return await self.run(OperationKind.SEARCH, func, timeout=timeout, operation=operation)

    async def run_indexing(
        self, func: OperationFunc[T], *, timeout: float | None = None, operation: str = "indexing"
    ) -> T:
        return await self.run(OperationKind.INDEXING, func, timeout=timeout, operation=operation)

    async def run(
        self,
        kind: OperationKind,
        func: OperationFunc[T],
        *,
        timeout: float | None = None,
        operation: str | None = None,
    ) -> T:
        """Run ``func(token)`` once a slot of ``kind`` is free.

        Raises:
            OperationTimeoutError: The deadline passed while queued (the
                callable never ran) or while running (its result is discarded).
            OperationCancelledError: The queue was cancelled before admission.
        """
        pool = self._pools[kind]
        operation = operation or kind.value
        token = OperationToken(kind=kind, deadline=Deadline(operation, timeout or pool.timeout))
        pool.stats.total += 1

        await self._acquire(pool, token)
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(func(token), timeout=token.deadline.remaining())
        except OperationTimeoutError:
            # Raised from inside the work when it polled an expired deadline
            self._record_timeout(pool, "running")
            raise
        except TimeoutError as exc:
            token.deadline.cancel()
            self._record_timeout(pool, "running")
            logger.warning("%s operation %s timed out after %.1fs", kind.value, token.id, token.deadline.timeout)
            raise OperationTimeoutError(operation, token.deadline.timeout, stage="running") from exc
        except Exception:
            pool.stats.failed += 1
            raise
        else:
            pool.stats.record_completion(time.monotonic() - started)
            return result
        finally:
            self._release(pool, token)

    async def _acquire(self, pool: _Pool, token: OperationToken) -> None:
        if len(pool.active) < pool.capacity and not pool.queue:
            self._admit(pool, token)
            return

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        pool.queue.append((token, future))
        self._update_gauges(pool)
        logger.debug(
            "%s operation %s queued (%d active, %d queued)",
            pool.kind.value,
            token.id,
            len(pool.active),
            len(pool.queue),
        )

        try:
            await asyncio.wait_for(future, timeout=token.deadline.remaining())
        except TimeoutError as exc:
            self._abandon_wait(pool, token, future)
            self._record_timeout(pool, "queued")
            pool.stats.queued_timeouts += 1
            logger.warning("%s operation %s timed out while queued", pool.kind.value, token.id)
            raise OperationTimeoutError(token.deadline.operation, token.deadline.timeout, stage="queued") from exc
        except asyncio.CancelledError:
            self._abandon_wait(pool, token, future)
            raise
        except OperationCancelledError:
            pool.stats.failed += 1
            raise

    def _abandon_wait(self, pool: _Pool, token: OperationToken, future: asyncio.Future[None]) -> None:
        """Give back a slot granted concurrently with the timeout, or leave the queue."""
        if future.done() and not future.cancelled() and future.exception() is None:
            self._release(pool, token)
            return
        future.cancel()
        for index, (queued, _) in enumerate(pool.queue):
            if queued.id == token.id:
                del pool.queue[index]
                break
        self._update_gauges(pool)

    def _admit(self, pool: _Pool, token: OperationToken) -> None:
        token.admitted_at = time.monotonic()
        token.deadline.restart()
        pool.active[token.id] = token
        self._update_gauges(pool)

    def _release(self, pool: _Pool, token: OperationToken) -> None:
        if pool.active.pop(token.id, None) is not None:
            self._promote(pool)
        self._update_gauges(pool)

    def _promote(self, pool: _Pool) -> None:
        while pool.queue and len(pool.active) < pool.capacity:
            token, future = pool.queue.popleft()
            if future.done():
                continue
            self._admit(pool, token)
            future.set_result(None)

    def _record_timeout(self, pool: _Pool, stage: str) -> None:
        pool.stats.timeouts += 1
        OPERATION_TIMEOUTS.labels(kind=pool.kind.value, stage=stage).inc()

    def _update_gauges(self, pool: _Pool) -> None:
        ADMISSION_ACTIVE.labels(kind=pool.kind.value).set(len(pool.active))
        ADMISSION_QUEUED.labels(kind=pool.kind.value).set(len(pool.queue))

    def get_status(self) -> dict[str, Any]:
        search = self._pools[OperationKind.SEARCH]
        indexing = self._pools[OperationKind.INDEXING]
        return {
            "active_operations": {"searches": len(search.active), "indexing": len(indexing.active)},
            "queued_operations": {"searches": len(search.queue), "indexing": len(indexing.queue)},
            "capacity": {
                "searches": search.capacity,
                "indexing": indexing.capacity,
                "configured_indexing": indexing.configured_capacity,
            },
            "timeouts": {"search": search.timeout, "indexing": indexing.timeout},
            "metrics": {"searches": search.stats.as_dict(), "indexing": indexing.stats.as_dict()},
        }

    def is_healthy(self) -> AdmissionHealth:
        search = self._pools[OperationKind.SEARCH]
        return AdmissionHealth(
            search_queue_too_long=len(search.queue) > search.capacity * QUEUE_FACTOR,
            searches_too_slow=search.stats.average_time > search.timeout * SLOW_FACTOR,
            too_many_timeouts=search.stats.timeouts > search.stats.total * TIMEOUT_RATE_LIMIT,
        )

    def adjust_priorities(self) -> int:
        """Halve indexing capacity while searches struggle; restore it one slot per healthy check.

        Returns the indexing capacity now in effect.
        """
        indexing = self._pools[OperationKind.INDEXING]
        health = self.is_healthy()
        if not health.healthy:
            if health.search_queue_too_long or health.searches_too_slow:
                indexing.capacity = max(1, indexing.capacity // 2)
                logger.warning("Reduced indexing capacity to %d to prioritize searches", indexing.capacity)
        elif indexing.capacity < indexing.configured_capacity:
            indexing.capacity = min(indexing.configured_capacity, indexing.capacity + 1)
            logger.info("Restored indexing capacity to %d", indexing.capacity)
            self._promote(indexing)
            self._update_gauges(indexing)
        return indexing.capacity

    async def _monitor(self) -> None:
        while True:
            await asyncio.sleep(self.monitor_interval)
            self.adjust_priorities()
            status = self.get_status()
            active = status["active_operations"]
            if active["searches"] or active["indexing"]:
                queued = status["queued_operations"]
                logger.info(
                    "Active: %d searches, %d indexing | Queued: %d searches, %d indexing",
                    active["searches"],
                    active["indexing"],
                    queued["searches"],
                    queued["indexing"],
                )

    async def start(self) -> None:
        """Start the periodic health monitor."""
        if self._monitor_task is None or self._monitor_task.done():
            self._monitor_task = asyncio.create_task(self._monitor(), name="admission-monitor")
            logger.debug("Admission monitor started (every %.0fs)", self.monitor_interval)

    def cancel_all_queued(self) -> int:
        """Reject every queued operation; running operations are untouched."""
        cancelled = 0
        for pool in self._pools.values():
            while pool.queue:
                token, future = pool.queue.popleft()
                if not future.done():
                    future.set_exception(OperationCancelledError(token.deadline.operation))
                    cancelled += 1
            self._update_gauges(pool)
        if cancelled:
            logger.info("Cancelled %d queued operations", cancelled)
        return cancelled

    async def close(self) -> None:
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None
        self.cancel_all_queued()
