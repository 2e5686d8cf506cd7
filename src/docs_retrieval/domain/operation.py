"""Operation tokens and deadlines used by admission control.

A ``Deadline`` is the cancellation token threaded through every suspending
call of an admitted operation; CPU-bound loops (strategy scoring) poll it
between documents so abandoned work stops promptly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import time
from uuid import uuid4

from ..errors import OperationTimeoutError


class OperationKind(str, Enum):
    SEARCH = "search"
    INDEXING = "indexing"


@dataclass
class Deadline:
    """Absolute monotonic deadline with cooperative cancellation."""

    operation: str
    timeout: float
    started_at: float = field(default_factory=time.monotonic)
    cancelled: bool = False

    @property
    def expires_at(self) -> float:
        return self.started_at + self.timeout

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        return self.cancelled or time.monotonic() >= self.expires_at

    def restart(self) -> None:
        """Measure the timeout from now; used when a queued operation is admitted."""
        self.started_at = time.monotonic()

    def cancel(self) -> None:
        self.cancelled = True

    def check(self) -> None:
        """Raise OperationTimeoutError once the deadline passed or was cancelled."""
        if self.expired():
            raise OperationTimeoutError(self.operation, self.timeout, stage="running")


@dataclass
class OperationToken:
    """A live admitted or queued operation.

    Created on admission or enqueue, discarded on completion, cancellation
    or timeout.
    """

    kind: OperationKind
    deadline: Deadline
    id: str = field(default_factory=lambda: uuid4().hex)
    enqueued_at: float = field(default_factory=time.monotonic)
    admitted_at: float | None = None

    @property
    def started_at(self) -> float:
        return self.deadline.started_at

    @property
    def queue_time(self) -> float:
        if self.admitted_at is None:
            return time.monotonic() - self.enqueued_at
        return self.admitted_at - self.enqueued_at

    @property
    def age(self) -> float:
        return time.monotonic() - self.deadline.started_at
