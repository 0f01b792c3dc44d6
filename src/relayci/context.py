# context.py
from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterator, Mapping, Optional

from .errors import CancellationError, ProvisioningError
from .model import ExecutorKind
from .ui.console import Console, get_console

if TYPE_CHECKING:
    from .executors.provisioner import Provisioner
    from .reporting import ReportDestination


INTERRUPTED = "interrupted by user"


class CancelToken:
    """Shared cancellation signal for every job of one invocation."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            # first reason wins
            if self._reason is None:
                self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self, job: str | None = None, step: str | None = None) -> None:
        if self.cancelled:
            raise CancellationError(self._reason or "cancelled", job=job, step=step)


class ProvisioningPool:
    """
    Finite container/machine slots shared by all jobs of one invocation.

    Only the scheduler acquires slots; jobs never touch the pool directly.
    """
    POLL_INTERVAL = 0.1

    def __init__(self, capacity: Mapping[ExecutorKind, int]):
        self._capacity: Dict[ExecutorKind, int] = {}
        self._slots: Dict[ExecutorKind, threading.BoundedSemaphore] = {}
        for kind in ExecutorKind:
            n = int(capacity.get(kind, 0))
            if n < 0:
                raise ValueError(f"capacity for {kind.value} must be >= 0, got {n}")
            self._capacity[kind] = n
            if n:
                self._slots[kind] = threading.BoundedSemaphore(n)

    @property
    def capacity(self) -> int:
        return sum(self._capacity.values())

    def capacity_for(self, kind: ExecutorKind) -> int:
        return self._capacity[kind]

    @contextmanager
    def slot(
        self,
        kind: ExecutorKind,
        cancel: CancelToken,
        *,
        timeout: float | None = None,
        job: str | None = None,
    ) -> Iterator[None]:
        sem = self._slots.get(kind)
        if sem is None:
            raise ProvisioningError(f"no {kind.value} capacity configured", job=job)

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            cancel.raise_if_cancelled(job=job)
            if sem.acquire(timeout=self.POLL_INTERVAL):
                break
            if deadline is not None and time.monotonic() >= deadline:
                raise ProvisioningError(
                    f"{kind.value} capacity exhausted",
                    job=job,
                    details={"waited_s": timeout},
                )
        try:
            yield
        finally:
            sem.release()


@dataclass
class RunContext:
    """
    Everything one invocation shares across its jobs.

    Passed explicitly; lives exactly as long as the invocation.
    """
    workspace_root: Path
    pool: ProvisioningPool
    provisioner: "Provisioner"
    revision: str = "unknown"
    repository: str | None = None
    secrets: Mapping[str, str] = field(default_factory=dict)
    cancel: CancelToken = field(default_factory=CancelToken)
    console: Console = field(default_factory=get_console)
    destination: Optional["ReportDestination"] = None
    max_workers: int | None = None
    allocation_timeout: float | None = None

    @property
    def workers(self) -> int:
        if self.max_workers is not None:
            return max(1, self.max_workers)
        return max(1, self.pool.capacity)
