"""Runs operations off the caller's thread with per-class time budgets."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from enum import Enum
from typing import Callable, TypeVar

from pulito.errors import OperationBusy, OperationTimeout

log = logging.getLogger(__name__)

T = TypeVar("T")


class OperationClass(str, Enum):
    SHORT = "short"    # trash listing, restore, delete, settings
    MEDIUM = "medium"  # stats, analytics, health
    LONG = "long"      # scans, batch cleanup, package cleanup


DEFAULT_TIMEOUTS: dict[OperationClass, float] = {
    OperationClass.SHORT: 10.0,
    OperationClass.MEDIUM: 30.0,
    OperationClass.LONG: 15 * 60.0,
}


class OperationRunner:
    """Executes callables on a small thread pool.

    Each callable receives a cancel ``threading.Event``.  When its
    time budget runs out the event is set and :class:`OperationTimeout`
    is raised to the caller; work already in progress finishes, later
    work should check the event and stop.  Operations submitted with the
    same ``exclusive`` key never overlap: a second one raises
    :class:`OperationBusy` until the first has actually finished.
    """

    def __init__(
        self,
        max_workers: int = 4,
        timeouts: dict[OperationClass, float] | None = None,
    ) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pulito")
        self._timeouts = {**DEFAULT_TIMEOUTS, **(timeouts or {})}
        self._running: set[str] = set()
        self._lock = threading.Lock()

    def timeout_for(self, op_class: OperationClass) -> float:
        return self._timeouts[op_class]

    def run(
        self,
        fn: Callable[[threading.Event], T],
        op_class: OperationClass = OperationClass.SHORT,
        exclusive: str | None = None,
    ) -> T:
        if exclusive is not None:
            with self._lock:
                if exclusive in self._running:
                    raise OperationBusy(f"A {exclusive} operation is already running")
                self._running.add(exclusive)

        cancel = threading.Event()
        try:
            future: Future[T] = self._executor.submit(fn, cancel)
        except RuntimeError:
            self._release(exclusive)
            raise
        if exclusive is not None:
            future.add_done_callback(lambda _: self._release(exclusive))

        timeout = self._timeouts[op_class]
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            cancel.set()
            future.cancel()
            log.warning("Operation exceeded its %s budget of %.0fs", op_class.value, timeout)
            raise OperationTimeout(f"Operation timed out after {timeout:.0f}s") from None
        finally:
            # done callbacks run after waiters wake, release eagerly here
            if future.done():
                self._release(exclusive)

    def _release(self, key: str | None) -> None:
        if key is None:
            return
        with self._lock:
            self._running.discard(key)

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)
