"""Process-wide cleanup registry and cooperative cancellation.

A :class:`ShutdownCoordinator` owns a :class:`CancelToken` that is handed to
every blocking remote call. Cleanup actions are registered into three bands
and drained either at the end of a normal run (:meth:`cleanup`) or on an
external interrupt (:meth:`interrupt`):

* cancel-only: only run on interrupt, before anything else
* normal: run in registration order; the token cancel is always the first entry
* final: run last, typically console teardown

A drained band is cleared, so draining twice runs every task at most once.
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TextIO

from diag_collector.exceptions import CancelledError

__all__ = [
    "CancelToken",
    "CancelledError",
    "CleanupTask",
    "ShutdownCoordinator",
    "install_signal_handlers",
    "restore_signal_handlers",
]

CANCEL_ONLY = "cancel_only"
NORMAL = "normal"
FINAL = "final"


class CancelToken:
    """Thread-safe, one-way cancellation flag shared with in-flight remote calls."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self, what: str = "operation") -> None:
        if self._event.is_set():
            raise CancelledError(f"{what} cancelled", context={"operation": what})


@dataclass(frozen=True)
class CleanupTask:
    name: str
    action: Callable[[], Any]


class ShutdownCoordinator:
    def __init__(
        self,
        *,
        console: TextIO | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.token = CancelToken()
        self.console = console if console is not None else sys.stderr
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        # reentrant: a signal handler may interrupt a cleanup already running on the main thread
        self._drain_lock = threading.RLock()
        self._bands: dict[str, list[CleanupTask]] = {CANCEL_ONLY: [], NORMAL: [], FINAL: []}
        self._closed: set[str] = set()
        self.add(self.token.cancel, "cancelling all cancellable executions")

    def _register(self, band: str, action: Callable[[], Any], name: str) -> bool:
        with self._lock:
            if band in self._closed:
                self.logger.warning("dropping cleanup task %r registered after the %s band drained", name, band)
                return False
            self._bands[band].append(CleanupTask(name=name, action=action))
            return True

    def add(self, action: Callable[[], Any], name: str) -> bool:
        return self._register(NORMAL, action, name)

    def add_cancel_only_task(self, action: Callable[[], Any], name: str) -> bool:
        return self._register(CANCEL_ONLY, action, name)

    def add_final_step(self, action: Callable[[], Any], name: str) -> bool:
        return self._register(FINAL, action, name)

    def pending(self) -> dict[str, int]:
        with self._lock:
            return {band: len(tasks) for band, tasks in self._bands.items()}

    def _take(self, bands: tuple[str, ...]) -> list[tuple[str, CleanupTask]]:
        with self._lock:
            taken: list[tuple[str, CleanupTask]] = []
            for band in bands:
                taken.extend((band, task) for task in self._bands[band])
                self._bands[band] = []
                self._closed.add(band)
            return taken

    def _drain(self, bands: tuple[str, ...]) -> int:
        with self._drain_lock:
            tasks = self._take(bands)
            total = len(tasks)
            if total == 0:
                return 0
            self._print("CLEANUP TASKS")
            self.logger.debug("%d tasks to run on cleanup", total)
            for counter, (band, task) in enumerate(tasks, start=1):
                self._print(f"CLEANUP TASKS - {counter}/{total}. {task.name}")
                self.logger.debug("shutdown %s task: %s", band, task.name)
                try:
                    task.action()
                except Exception:
                    self.logger.exception("cleanup task %r failed", task.name)
            self._print(f"COMPLETE AT {time.strftime('%a, %d %b %Y %H:%M:%S %Z')}")
            return total

    def cleanup(self) -> int:
        """Normal end-of-run drain: normal band, then final band."""
        return self._drain((NORMAL, FINAL))

    def interrupt(self) -> int:
        """Interrupt drain: cancel-only band first, then normal and final."""
        return self._drain((CANCEL_ONLY, NORMAL, FINAL))

    def _print(self, line: str) -> None:
        print(line, file=self.console, flush=True)


def install_signal_handlers(
    coordinator: ShutdownCoordinator,
    signals: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM),
) -> dict[signal.Signals, Any]:
    """Route SIGINT/SIGTERM to ``coordinator.interrupt()`` then unwind the main thread.

    Must be called from the main thread. Returns the previous handlers so the
    caller can restore them.
    """

    def _handler(signum: int, _frame: Any) -> None:
        coordinator.logger.warning("received signal %s, shutting down", signal.Signals(signum).name)
        coordinator.interrupt()
        raise KeyboardInterrupt

    previous: dict[signal.Signals, Any] = {}
    for sig in signals:
        previous[sig] = signal.signal(sig, _handler)
    return previous


def restore_signal_handlers(previous: dict[signal.Signals, Any]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)
