"""Single-slot trigger queue: while a run is in flight only the latest trigger survives."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from typing import Any, Deque, Generic, Optional, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RECORDED_ERRORS = 50


class LatestTriggerQueue(Generic[T]):
    """Serialise runs against one working tree.

    ``submit`` starts a worker when idle.  While the worker is busy, each new
    trigger replaces the one waiting in the slot, so after the current run the
    worker replays only the most recent trigger.
    """

    def __init__(
        self,
        handler: Callable[[T], Any],
        *,
        name: str = "repo-agent-trigger",
        max_errors: int = MAX_RECORDED_ERRORS,
    ) -> None:
        self._handler = handler
        self._name = name
        self._lock = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()
        self._busy = False
        self._pending: Optional[T] = None
        self._has_pending = False
        self.last_error: BaseException | None = None
        # Most recent handler failures; older ones fall off.
        self.errors: Deque[BaseException] = deque(maxlen=max_errors)
        self.processed = 0

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._busy

    @property
    def pending(self) -> Optional[T]:
        with self._lock:
            return self._pending if self._has_pending else None

    def submit(self, trigger: T) -> bool:
        """Return ``True`` if a worker was started, ``False`` if the slot was replaced."""
        with self._lock:
            if self._busy:
                if self._has_pending:
                    LOGGER.info("Dropping superseded trigger %r", self._pending)
                self._pending = trigger
                self._has_pending = True
                return False
            self._busy = True
            self._idle.clear()
        worker = threading.Thread(target=self._drain, args=(trigger,), name=self._name, daemon=True)
        worker.start()
        return True

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no run is in flight; returns ``False`` on timeout."""
        return self._idle.wait(timeout)

    def _drain(self, trigger: T) -> None:
        current = trigger
        while True:
            failure: BaseException | None = None
            try:
                self._handler(current)
            except Exception as error:  # noqa: BLE001  # the loop must keep serving triggers
                LOGGER.exception("Trigger handler failed for %r", current)
                failure = error
            with self._lock:
                self.processed += 1
                if failure is not None:
                    self.last_error = failure
                    self.errors.append(failure)
                if not self._has_pending:
                    self._busy = False
                    self._idle.set()
                    return
                current = self._pending  # type: ignore[assignment]
                self._pending = None
                self._has_pending = False


__all__ = ["LatestTriggerQueue"]
