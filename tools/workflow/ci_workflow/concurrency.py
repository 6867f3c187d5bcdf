"""Concurrency groups: at most one active and one pending run per group key."""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Dict, Optional

logger = logging.getLogger(__name__)

_WAIT_INTERVAL = 0.05
_run_ids = itertools.count(1)


def next_run_id() -> int:
    return next(_run_ids)


class RunHandle:
    """Cancellation token shared by everything executing on behalf of a run or job."""

    def __init__(self, run_id: Optional[int] = None, *, label: str = "", parent: Optional["RunHandle"] = None) -> None:
        self.run_id = run_id if run_id is not None else next_run_id()
        self.label = label or f"run-{self.run_id}"
        self.parent = parent
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.info("Cancelling %s: %s", self.label, reason)

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.parent is not None and self.parent.cancelled

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True once cancelled."""

        if self.parent is None:
            return self._event.wait(timeout)
        if self._event.wait(timeout):
            return True
        return self.parent.cancelled

    def child(self, label: str) -> "RunHandle":
        return RunHandle(self.run_id, label=label, parent=self)


class ConcurrencyManager:
    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._active: Dict[str, RunHandle] = {}
        self._pending: Dict[str, RunHandle] = {}

    def admit(self, handle: RunHandle, group: str, *, cancel_in_progress: bool) -> bool:
        """Block until ``handle`` may run in ``group``.

        Returns False when the handle was cancelled before it became active,
        either because a newer run replaced it in the pending slot or because
        it was cancelled externally.
        """

        with self._condition:
            previous = self._pending.get(group)
            if previous is not None and previous is not handle:
                previous.cancel(f"superseded in concurrency group '{group}' by {handle.label}")
            active = self._active.get(group)
            if active is not None and active is not handle and cancel_in_progress:
                active.cancel(f"cancel-in-progress for concurrency group '{group}' by {handle.label}")
            self._pending[group] = handle
            self._condition.notify_all()

            while group in self._active and not handle.cancelled:
                self._condition.wait(_WAIT_INTERVAL)

            if self._pending.get(group) is handle:
                del self._pending[group]
            if handle.cancelled:
                self._condition.notify_all()
                return False
            self._active[group] = handle
            logger.debug("%s active in concurrency group '%s'", handle.label, group)
            return True

    def release(self, handle: RunHandle, group: str) -> None:
        with self._condition:
            if self._active.get(group) is handle:
                del self._active[group]
            self._condition.notify_all()

    def active(self, group: str) -> Optional[RunHandle]:
        with self._condition:
            return self._active.get(group)

    def pending(self, group: str) -> Optional[RunHandle]:
        with self._condition:
            return self._pending.get(group)
