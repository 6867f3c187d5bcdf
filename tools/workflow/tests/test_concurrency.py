from __future__ import annotations

import threading
import time

from ci_workflow.concurrency import ConcurrencyManager, RunHandle


def test_child_handles_follow_parent_cancellation() -> None:
    parent = RunHandle(label="run")
    child = parent.child("job")

    assert child.run_id == parent.run_id
    assert not child.cancelled
    parent.cancel("stop")
    assert child.cancelled
    assert parent.reason == "stop"


def test_admit_immediately_when_group_is_free() -> None:
    manager = ConcurrencyManager()
    handle = RunHandle()

    assert manager.admit(handle, "main", cancel_in_progress=True)
    assert manager.active("main") is handle
    manager.release(handle, "main")
    assert manager.active("main") is None


def test_cancel_in_progress_cancels_active_run() -> None:
    manager = ConcurrencyManager()
    first = RunHandle(label="first")
    second = RunHandle(label="second")
    assert manager.admit(first, "feature", cancel_in_progress=True)

    admitted: list[bool] = []
    waiter = threading.Thread(target=lambda: admitted.append(manager.admit(second, "feature", cancel_in_progress=True)))
    waiter.start()

    deadline = time.monotonic() + 5
    while not first.cancelled and time.monotonic() < deadline:
        time.sleep(0.01)
    assert first.cancelled
    assert "cancel-in-progress" in (first.reason or "")

    manager.release(first, "feature")
    waiter.join(timeout=5)
    assert admitted == [True]
    assert manager.active("feature") is second


def test_without_cancel_in_progress_newer_pending_run_replaces_older() -> None:
    manager = ConcurrencyManager()
    active = RunHandle(label="active")
    older = RunHandle(label="older")
    newer = RunHandle(label="newer")
    assert manager.admit(active, "main", cancel_in_progress=False)

    results: dict[str, bool] = {}
    older_thread = threading.Thread(target=lambda: results.setdefault("older", manager.admit(older, "main", cancel_in_progress=False)))
    older_thread.start()
    deadline = time.monotonic() + 5
    while manager.pending("main") is not older and time.monotonic() < deadline:
        time.sleep(0.01)

    newer_thread = threading.Thread(target=lambda: results.setdefault("newer", manager.admit(newer, "main", cancel_in_progress=False)))
    newer_thread.start()
    older_thread.join(timeout=5)

    assert results["older"] is False
    assert older.cancelled
    assert not active.cancelled

    manager.release(active, "main")
    newer_thread.join(timeout=5)
    assert results["newer"] is True


def test_groups_are_independent() -> None:
    manager = ConcurrencyManager()
    assert manager.admit(RunHandle(), "a", cancel_in_progress=False)
    assert manager.admit(RunHandle(), "b", cancel_in_progress=False)
