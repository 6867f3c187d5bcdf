"""Subprocess execution with cancellation, deadlines, and masked output."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

from .concurrency import RunHandle
from .logs import SecretMasker, default_masker

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1
_TERMINATE_GRACE = 5.0


@dataclass(slots=True)
class CommandOutcome:
    returncode: int
    lines: List[str] = field(default_factory=list)
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.cancelled


def _signal_group(proc: subprocess.Popen, signum: int) -> None:
    try:
        os.killpg(proc.pid, signum)
    except ProcessLookupError:
        pass


def _stop(proc: subprocess.Popen) -> None:
    # Commands run in their own session so the whole tree goes down with them.
    _signal_group(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=_TERMINATE_GRACE)
    except subprocess.TimeoutExpired:
        _signal_group(proc, signal.SIGKILL)
        proc.wait()
    else:
        _signal_group(proc, signal.SIGKILL)


def run_command(
    argv: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str],
    handle: Optional[RunHandle] = None,
    deadline: Optional[float] = None,
    masker: Optional[SecretMasker] = None,
    label: str = "",
) -> CommandOutcome:
    """Run ``argv`` to completion, or until cancelled or past ``deadline`` (monotonic)."""

    active_masker = masker or default_masker
    lines: List[str] = []
    try:
        proc = subprocess.Popen(
            list(argv),
            cwd=str(cwd),
            env=dict(env),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            start_new_session=True,
        )
    except OSError as exc:
        message = active_masker.mask(f"Failed to start {argv[0]}: {exc}")
        logger.error(message)
        return CommandOutcome(returncode=127, lines=[message])

    def _pump() -> None:
        assert proc.stdout is not None
        for raw in proc.stdout:
            line = active_masker.mask(raw.rstrip("\n"))
            lines.append(line)
            logger.info("[%s] %s", label or argv[0], line)

    reader = threading.Thread(target=_pump, daemon=True)
    reader.start()

    timed_out = False
    cancelled = False
    while proc.poll() is None:
        if handle is not None and handle.cancelled:
            cancelled = True
            _stop(proc)
            break
        if deadline is not None and time.monotonic() >= deadline:
            timed_out = True
            _stop(proc)
            break
        if handle is not None:
            handle.wait(_POLL_INTERVAL)
        else:
            time.sleep(_POLL_INTERVAL)

    reader.join(timeout=_TERMINATE_GRACE)
    return CommandOutcome(
        returncode=proc.returncode if proc.returncode is not None else -1,
        lines=lines,
        timed_out=timed_out,
        cancelled=cancelled,
    )
