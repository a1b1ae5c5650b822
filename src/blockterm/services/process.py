"""Cancellation and status token for a running shell process."""

from __future__ import annotations

import logging
import os
import signal
import threading
import uuid
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

DEFAULT_KILL_TIMEOUT = 3.0


class ProcessState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"


@dataclass(frozen=True)
class ProcessStatus:
    state: ProcessState
    exit_code: int | None = None

    @classmethod
    def running(cls) -> ProcessStatus:
        return cls(ProcessState.RUNNING)

    @classmethod
    def from_exit_code(cls, exit_code: int) -> ProcessStatus:
        state = ProcessState.COMPLETED if exit_code == 0 else ProcessState.FAILED
        return cls(state, exit_code)

    @classmethod
    def killed(cls) -> ProcessStatus:
        return cls(ProcessState.KILLED)


class ProcessHandle:
    """Shared between the caller and the executor's worker thread.

    The status cell is guarded by a lock. ``cancel()`` sends SIGTERM to the
    child's process group and, if it is still alive after ``kill_timeout``
    seconds, SIGKILL.
    """

    def __init__(self, command: str, kill_timeout: float = DEFAULT_KILL_TIMEOUT) -> None:
        self.id = uuid.uuid4()
        self.command = command
        self.kill_timeout = kill_timeout
        self._lock = threading.Lock()
        self._status = ProcessStatus.running()
        self._cancel = threading.Event()
        self._pid: int | None = None
        self._exited = False
        self._kill_timer: threading.Timer | None = None

    @property
    def status(self) -> ProcessStatus:
        with self._lock:
            return self._status

    def get_status(self) -> ProcessStatus:
        return self.status

    def set_status(self, status: ProcessStatus) -> None:
        with self._lock:
            self._status = status

    @property
    def should_cancel(self) -> bool:
        return self._cancel.is_set()

    @property
    def pid(self) -> int | None:
        with self._lock:
            return self._pid

    def is_running(self) -> bool:
        return self.status.state is ProcessState.RUNNING

    def attach(self, pid: int) -> None:
        """Bind the spawned child. A cancel requested earlier is applied now."""
        with self._lock:
            self._pid = pid
        if self._cancel.is_set():
            self._terminate()

    def cancel(self) -> None:
        """Request termination of the process. Safe to call more than once."""
        already = self._cancel.is_set()
        self._cancel.set()
        with self._lock:
            if self._exited:
                return
            self._status = ProcessStatus.killed()
        if not already:
            logger.info("Cancelling process %s: %s", self.id, self.command)
            self._terminate()

    def finish(self, exit_code: int) -> None:
        """Record process exit. Called by the worker after the child is reaped."""
        with self._lock:
            self._exited = True
            timer, self._kill_timer = self._kill_timer, None
            if self._status.state is not ProcessState.KILLED:
                self._status = ProcessStatus.from_exit_code(exit_code)
        if timer is not None:
            timer.cancel()

    def _terminate(self) -> None:
        with self._lock:
            pid, exited = self._pid, self._exited
            if pid is None or exited or self._kill_timer is not None:
                return
            timer = threading.Timer(self.kill_timeout, self._force_kill)
            timer.daemon = True
            self._kill_timer = timer

        self._signal(pid, signal.SIGTERM)
        timer.start()

    def _force_kill(self) -> None:
        with self._lock:
            pid, exited = self._pid, self._exited
            self._kill_timer = None
        if pid is None or exited:
            return
        logger.warning("Process %s ignored SIGTERM, sending SIGKILL", pid)
        self._signal(pid, signal.SIGKILL)

    @staticmethod
    def _signal(pid: int, sig: signal.Signals) -> None:
        # The child leads its own session, so its pid is also its process group.
        try:
            os.killpg(pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            logger.warning("Not permitted to signal process group %s", pid)
