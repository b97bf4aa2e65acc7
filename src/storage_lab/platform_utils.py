"""PID-reuse safe process handles built on psutil.

The VM process is daemonized by QEMU, so it is never our child: we cannot
waitpid() it and must rely on signal probes. psutil gives us creation-time
checks (pid reuse) and zombie detection on top of kill(pid, 0).
"""

import contextlib
import time

import psutil

from storage_lab import constants


class ProcessHandle:
    """Handle to an external process identified by pid (+ optional creation time).

    When ``started_at`` is given, the handle only considers the process alive
    while the pid still belongs to a process created at that time. A recycled
    pid therefore reads as dead instead of as "our VM".
    """

    def __init__(self, pid: int, started_at: float | None = None) -> None:
        self.pid = pid
        self.started_at = started_at
        self._proc: psutil.Process | None = None
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied, ValueError):
            self._proc = psutil.Process(pid)

    def is_running(self) -> bool:
        """Zero-effect liveness probe. Never raises."""
        if self._proc is None:
            return False
        try:
            if self._proc.status() == psutil.STATUS_ZOMBIE:
                return False
            if self.started_at is not None:
                drift = abs(self._proc.create_time() - self.started_at)
                if drift > constants.START_TIME_TOLERANCE_SECONDS:
                    return False
            return self._proc.is_running()
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # Exists but owned by someone else; kill(pid, 0) semantics say alive
            return psutil.pid_exists(self.pid)

    def create_time(self) -> float | None:
        if self._proc is None:
            return None
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            return self._proc.create_time()
        return None

    def terminate(self) -> None:
        """Send SIGTERM if the process is still ours."""
        if self._proc is not None and self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                self._proc.terminate()

    def kill(self) -> None:
        """Send SIGKILL if the process is still ours."""
        if self._proc is not None and self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                self._proc.kill()

    def wait_gone(self, timeout: float, poll_interval: float = 0.1) -> bool:
        """Poll liveness until the process is gone or ``timeout`` elapses.

        Returns:
            True if the process is gone, False if still alive at the deadline.
        """
        deadline = time.monotonic() + timeout
        while self.is_running():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(poll_interval, remaining))
        return True

    def __repr__(self) -> str:
        return f"ProcessHandle(pid={self.pid}, started_at={self.started_at})"
