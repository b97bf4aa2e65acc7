"""Host-side record of the running VM process.

Files under the lab directory:
- vm.pid        -- numeric pid only, written by QEMU itself (-pidfile)
- vm.pid.stamp  -- process creation time, written by us after the launch is confirmed
- vm.lock       -- advisory flock held for the duration of start/stop

The pid file is the single source of truth for "a VM was launched". The stamp
is optional: records without one (older sessions, hand-written files) are
checked by pid alone.
"""

from __future__ import annotations

import contextlib
import fcntl
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from storage_lab import constants
from storage_lab._logging import get_logger
from storage_lab.exceptions import LabBusyError
from storage_lab.platform_utils import ProcessHandle

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ProcessRecord:
    """What the record files say about the VM process."""

    pid: int
    started_at: float | None
    control_socket: Path

    def handle(self) -> ProcessHandle:
        return ProcessHandle(self.pid, self.started_at)


class RecordStore:
    """Reads, stamps and clears the pid record for one lab directory."""

    def __init__(self, pid_file: Path, control_socket: Path, lock_file: Path) -> None:
        self.pid_file = pid_file
        self.stamp_file = pid_file.with_name(pid_file.name + constants.STAMP_SUFFIX)
        self.control_socket = control_socket
        self.lock_file = lock_file

    def read(self) -> ProcessRecord | None:
        """Parse the record. Returns None if absent; raises ValueError if garbled.

        QEMU removes its own pid file on a clean exit, so a stamp without a pid
        file belongs to a finished process and is deleted here.
        """
        try:
            text = self.pid_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            self.stamp_file.unlink(missing_ok=True)
            return None
        pid = int(text)
        if pid <= 0:
            raise ValueError(f"invalid pid in {self.pid_file}: {text!r}")
        return ProcessRecord(pid=pid, started_at=self._read_stamp(), control_socket=self.control_socket)

    def _read_stamp(self) -> float | None:
        try:
            return float(self.stamp_file.read_text(encoding="utf-8").strip())
        except (FileNotFoundError, ValueError):
            return None

    def write_stamp(self, started_at: float) -> None:
        """Atomically record the creation time of the process named in the pid file."""
        tmp = self.stamp_file.with_name(self.stamp_file.name + ".tmp")
        tmp.write_text(f"{started_at:.6f}\n", encoding="utf-8")
        os.replace(tmp, self.stamp_file)

    def clear(self, *, include_socket: bool = False) -> None:
        """Remove the record (and optionally the control socket). Missing files are fine."""
        paths = [self.pid_file, self.stamp_file]
        if include_socket:
            paths.append(self.control_socket)
        for path in paths:
            try:
                path.unlink()
                logger.debug("Removed %s", path.name, extra={"path": str(path)})
            except FileNotFoundError:
                pass

    @contextlib.contextmanager
    def session_lock(self) -> Iterator[None]:
        """Exclusive, non-blocking advisory lock for start/stop. Cross-process safe.

        Raises:
            LabBusyError: Another orchestrator holds the lock.
        """
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        fd = self.lock_file.open("w")
        try:
            try:
                fcntl.flock(fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as e:
                raise LabBusyError(
                    "Another storage-lab process is starting or stopping this VM",
                    {"lock_file": str(self.lock_file)},
                ) from e
            yield
        finally:
            fd.close()  # Closing fd releases the flock
            # Lock file is never unlinked: two processes could then lock different inodes.
