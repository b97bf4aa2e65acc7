"""Lifecycle controller for the lab VM.

Owns exactly one QEMU process per lab directory:

    Stopped → Starting → Running → Stopping (graceful → control channel → signals) → Stopped

Only Stopped/Running are observable from disk. The pid record is written by
QEMU after it has initialized (-pidfile + -daemonize), so a crash during
Starting leaves no record and the next is_running() reads Stopped.
"""

from __future__ import annotations

import contextlib
import subprocess
import time
from typing import TYPE_CHECKING

from storage_lab import constants
from storage_lab._logging import get_logger
from storage_lab.control_channel import send_quit, socket_available
from storage_lab.exceptions import (
    GuestTimeoutError,
    GuestUnreachableError,
    LabError,
    LaunchFailedError,
    ProcessNotStartedError,
    SetupIncompleteError,
    VmNotRunningError,
)
from storage_lab.guest_transport import GuestTransport
from storage_lab.models import ShutdownMethod, VmStatus
from storage_lab.process_record import ProcessRecord, RecordStore
from storage_lab.qemu_cmd import build_qemu_cmd

if TYPE_CHECKING:
    import threading

    from storage_lab.platform_utils import ProcessHandle
    from storage_lab.settings import Settings

logger = get_logger(__name__)

_LAUNCH_LOG_NAME = "qemu-launch.log"
_LAUNCH_LOG_TAIL_BYTES = 2000


class VmController:
    """Start, stop and inspect the lab VM.

    Args:
        settings: Lab configuration; paths for disks, pid record and sockets
            are derived from ``settings.lab_dir``.
        transport: Guest transport; built from ``settings`` when omitted.
    """

    def __init__(self, settings: Settings, transport: GuestTransport | None = None) -> None:
        self.settings = settings
        self.transport = transport if transport is not None else GuestTransport(settings)
        self._records = RecordStore(settings.pid_file, settings.monitor_socket, settings.lock_file)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def _live_record(self) -> ProcessRecord | None:
        """Return the record if its process is alive; delete it otherwise."""
        try:
            record = self._records.read()
        except (ValueError, OSError) as e:
            logger.warning("Unreadable pid record, removing: %s", e, extra={"pid_file": str(self.settings.pid_file)})
            self._records.clear()
            return None

        if record is None:
            return None
        if record.handle().is_running():
            return record

        logger.info("Removing stale pid record (PID %d is gone)", record.pid, extra={"pid": record.pid})
        self._records.clear()
        return None

    def is_running(self) -> bool:
        """True if the recorded VM process is alive. Self-heals stale records; never raises."""
        return self._live_record() is not None

    def has_control_channel(self) -> bool:
        """True if QEMU's control socket is present and usable as a shutdown fallback."""
        return socket_available(self.settings.monitor_socket)

    def status(self) -> VmStatus:
        """Snapshot of process liveness and guest SSH reachability."""
        record = self._live_record()
        if record is None:
            return VmStatus(running=False)
        return VmStatus(running=True, pid=record.pid, ssh_reachable=self.transport.check())

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def _check_setup(self) -> None:
        missing = [str(p) for p in (self.settings.os_disk, self.settings.seed_iso) if not p.is_file()]
        if missing:
            raise SetupIncompleteError("Lab disks not found. Run Setup first.", missing)

    def start(
        self,
        *,
        debug: bool | None = None,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> int:
        """Launch the VM (if not already running) and wait for SSH.

        Args:
            debug: Visible QEMU console. Defaults to ``settings.vm_debug``.
            timeout: SSH readiness budget. Defaults to ``settings.vm_ssh_timeout``.
            cancel: Optional event that aborts the readiness wait.

        Returns:
            PID of the VM process.

        Raises:
            SetupIncompleteError: OS disk or seed image missing (nothing launched).
            LabBusyError: Another orchestrator is starting/stopping this lab.
            LaunchFailedError: QEMU could not be spawned.
            ProcessNotStartedError: No live pid after the launcher returned.
            GuestUnreachableError: VM alive but SSH not ready in time (VM left running).
            WaitCancelledError: ``cancel`` was set during the readiness wait.
        """
        record = self._live_record()
        if record is not None:
            logger.info("VM is already running (PID: %d)", record.pid, extra={"pid": record.pid})
            return record.pid

        self._check_setup()

        with self._records.session_lock():
            # Another orchestrator may have launched between the probe and the lock
            record = self._live_record()
            if record is not None:
                logger.info("VM is already running (PID: %d)", record.pid, extra={"pid": record.pid})
                return record.pid
            pid = self._launch(self.settings.vm_debug if debug is None else debug)

        budget = self.settings.vm_ssh_timeout if timeout is None else timeout
        try:
            self.transport.wait_ready(budget, cancel=cancel)
        except GuestTimeoutError as e:
            raise GuestUnreachableError(
                "VM started but SSH is not reachable",
                {"pid": pid, "port": self.settings.vm_ssh_port, "timeout": budget},
            ) from e

        logger.info("VM is ready", extra={"pid": pid})
        return pid

    def _launch(self, debug: bool) -> int:
        cmd = build_qemu_cmd(self.settings, debug=debug)
        self.settings.logs_dir.mkdir(parents=True, exist_ok=True)
        launch_log = self.settings.logs_dir / _LAUNCH_LOG_NAME

        logger.info(
            "Starting QEMU VM. RAM: %dMB | CPUs: %d | SSH port: %d",
            self.settings.vm_ram,
            self.settings.vm_cpus,
            self.settings.vm_ssh_port,
            extra={"cmd": cmd},
        )
        if debug:
            logger.info("DEBUG mode: QEMU graphical window will open")

        # Leftovers from a VM that exited on its own must not be paired with the new pid
        self._records.clear()

        try:
            # Output goes to a file: the daemonized child may keep inherited pipes open
            with launch_log.open("w", encoding="utf-8") as log:
                proc = subprocess.run(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    timeout=constants.LAUNCH_TIMEOUT_SECONDS,
                    check=False,
                )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise LaunchFailedError(
                f"Failed to start QEMU: {e}",
                stderr=_tail(launch_log),
                context={"cmd": cmd},
            ) from e

        if proc.returncode != 0:
            output = _tail(launch_log)
            logger.error("QEMU exited with code %d:\n%s", proc.returncode, output)
            raise LaunchFailedError(
                f"Failed to start QEMU (exit code {proc.returncode}). Check {launch_log}",
                returncode=proc.returncode,
                stderr=output,
                context={"cmd": cmd},
            )

        time.sleep(self.settings.launch_settle_seconds)

        record = self._live_record()
        if record is None:
            raise ProcessNotStartedError(
                "VM process did not start",
                {"pid_file": str(self.settings.pid_file), "launch_log": _tail(launch_log)},
            )

        started_at = record.handle().create_time()
        if started_at is not None:
            self._records.write_stamp(started_at)

        logger.info("VM started (PID: %d)", record.pid, extra={"pid": record.pid})
        if debug:
            logger.info("Watch the QEMU window for boot progress")
        return record.pid

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def stop(self) -> ShutdownMethod | None:
        """Shut the VM down, escalating until the process is gone.

        Returns:
            The stage that observed the process exit, or None if the VM was
            not running (no files touched in that case).

        Raises:
            LabBusyError: Another orchestrator is starting/stopping this lab.
        """
        record = self._live_record()
        if record is None:
            logger.info("VM is not running")
            return None

        with self._records.session_lock():
            # Another orchestrator may have stopped or replaced the VM before we got the lock
            record = self._live_record()
            if record is None:
                logger.info("VM is not running")
                return None
            handle = record.handle()
            logger.info("Stopping VM (PID: %d)", record.pid, extra={"pid": record.pid})
            method = self._shutdown(handle)
            self._records.clear(include_socket=True)

        logger.info("VM stopped (%s)", method.value, extra={"pid": record.pid, "method": method.value})
        return method

    def _shutdown(self, handle: ProcessHandle) -> ShutdownMethod:
        settings = self.settings

        # Stage 1: guest power-off over SSH
        if self.transport.check():
            logger.info("Sending '%s' via SSH", constants.POWEROFF_COMMAND)
            # sshd usually dies mid-command
            with contextlib.suppress(LabError):
                self.transport.exec(constants.POWEROFF_COMMAND, timeout=settings.ssh_connect_timeout)
            if handle.wait_gone(settings.graceful_shutdown_timeout, poll_interval=settings.graceful_shutdown_poll):
                return ShutdownMethod.GRACEFUL
            logger.warning("Graceful shutdown timed out after %ss", f"{settings.graceful_shutdown_timeout:g}")

        # Stage 2: QEMU control socket
        if self.has_control_channel():
            logger.info("Sending 'quit' via QEMU control socket")
            if send_quit(settings.monitor_socket) and handle.wait_gone(settings.control_channel_wait):
                return ShutdownMethod.CONTROL_CHANNEL

        # Stage 3: signals
        logger.warning("Sending SIGTERM to PID %d", handle.pid, extra={"pid": handle.pid})
        handle.terminate()
        if handle.wait_gone(settings.sigterm_wait):
            return ShutdownMethod.SIGNAL

        logger.warning("Sending SIGKILL to PID %d", handle.pid, extra={"pid": handle.pid})
        handle.kill()
        if not handle.wait_gone(settings.sigkill_wait):
            logger.error("PID %d still present after SIGKILL", handle.pid, extra={"pid": handle.pid})
        return ShutdownMethod.KILLED

    # ------------------------------------------------------------------
    # Operator shell
    # ------------------------------------------------------------------

    def ssh(self) -> int:
        """Open an interactive shell in the guest; returns the remote exit status.

        Raises:
            VmNotRunningError: VM is not running.
            GuestUnreachableError: VM is running but SSH is not reachable.
        """
        if not self.is_running():
            raise VmNotRunningError("VM is not running. Start it first.")
        if not self.transport.check():
            raise GuestUnreachableError("VM is running but SSH is not reachable.", {"port": self.settings.vm_ssh_port})
        return self.transport.interactive()


def _tail(path, limit: int = _LAUNCH_LOG_TAIL_BYTES) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")[-limit:]
    except OSError:
        return ""
