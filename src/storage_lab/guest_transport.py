"""SSH transport to the lab guest.

Every call opens a fresh paramiko connection to the forwarded port on the
loopback interface; nothing is cached, so readiness is always re-probed.
Host keys are accepted without verification: the guest is a disposable VM
regenerated on every setup.

Contracts:
- check()       -> bool, never raises
- wait_ready()  -> None or GuestTimeoutError / WaitCancelledError
- exec()        -> CommandResult; non-zero exit is data, not an error
- interactive() -> remote exit status, blocks until the user exits
"""

from __future__ import annotations

import contextlib
import os
import select
import shutil
import socket
import sys
import termios
import time
import tty
from typing import TYPE_CHECKING

import paramiko
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_result,
    stop_after_delay,
    stop_when_event_set,
    wait_fixed,
)

from storage_lab import constants
from storage_lab._logging import get_logger
from storage_lab.exceptions import GuestConnectionError, GuestTimeoutError, WaitCancelledError
from storage_lab.models import CommandResult

if TYPE_CHECKING:
    import threading
    from collections.abc import Iterator

    from storage_lab.settings import Settings

logger = get_logger(__name__)

_RECV_CHUNK = 32768


class GuestTransport:
    """Remote shell access to the guest over SSH (password auth)."""

    def __init__(self, settings: Settings) -> None:
        self.host = constants.LOOPBACK_HOST
        self.port = settings.vm_ssh_port
        self.username = settings.vm_user
        self._password = settings.vm_pass
        self.connect_timeout = settings.ssh_connect_timeout
        self.poll_interval = settings.ssh_poll_interval

    @contextlib.contextmanager
    def _connect(self, timeout: float | None = None) -> Iterator[paramiko.SSHClient]:
        """Open an authenticated client; always closed on exit.

        Raises:
            GuestConnectionError: TCP, banner, or auth failure.
        """
        timeout = self.connect_timeout if timeout is None else timeout
        cli = paramiko.SSHClient()
        cli.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            try:
                cli.connect(
                    self.host,
                    port=self.port,
                    username=self.username,
                    password=self._password,
                    timeout=timeout,
                    banner_timeout=timeout,
                    auth_timeout=timeout,
                    look_for_keys=False,
                    allow_agent=False,
                )
            except (paramiko.SSHException, OSError, EOFError) as e:
                raise GuestConnectionError(
                    f"SSH connection to {self.username}@{self.host}:{self.port} failed: {e}",
                    {"host": self.host, "port": self.port, "error_type": type(e).__name__},
                ) from e
            yield cli
        finally:
            cli.close()

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------

    def check(self, timeout: float | None = None) -> bool:
        """Quick connectivity probe: True only if `echo ok` connects and exits 0.

        Auth failures, refused connections, timeouts and a guest still booting
        all read as False. ``timeout`` can only shorten the configured connect
        timeout.
        """
        limit = self.connect_timeout if timeout is None else min(self.connect_timeout, timeout)
        try:
            result = self.exec(constants.READY_PROBE_COMMAND, timeout=limit, connect_timeout=limit)
        except Exception:  # noqa: BLE001 - probe collapses every failure to False
            return False
        return result.ok

    def wait_ready(self, timeout: float, *, cancel: threading.Event | None = None) -> None:
        """Poll check() at a fixed interval until it succeeds or ``timeout`` elapses.

        Args:
            timeout: Budget in seconds.
            cancel: Optional event; setting it aborts the wait at the next
                sleep (sleeps wake up immediately).

        Raises:
            GuestTimeoutError: Guest did not become reachable in time.
            WaitCancelledError: ``cancel`` was set.
        """
        logger.info(
            "Waiting for SSH on port %d (timeout: %ss)",
            self.port,
            f"{timeout:g}",
            extra={"port": self.port, "timeout": timeout},
        )

        stop = stop_after_delay(timeout)
        if cancel is not None:
            stop = stop | stop_when_event_set(cancel)

        deadline = time.monotonic() + timeout

        def _attempt() -> bool:
            # Each attempt gets only what is left of the budget
            remaining = deadline - time.monotonic()
            return remaining > 0 and self.check(timeout=remaining)

        def _log_progress(retry_state: RetryCallState) -> None:
            elapsed = retry_state.seconds_since_start or 0.0
            logger.debug("SSH not ready yet: %3ds / %ss", int(elapsed), f"{timeout:g}")

        retrying = Retrying(
            stop=stop,
            wait=wait_fixed(self.poll_interval),
            retry=retry_if_result(lambda ready: not ready),
            sleep=cancel.wait if cancel is not None else time.sleep,
            before_sleep=_log_progress,
        )
        try:
            retrying(_attempt)
        except RetryError:
            if cancel is not None and cancel.is_set():
                logger.info("SSH wait cancelled", extra={"port": self.port})
                raise WaitCancelledError("Wait for SSH was cancelled", {"port": self.port}) from None
            logger.error("SSH connection timed out after %ss", f"{timeout:g}", extra={"port": self.port})
            raise GuestTimeoutError(
                f"SSH not reachable after {timeout:g}s",
                {"port": self.port, "timeout": timeout},
            ) from None

        logger.info("SSH connection established", extra={"port": self.port})

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def exec(
        self, command: str, *, timeout: float | None = None, connect_timeout: float | None = None
    ) -> CommandResult:
        """Run ``command`` in the guest and capture stdout+stderr interleaved.

        Args:
            command: Shell command line, run by the guest user's login shell.
            timeout: Optional per-read inactivity timeout in seconds.
            connect_timeout: Overrides the configured connect, banner, auth and
                session-open timeouts for this call.

        Raises:
            GuestConnectionError: Could not connect or open a session.
            GuestTimeoutError: No output or exit status within ``timeout``.
        """
        logger.debug("guest$ %s", command, extra={"command": command})
        connect_timeout = self.connect_timeout if connect_timeout is None else connect_timeout
        with self._connect(connect_timeout) as cli:
            transport = cli.get_transport()
            if transport is None or not transport.is_active():
                raise GuestConnectionError("SSH transport closed before session open", {"port": self.port})
            try:
                chan = transport.open_session(timeout=connect_timeout)
            except (paramiko.SSHException, OSError) as e:
                raise GuestConnectionError(f"Could not open SSH session: {e}", {"port": self.port}) from e

            with chan:
                chan.set_combine_stderr(True)
                if timeout is not None:
                    chan.settimeout(timeout)
                chunks: list[bytes] = []
                try:
                    chan.exec_command(command)
                    while data := chan.recv(_RECV_CHUNK):
                        chunks.append(data)
                    exit_code = chan.recv_exit_status()
                except TimeoutError as e:
                    raise GuestTimeoutError(
                        f"Guest command produced no output for {timeout}s",
                        {"command": command, "timeout": timeout},
                    ) from e
                except paramiko.SSHException as e:
                    raise GuestConnectionError(f"SSH session failed: {e}", {"command": command}) from e

        output = b"".join(chunks).decode("utf-8", errors="replace")
        logger.debug("guest exit=%d", exit_code, extra={"command": command, "exit_code": exit_code})
        return CommandResult(output=output, exit_code=exit_code)

    def interactive(self) -> int:
        """Attach the local terminal to a login shell in the guest.

        Blocks until the remote shell exits.

        Returns:
            Remote exit status (-1 if the server did not report one).
        """
        logger.info("Opening interactive SSH session (type 'exit' to return)")
        with self._connect() as cli:
            cols, rows = shutil.get_terminal_size()
            chan = cli.invoke_shell(term=os.environ.get("TERM", "xterm"), width=cols, height=rows)
            with chan:
                _pump_terminal(chan)
                return chan.recv_exit_status()


def _pump_terminal(chan: paramiko.Channel) -> None:
    """Shuttle bytes between the local tty and ``chan`` until either side closes."""
    stdin_fd = sys.stdin.fileno()
    stdout_fd = sys.stdout.fileno()
    saved = termios.tcgetattr(stdin_fd) if sys.stdin.isatty() else None
    try:
        if saved is not None:
            tty.setraw(stdin_fd)
        chan.settimeout(0.0)
        while True:
            readable, _, _ = select.select([chan, stdin_fd], [], [])
            if chan in readable:
                try:
                    data = chan.recv(_RECV_CHUNK)
                except socket.timeout:
                    continue
                if not data:
                    break
                os.write(stdout_fd, data)
            if stdin_fd in readable:
                data = os.read(stdin_fd, 1024)
                if not data:
                    break
                chan.sendall(data)
    finally:
        if saved is not None:
            termios.tcsetattr(stdin_fd, termios.TCSADRAIN, saved)
