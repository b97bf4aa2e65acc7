"""QMP (QEMU Monitor Protocol) control channel for the lab VM.

Synchronous wrapper around qemu.qmp's legacy client. The lab only needs the
channel as a shutdown fallback, so the surface is tiny: is the socket there,
and send ``quit``.
"""

from __future__ import annotations

import stat
import types
from pathlib import Path
from typing import Any

from qemu.qmp import QMPError  # type: ignore[import-untyped]
from qemu.qmp.legacy import QEMUMonitorProtocol  # type: ignore[import-untyped]

from storage_lab import constants
from storage_lab._logging import get_logger

logger = get_logger(__name__)


def socket_available(path: Path) -> bool:
    """True if ``path`` exists and is a Unix socket. Never raises."""
    try:
        return stat.S_ISSOCK(path.stat().st_mode)
    except OSError:
        return False


class ControlChannel:
    """Sync QMP client for the VM's control socket.

    Usage:
        with ControlChannel(settings.monitor_socket) as qmp:
            qmp.execute("quit")
    """

    def __init__(self, socket_path: str | Path, timeout: float = constants.CONTROL_CHANNEL_CONNECT_TIMEOUT_SECONDS):
        self._socket_path = str(socket_path)
        self._timeout = timeout
        self._client: QEMUMonitorProtocol | None = None

    def __enter__(self) -> ControlChannel:
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        self.close()

    def connect(self) -> None:
        """Connect and negotiate capabilities.

        Raises:
            QMPError / OSError: Socket refused or handshake failed.
        """
        client = QEMUMonitorProtocol(self._socket_path)
        client.settimeout(self._timeout)
        try:
            client.connect(negotiate=True)
        except BaseException:
            client.close()
            raise
        self._client = client
        logger.debug("Connected to QMP socket: %s", self._socket_path)

    def close(self) -> None:
        """Safe to call multiple times or if never connected."""
        if self._client is not None:
            try:
                self._client.close()
            except (QMPError, OSError):
                logger.debug("QMP close error (ignored)", exc_info=True)
            finally:
                self._client = None

    def execute(self, command: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        """Send one QMP command and return the raw response message."""
        if self._client is None:
            raise RuntimeError("QMP client not connected")
        message: dict[str, Any] = {"execute": command}
        if arguments:
            message["arguments"] = arguments
        return self._client.cmd_obj(message)


def send_quit(socket_path: Path, timeout: float = constants.CONTROL_CHANNEL_CONNECT_TIMEOUT_SECONDS) -> bool:
    """Ask QEMU to quit through its control socket.

    QEMU may drop the connection before replying; that still counts as sent.

    Returns:
        True if the command was delivered, False if the socket could not be used.
    """
    try:
        with ControlChannel(socket_path, timeout=timeout) as qmp:
            try:
                qmp.execute("quit")
            except (QMPError, OSError, EOFError):
                logger.debug("QMP connection closed during quit (expected)", exc_info=True)
        return True
    except (QMPError, OSError) as e:
        logger.warning("Control channel unavailable: %s", e, extra={"socket": str(socket_path)})
        return False
