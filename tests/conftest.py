"""Shared pytest fixtures for storage-lab tests.

Real short-lived processes stand in for QEMU: ``sleep`` children for the
liveness and shutdown paths, and a tiny shell script that mimics
``qemu-system-x86_64 -daemonize -pidfile`` for the launch path. The guest is
never booted; the SSH side is a FakeTransport or a mocked paramiko client.
"""

from __future__ import annotations

import contextlib
import stat
import subprocess
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import psutil
import pytest

from storage_lab.exceptions import GuestTimeoutError
from storage_lab.models import CommandResult
from storage_lab.settings import Settings

# Every env var Settings reads; cleared so the host environment cannot leak in
_SETTINGS_ENV_VARS = (
    "LAB_DIR",
    "QEMU_BIN",
    "VM_RAM",
    "VM_CPUS",
    "VM_SSH_PORT",
    "DATA_DISK_COUNT",
    "VM_USER",
    "VM_PASS",
    "VM_DEBUG",
    "VM_SSH_TIMEOUT",
    "SSH_POLL_INTERVAL",
    "SSH_CONNECT_TIMEOUT",
    "LAUNCH_SETTLE_SECONDS",
    "GRACEFUL_SHUTDOWN_TIMEOUT",
    "GRACEFUL_SHUTDOWN_POLL",
    "CONTROL_CHANNEL_WAIT",
    "SIGTERM_WAIT",
    "SIGKILL_WAIT",
)

FAKE_QEMU = """#!/bin/sh
# Mimics qemu -daemonize -pidfile: leaves a detached process and records its pid.
pidfile=
while [ $# -gt 0 ]; do
    if [ "$1" = "-pidfile" ]; then pidfile=$2; fi
    shift
done
echo launch >> "$(dirname "$pidfile")/launches"
sleep 60 </dev/null >/dev/null 2>&1 &
echo $! > "$pidfile"
"""

FAKE_QEMU_NO_PID = """#!/bin/sh
exit 0
"""

FAKE_QEMU_FAILS = """#!/bin/sh
echo "qemu-system-x86_64: could not open disk image os.qcow2" >&2
exit 1
"""


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _SETTINGS_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def write_script(path: Path, body: str) -> Path:
    path.write_text(body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def make_settings(lab_dir: Path, **overrides: object) -> Settings:
    """Settings with windows short enough for unit tests."""
    fields: dict[str, object] = {
        "lab_dir": lab_dir,
        "ssh_poll_interval": 0.05,
        "ssh_connect_timeout": 0.5,
        "launch_settle_seconds": 0.2,
        "graceful_shutdown_timeout": 0.5,
        "graceful_shutdown_poll": 0.05,
        "control_channel_wait": 0.5,
        "sigterm_wait": 0.5,
        "sigkill_wait": 1.0,
    }
    fields.update(overrides)
    return Settings(**fields)  # type: ignore[arg-type]


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Lab settings rooted at an empty tmp directory."""
    return make_settings(tmp_path)


def create_disks(settings: Settings, data_disks: int = 0) -> None:
    settings.disks_dir.mkdir(parents=True, exist_ok=True)
    settings.os_disk.touch()
    settings.seed_iso.touch()
    for num in range(1, data_disks + 1):
        settings.data_disk(num).touch()


@pytest.fixture
def lab(tmp_path: Path) -> Iterator[Settings]:
    """Fully set up lab directory whose QEMU binary is the fake launcher.

    Any process left behind by the test is killed on teardown.
    """
    lab_dir = tmp_path / "lab"
    lab_dir.mkdir()
    qemu = write_script(tmp_path / "fake-qemu", FAKE_QEMU)
    lab_settings = make_settings(lab_dir, qemu_bin=str(qemu))
    create_disks(lab_settings)

    yield lab_settings

    with contextlib.suppress(FileNotFoundError, ValueError):
        pid = int(lab_settings.pid_file.read_text().strip())
        with contextlib.suppress(psutil.Error):
            psutil.Process(pid).kill()


def launches(settings: Settings) -> int:
    """How many times the fake QEMU ran for this lab."""
    path = settings.lab_dir / "launches"
    return len(path.read_text().splitlines()) if path.exists() else 0


# ============================================================================
# Child processes
# ============================================================================


@pytest.fixture
def spawn() -> Iterator[Callable[..., subprocess.Popen[bytes]]]:
    """Factory for long-running child processes; all are killed and reaped on teardown."""
    procs: list[subprocess.Popen[bytes]] = []

    def _spawn(*argv: str) -> subprocess.Popen[bytes]:
        proc = subprocess.Popen(argv or ("sleep", "60"))
        procs.append(proc)
        return proc

    yield _spawn

    for proc in procs:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        proc.wait(timeout=5)


def spawn_term_immune(spawn: Callable[..., subprocess.Popen[bytes]]) -> subprocess.Popen[bytes]:
    """Child that ignores SIGTERM (only SIGKILL ends it)."""
    proc = spawn("sh", "-c", 'trap "" TERM; exec sleep 60')
    deadline = time.monotonic() + 5
    # The trap is only in place once sh has exec'd into sleep
    while time.monotonic() < deadline:
        with contextlib.suppress(psutil.Error):
            if psutil.Process(proc.pid).name() == "sleep":
                return proc
        time.sleep(0.01)
    raise RuntimeError("child never exec'd into sleep")


def write_record(settings: Settings, pid: int, started_at: float | None = None) -> None:
    settings.pid_file.write_text(f"{pid}\n")
    if started_at is not None:
        Path(f"{settings.pid_file}.stamp").write_text(f"{started_at:.6f}\n")


# ============================================================================
# Guest transport
# ============================================================================


class FakeTransport:
    """In-memory GuestTransport.

    Args:
        reachable: What check() reports and whether wait_ready() succeeds.
        outputs: Outputs returned by successive exec() calls (last one repeats).
        on_exec: Hook called with each command, e.g. to kill the VM on poweroff.
    """

    def __init__(
        self,
        reachable: bool = True,
        outputs: list[str] | None = None,
        on_exec: Callable[[str], None] | None = None,
    ) -> None:
        self.reachable = reachable
        self.outputs = list(outputs or [""])
        self.on_exec = on_exec
        self.commands: list[str] = []
        self.wait_timeouts: list[float] = []
        self.interactive_calls = 0

    def check(self) -> bool:
        return self.reachable

    def wait_ready(self, timeout: float, *, cancel: object = None) -> None:
        self.wait_timeouts.append(timeout)
        if not self.reachable:
            raise GuestTimeoutError(f"SSH not reachable after {timeout:g}s", {"timeout": timeout})

    def exec(self, command: str, *, timeout: float | None = None) -> CommandResult:
        self.commands.append(command)
        if self.on_exec is not None:
            self.on_exec(command)
        output = self.outputs.pop(0) if len(self.outputs) > 1 else self.outputs[0]
        return CommandResult(output=output, exit_code=0)

    def interactive(self) -> int:
        self.interactive_calls += 1
        return 0


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()
