"""Tests for the storage-lab CLI.

Uses click.testing.CliRunner; guest access is mocked at the GuestTransport
seam, host processes are real.
"""

import json
import subprocess
from collections.abc import Callable, Iterator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from storage_lab.cli import (
    EXIT_CLI_ERROR,
    EXIT_GUEST_COMMAND_FAILED,
    EXIT_LAB_ERROR,
    EXIT_SUCCESS,
    EXIT_TIMEOUT,
    format_error,
    main,
)
from storage_lab.exceptions import GuestConnectionError, GuestUnreachableError, SetupIncompleteError
from storage_lab.models import CommandResult

Spawn = Callable[..., subprocess.Popen[bytes]]


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _invoke(runner: CliRunner, lab_dir: Path, *args: str):
    return runner.invoke(main, ["--lab-dir", str(lab_dir), "--no-log-file", *args])


# ============================================================================
# format_error
# ============================================================================


class TestFormatError:
    def test_title_and_message(self) -> None:
        output = format_error("Lab setup incomplete", "Lab disks not found.")
        assert "Error: Lab setup incomplete" in output
        assert "  Lab disks not found." in output
        assert "Suggestions" not in output

    def test_suggestions(self) -> None:
        output = format_error("Title", "Message", ["first", "second"])
        assert "Suggestions:" in output
        assert "    • first" in output
        assert "    • second" in output


# ============================================================================
# Commands
# ============================================================================


class TestStatusCommand:
    def test_stopped(self, runner: CliRunner, tmp_path: Path) -> None:
        result = _invoke(runner, tmp_path, "status")
        assert result.exit_code == EXIT_SUCCESS
        assert "VM is not running" in result.output

    def test_json(self, runner: CliRunner, tmp_path: Path) -> None:
        result = _invoke(runner, tmp_path, "status", "--json")
        assert result.exit_code == EXIT_SUCCESS
        assert json.loads(result.output) == {"running": False, "pid": None, "ssh_reachable": False}

    def test_running(self, runner: CliRunner, tmp_path: Path, spawn: Spawn) -> None:
        proc = spawn()
        (tmp_path / "vm.pid").write_text(f"{proc.pid}\n")
        with patch("storage_lab.vm_controller.GuestTransport") as transport_cls:
            transport_cls.return_value.check.return_value = True
            result = _invoke(runner, tmp_path, "status")

        assert result.exit_code == EXIT_SUCCESS
        assert f"VM is running (PID: {proc.pid})" in result.output
        assert "SSH: reachable on port 2222" in result.output


class TestStartCommand:
    def test_setup_incomplete(self, runner: CliRunner, tmp_path: Path) -> None:
        result = _invoke(runner, tmp_path, "start")
        assert result.exit_code == EXIT_CLI_ERROR
        assert "Lab setup incomplete" in result.output
        assert "os.qcow2" in result.output
        assert not (tmp_path / "vm.pid").exists()

    def test_success(self, runner: CliRunner, tmp_path: Path) -> None:
        with patch("storage_lab.cli.VmController") as controller_cls:
            controller_cls.return_value.start.return_value = 4242
            result = _invoke(runner, tmp_path, "start", "--timeout", "60")

        assert result.exit_code == EXIT_SUCCESS
        assert "VM running (PID: 4242" in result.output
        kwargs = controller_cls.return_value.start.call_args.kwargs
        assert kwargs["timeout"] == 60
        assert kwargs["debug"] is None

    def test_debug_flag(self, runner: CliRunner, tmp_path: Path) -> None:
        with patch("storage_lab.cli.VmController") as controller_cls:
            controller_cls.return_value.start.return_value = 4242
            _invoke(runner, tmp_path, "start", "--debug")
        assert controller_cls.return_value.start.call_args.kwargs["debug"] is True

    def test_unreachable_is_timeout(self, runner: CliRunner, tmp_path: Path) -> None:
        with patch("storage_lab.cli.VmController") as controller_cls:
            controller_cls.return_value.start.side_effect = GuestUnreachableError("VM started but SSH is not reachable")
            result = _invoke(runner, tmp_path, "start")

        assert result.exit_code == EXIT_TIMEOUT
        assert "increase --timeout" in result.output

    def test_invalid_timeout(self, runner: CliRunner, tmp_path: Path) -> None:
        result = _invoke(runner, tmp_path, "start", "--timeout", "0")
        assert result.exit_code == EXIT_CLI_ERROR


class TestStopCommand:
    def test_not_running(self, runner: CliRunner, tmp_path: Path) -> None:
        result = _invoke(runner, tmp_path, "stop")
        assert result.exit_code == EXIT_SUCCESS
        assert "VM is not running" in result.output

    def test_stops_process(self, runner: CliRunner, tmp_path: Path, spawn: Spawn) -> None:
        """Unreachable guest, no control socket: the process is signalled."""
        proc = spawn()
        (tmp_path / "vm.pid").write_text(f"{proc.pid}\n")
        with patch("storage_lab.vm_controller.GuestTransport") as transport_cls:
            transport_cls.return_value.check.return_value = False
            result = _invoke(runner, tmp_path, "stop")

        assert result.exit_code == EXIT_SUCCESS
        assert "VM stopped (signal)" in result.output
        assert proc.poll() is not None
        assert not (tmp_path / "vm.pid").exists()


class TestExecCommand:
    @pytest.fixture
    def transport(self) -> Iterator[MagicMock]:
        with patch("storage_lab.cli.GuestTransport") as cls:
            yield cls.return_value

    def test_success(self, runner: CliRunner, tmp_path: Path, transport: MagicMock) -> None:
        transport.exec.return_value = CommandResult(output="md0 : active raid1\n", exit_code=0)
        result = _invoke(runner, tmp_path, "exec", "--", "cat", "/proc/mdstat")

        assert result.exit_code == EXIT_SUCCESS
        assert result.output == "md0 : active raid1\n"
        transport.exec.assert_called_once_with("cat /proc/mdstat", timeout=None)

    def test_guest_failure(self, runner: CliRunner, tmp_path: Path, transport: MagicMock) -> None:
        """Non-zero guest status is shown and mapped to exit code 1."""
        transport.exec.return_value = CommandResult(output="mdadm: no such device", exit_code=3)
        result = _invoke(runner, tmp_path, "exec", "sudo mdadm --detail /dev/md9")

        assert result.exit_code == EXIT_GUEST_COMMAND_FAILED
        assert "mdadm: no such device\n" in result.output
        assert "(command exited with code 3)" in result.output

    def test_connection_error(self, runner: CliRunner, tmp_path: Path, transport: MagicMock) -> None:
        transport.exec.side_effect = GuestConnectionError("SSH connection to lab@127.0.0.1:2222 failed")
        result = _invoke(runner, tmp_path, "exec", "true")

        assert result.exit_code == EXIT_LAB_ERROR
        assert "SSH connection failed" in result.output

    def test_requires_command(self, runner: CliRunner, tmp_path: Path) -> None:
        assert _invoke(runner, tmp_path, "exec").exit_code == EXIT_CLI_ERROR


class TestSshCommand:
    def test_not_running(self, runner: CliRunner, tmp_path: Path) -> None:
        result = _invoke(runner, tmp_path, "ssh")
        assert result.exit_code == EXIT_LAB_ERROR
        assert "storage-lab start" in result.output

    def test_exit_status_passed_through(self, runner: CliRunner, tmp_path: Path) -> None:
        with patch("storage_lab.cli.VmController") as controller_cls:
            controller_cls.return_value.ssh.return_value = 7
            result = _invoke(runner, tmp_path, "ssh")
        assert result.exit_code == 7


class TestCheckDepsCommand:
    def test_missing_qemu(self, runner: CliRunner, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("QEMU_BIN", "definitely-not-qemu")
        result = _invoke(runner, tmp_path, "check-deps")

        assert result.exit_code == EXIT_CLI_ERROR
        assert "definitely-not-qemu" in result.output
        assert "Missing host dependencies" in result.output

    def test_satisfied(self, runner: CliRunner, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("QEMU_BIN", "sh")
        result = _invoke(runner, tmp_path, "check-deps")

        assert result.exit_code == EXIT_SUCCESS
        assert "All required dependencies satisfied." in result.output


# ============================================================================
# Group options
# ============================================================================


class TestGroupOptions:
    def test_invalid_config(self, runner: CliRunner, tmp_path: Path) -> None:
        (tmp_path / "lab.conf").write_text("VM_RAM=12\n")
        result = _invoke(runner, tmp_path, "status")
        assert result.exit_code == EXIT_CLI_ERROR
        assert "Invalid lab configuration" in result.output

    def test_session_log_file(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(main, ["--lab-dir", str(tmp_path), "--log-file", "stop"])
        assert result.exit_code == EXIT_SUCCESS
        assert list((tmp_path / "logs").glob("lab-*.log"))

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == EXIT_SUCCESS
        assert "storage-lab" in result.output

    def test_setup_incomplete_message_lists_paths(self, runner: CliRunner, tmp_path: Path) -> None:
        with patch("storage_lab.cli.VmController") as controller_cls:
            controller_cls.return_value.start.side_effect = SetupIncompleteError(
                "Lab disks not found. Run Setup first.", ["/lab/disks/os.qcow2"]
            )
            result = _invoke(runner, tmp_path, "start")
        assert "Missing: /lab/disks/os.qcow2" in result.output

