"""Command-line interface for storage-lab.

Usage:
    storage-lab start                   # Boot the lab VM and wait for SSH
    storage-lab status --json           # Liveness + SSH reachability
    storage-lab exec -- cat /proc/mdstat
    storage-lab ssh                     # Interactive shell in the guest
    storage-lab stop                    # Graceful → control socket → signals
"""

from __future__ import annotations

import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import NoReturn

import click
from pydantic import ValidationError

from storage_lab import __version__
from storage_lab._logging import configure_logging
from storage_lab.exceptions import (
    DependencyMissingError,
    GuestConnectionError,
    GuestTimeoutError,
    GuestUnreachableError,
    LabBusyError,
    LabError,
    LaunchFailedError,
    SetupIncompleteError,
    VmNotRunningError,
    WaitCancelledError,
)
from storage_lab.guest_transport import GuestTransport
from storage_lab.settings import Settings
from storage_lab.system_probes import INSTALL_HINTS, check_dependencies
from storage_lab.vm_controller import VmController

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_GUEST_COMMAND_FAILED = 1
EXIT_CLI_ERROR = 2
EXIT_TIMEOUT = 124  # Matches `timeout` command
EXIT_LAB_ERROR = 125
EXIT_INTERRUPTED = 130  # 128 + SIGINT


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern.

    Args:
        title: Short error title
        message: Detailed explanation
        suggestions: Optional list of suggestions to fix the issue

    Returns:
        Formatted error string
    """
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def report_lab_error(e: LabError, settings: Settings) -> int:
    """Print an actionable message for ``e`` and return the exit code."""
    if isinstance(e, SetupIncompleteError):
        title, code = "Lab setup incomplete", EXIT_CLI_ERROR
        suggestions = [f"Missing: {path}" for path in e.missing]
        suggestions.append("Run the lab setup to create the OS disk and cloud-init seed")
    elif isinstance(e, DependencyMissingError):
        title, code = "Missing host dependencies", EXIT_CLI_ERROR
        suggestions = [f"Install: {INSTALL_HINTS[name]}" for name in e.missing if name in INSTALL_HINTS]
        suggestions.append("Set QEMU_BIN if QEMU is installed outside PATH")
    elif isinstance(e, (GuestUnreachableError, GuestTimeoutError)):
        title, code = "Guest not reachable in time", EXIT_TIMEOUT
        suggestions = [
            "First boot runs cloud-init and can take several minutes; increase --timeout",
            "Start with --debug to watch the console",
            f"Check whether port {settings.vm_ssh_port} is already in use",
        ]
    elif isinstance(e, WaitCancelledError):
        title, code = "Interrupted", EXIT_INTERRUPTED
        suggestions = ["The VM was left running; use 'storage-lab stop' to shut it down"]
    elif isinstance(e, VmNotRunningError):
        title, code = "VM is not running", EXIT_LAB_ERROR
        suggestions = ["Start it with 'storage-lab start'"]
    elif isinstance(e, LabBusyError):
        title, code = "Lab is busy", EXIT_LAB_ERROR
        suggestions = ["Another storage-lab process is starting or stopping this VM; retry when it finishes"]
    elif isinstance(e, GuestConnectionError):
        title, code = "SSH connection failed", EXIT_LAB_ERROR
        suggestions = ["Check 'storage-lab status'", "Verify VM_USER / VM_PASS match the cloud-init seed"]
    elif isinstance(e, LaunchFailedError):
        title, code = "QEMU failed to start", EXIT_LAB_ERROR
        suggestions = [f"See {settings.logs_dir} for the QEMU output", "Run 'storage-lab check-deps'"]
    else:
        title, code = "Lab error", EXIT_LAB_ERROR
        suggestions = [f"See the session log under {settings.logs_dir}"]

    click.echo(format_error(title, e.message, suggestions), err=True)
    return code


def _session_log_path(settings: Settings) -> Path:
    return settings.logs_dir / f"lab-{datetime.now():%Y%m%d-%H%M%S}.log"


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--lab-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Lab directory (default: $LAB_DIR or the current directory)",
)
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.option("-q", "--quiet", is_flag=True, help="Only show errors")
@click.option("--log-file/--no-log-file", default=True, show_default=True, help="Write a session log under logs/")
@click.version_option(__version__, "-V", "--version", prog_name="storage-lab")
@click.pass_context
def main(ctx: click.Context, lab_dir: Path | None, verbose: bool, quiet: bool, log_file: bool) -> None:
    """Manage the storage lab VM (RAID / LVM / ZFS exercises).

    Settings come from VM_* environment variables and an optional lab.conf
    in the lab directory.
    """
    try:
        settings = Settings.load(lab_dir)
    except ValidationError as exc:
        raise click.UsageError(f"Invalid lab configuration:\n{exc}") from exc

    configure_logging(
        level="DEBUG" if verbose else None,
        quiet=quiet,
        log_file=_session_log_path(settings) if log_file else None,
    )
    ctx.obj = settings


@main.command()
@click.option("--debug", is_flag=True, help="Open the QEMU console window (default: $VM_DEBUG)")
@click.option("-t", "--timeout", type=click.FloatRange(min=0, min_open=True), help="SSH readiness timeout in seconds")
@click.pass_obj
def start(settings: Settings, debug: bool, timeout: float | None) -> NoReturn:
    """Start the VM and wait until SSH answers."""
    controller = VmController(settings)
    cancel = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda *_: cancel.set())
    try:
        pid = controller.start(debug=debug or None, timeout=timeout, cancel=cancel)
    except LabError as e:
        sys.exit(report_lab_error(e, settings))
    finally:
        signal.signal(signal.SIGINT, previous)

    click.echo(f"VM running (PID: {pid}, SSH: 127.0.0.1:{settings.vm_ssh_port})")
    sys.exit(EXIT_SUCCESS)


@main.command()
@click.pass_obj
def stop(settings: Settings) -> NoReturn:
    """Shut the VM down (escalates until the process is gone)."""
    try:
        method = VmController(settings).stop()
    except LabError as e:
        sys.exit(report_lab_error(e, settings))

    if method is None:
        click.echo("VM is not running")
    else:
        click.echo(f"VM stopped ({method.value})")
    sys.exit(EXIT_SUCCESS)


@main.command()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def status(settings: Settings, json_output: bool) -> NoReturn:
    """Show whether the VM is running and reachable over SSH."""
    vm_status = VmController(settings).status()

    if json_output:
        click.echo(vm_status.model_dump_json(indent=2))
    elif vm_status.running:
        click.echo(click.style(f"VM is running (PID: {vm_status.pid})", fg="green"))
        if vm_status.ssh_reachable:
            click.echo(f"SSH: reachable on port {settings.vm_ssh_port}")
        else:
            click.echo(click.style(f"SSH: not reachable on port {settings.vm_ssh_port} (still booting?)", fg="yellow"))
    else:
        click.echo("VM is not running")
    sys.exit(EXIT_SUCCESS)


@main.command()
@click.pass_obj
def ssh(settings: Settings) -> NoReturn:
    """Open an interactive shell in the guest. Exits with the shell's status."""
    try:
        exit_code = VmController(settings).ssh()
    except LabError as e:
        sys.exit(report_lab_error(e, settings))
    sys.exit(exit_code)


@main.command("exec", context_settings={"ignore_unknown_options": True})
@click.option("-t", "--timeout", type=click.FloatRange(min=0, min_open=True), help="Inactivity timeout in seconds")
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_obj
def exec_command(settings: Settings, timeout: float | None, command: tuple[str, ...]) -> NoReturn:
    """Run COMMAND in the guest and print its combined output.

    \b
    Examples:
      storage-lab exec -- cat /proc/mdstat
      storage-lab exec 'sudo mdadm --detail /dev/md0'
    """
    try:
        result = GuestTransport(settings).exec(" ".join(command), timeout=timeout)
    except LabError as e:
        sys.exit(report_lab_error(e, settings))

    click.echo(result.output, nl=False)
    if not result.ok:
        if result.output and not result.output.endswith("\n"):
            click.echo()
        click.echo(click.style(f"(command exited with code {result.exit_code})", dim=True))
        sys.exit(EXIT_GUEST_COMMAND_FAILED)
    sys.exit(EXIT_SUCCESS)


@main.command("check-deps")
@click.pass_obj
def check_deps(settings: Settings) -> NoReturn:
    """Check that the host binaries the lab needs are installed."""
    report = check_dependencies(settings)
    for name, path in {**report.required, **report.optional}.items():
        mark = click.style("✓", fg="green") if path else click.style("✗", fg="red")
        click.echo(f"  {mark} {name:<22} {path or 'not found'}")
    seed = report.seed_tool or "not found (need cloud-localds or genisoimage)"
    mark = click.style("✓", fg="green") if report.seed_tool else click.style("✗", fg="yellow")
    click.echo(f"  {mark} {'cloud-init seed tool':<22} {seed}")

    try:
        report.raise_for_missing()
    except DependencyMissingError as e:
        sys.exit(report_lab_error(e, settings))
    click.echo(click.style("All required dependencies satisfied.", fg="green"))
    sys.exit(EXIT_SUCCESS)


if __name__ == "__main__":
    main()
