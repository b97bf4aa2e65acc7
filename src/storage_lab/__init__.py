"""storage-lab: QEMU VM lifecycle and guest access for RAID / LVM / ZFS labs.

Boots one disposable Ubuntu guest per lab directory with a set of data
disks, waits for SSH, runs exercise commands in it and shuts it down with
an escalation that always ends with the process gone.

Quick Start:
    ```python
    from storage_lab import Settings, VmController, TextProbe, wait_for_probe

    settings = Settings.load()  # $LAB_DIR or cwd, plus lab.conf
    vm = VmController(settings)
    vm.start()
    wait_for_probe(
        vm.transport,
        "cat /proc/mdstat",
        TextProbe(r"\\[UU\\]", "mirror in sync"),
        timeout=120,
    )
    vm.stop()
    ```

Requirements:
    - qemu-system-x86_64 (KVM used when available, TCG otherwise)
    - Disks prepared by the lab setup under <lab_dir>/disks
    - Python 3.12+
"""

from storage_lab.exceptions import (
    DependencyMissingError,
    GuestConnectionError,
    GuestTimeoutError,
    GuestUnreachableError,
    LabBusyError,
    LabError,
    LaunchFailedError,
    PermanentError,
    ProcessNotStartedError,
    SetupIncompleteError,
    TransientError,
    VmNotRunningError,
    WaitCancelledError,
)
from storage_lab.guest_transport import GuestTransport
from storage_lab.models import CommandResult, ShutdownMethod, VmStatus
from storage_lab.probes import ProbeResult, TextProbe, run_probe, wait_for_probe
from storage_lab.settings import Settings
from storage_lab.system_probes import DependencyReport, check_dependencies, require_dependencies
from storage_lab.vm_controller import VmController

__all__ = [
    "CommandResult",
    "DependencyMissingError",
    "DependencyReport",
    "GuestConnectionError",
    "GuestTimeoutError",
    "GuestTransport",
    "GuestUnreachableError",
    "LabBusyError",
    "LabError",
    "LaunchFailedError",
    "PermanentError",
    "ProbeResult",
    "ProcessNotStartedError",
    "SetupIncompleteError",
    "Settings",
    "ShutdownMethod",
    "TextProbe",
    "TransientError",
    "VmController",
    "VmNotRunningError",
    "VmStatus",
    "WaitCancelledError",
    "check_dependencies",
    "require_dependencies",
    "run_probe",
    "wait_for_probe",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("storage-lab")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
