"""QEMU command line builder for the lab VM.

Builds the argv for a daemonized x86_64 guest with:
- the OS disk as boot device and the cloud-init seed as CD-ROM
- every data disk that exists on disk, tagged with a DISK-DATANN serial
- user-mode networking forwarding the SSH port to the guest
- a QMP control socket and a pidfile in the lab directory
"""

from pathlib import Path

from storage_lab import constants
from storage_lab._logging import get_logger
from storage_lab.settings import Settings

logger = get_logger(__name__)


def find_data_disks(settings: Settings) -> list[tuple[int, Path]]:
    """Return (number, path) for each configured data disk present on disk.

    Missing disks are skipped silently so a partially set up lab still boots.
    """
    disks: list[tuple[int, Path]] = []
    for num in range(1, settings.data_disk_count + 1):
        path = settings.data_disk(num)
        if path.is_file():
            disks.append((num, path))
    return disks


def build_qemu_cmd(settings: Settings, *, debug: bool | None = None) -> list[str]:
    """Build the QEMU command for the lab VM.

    Args:
        settings: Lab configuration (paths, memory, CPUs, port)
        debug: Visible console instead of headless. Defaults to settings.vm_debug.
            Only the display changes; both modes daemonize and write the pidfile.

    Returns:
        QEMU command as list of strings
    """
    debug = settings.vm_debug if debug is None else debug

    cmd = [
        settings.qemu_bin,
        "-machine",
        "accel=kvm:tcg",  # KVM when available, TCG otherwise
        "-m",
        str(settings.vm_ram),
        "-smp",
        str(settings.vm_cpus),
        "-drive",
        f"file={settings.os_disk},format=qcow2,if=none,id=os",
        "-device",
        "virtio-blk-pci,drive=os,bootindex=0",
        "-cdrom",
        str(settings.seed_iso),
    ]

    data_disks = find_data_disks(settings)
    for num, path in data_disks:
        drive_id = f"data{num:02d}"
        serial = constants.DATA_DISK_SERIAL_TEMPLATE.format(num=num)
        cmd.extend(
            [
                "-drive",
                f"file={path},format=qcow2,if=none,id={drive_id}",
                "-device",
                f"virtio-blk-pci,drive={drive_id},serial={serial}",
            ]
        )
    if len(data_disks) < settings.data_disk_count:
        logger.warning(
            "Only %d of %d data disks found",
            len(data_disks),
            settings.data_disk_count,
            extra={"disks_dir": str(settings.disks_dir)},
        )

    cmd.extend(
        [
            "-nic",
            f"user,hostfwd=tcp:{constants.LOOPBACK_HOST}:{settings.vm_ssh_port}-:{constants.GUEST_SSH_PORT}",
            "-qmp",
            f"unix:{settings.monitor_socket},server=on,wait=off",
            "-pidfile",
            str(settings.pid_file),
        ]
    )

    if not debug:
        cmd.extend(["-display", "none", "-serial", "null"])
    cmd.append("-daemonize")

    return cmd
