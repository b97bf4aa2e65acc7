"""Constants for storage-lab defaults and timing windows."""

from typing import Final

# ============================================================================
# VM Resource Defaults
# ============================================================================

DEFAULT_MEMORY_MB: Final[int] = 1024
"""Default guest memory in MiB."""

MIN_MEMORY_MB: Final[int] = 256
"""Minimum guest memory in MiB (Ubuntu cloud image will not boot below this)."""

DEFAULT_CPUS: Final[int] = 1
"""Default vCPU count."""

DEFAULT_SSH_PORT: Final[int] = 2222
"""Host port forwarded to guest port 22."""

DEFAULT_DATA_DISK_COUNT: Final[int] = 4
"""Number of data disks (vdb..vde) used by the RAID/LVM/ZFS exercises."""

MAX_DATA_DISK_COUNT: Final[int] = 26
"""Upper bound for data disks (virtio-blk letters vdb..vdz plus one spare)."""

DEFAULT_VM_USER: Final[str] = "lab"
DEFAULT_VM_PASS: Final[str] = "lab"

QEMU_BIN: Final[str] = "qemu-system-x86_64"
"""QEMU system emulator binary looked up on PATH."""

GUEST_SSH_PORT: Final[int] = 22
"""sshd port inside the guest."""

LOOPBACK_HOST: Final[str] = "127.0.0.1"
"""Host side of the user-mode network port forward."""

# ============================================================================
# Guest Readiness
# ============================================================================

SSH_READY_TIMEOUT_SECONDS: Final[int] = 300
"""Default budget for the guest to accept SSH after launch (cloud-init first boot is slow)."""

SSH_READY_POLL_INTERVAL_SECONDS: Final[float] = 3.0
"""Interval between readiness probes."""

SSH_CONNECT_TIMEOUT_SECONDS: Final[float] = 5.0
"""TCP connect / banner / auth timeout for a single SSH attempt."""

READY_PROBE_COMMAND: Final[str] = "echo ok"
"""Trivial guest command used as the readiness probe."""

# ============================================================================
# Launch
# ============================================================================

LAUNCH_SETTLE_SECONDS: Final[float] = 1.0
"""Pause after the daemonizing launcher returns before reading the pid record."""

LAUNCH_TIMEOUT_SECONDS: Final[float] = 60.0
"""Upper bound for the launcher process itself (QEMU forks and exits once initialized)."""

START_TIME_TOLERANCE_SECONDS: Final[float] = 1.0
"""Allowed drift between the stamped and observed process creation time."""

# ============================================================================
# Shutdown Escalation
# ============================================================================

POWEROFF_COMMAND: Final[str] = "sudo poweroff"
"""Guest-side command for stage 1 (graceful) shutdown."""

GRACEFUL_SHUTDOWN_TIMEOUT_SECONDS: Final[float] = 30.0
"""Stage 1 window: how long to wait for the guest to power off."""

GRACEFUL_SHUTDOWN_POLL_SECONDS: Final[float] = 2.0
"""Stage 1 liveness poll interval."""

CONTROL_CHANNEL_WAIT_SECONDS: Final[float] = 3.0
"""Stage 2 window after sending 'quit' on the control socket."""

CONTROL_CHANNEL_CONNECT_TIMEOUT_SECONDS: Final[float] = 2.0
"""Connect timeout for the control socket."""

SIGTERM_WAIT_SECONDS: Final[float] = 2.0
"""Stage 3 window between SIGTERM and SIGKILL."""

SIGKILL_WAIT_SECONDS: Final[float] = 2.0
"""Time allowed for the kernel to reap the process after SIGKILL."""

# ============================================================================
# Exercise Probes
# ============================================================================

PROBE_POLL_INTERVAL_SECONDS: Final[float] = 5.0
"""Interval between re-runs of a guest command while waiting for a pattern (rebuild/resilver)."""

# ============================================================================
# Lab Directory Layout
# ============================================================================

PID_FILE_NAME: Final[str] = "vm.pid"
STAMP_SUFFIX: Final[str] = ".stamp"
MONITOR_SOCKET_NAME: Final[str] = "vm.sock"
LOCK_FILE_NAME: Final[str] = "vm.lock"
CONF_FILE_NAME: Final[str] = "lab.conf"
DISKS_DIR_NAME: Final[str] = "disks"
LOGS_DIR_NAME: Final[str] = "logs"
OS_DISK_NAME: Final[str] = "os.qcow2"
SEED_ISO_NAME: Final[str] = "seed.iso"
DATA_DISK_TEMPLATE: Final[str] = "data-{num:02d}.qcow2"
DATA_DISK_SERIAL_TEMPLATE: Final[str] = "DISK-DATA{num:02d}"
