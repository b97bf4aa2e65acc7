"""Lab configuration from environment variables and lab.conf."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from storage_lab import constants


class Settings(BaseSettings):
    """Lab session configuration.

    Every field maps to the upper-cased environment variable of the same name
    (VM_RAM, VM_CPUS, VM_SSH_PORT, ...). A lab.conf file in the lab directory,
    written in KEY=value form, overrides the environment. Explicit keyword
    arguments override both.

    Instances are frozen: one Settings object describes one lab session and is
    passed to VmController and GuestTransport at construction.

    Example:
        ```python
        settings = Settings.load(Path("~/storage-lab").expanduser(), vm_ram=2048)
        controller = VmController(settings)
        ```
    """

    model_config = SettingsConfigDict(
        frozen=True,
        extra="ignore",  # lab.conf also carries setup-only keys (DATA_DISK_SIZE, ...)
        env_file_encoding="utf-8",
    )

    # Paths
    lab_dir: Path = Field(default_factory=Path.cwd, description="Root of disks/, logs/, pid and socket files")
    qemu_bin: str = Field(default=constants.QEMU_BIN, description="QEMU system emulator binary")

    # VM shape
    vm_ram: int = Field(
        default=constants.DEFAULT_MEMORY_MB, ge=constants.MIN_MEMORY_MB, description="Guest memory (MiB)"
    )
    vm_cpus: int = Field(default=constants.DEFAULT_CPUS, ge=1, le=64, description="Guest vCPUs")
    vm_ssh_port: int = Field(default=constants.DEFAULT_SSH_PORT, ge=1, le=65535, description="Forwarded SSH port")
    data_disk_count: int = Field(
        default=constants.DEFAULT_DATA_DISK_COUNT,
        ge=0,
        le=constants.MAX_DATA_DISK_COUNT,
        description="Data disks to attach when present",
    )

    # Guest credentials (disposable guest, password auth)
    vm_user: str = Field(default=constants.DEFAULT_VM_USER, min_length=1)
    vm_pass: str = constants.DEFAULT_VM_PASS

    # Behaviour
    vm_debug: bool = Field(default=False, description="Visible QEMU console instead of headless")
    vm_ssh_timeout: float = Field(default=constants.SSH_READY_TIMEOUT_SECONDS, gt=0)
    ssh_poll_interval: float = Field(default=constants.SSH_READY_POLL_INTERVAL_SECONDS, gt=0)
    ssh_connect_timeout: float = Field(default=constants.SSH_CONNECT_TIMEOUT_SECONDS, gt=0)

    # Launch and shutdown windows
    launch_settle_seconds: float = Field(default=constants.LAUNCH_SETTLE_SECONDS, ge=0)
    graceful_shutdown_timeout: float = Field(default=constants.GRACEFUL_SHUTDOWN_TIMEOUT_SECONDS, ge=0)
    graceful_shutdown_poll: float = Field(default=constants.GRACEFUL_SHUTDOWN_POLL_SECONDS, gt=0)
    control_channel_wait: float = Field(default=constants.CONTROL_CHANNEL_WAIT_SECONDS, ge=0)
    sigterm_wait: float = Field(default=constants.SIGTERM_WAIT_SECONDS, ge=0)
    sigkill_wait: float = Field(default=constants.SIGKILL_WAIT_SECONDS, ge=0)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # lab.conf is sourced after the environment, so it wins over it
        return init_settings, dotenv_settings, env_settings, file_secret_settings

    @classmethod
    def load(cls, lab_dir: Path | None = None, **overrides: object) -> "Settings":
        """Build settings for a lab directory, reading its lab.conf if present.

        Resolution order for the directory: explicit argument, LAB_DIR env var,
        current working directory.
        """
        if lab_dir is None:
            env_dir = os.environ.get("LAB_DIR")
            lab_dir = Path(env_dir) if env_dir else Path.cwd()
        lab_dir = lab_dir.expanduser().resolve()
        conf = lab_dir / constants.CONF_FILE_NAME
        return cls(
            _env_file=conf if conf.is_file() else None,  # type: ignore[call-arg]
            lab_dir=lab_dir,
            **overrides,  # type: ignore[arg-type]
        )

    # ------------------------------------------------------------------
    # Derived paths
    # ------------------------------------------------------------------

    @property
    def disks_dir(self) -> Path:
        return self.lab_dir / constants.DISKS_DIR_NAME

    @property
    def logs_dir(self) -> Path:
        return self.lab_dir / constants.LOGS_DIR_NAME

    @property
    def os_disk(self) -> Path:
        return self.disks_dir / constants.OS_DISK_NAME

    @property
    def seed_iso(self) -> Path:
        return self.disks_dir / constants.SEED_ISO_NAME

    @property
    def pid_file(self) -> Path:
        return self.lab_dir / constants.PID_FILE_NAME

    @property
    def monitor_socket(self) -> Path:
        return self.lab_dir / constants.MONITOR_SOCKET_NAME

    @property
    def lock_file(self) -> Path:
        return self.lab_dir / constants.LOCK_FILE_NAME

    def data_disk(self, num: int) -> Path:
        """Path of data disk `num` (1-based)."""
        return self.disks_dir / constants.DATA_DISK_TEMPLATE.format(num=num)
