"""Data models for storage-lab."""

from enum import Enum

from pydantic import BaseModel, Field


class ShutdownMethod(str, Enum):
    """Which stage of the shutdown escalation observed the VM die."""

    GRACEFUL = "graceful"
    CONTROL_CHANNEL = "control_channel"
    SIGNAL = "signal"
    KILLED = "killed"


class CommandResult(BaseModel):
    """Captured result of one guest command (stdout and stderr interleaved)."""

    output: str = Field(description="Combined stdout+stderr as decoded text")
    exit_code: int = Field(description="Remote exit status (-1 if the channel closed without one)")

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class VmStatus(BaseModel):
    """Point-in-time view of the lab VM."""

    running: bool
    pid: int | None = None
    ssh_reachable: bool = False
