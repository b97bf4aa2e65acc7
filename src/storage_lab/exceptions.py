"""Exception hierarchy for storage-lab.

All exceptions inherit from LabError base class.

Hierarchy:
    LabError (base)
    ├── TransientError (retryable marker base)
    │   ├── GuestUnreachableError   ← VM alive, SSH never became ready
    │   ├── GuestTimeoutError       ← any bounded guest wait ran out
    │   ├── WaitCancelledError      ← caller aborted a wait
    │   ├── GuestConnectionError    ← SSH connect/auth failed for exec
    │   └── LabBusyError            ← another orchestrator holds the lab lock
    └── PermanentError (non-retryable marker base)
        ├── SetupIncompleteError    ← OS disk / seed image missing
        ├── LaunchFailedError       ← QEMU spawn failed
        ├── ProcessNotStartedError  ← no live pid after launch
        ├── VmNotRunningError       ← operation needs a running VM
        └── DependencyMissingError  ← required host binary missing

Low-level probes (VmController.is_running, GuestTransport.check) never raise;
they collapse every failure into False.
"""

from __future__ import annotations

from typing import Any


class LabError(Exception):
    """Base exception for all lab errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(LabError):
    """Base for errors that may succeed if the caller retries or waits."""


class PermanentError(LabError):
    """Base for errors that need operator action before a retry can work."""


# =============================================================================
# Transient
# =============================================================================


class GuestTimeoutError(TransientError):
    """A bounded wait on the guest exceeded its budget.

    Raised by GuestTransport.wait_ready() and probes.wait_for_probe().
    """


class GuestUnreachableError(TransientError):
    """VM process is alive but the guest never accepted SSH.

    The VM is left running so the operator can inspect it; call
    VmController.stop() to tear it down.
    """


class WaitCancelledError(TransientError):
    """A readiness wait was aborted through its cancellation event."""


class GuestConnectionError(TransientError):
    """Could not open an SSH session to the guest.

    Only raised by GuestTransport.exec(); a command that runs and exits
    non-zero is reported through CommandResult.exit_code instead.
    """


class LabBusyError(TransientError):
    """Another orchestrator process holds the lab session lock."""


# =============================================================================
# Permanent
# =============================================================================


class SetupIncompleteError(PermanentError):
    """Required disk artifact is missing. Run setup first.

    Attributes:
        missing: Paths that were expected but not found
    """

    def __init__(self, message: str, missing: list[str], context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.update({"missing": missing})
        super().__init__(message, ctx)
        self.missing = missing


class LaunchFailedError(PermanentError):
    """QEMU could not be spawned or exited non-zero while daemonizing.

    Attributes:
        returncode: Launcher exit code (None when the spawn itself raised)
        stderr: Captured launcher output
    """

    def __init__(
        self,
        message: str,
        returncode: int | None = None,
        stderr: str = "",
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update({"returncode": returncode, "stderr": stderr})
        super().__init__(message, ctx)
        self.returncode = returncode
        self.stderr = stderr


class ProcessNotStartedError(PermanentError):
    """Launch reported success but no live process id could be observed."""


class VmNotRunningError(PermanentError):
    """Operation requires a running VM."""


class DependencyMissingError(PermanentError):
    """Required host binary is not installed.

    Attributes:
        missing: Names of the missing binaries
    """

    def __init__(self, message: str, missing: list[str]):
        super().__init__(message, {"missing": missing})
        self.missing = missing
