"""Host dependency detection.

Looks up the binaries the lab needs on PATH. Only the QEMU emulator is
required to run the VM; qemu-img and a cloud-init seed builder are needed by
setup tooling and are reported as optional.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field

from storage_lab._logging import get_logger
from storage_lab.exceptions import DependencyMissingError
from storage_lab.settings import Settings

logger = get_logger(__name__)

QEMU_IMG = "qemu-img"
SEED_TOOLS = ("cloud-localds", "genisoimage")

INSTALL_HINTS: dict[str, str] = {
    "qemu-system-x86_64": "sudo apt install qemu-system-x86",
    QEMU_IMG: "sudo apt install qemu-utils",
    "cloud-localds": "sudo apt install cloud-image-utils",
    "genisoimage": "sudo apt install genisoimage",
}


@dataclass
class DependencyReport:
    """Resolved binary paths (None when not on PATH)."""

    required: dict[str, str | None] = field(default_factory=dict)
    optional: dict[str, str | None] = field(default_factory=dict)
    seed_tool: str | None = None

    @property
    def missing_required(self) -> list[str]:
        return [name for name, path in self.required.items() if path is None]

    @property
    def missing_optional(self) -> list[str]:
        missing = [name for name, path in self.optional.items() if path is None]
        if self.seed_tool is None:
            missing.append(" or ".join(SEED_TOOLS))
        return missing

    @property
    def ok(self) -> bool:
        return not self.missing_required

    def raise_for_missing(self) -> None:
        """Raise DependencyMissingError listing every missing required binary."""
        if not self.ok:
            missing = self.missing_required
            raise DependencyMissingError(f"Missing required commands: {', '.join(missing)}", missing)


def check_dependencies(settings: Settings) -> DependencyReport:
    """Probe PATH for the lab's host binaries. Never raises."""
    report = DependencyReport(
        required={settings.qemu_bin: shutil.which(settings.qemu_bin)},
        optional={QEMU_IMG: shutil.which(QEMU_IMG)},
    )
    report.seed_tool = next((tool for tool in SEED_TOOLS if shutil.which(tool)), None)

    for name in report.missing_required:
        logger.error("Required command '%s' not found", name, extra={"hint": INSTALL_HINTS.get(name)})
    for name in report.missing_optional:
        logger.warning("Optional command '%s' not found (needed for setup)", name)
    return report


def require_dependencies(settings: Settings) -> DependencyReport:
    """Like check_dependencies(), but raise if a required binary is missing.

    Raises:
        DependencyMissingError: Lists every missing required binary.
    """
    report = check_dependencies(settings)
    report.raise_for_missing()
    return report
