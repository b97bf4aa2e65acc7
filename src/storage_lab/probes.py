"""Text probes over guest command output.

Exercise scripts drive the guest with shell commands (``cat /proc/mdstat``,
``lvs``, ``zpool status``) and decide pass/fail by matching the output
against extended regular expressions, one line at a time like ``grep -E``.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from storage_lab import constants
from storage_lab._logging import get_logger
from storage_lab.exceptions import GuestTimeoutError

if TYPE_CHECKING:
    from storage_lab.guest_transport import GuestTransport
    from storage_lab.models import CommandResult

logger = get_logger(__name__)


@dataclass(frozen=True)
class TextProbe:
    """An extended regex plus what a match means (e.g. "array is clean")."""

    pattern: str
    description: str = ""
    _regex: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        # re.error surfaces here, at construction, not on first match
        object.__setattr__(self, "_regex", re.compile(self.pattern))

    def matches(self, text: str) -> bool:
        return any(self._regex.search(line) for line in text.splitlines())

    def matching_lines(self, text: str) -> list[str]:
        return [line for line in text.splitlines() if self._regex.search(line)]


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of running one command and matching its output."""

    probe: TextProbe
    result: CommandResult
    matched: bool

    @property
    def lines(self) -> list[str]:
        return self.probe.matching_lines(self.result.output)


def run_probe(transport: GuestTransport, command: str, probe: TextProbe) -> ProbeResult:
    """Run ``command`` once and match ``probe`` against its output.

    The command's exit status does not affect the match; check
    ``ProbeResult.result.exit_code`` when it matters.
    """
    result = transport.exec(command)
    matched = probe.matches(result.output)
    logger.debug(
        "Probe %r on %r: %s",
        probe.description or probe.pattern,
        command,
        "match" if matched else "no match",
        extra={"command": command, "pattern": probe.pattern, "exit_code": result.exit_code},
    )
    return ProbeResult(probe=probe, result=result, matched=matched)


def wait_for_probe(
    transport: GuestTransport,
    command: str,
    probe: TextProbe,
    *,
    timeout: float,
    interval: float = constants.PROBE_POLL_INTERVAL_SECONDS,
) -> ProbeResult:
    """Re-run ``command`` every ``interval`` seconds until ``probe`` matches.

    Used for slow guest-side state changes such as RAID resync or resilver.

    Raises:
        GuestTimeoutError: No match within ``timeout``; context carries the
            last output seen.
        GuestConnectionError: Guest unreachable (not retried).
    """
    label = probe.description or probe.pattern
    logger.info("Waiting for %s (timeout: %ss)", label, f"{timeout:g}", extra={"command": command})

    retrying = Retrying(
        stop=stop_after_delay(timeout),
        wait=wait_fixed(interval),
        retry=retry_if_result(lambda r: not r.matched),
        sleep=time.sleep,
    )
    try:
        outcome = retrying(run_probe, transport, command, probe)
    except RetryError as e:
        last: ProbeResult = e.last_attempt.result()
        raise GuestTimeoutError(
            f"Timed out after {timeout:g}s waiting for {label}",
            {"command": command, "pattern": probe.pattern, "last_output": last.result.output},
        ) from None

    logger.info("Matched: %s", label, extra={"command": command})
    return outcome
