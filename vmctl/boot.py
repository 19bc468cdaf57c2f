"""Boot readiness detection from the guest's serial console log."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Pattern

from vmctl.constants import (
    BOOT_POLL_INTERVAL,
    BOOT_SENTINEL,
    DEFAULT_BOOT_TIMEOUT,
    NETINFO_TAG,
    PRIMARY_INTERFACE,
    PRIVATE_ADDRESS_RE,
)
from vmctl.models import BootResult, BootState
from vmctl.utils import log


@dataclass(frozen=True)
class ReadinessMatcher:
    """What the guest prints once provisioning is done, and where it prints its address."""

    sentinel: str = BOOT_SENTINEL
    tag: str = NETINFO_TAG
    interface: str = PRIMARY_INTERFACE
    address_pattern: Pattern[str] = PRIVATE_ADDRESS_RE

    def is_ready(self, text: str) -> bool:
        return self.sentinel in text

    def _netinfo_lines(self, text: str):
        for line in text.splitlines():
            if self.tag in line and self.interface in line:
                yield line

    def network_seen(self, text: str) -> bool:
        return any(True for _ in self._netinfo_lines(text))

    def find_address(self, text: str) -> Optional[str]:
        """First private address on a netinfo line for the primary interface."""
        for line in self._netinfo_lines(text):
            match = self.address_pattern.search(line)
            if match:
                return match.group(0)
        return None

    def scan(self, text: Optional[str], elapsed: float = 0.0) -> BootResult:
        if text is None:
            return BootResult(state=BootState.UNKNOWN, elapsed=elapsed)
        state = BootState.READY if self.is_ready(text) else BootState.BOOTING
        return BootResult(
            state=state,
            address=self.find_address(text),
            elapsed=elapsed,
            network_seen=self.network_seen(text),
        )


def read_console_log(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return None
    except OSError as exc:
        log("DEBUG", f"Cannot read {path}: {exc}")
        return None


def scan_console_log(path: Path, matcher: Optional[ReadinessMatcher] = None) -> BootResult:
    """One-shot readiness check; ``UNKNOWN`` when the log does not exist yet."""
    return (matcher or ReadinessMatcher()).scan(read_console_log(path))


class BootWatcher:
    """Polls a console log until the guest reports readiness or time runs out."""

    def __init__(
        self,
        matcher: Optional[ReadinessMatcher] = None,
        poll_interval: float = BOOT_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.matcher = matcher or ReadinessMatcher()
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep

    def wait_ready(
        self,
        console_log: Path,
        timeout: float = DEFAULT_BOOT_TIMEOUT,
        cancel: Optional[threading.Event] = None,
    ) -> BootResult:
        started = self._clock()
        address: Optional[str] = None
        network_seen = False
        log("INFO", f"Waiting for guest provisioning (timeout {int(timeout)}s)")
        while True:
            elapsed = self._clock() - started
            text = read_console_log(console_log)
            if text is not None:
                observed = self.matcher.scan(text, elapsed)
                address = observed.address or address
                network_seen = network_seen or observed.network_seen
                if observed.ready:
                    log("SUCCESS", f"Guest ready after {elapsed:.0f}s")
                    return BootResult(BootState.READY, address, elapsed, network_seen)
            if elapsed >= timeout:
                log("WARN", f"Guest did not report readiness within {int(timeout)}s")
                return BootResult(BootState.TIMED_OUT, address, elapsed, network_seen)
            if self._pause(min(self.poll_interval, timeout - elapsed), cancel):
                log("WARN", "Wait interrupted; the VM keeps running")
                return BootResult(BootState.BOOTING, address, elapsed, network_seen, interrupted=True)

    def _pause(self, seconds: float, cancel: Optional[threading.Event]) -> bool:
        """Sleep for ``seconds``; return True if ``cancel`` fired."""
        if cancel is None:
            self._sleep(seconds)
            return False
        return cancel.wait(seconds)
