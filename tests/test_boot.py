"""Tests for vmctl.boot module."""

from __future__ import annotations

import threading
import time

import pytest

from vmctl.boot import BootWatcher, ReadinessMatcher, scan_console_log
from vmctl.models import BootState

NETINFO = (
    "ci-info: ++++++++++++++++++++++++Net device info++++++++++++++++++++++++\n"
    "ci-info: | Device |  Up  |      Address      |      Mask     | Scope  |\n"
    "ci-info: |   lo   | True |     127.0.0.1     |   255.0.0.0   |  host  |\n"
    "ci-info: | enp0s1 | True | fe80::5054:ff:fe12 |       .       |  link  |\n"
    "ci-info: | enp0s1 | True |  192.168.105.177  | 255.255.255.0 | global |\n"
)


class FakeClock:
    """Monotonic clock that only moves when the watcher sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps = []
        self.on_tick = None

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_tick is not None:
            self.on_tick(self.now)


@pytest.fixture
def clock():
    return FakeClock()


class TestReadinessMatcher:
    def test_sentinel(self):
        matcher = ReadinessMatcher()
        assert matcher.is_ready("...\nCloud-init finished CLOUD-INIT-READY\n")
        assert not matcher.is_ready("cloud-init running\n")

    def test_first_private_address_on_primary_interface(self):
        assert ReadinessMatcher().find_address(NETINFO) == "192.168.105.177"

    def test_ignores_other_interfaces(self):
        text = "ci-info: | eth1 | True | 10.0.0.5 | 255.0.0.0 | global |\n"
        assert ReadinessMatcher().find_address(text) is None

    def test_ignores_untagged_lines(self):
        assert ReadinessMatcher().find_address("enp0s1: 192.168.105.9\n") is None

    def test_ten_network(self):
        text = "ci-info: | enp0s1 | True | 10.0.2.15 | 255.255.255.0 | global |\n"
        assert ReadinessMatcher().find_address(text) == "10.0.2.15"

    def test_first_match_wins(self):
        text = (
            "ci-info: | enp0s1 | True | 192.168.105.101 | 255.255.255.0 | global |\n"
            "ci-info: | enp0s1 | True | 192.168.105.202 | 255.255.255.0 | global |\n"
        )
        assert ReadinessMatcher().find_address(text) == "192.168.105.101"

    def test_network_seen_without_address(self):
        text = "ci-info: | enp0s1 | False | . | . | . |\n"
        matcher = ReadinessMatcher()
        assert matcher.network_seen(text) is True
        assert matcher.find_address(text) is None

    def test_custom_contract(self):
        matcher = ReadinessMatcher(sentinel="GUEST-UP", interface="eth0")
        assert matcher.is_ready("GUEST-UP")
        assert not matcher.is_ready("CLOUD-INIT-READY")
        assert matcher.find_address("ci-info: | eth0 | True | 10.1.2.3 |") == "10.1.2.3"


class TestScanConsoleLog:
    def test_missing_log_is_unknown(self, tmp_path):
        result = scan_console_log(tmp_path / "console.log")
        assert result.state == BootState.UNKNOWN
        assert result.network_seen is False

    def test_booting(self, tmp_path):
        log_path = tmp_path / "console.log"
        log_path.write_text("[    0.000000] Linux version\n" + NETINFO)
        result = scan_console_log(log_path)
        assert result.state == BootState.BOOTING
        assert result.network_seen is True
        assert result.address == "192.168.105.177"

    def test_ready(self, tmp_path):
        log_path = tmp_path / "console.log"
        log_path.write_text(NETINFO + "CLOUD-INIT-READY\n")
        assert scan_console_log(log_path).ready is True

    def test_binary_noise_is_tolerated(self, tmp_path):
        log_path = tmp_path / "console.log"
        log_path.write_bytes(b"\xff\xfe\x00garbage\r\nCLOUD-INIT-READY\r\n")
        assert scan_console_log(log_path).ready is True


class TestBootWatcher:
    def test_sentinel_appended_after_three_seconds(self, tmp_path, clock):
        log_path = tmp_path / "console.log"

        def _append(now):
            if now >= 3.0 and not log_path.exists():
                log_path.write_text(NETINFO + "CLOUD-INIT-READY\n")

        clock.on_tick = _append
        watcher = BootWatcher(poll_interval=1.0, clock=clock, sleep=clock.sleep)
        result = watcher.wait_ready(log_path, timeout=60)
        assert result.state == BootState.READY
        assert 3.0 <= result.elapsed <= 4.0
        assert result.address == "192.168.105.177"
        assert result.network_seen is True

    def test_empty_log_times_out_at_deadline(self, tmp_path, clock):
        log_path = tmp_path / "console.log"
        log_path.write_text("")
        watcher = BootWatcher(poll_interval=2.0, clock=clock, sleep=clock.sleep)
        result = watcher.wait_ready(log_path, timeout=5)
        assert result.state == BootState.TIMED_OUT
        assert result.elapsed == pytest.approx(5.0)
        assert clock.sleeps == [2.0, 2.0, 1.0]

    def test_never_ready_without_sentinel(self, tmp_path, clock):
        log_path = tmp_path / "console.log"
        log_path.write_text(NETINFO + "cloud-init: modules:final running\n")
        watcher = BootWatcher(poll_interval=1.0, clock=clock, sleep=clock.sleep)
        result = watcher.wait_ready(log_path, timeout=3)
        assert result.state == BootState.TIMED_OUT
        assert result.address == "192.168.105.177"

    def test_missing_log_keeps_polling(self, tmp_path, clock):
        watcher = BootWatcher(poll_interval=1.0, clock=clock, sleep=clock.sleep)
        result = watcher.wait_ready(tmp_path / "console.log", timeout=2)
        assert result.state == BootState.TIMED_OUT
        assert result.address is None
        assert result.network_seen is False

    def test_ready_without_address(self, tmp_path, clock):
        log_path = tmp_path / "console.log"
        log_path.write_text("CLOUD-INIT-READY\n")
        watcher = BootWatcher(clock=clock, sleep=clock.sleep)
        result = watcher.wait_ready(log_path)
        assert result.ready
        assert result.address is None
        assert clock.sleeps == []

    def test_cancel_event_interrupts(self, tmp_path, clock):
        cancel = threading.Event()
        cancel.set()
        watcher = BootWatcher(poll_interval=1.0, clock=clock, sleep=clock.sleep)
        result = watcher.wait_ready(tmp_path / "console.log", timeout=60, cancel=cancel)
        assert result.interrupted is True
        assert result.state == BootState.BOOTING

    def test_cancel_from_another_thread(self, tmp_path):
        cancel = threading.Event()
        timer = threading.Timer(0.2, cancel.set)
        watcher = BootWatcher(poll_interval=5.0)
        started = time.monotonic()
        timer.start()
        try:
            result = watcher.wait_ready(tmp_path / "console.log", timeout=30, cancel=cancel)
        finally:
            timer.cancel()
        assert result.interrupted is True
        assert time.monotonic() - started < 5.0

    def test_real_clock_short_timeout(self, tmp_path):
        watcher = BootWatcher(poll_interval=0.05)
        started = time.monotonic()
        result = watcher.wait_ready(tmp_path / "console.log", timeout=0.2)
        assert result.state == BootState.TIMED_OUT
        assert 0.15 <= time.monotonic() - started < 2.0
