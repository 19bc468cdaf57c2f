"""Shared test fixtures: isolated settings, a recording command runner and a fake process table."""

from __future__ import annotations

import signal
from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest

from vmctl.config import Settings
from vmctl.models import CommandResult, SSHEndpoint, VMDescriptor
from vmctl.utils import set_verbose

DEFAULT_TOOLS = {
    "qemu-system-x86_64",
    "qemu-system-aarch64",
    "qemu-img",
    "genisoimage",
    "sudo",
}

READY_CONSOLE = (
    "[    0.000000] Linux version 6.12.0\n"
    "ci-info: +--------+------+-------------------+---------------+--------+-------------------+\n"
    "ci-info: | enp0s1 | True |  192.168.105.177  | 255.255.255.0 | global | 52:54:00:aa:bb:cc |\n"
    "Cloud-init v. 24.1 finished. CLOUD-INIT-READY\n"
)


def program_of(argv: List[str]) -> str:
    """Name of the tool a (possibly wrapped) argv actually runs."""
    for part in argv:
        name = Path(part).name
        if name.startswith("qemu-system-"):
            return name
    if argv[0] == "sudo":
        return Path(argv[1]).name
    return Path(argv[0]).name


def _value_after(argv: List[str], flag: str) -> str:
    return argv[argv.index(flag) + 1]


class FakeProcesses:
    """Stands in for the kernel process table behind ``os.kill``."""

    def __init__(self) -> None:
        self.alive: Set[int] = set()
        self.foreign: Set[int] = set()
        self.signals: List[tuple] = []

    def spawn(self, pid: int, foreign: bool = False) -> int:
        self.alive.add(pid)
        if foreign:
            self.foreign.add(pid)
        return pid

    def exit(self, pid: int) -> None:
        self.alive.discard(pid)

    def kill(self, pid: int, sig: int) -> None:
        self.signals.append((pid, sig))
        if pid not in self.alive:
            raise ProcessLookupError(pid)
        if pid in self.foreign:
            raise PermissionError(pid)
        if sig == signal.SIGKILL:
            self.alive.discard(pid)


class FakeRunner:
    """Records every argv and mimics the side effects of the tools vmctl drives."""

    def __init__(
        self,
        processes: Optional[FakeProcesses] = None,
        available: Optional[Set[str]] = None,
        console_output: Optional[str] = READY_CONSOLE,
    ) -> None:
        self.calls: List[List[str]] = []
        self.available = set(DEFAULT_TOOLS if available is None else available)
        self.results: Dict[str, CommandResult] = {}
        self.processes = processes
        self.console_output = console_output
        self.spawn_foreign = False
        self.next_pid = 4242

    def which(self, binary: str) -> Optional[str]:
        return f"/usr/bin/{binary}" if binary in self.available else None

    def fail(self, program: str, returncode: int = 1, stderr: str = "boom") -> None:
        self.results[program] = CommandResult(returncode, "", stderr)

    def programs(self) -> List[str]:
        return [program_of(call) for call in self.calls]

    def run(self, cmd, timeout=None) -> CommandResult:
        argv = [str(part) for part in cmd]
        self.calls.append(argv)
        program = program_of(argv)
        if program in self.results:
            return self.results[program]
        self._simulate(program, argv)
        return CommandResult(0, "", "")

    def _simulate(self, program: str, argv: List[str]) -> None:
        if program == "qemu-img" and argv[1] == "convert":
            Path(argv[-1]).write_bytes(b"QFI\xfb")
        elif program == "hdiutil":
            Path(_value_after(argv, "-o")).write_bytes(b"iso")
        elif program in {"genisoimage", "mkisofs"}:
            Path(_value_after(argv, "-output")).write_bytes(b"iso")
        elif program == "kill" and self.processes is not None:
            self.processes.exit(int(argv[-1]))
        elif program.startswith("qemu-system-"):
            pid = self.next_pid
            self.next_pid += 1
            Path(_value_after(argv, "-pidfile")).write_text(f"{pid}\n", encoding="utf-8")
            if self.processes is not None:
                self.processes.spawn(pid, foreign=self.spawn_foreign)
            if self.console_output is not None:
                console = _value_after(argv, "-serial").split(":", 1)[1]
                Path(console).write_text(self.console_output, encoding="utf-8")


@pytest.fixture(autouse=True)
def _quiet_logging():
    set_verbose(False)
    yield
    set_verbose(False)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings rooted in tmp_path, with a usable socket_vmnet installation."""
    client = tmp_path / "socket_vmnet" / "bin" / "socket_vmnet_client"
    sock = tmp_path / "socket_vmnet" / "run" / "socket_vmnet"
    client.parent.mkdir(parents=True)
    sock.parent.mkdir(parents=True)
    client.write_text("#!/bin/sh\n", encoding="utf-8")
    sock.write_text("", encoding="utf-8")
    return Settings.for_root(
        tmp_path / "vmhome",
        socket_vmnet_client=client,
        socket_vmnet_socket=sock,
    )


@pytest.fixture
def processes(monkeypatch) -> FakeProcesses:
    table = FakeProcesses()
    monkeypatch.setattr("vmctl.process.os.kill", table.kill)
    monkeypatch.setattr("vmctl.process.time.sleep", lambda _seconds: None)
    return table


@pytest.fixture
def runner(processes) -> FakeRunner:
    return FakeRunner(processes=processes)


@pytest.fixture
def make_descriptor():
    def _make(**overrides) -> VMDescriptor:
        values = dict(
            name="test-node",
            arch="x86_64",
            image="debian13",
            username="user01",
            password="s3cret",
            net_type="portfwd",
            virt_type="tcg",
            ssh=SSHEndpoint(host="127.0.0.1", port=2222),
            mac_address="52:54:00:12:34:56",
            memory="2G",
            cpus=2,
            disk_size="10G",
            created_at="2026-01-01T00:00:00+00:00",
            static_ip=None,
        )
        values.update(overrides)
        return VMDescriptor(**values)

    return _make
