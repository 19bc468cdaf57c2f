"""Hypervisor process supervision: start, liveness and stop."""

from __future__ import annotations

import math
import os
import signal
import socket
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from vmctl.config import Settings
from vmctl.constants import DEFAULT_STOP_TIMEOUT, PIDFILE_WAIT_TIMEOUT, STOP_POLL_INTERVAL
from vmctl.exceptions import ExternalToolError, PrivilegeError
from vmctl.models import VMDescriptor, VMPaths
from vmctl.utils import SubprocessRunner, log, wait_for_path

_PRIVILEGE_MARKERS = (
    "sudo:",
    "password is required",
    "permission denied",
    "operation not permitted",
)


@dataclass
class ProcessHandle:
    """A live hypervisor process, recovered from its pidfile."""

    pid: int
    paths: VMPaths

    @property
    def monitor_socket(self) -> Path:
        return self.paths.monitor_socket

    @property
    def console_log(self) -> Path:
        return self.paths.console_log


def read_pidfile(path: Path) -> Optional[int]:
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    try:
        pid = int(raw)
    except ValueError:
        return None
    return pid if pid > 0 else None


class ProcessSupervisor:
    """Starts and stops QEMU without holding a handle across invocations.

    Every query goes back to the on-disk pidfile, so a fresh ``vmctl``
    process sees the same state as the one that launched the VM.
    """

    def __init__(
        self,
        settings: Settings,
        runner: Optional[SubprocessRunner] = None,
        poll_interval: float = STOP_POLL_INTERVAL,
        pidfile_timeout: float = PIDFILE_WAIT_TIMEOUT,
    ) -> None:
        self.settings = settings
        self.runner = runner or SubprocessRunner()
        self.poll_interval = poll_interval
        self.pidfile_timeout = pidfile_timeout

    def paths_for(self, descriptor: VMDescriptor) -> VMPaths:
        return VMPaths(self.settings.vms_dir / descriptor.name)

    def wrap_command(self, descriptor: VMDescriptor, argv: Sequence[str]) -> List[str]:
        """Prefix ``argv`` with the bridging helper when the VM is bridged."""
        cmd = [str(part) for part in argv]
        if not descriptor.bridged:
            return cmd
        helper = [str(self.settings.socket_vmnet_client), str(self.settings.socket_vmnet_socket)]
        if self.settings.bridge_use_sudo:
            helper.insert(0, "sudo")
        return helper + cmd

    def start(self, descriptor: VMDescriptor, argv: Sequence[str]) -> ProcessHandle:
        paths = self.paths_for(descriptor)
        cmd = self.wrap_command(descriptor, argv)
        # A pidfile left over from a crashed run would be mistaken for the new process
        paths.pidfile.unlink(missing_ok=True)

        log("INFO", f"Starting QEMU for '{descriptor.name}'")
        result = self.runner.run(cmd)
        output = (result.stderr or result.stdout).strip()
        paths.start_err.write_text(result.stderr, encoding="utf-8")

        if result.returncode != 0:
            if descriptor.bridged and any(marker in output.lower() for marker in _PRIVILEGE_MARKERS):
                raise PrivilegeError(
                    f"socket_vmnet_client could not be started for '{descriptor.name}': {output or 'no output'}. "
                    "Bridged networking needs root; configure sudo or set VM_NET_TYPE=portfwd."
                )
            raise ExternalToolError(
                f"QEMU failed to start for '{descriptor.name}'",
                argv=cmd,
                returncode=result.returncode,
                output=output,
            )

        if not wait_for_path(paths.pidfile, timeout=self.pidfile_timeout):
            raise ExternalToolError(
                f"QEMU did not write its pidfile {paths.pidfile} (see {paths.start_err})",
                argv=cmd,
                output=output,
            )
        handle = self.rehydrate(paths)
        if handle is None:
            raise ExternalToolError(
                f"QEMU exited right after start (see {paths.start_err})",
                argv=cmd,
                output=output,
            )
        log("SUCCESS", f"QEMU running for '{descriptor.name}' (PID {handle.pid})")
        return handle

    def is_running(self, paths: VMPaths) -> Tuple[bool, Optional[int]]:
        pid = read_pidfile(paths.pidfile)
        if pid is None:
            return False, None
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False, None
        except PermissionError:
            # Alive but owned by another user (root, when started through sudo)
            return True, pid
        return True, pid

    def rehydrate(self, paths: VMPaths) -> Optional[ProcessHandle]:
        running, pid = self.is_running(paths)
        if not running or pid is None:
            return None
        return ProcessHandle(pid=pid, paths=paths)

    def stop(self, paths: VMPaths, grace: float = DEFAULT_STOP_TIMEOUT) -> bool:
        """Stop the VM if it is running; return whether a process was found.

        Calling this on a stopped VM only clears leftover artifacts.
        """
        running, pid = self.is_running(paths)
        if not running or pid is None:
            self._cleanup(paths)
            return False

        log("INFO", f"Requesting shutdown of PID {pid}")
        self.send_monitor(paths, ("system_powerdown", "quit"))
        for _ in range(math.ceil(grace / self.poll_interval)):
            if not self.is_running(paths)[0]:
                break
            time.sleep(self.poll_interval)
        if self.is_running(paths)[0]:
            log("WARN", f"PID {pid} still running after {grace}s; sending SIGKILL")
            # A refused kill raises before cleanup so the pidfile keeps tracking the process
            self._force_kill(pid)
        else:
            log("SUCCESS", f"PID {pid} exited")
        self._cleanup(paths)
        return True

    def send_monitor(self, paths: VMPaths, commands: Sequence[str]) -> bool:
        """Write line-oriented commands to the monitor socket; failures are only logged."""
        sock_path = paths.monitor_socket
        if not sock_path.exists():
            log("DEBUG", f"Monitor socket {sock_path} not present")
            return False
        payload = "".join(f"{command}\n" for command in commands).encode("utf-8")
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
                client.settimeout(2.0)
                client.connect(str(sock_path))
                client.sendall(payload)
        except OSError as exc:
            log("DEBUG", f"Monitor socket {sock_path} unavailable: {exc}")
            return False
        return True

    def _force_kill(self, pid: int) -> None:
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        except PermissionError:
            if not self.settings.bridge_use_sudo:
                raise PrivilegeError(f"PID {pid} belongs to another user; cannot kill it without sudo")
            result = self.runner.run(["sudo", "kill", "-KILL", str(pid)])
            if result.returncode != 0:
                raise PrivilegeError(
                    f"sudo kill -KILL {pid} failed: {(result.stderr or result.stdout).strip() or 'no output'}"
                )

    def _cleanup(self, paths: VMPaths) -> None:
        for artifact in (paths.pidfile, paths.monitor_socket):
            try:
                artifact.unlink(missing_ok=True)
            except OSError as exc:
                log("WARN", f"Failed to remove {artifact}: {exc}")
