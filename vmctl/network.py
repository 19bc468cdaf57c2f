"""Host-side networking helpers: SSH port allocation and bridge prerequisites."""

from __future__ import annotations

import socket
from typing import Iterable, List, Tuple

from vmctl.config import Settings
from vmctl.constants import DEFAULT_SSH_PORT, FREE_PORT_RANGE, FREE_PORT_SKIP
from vmctl.exceptions import DependencyMissingError, ManagerError
from vmctl.utils import log


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            probe.bind((host, port))
        except OSError:
            return False
    return True


def find_free_port(
    preferred: int = DEFAULT_SSH_PORT,
    port_range: Tuple[int, int] = FREE_PORT_RANGE,
    reserved: Iterable[int] = (),
) -> int:
    """Return ``preferred`` if it is bindable, else the first free port in range.

    Ports in ``reserved`` (already assigned to other VMs) and well-known
    development ports are skipped.
    """
    taken = set(reserved) | FREE_PORT_SKIP
    if preferred not in taken and is_port_free(preferred):
        return preferred
    low, high = port_range
    for port in range(low, high + 1):
        if port in taken:
            continue
        if is_port_free(port):
            log("DEBUG", f"Port {preferred} busy; using {port}")
            return port
    raise ManagerError(f"No free TCP port available between {low} and {high}")


def bridge_problems(settings: Settings, which=None) -> List[str]:
    """List what is missing on this host for bridged networking."""
    problems: List[str] = []
    client = settings.socket_vmnet_client
    if client is None or not client.exists():
        problems.append(f"socket_vmnet_client not found at {client} (brew install socket_vmnet)")
    sock = settings.socket_vmnet_socket
    if sock is None or not sock.exists():
        problems.append(
            f"socket_vmnet socket not found at {sock} (sudo brew services start socket_vmnet)"
        )
    if settings.bridge_use_sudo and which is not None and which("sudo") is None:
        problems.append("sudo is required to run socket_vmnet_client")
    return problems


def check_bridge(settings: Settings, which=None) -> None:
    problems = bridge_problems(settings, which)
    if problems:
        raise DependencyMissingError(
            "Bridged networking is unavailable: " + "; ".join(problems) + ". Use --net-type portfwd instead."
        )


def ssh_command(host: str, port: int, username: str, bridged: bool) -> str:
    if bridged:
        return f"ssh {username}@{host}"
    return f"ssh -p {port} {username}@{host}"
