"""Data models for vmctl."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, NamedTuple, Optional

from vmctl.constants import (
    CONSOLE_LOG_FILE,
    DESCRIPTOR_FILE,
    DISK_FILE,
    META_DATA_FILE,
    MONITOR_SOCKET_FILE,
    PIDFILE,
    SEED_ISO_FILE,
    START_ERR_FILE,
    USER_DATA_FILE,
)
from vmctl.exceptions import BootTimeoutError


class CommandResult(NamedTuple):
    returncode: int
    stdout: str
    stderr: str


class BootState(str, Enum):
    UNKNOWN = "unknown"
    BOOTING = "booting"
    READY = "ready"
    TIMED_OUT = "timed_out"


class VMStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    BROKEN = "broken"


@dataclass
class SSHEndpoint:
    host: str
    port: int


@dataclass
class VMDescriptor:
    name: str
    arch: str
    image: str
    username: str
    password: str
    net_type: str
    virt_type: str
    ssh: SSHEndpoint
    mac_address: str
    memory: str
    cpus: int
    disk_size: str
    created_at: str
    static_ip: Optional[str] = None

    @property
    def bridged(self) -> bool:
        return self.net_type == "bridge"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "arch": self.arch,
            "image": self.image,
            "username": self.username,
            "password": self.password,
            "net_type": self.net_type,
            "virt_type": self.virt_type,
            "static_ip": self.static_ip,
            "mac_address": self.mac_address,
            "ssh": {"host": self.ssh.host, "port": self.ssh.port},
            "memory": self.memory,
            "cpus": self.cpus,
            "disk_size": self.disk_size,
            "created_at": self.created_at,
        }
        if self.static_ip is None:
            del data["static_ip"]
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "VMDescriptor":
        """Build a descriptor from parsed YAML.

        Raises ``ValueError`` when the mapping is not a complete descriptor.
        """
        if not isinstance(data, dict):
            raise ValueError(f"expected a mapping, got {type(data).__name__}")
        required = (
            "name",
            "arch",
            "image",
            "username",
            "password",
            "net_type",
            "virt_type",
            "mac_address",
            "ssh",
            "memory",
            "cpus",
            "disk_size",
            "created_at",
        )
        missing = [key for key in required if key not in data]
        if missing:
            raise ValueError(f"missing fields: {', '.join(missing)}")
        ssh = data["ssh"]
        if not isinstance(ssh, dict) or "host" not in ssh or "port" not in ssh:
            raise ValueError("ssh must be a mapping with host and port")
        try:
            ssh_port = int(ssh["port"])
            cpus = int(data["cpus"])
        except (TypeError, ValueError):
            raise ValueError("ssh.port and cpus must be integers")
        static_ip = data.get("static_ip")
        return cls(
            name=str(data["name"]),
            arch=str(data["arch"]),
            image=str(data["image"]),
            username=str(data["username"]),
            password=str(data["password"]),
            net_type=str(data["net_type"]),
            virt_type=str(data["virt_type"]),
            ssh=SSHEndpoint(host=str(ssh["host"] or ""), port=ssh_port),
            mac_address=str(data["mac_address"]),
            memory=str(data["memory"]),
            cpus=cpus,
            disk_size=str(data["disk_size"]),
            created_at=str(data["created_at"]),
            static_ip=str(static_ip) if static_ip else None,
        )


@dataclass(frozen=True)
class VMPaths:
    """Every on-disk artifact of one VM, derived from its directory."""

    vm_dir: Path

    @property
    def descriptor(self) -> Path:
        return self.vm_dir / DESCRIPTOR_FILE

    @property
    def disk(self) -> Path:
        return self.vm_dir / DISK_FILE

    @property
    def console_log(self) -> Path:
        return self.vm_dir / CONSOLE_LOG_FILE

    @property
    def monitor_socket(self) -> Path:
        return self.vm_dir / MONITOR_SOCKET_FILE

    @property
    def pidfile(self) -> Path:
        return self.vm_dir / PIDFILE

    @property
    def seed_iso(self) -> Path:
        return self.vm_dir / SEED_ISO_FILE

    @property
    def user_data(self) -> Path:
        return self.vm_dir / USER_DATA_FILE

    @property
    def meta_data(self) -> Path:
        return self.vm_dir / META_DATA_FILE

    @property
    def start_err(self) -> Path:
        return self.vm_dir / START_ERR_FILE


@dataclass
class BootResult:
    state: BootState
    address: Optional[str] = None
    elapsed: float = 0.0
    network_seen: bool = False
    interrupted: bool = False

    @property
    def ready(self) -> bool:
        return self.state == BootState.READY

    def raise_for_timeout(self, name: str, timeout: float) -> None:
        if self.state == BootState.TIMED_OUT:
            raise BootTimeoutError(name, timeout)


@dataclass
class CreateOptions:
    name: Optional[str] = None
    arch: Optional[str] = None
    image: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    memory: Optional[str] = None
    cpus: Optional[int] = None
    disk_size: Optional[str] = None
    net_type: Optional[str] = None
    virt_type: Optional[str] = None
    static_ip: Optional[str] = None
    ssh_port: Optional[int] = None
    wait: bool = True
    boot_timeout: Optional[float] = None


@dataclass
class VMSummary:
    name: str
    status: VMStatus
    descriptor: Optional[VMDescriptor] = None
    pid: Optional[int] = None
    error: Optional[str] = None


@dataclass
class VMStatusReport:
    name: str
    status: VMStatus
    pid: Optional[int]
    boot: BootResult
    console_log: Path
    descriptor: Optional[VMDescriptor] = None
