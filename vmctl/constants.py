"""Global constants and default paths for vmctl."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_WORK_ROOT = Path.home() / ".vm"
CONFIG_FILE_NAME = "config.yaml"
TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_USERNAME = "user01"
DEFAULT_MEMORY = "2G"
DEFAULT_CPUS = 2
DEFAULT_DISK_SIZE = "10G"
DEFAULT_IMAGE = "debian13"
DEFAULT_NET_TYPE = "bridge"
DEFAULT_SSH_PORT = 2222
PASSWORD_LENGTH = 16

# Timing (seconds)
DEFAULT_BOOT_TIMEOUT = 300
BOOT_POLL_INTERVAL = 2.0
DEFAULT_STOP_TIMEOUT = 30
STOP_POLL_INTERVAL = 1.0
PIDFILE_WAIT_TIMEOUT = 10.0
LOCK_TIMEOUT = 10.0

# Per-VM directory layout
DESCRIPTOR_FILE = "vm.yaml"
DISK_FILE = "disk.qcow2"
CONSOLE_LOG_FILE = "console.log"
MONITOR_SOCKET_FILE = "monitor.sock"
PIDFILE = "qemu.pid"
SEED_ISO_FILE = "seed.iso"
USER_DATA_FILE = "user-data"
META_DATA_FILE = "meta-data"
START_ERR_FILE = "qemu.err"

# Bridged networking (socket_vmnet shared subnet)
BRIDGE_SUBNET_PREFIX = "192.168.105"
BRIDGE_GATEWAY = "192.168.105.1"
BRIDGE_HOST_MIN = 100
BRIDGE_HOST_COUNT = 155  # .100 - .254
BRIDGE_NETDEV_FD = 3
GUEST_SSH_PORT = 22
NAMESERVERS = ("8.8.8.8", "1.1.1.1")

MAC_PREFIX = (0x52, 0x54, 0x00)
MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")

NET_TYPES = {"bridge", "portfwd"}
NET_TYPE_ALIASES = {
    "bridged": "bridge",
    "nat": "portfwd",
    "user": "portfwd",
}

VIRT_TYPES = {"kvm", "hvf", "tcg"}
VIRT_TYPE_ALIASES = {"qemu": "tcg"}

SUPPORTED_ARCHES = {
    "x86_64": {
        "binary": "qemu-system-x86_64",
        "machine": "q35",
        "cpu": "qemu64",
        "explicit_numa": True,
        "needs_firmware": False,
        "firmware_candidates": (),
    },
    "aarch64": {
        "binary": "qemu-system-aarch64",
        "machine": "virt",
        "cpu": "max",
        "explicit_numa": False,
        "needs_firmware": True,
        "firmware_candidates": (
            Path("/opt/homebrew/share/qemu/edk2-aarch64-code.fd"),
            Path("/usr/local/share/qemu/edk2-aarch64-code.fd"),
            Path("/usr/share/qemu/edk2-aarch64-code.fd"),
            Path("/usr/share/edk2/aarch64/QEMU_EFI.fd"),
            Path("/usr/share/AAVMF/AAVMF_CODE.fd"),
        ),
    },
}

ARCH_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
}

IMAGE_CATALOG = {
    "debian13": {
        "name": "Debian 13 (Trixie)",
        "urls": {
            "x86_64": "https://cloud.debian.org/images/cloud/trixie/latest/debian-13-genericcloud-amd64.qcow2",
            "aarch64": "https://cloud.debian.org/images/cloud/trixie/latest/debian-13-genericcloud-arm64.qcow2",
        },
    },
    "debian12": {
        "name": "Debian 12 (Bookworm)",
        "urls": {
            "x86_64": "https://cloud.debian.org/images/cloud/bookworm/latest/debian-12-generic-amd64.qcow2",
            "aarch64": "https://cloud.debian.org/images/cloud/bookworm/latest/debian-12-genericcloud-arm64.qcow2",
        },
    },
}

# Guest provisioning output contract
BOOT_SENTINEL = "CLOUD-INIT-READY"
NETINFO_TAG = "ci-info"
PRIMARY_INTERFACE = "enp0s1"
PRIVATE_ADDRESS_RE = re.compile(
    r"\b(?:192\.168\.\d{1,3}\.\d{1,3}|10\.\d{1,3}\.\d{1,3}\.\d{1,3})\b"
)

# Packaging tools, tried in order
SEED_ISO_TOOLS = ("hdiutil", "genisoimage", "mkisofs")

FREE_PORT_RANGE = (2222, 9999)
FREE_PORT_SKIP = {3000, 3306, 5000, 5432, 8000, 8080, 8443, 9000}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
MEMORY_RE = re.compile(r"^\d+[MGmg]?$")

NAME_ADJECTIVES = (
    "swift", "bright", "clever", "happy", "quick", "bold", "calm", "deep", "fast", "great",
    "kind", "light", "proud", "quiet", "safe", "tall", "warm", "wise", "young", "fresh",
    "sharp", "stable", "dynamic", "secure", "modern", "classic", "reliable", "efficient",
)
NAME_NOUNS = (
    "server", "engine", "cloud", "node", "host", "box", "core", "hub", "lab", "desk",
    "tower", "bridge", "gate", "port", "link", "zone", "base", "unit", "machine", "worker",
    "runner", "builder", "monitor", "router", "proxy", "cache", "store", "vault", "beacon",
)
