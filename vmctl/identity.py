"""Deterministic network identity derived from a VM name."""

from __future__ import annotations

import hashlib
import ipaddress
import re

from vmctl.constants import BRIDGE_HOST_COUNT, BRIDGE_HOST_MIN, BRIDGE_SUBNET_PREFIX, MAC_PREFIX
from vmctl.exceptions import ManagerError

_HOSTNAME_INVALID_RE = re.compile(r"[^0-9A-Za-z-]")


def sanitize_name(raw: str) -> str:
    """Replace characters not allowed in hostnames (RFC 952/1123) with hyphens."""
    name = _HOSTNAME_INVALID_RE.sub("-", raw.strip())
    if not name.strip("-"):
        raise ManagerError(f"Invalid VM name '{raw}'")
    return name


def _digest(name: str) -> bytes:
    return hashlib.sha256(name.encode("utf-8")).digest()


def derive_mac(name: str) -> str:
    digest = _digest(sanitize_name(name))
    octets = list(MAC_PREFIX) + [digest[0], digest[1], digest[2]]
    return ":".join(f"{octet:02x}" for octet in octets)


def derive_static_ip(name: str) -> str:
    """Map ``name`` onto 192.168.105.100-254."""
    value = int.from_bytes(_digest(sanitize_name(name))[:4], "big")
    return f"{BRIDGE_SUBNET_PREFIX}.{BRIDGE_HOST_MIN + value % BRIDGE_HOST_COUNT}"


def is_valid_ipv4(text: str) -> bool:
    try:
        ipaddress.IPv4Address(text)
    except ValueError:
        return False
    return True
