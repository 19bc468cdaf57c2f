"""NoCloud seed generation: cloud-init user-data, meta-data and the seed ISO."""

from __future__ import annotations

import tempfile
import textwrap
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

from vmctl.constants import (
    BOOT_SENTINEL,
    BRIDGE_GATEWAY,
    NAMESERVERS,
    PRIMARY_INTERFACE,
    SEED_ISO_TOOLS,
)
from vmctl.exceptions import DependencyMissingError, ExternalToolError
from vmctl.models import VMDescriptor, VMPaths
from vmctl.utils import SubprocessRunner, hash_password, log

_SSHD_DROPIN = textwrap.dedent(
    """\
    PasswordAuthentication yes
    PubkeyAuthentication yes
    PermitRootLogin prohibit-password
    UseDNS no
    GSSAPIAuthentication no
    """
)


def render_netplan(static_ip: Optional[str]) -> str:
    """Netplan for the bridged NIC: static when an address is pinned, DHCP otherwise."""
    ethernet: Dict[str, object]
    if static_ip:
        ethernet = {
            "addresses": [f"{static_ip}/24"],
            "routes": [{"to": "default", "via": BRIDGE_GATEWAY}],
            "nameservers": {"addresses": list(NAMESERVERS)},
            "dhcp4": False,
            "dhcp6": False,
        }
    else:
        ethernet = {
            "dhcp4": True,
            "dhcp6": False,
            "nameservers": {"addresses": list(NAMESERVERS)},
        }
    netplan = {
        "network": {
            "version": 2,
            "renderer": "networkd",
            "ethernets": {PRIMARY_INTERFACE: ethernet},
        }
    }
    return yaml.safe_dump(netplan, sort_keys=False, default_flow_style=False)


def render_cloud_init(descriptor: VMDescriptor) -> Tuple[str, str]:
    """Return ``(user_data, meta_data)`` for ``descriptor``.

    The guest prints the readiness sentinel as cloud-init's final message,
    which is what the boot watcher looks for on the serial console.
    """
    hostname = descriptor.name
    username = descriptor.username
    write_files: List[Dict[str, str]] = [
        {
            "path": "/etc/ssh/sshd_config.d/50-cloud-init.conf",
            "owner": "root:root",
            "permissions": "0644",
            "content": _SSHD_DROPIN,
        }
    ]
    runcmd: List[object] = [
        ["sh", "-c", f"hostnamectl set-hostname {hostname} || echo {hostname} > /etc/hostname"],
        ["hostname", hostname],
        ["passwd", "-u", username],
        ["systemctl", "enable", "ssh"],
        ["sh", "-c", "test -f /etc/ssh/.keys_generated || (ssh-keygen -A && touch /etc/ssh/.keys_generated)"],
        ["systemctl", "start", "ssh"],
    ]
    if descriptor.bridged:
        write_files.append(
            {
                "path": "/etc/netplan/01-netcfg.yaml",
                "permissions": "0600",
                "content": render_netplan(descriptor.static_ip),
            }
        )
        runcmd.append(["netplan", "apply"])

    user_cfg: Dict[str, object] = {
        "datasource_list": ["NoCloud", "None"],
        "final_message": BOOT_SENTINEL,
        "hostname": hostname,
        "fqdn": f"{hostname}.local",
        "manage_etc_hosts": True,
        "package_update": False,
        "packages": ["openssh-server"],
        "users": [
            {
                "name": username,
                "gecos": username,
                "groups": ["sudo"],
                "lock_passwd": False,
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "shell": "/bin/bash",
                "passwd": hash_password(descriptor.password),
            }
        ],
        "chpasswd": {"expire": False},
        "ssh_pwauth": True,
        "write_files": write_files,
        "runcmd": runcmd,
    }
    user_data = "#cloud-config\n" + yaml.safe_dump(user_cfg, sort_keys=False, default_flow_style=False)
    meta_data = (
        textwrap.dedent(
            f"""
            instance-id: iid-{hostname}
            local-hostname: {hostname}
            """
        ).strip()
        + "\n"
    )
    return user_data, meta_data


def _packaging_command(tool: str, output: Path, staging: Path) -> List[str]:
    if tool == "hdiutil":
        return [
            "hdiutil",
            "makehybrid",
            "-o",
            str(output),
            "-hfs",
            "-joliet",
            "-iso",
            "-default-volume-name",
            "cidata",
            str(staging),
        ]
    return [
        tool,
        "-output",
        str(output),
        "-volid",
        "cidata",
        "-joliet",
        "-rock",
        str(staging / "user-data"),
        str(staging / "meta-data"),
    ]


def build_seed_iso(
    runner: SubprocessRunner,
    paths: VMPaths,
    user_data: str,
    meta_data: str,
) -> Path:
    """Package the NoCloud pair into ``paths.seed_iso`` with the first working tool."""
    paths.user_data.write_text(user_data, encoding="utf-8")
    paths.meta_data.write_text(meta_data, encoding="utf-8")

    tools = [tool for tool in SEED_ISO_TOOLS if runner.which(tool)]
    if not tools:
        raise DependencyMissingError(
            "No ISO packaging tool found; install one of: " + ", ".join(SEED_ISO_TOOLS)
        )

    last_error: Optional[ExternalToolError] = None
    with tempfile.TemporaryDirectory() as tmpdir:
        staging = Path(tmpdir)
        (staging / "user-data").write_text(user_data, encoding="utf-8")
        (staging / "meta-data").write_text(meta_data, encoding="utf-8")
        for tool in tools:
            paths.seed_iso.unlink(missing_ok=True)
            cmd = _packaging_command(tool, paths.seed_iso, staging)
            result = runner.run(cmd)
            if result.returncode == 0:
                log("DEBUG", f"Seed image built with {tool}")
                return paths.seed_iso
            log("WARN", f"{tool} failed to build the seed image; trying the next tool")
            last_error = ExternalToolError(
                f"{tool} could not build {paths.seed_iso}",
                argv=cmd,
                returncode=result.returncode,
                output=(result.stderr or result.stdout).strip(),
            )
    assert last_error is not None
    raise last_error
