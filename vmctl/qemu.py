"""QEMU command line construction."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional

from vmctl.constants import BRIDGE_NETDEV_FD, GUEST_SSH_PORT, SUPPORTED_ARCHES
from vmctl.exceptions import DependencyMissingError
from vmctl.identity import derive_mac
from vmctl.models import VMDescriptor, VMPaths
from vmctl.utils import host_arch as detect_host_arch


def hypervisor_binary(arch: str) -> str:
    return SUPPORTED_ARCHES[arch]["binary"]


def detect_firmware(arch: str, candidates: Optional[Iterable[Path]] = None) -> Optional[Path]:
    """Return the first existing UEFI firmware image for ``arch``, if it needs one."""
    profile = SUPPORTED_ARCHES[arch]
    if not profile["needs_firmware"]:
        return None
    if candidates is None:
        candidates = profile["firmware_candidates"]
    for candidate in candidates:
        if Path(candidate).exists():
            return Path(candidate)
    return None


def acceleration_enabled(descriptor: VMDescriptor, host_arch: str) -> bool:
    """Hardware acceleration only applies when guest and host architectures match."""
    return descriptor.arch == host_arch and descriptor.virt_type != "tcg"


def build_qemu_command(
    descriptor: VMDescriptor,
    paths: VMPaths,
    firmware: Optional[Path] = None,
    host_arch: Optional[str] = None,
    seed_iso: Optional[Path] = None,
) -> List[str]:
    """Build the complete hypervisor argv for ``descriptor``.

    The result depends only on the arguments, so the same inputs always
    produce the same list. The disk, console log, monitor socket and pidfile
    are taken from ``paths``; ``host_arch`` defaults to the running machine.
    """
    profile = SUPPORTED_ARCHES[descriptor.arch]
    accelerated = acceleration_enabled(descriptor, host_arch or detect_host_arch())
    cpu_model = "host" if accelerated else profile["cpu"]

    cmd: List[str] = [
        profile["binary"],
        "-machine",
        profile["machine"],
        "-cpu",
        cpu_model,
    ]
    if profile["needs_firmware"]:
        if firmware is None:
            raise DependencyMissingError(
                f"UEFI firmware for {descriptor.arch} not found. Install QEMU's edk2 firmware "
                "(e.g. 'brew install qemu' or the qemu-efi-aarch64 package)."
            )
        cmd.extend(["-bios", str(firmware)])
    cmd.extend(["-m", descriptor.memory, "-smp", str(descriptor.cpus)])
    if profile["explicit_numa"]:
        cmd.extend(
            [
                "-object",
                f"memory-backend-ram,id=mem,size={descriptor.memory}",
                "-numa",
                "node,memdev=mem",
            ]
        )

    cmd.extend(
        [
            "-name",
            descriptor.name,
            "-device",
            f"virtio-net-pci,netdev=n0,mac={derive_mac(descriptor.name)}",
        ]
    )
    if descriptor.bridged:
        # socket_vmnet_client hands the vmnet socket to QEMU as fd 3
        cmd.extend(["-netdev", f"socket,id=n0,fd={BRIDGE_NETDEV_FD}"])
    else:
        cmd.extend(
            [
                "-netdev",
                f"user,id=n0,hostfwd=tcp:127.0.0.1:{descriptor.ssh.port}-:{GUEST_SSH_PORT}",
            ]
        )

    cmd.extend(
        [
            "-device",
            "virtio-rng-pci",
            "-drive",
            f"file={paths.disk},if=virtio,cache=writeback,format=qcow2",
        ]
    )
    if seed_iso is not None:
        cmd.extend(["-cdrom", str(seed_iso)])
    if accelerated:
        cmd.extend(["-accel", descriptor.virt_type])

    cmd.extend(
        [
            "-display",
            "none",
            "-serial",
            f"file:{paths.console_log}",
            "-monitor",
            f"unix:{paths.monitor_socket},server,nowait",
            "-pidfile",
            str(paths.pidfile),
            "-daemonize",
        ]
    )
    return cmd
