"""VM lifecycle orchestration."""

from __future__ import annotations

import os
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple

from vmctl.boot import BootWatcher, scan_console_log
from vmctl.cloudinit import build_seed_iso, render_cloud_init
from vmctl.config import Settings, normalize_net_type, normalize_virt_type, resolve_arch
from vmctl.constants import DEFAULT_SSH_PORT, GUEST_SSH_PORT, SEED_ISO_TOOLS, SUPPORTED_ARCHES
from vmctl.exceptions import (
    AlreadyExistsError,
    CorruptStateError,
    DependencyMissingError,
    ManagerError,
    NotFoundError,
)
from vmctl.identity import derive_mac, derive_static_ip, is_valid_ipv4, sanitize_name
from vmctl.images import ImageResolver, create_disk
from vmctl.models import (
    BootResult,
    CreateOptions,
    SSHEndpoint,
    VMDescriptor,
    VMPaths,
    VMStatus,
    VMStatusReport,
    VMSummary,
)
from vmctl.network import check_bridge, find_free_port
from vmctl.process import ProcessSupervisor
from vmctl.qemu import build_qemu_command, detect_firmware, hypervisor_binary
from vmctl.store import VMStore
from vmctl.utils import (
    SubprocessRunner,
    generate_password,
    host_arch,
    log,
    random_vm_name,
    validate_disk_size,
    validate_memory,
)


def default_virt_type(arch: str, native_arch: str) -> str:
    """Pick the accelerator for ``arch`` on this host; emulation when none applies."""
    if arch != native_arch:
        return "tcg"
    if sys.platform == "darwin":
        return "hvf"
    if os.path.exists("/dev/kvm"):
        return "kvm"
    return "tcg"


class VMManager:
    """Drives identity, command building, supervision and boot detection for each VM."""

    def __init__(
        self,
        settings: Settings,
        runner: Optional[SubprocessRunner] = None,
        watcher: Optional[BootWatcher] = None,
        images: Optional[ImageResolver] = None,
        native_arch: Optional[str] = None,
        firmware_candidates: Optional[Iterable[Path]] = None,
    ) -> None:
        self.settings = settings
        self.runner = runner or SubprocessRunner()
        self.supervisor = ProcessSupervisor(settings, self.runner)
        self.store = VMStore(settings, self.supervisor)
        self.watcher = watcher or BootWatcher()
        self.images = images or ImageResolver(settings, self.runner)
        self.native_arch = native_arch or host_arch()
        self.firmware_candidates = firmware_candidates

    def check_dependencies(self, arch: str, net_type: str, provisioning: bool = True) -> Optional[Path]:
        """Verify host tools before anything is written; return the firmware to use."""
        missing: List[str] = []
        binary = hypervisor_binary(arch)
        if self.runner.which(binary) is None:
            missing.append(binary)
        if provisioning:
            if self.runner.which("qemu-img") is None:
                missing.append("qemu-img")
            if not any(self.runner.which(tool) for tool in SEED_ISO_TOOLS):
                missing.append(" or ".join(SEED_ISO_TOOLS))
        if missing:
            raise DependencyMissingError(f"Missing required tools: {', '.join(missing)}")

        firmware = detect_firmware(arch, self.firmware_candidates)
        if SUPPORTED_ARCHES[arch]["needs_firmware"] and firmware is None:
            raise DependencyMissingError(f"No UEFI firmware found for {arch}; install QEMU's edk2 firmware")
        if net_type == "bridge":
            check_bridge(self.settings, self.runner.which)
        return firmware

    def build_descriptor(self, options: CreateOptions) -> VMDescriptor:
        """Resolve ``options`` against settings into a complete descriptor."""
        name = sanitize_name(options.name or random_vm_name())
        arch = resolve_arch(options.arch or self.settings.default_arch)
        image = options.image or self.settings.default_image
        self.images.url_for(image, arch)
        net_type = normalize_net_type(options.net_type or self.settings.default_net_type)
        if options.virt_type:
            virt_type = normalize_virt_type(options.virt_type)
        else:
            virt_type = default_virt_type(arch, self.native_arch)
        memory = validate_memory(options.memory or self.settings.default_memory)
        cpus = options.cpus if options.cpus is not None else self.settings.default_cpus
        if cpus < 1:
            raise ManagerError(f"CPU count must be >= 1 (got {cpus})")
        disk_size = validate_disk_size(options.disk_size or self.settings.default_disk_size)
        username = (options.username or self.settings.default_username).strip()
        if not username:
            raise ManagerError("Username must not be empty")
        password = options.password or generate_password()

        static_ip: Optional[str] = None
        if net_type == "bridge":
            static_ip = options.static_ip or derive_static_ip(name)
            if not is_valid_ipv4(static_ip):
                raise ManagerError(f"Invalid IPv4 address '{static_ip}'")
            ssh = SSHEndpoint(host=static_ip, port=GUEST_SSH_PORT)
        else:
            if options.static_ip:
                raise ManagerError("A static IP only applies to bridged networking")
            port = find_free_port(options.ssh_port or DEFAULT_SSH_PORT, reserved=self._reserved_ports())
            ssh = SSHEndpoint(host="127.0.0.1", port=port)

        return VMDescriptor(
            name=name,
            arch=arch,
            image=image,
            username=username,
            password=password,
            net_type=net_type,
            virt_type=virt_type,
            ssh=ssh,
            mac_address=derive_mac(name),
            memory=memory,
            cpus=cpus,
            disk_size=disk_size,
            created_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
            static_ip=static_ip,
        )

    def _reserved_ports(self) -> Set[int]:
        ports: Set[int] = set()
        for name in self.store.list_names():
            try:
                descriptor = self.store.load(name)
            except CorruptStateError:
                continue
            if not descriptor.bridged:
                ports.add(descriptor.ssh.port)
        return ports

    def create(
        self,
        options: CreateOptions,
        cancel: Optional[threading.Event] = None,
    ) -> Tuple[VMDescriptor, Optional[BootResult]]:
        descriptor = self.build_descriptor(options)
        name = descriptor.name
        if self.store.exists(name):
            raise AlreadyExistsError(name)
        firmware = self.check_dependencies(descriptor.arch, descriptor.net_type)

        log("INFO", f"Creating VM '{name}' ({descriptor.arch}, {descriptor.image}, {descriptor.net_type})")
        with self.store.lock(name):
            paths = self.store.create(descriptor)
            try:
                base = self.images.resolve(descriptor.image, descriptor.arch)
                create_disk(self.runner, base, paths.disk, descriptor.disk_size)
                user_data, meta_data = render_cloud_init(descriptor)
                seed_iso = build_seed_iso(self.runner, paths, user_data, meta_data)
                argv = build_qemu_command(
                    descriptor,
                    paths,
                    firmware=firmware,
                    host_arch=self.native_arch,
                    seed_iso=seed_iso,
                )
                self.supervisor.start(descriptor, argv)
            except BaseException:
                log("ERROR", f"Creating '{name}' failed; rolling back")
                self._rollback(paths)
                raise

        boot: Optional[BootResult] = None
        if options.wait:
            timeout = self._boot_timeout(options.boot_timeout)
            boot = self.watcher.wait_ready(paths.console_log, timeout=timeout, cancel=cancel)
            descriptor = self._record_address(descriptor, boot)
        log("SUCCESS", f"VM '{name}' created")
        return descriptor, boot

    def _boot_timeout(self, requested: Optional[float]) -> float:
        return self.settings.boot_timeout if requested is None else requested

    def _rollback(self, paths: VMPaths) -> None:
        try:
            self.supervisor.stop(paths, grace=0)
        except ManagerError as exc:
            log("WARN", f"Rollback could not stop QEMU, keeping {paths.vm_dir}: {exc}")
            return
        if paths.vm_dir.exists():
            self.store.remove_tree(paths)

    def _record_address(self, descriptor: VMDescriptor, boot: BootResult) -> VMDescriptor:
        """Persist the address the guest reported if it differs from the recorded one."""
        if not descriptor.bridged or not boot.ready or not boot.address:
            return descriptor
        if boot.address == descriptor.ssh.host:
            return descriptor
        with self.store.lock(descriptor.name):
            current = self.store.load(descriptor.name)
            current.static_ip = boot.address
            current.ssh.host = boot.address
            self.store.save(current)
        log("INFO", f"Guest reported address {boot.address}; descriptor updated")
        return current

    def start(
        self,
        name: str,
        wait: bool = False,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Tuple[VMDescriptor, Optional[BootResult]]:
        name = self.store.resolve_name(name)
        with self.store.lock(name):
            descriptor = self.store.load(name)
            paths = self.store.paths(name)
            running, pid = self.supervisor.is_running(paths)
            if running:
                log("INFO", f"VM '{name}' is already running (PID {pid})")
                return descriptor, None
            firmware = self.check_dependencies(descriptor.arch, descriptor.net_type, provisioning=False)
            if not paths.disk.exists():
                raise CorruptStateError(name, f"{paths.disk.name} is missing")
            seed_iso = paths.seed_iso if paths.seed_iso.exists() else None
            argv = build_qemu_command(
                descriptor,
                paths,
                firmware=firmware,
                host_arch=self.native_arch,
                seed_iso=seed_iso,
            )
            self.supervisor.start(descriptor, argv)

        boot: Optional[BootResult] = None
        if wait:
            boot = self.watcher.wait_ready(
                paths.console_log, timeout=self._boot_timeout(timeout), cancel=cancel
            )
            descriptor = self._record_address(descriptor, boot)
        return descriptor, boot

    def stop(self, name: str, grace: Optional[float] = None) -> bool:
        """Stop ``name``; return False when it was not running."""
        name = self.store.resolve_name(name)
        paths = self.store.paths(name)
        if not self.store.exists(name):
            raise NotFoundError(name)
        with self.store.lock(name):
            stopped = self.supervisor.stop(paths, grace=self.settings.stop_timeout if grace is None else grace)
        if stopped:
            log("SUCCESS", f"VM '{name}' stopped")
        else:
            log("INFO", f"VM '{name}' is not running")
        return stopped

    def delete(self, name: str) -> None:
        name = self.store.resolve_name(name)
        if not self.store.exists(name):
            raise NotFoundError(name)
        with self.store.lock(name):
            self.store.delete(name)
        log("SUCCESS", f"VM '{name}' deleted")

    def wait(
        self,
        name: str,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> BootResult:
        name = self.store.resolve_name(name)
        descriptor = self.store.load(name)
        paths = self.store.paths(name)
        if not self.supervisor.is_running(paths)[0]:
            raise ManagerError(f"VM '{name}' is stopped; start it with: vmctl start {name}")
        boot = self.watcher.wait_ready(
            paths.console_log, timeout=self._boot_timeout(timeout), cancel=cancel
        )
        self._record_address(descriptor, boot)
        return boot

    def status(self, name: str) -> VMStatusReport:
        name = self.store.resolve_name(name)
        paths = self.store.paths(name)
        descriptor: Optional[VMDescriptor] = None
        try:
            descriptor = self.store.load(name)
        except CorruptStateError as exc:
            log("WARN", str(exc))
        running, pid = self.supervisor.is_running(paths)
        if descriptor is None:
            state = VMStatus.BROKEN
        else:
            state = VMStatus.RUNNING if running else VMStatus.STOPPED
        return VMStatusReport(
            name=name,
            status=state,
            pid=pid,
            boot=scan_console_log(paths.console_log, self.watcher.matcher),
            console_log=paths.console_log,
            descriptor=descriptor,
        )

    def list_vms(self) -> List[VMSummary]:
        summaries: List[VMSummary] = []
        for name in self.store.list_names():
            try:
                descriptor = self.store.load(name)
            except CorruptStateError as exc:
                summaries.append(VMSummary(name=name, status=VMStatus.BROKEN, error=exc.reason))
                continue
            running, pid = self.supervisor.is_running(self.store.paths(name))
            summaries.append(
                VMSummary(
                    name=name,
                    status=VMStatus.RUNNING if running else VMStatus.STOPPED,
                    descriptor=descriptor,
                    pid=pid,
                )
            )
        return summaries
