"""CLI entry points for vmctl."""

from __future__ import annotations

import argparse
import contextlib
import signal
import threading
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from vmctl.config import load_settings
from vmctl.exceptions import ManagerError
from vmctl.manager import VMManager
from vmctl.models import BootResult, BootState, CreateOptions, VMDescriptor, VMStatus, VMSummary
from vmctl.network import ssh_command
from vmctl.utils import log, set_verbose

EXIT_INTERRUPTED = 130


@contextlib.contextmanager
def cancel_on_signals(event: threading.Event) -> Iterator[threading.Event]:
    """Route SIGINT/SIGTERM to ``event`` so a boot wait can stop without touching the VM."""

    def _request_cancel(signum, frame):
        log("INFO", f"{signal.Signals(signum).name} received, cancelling wait")
        event.set()

    prev_sigterm = signal.signal(signal.SIGTERM, _request_cancel)
    prev_sigint = signal.signal(signal.SIGINT, _request_cancel)
    try:
        yield event
    finally:
        signal.signal(signal.SIGTERM, prev_sigterm)
        signal.signal(signal.SIGINT, prev_sigint)


def ssh_target(descriptor: VMDescriptor) -> str:
    if descriptor.bridged:
        return descriptor.ssh.host or f"{descriptor.name}.local"
    return f"{descriptor.ssh.host}:{descriptor.ssh.port}"


def print_startup_banner(descriptor: VMDescriptor, boot: Optional[BootResult] = None) -> None:
    """Print a visually distinct access-info banner after the VM starts."""
    lines: List[str] = []
    lines.append(f"  VM: {descriptor.name} ({descriptor.image})")
    lines.append(
        f"  Arch: {descriptor.arch} | Memory: {descriptor.memory} | CPUs: {descriptor.cpus} "
        f"| Disk: {descriptor.disk_size} | Accel: {descriptor.virt_type}"
    )
    host = descriptor.ssh.host or f"{descriptor.name}.local"
    if descriptor.bridged:
        lines.append(f"  IP:   {host}")
    lines.append(f"  SSH:  {ssh_command(host, descriptor.ssh.port, descriptor.username, descriptor.bridged)}")
    lines.append(f"  User: {descriptor.username}  Pass: {descriptor.password}")
    if boot is not None and not boot.ready:
        lines.append("")
        lines.append(f"  Provisioning still running; check with: vmctl status {descriptor.name}")

    max_len = max(len(line) for line in lines)
    border_len = max_len + 2
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)


def _report_wait(name: str, boot: BootResult) -> int:
    if boot.interrupted:
        log("WARN", f"Stopped waiting; '{name}' keeps booting in the background")
        return EXIT_INTERRUPTED
    if boot.state == BootState.TIMED_OUT:
        log("WARN", f"VM '{name}' started but provisioning did not finish within the timeout")
        log("INFO", f"Check progress with: vmctl status {name}")
        return 1
    log("SUCCESS", f"VM '{name}' is ready")
    if boot.address:
        log("INFO", f"IP Address: {boot.address}")
    return 0


def cmd_create(manager: VMManager, args: argparse.Namespace) -> int:
    options = CreateOptions(
        name=args.name,
        arch=args.arch,
        image=args.image,
        username=args.user,
        password=args.password,
        memory=args.memory,
        cpus=args.cpus,
        disk_size=args.disk,
        net_type=args.net_type,
        virt_type=args.virt,
        static_ip=args.ip,
        ssh_port=args.ssh_port,
        wait=False,
    )
    descriptor, _ = manager.create(options)
    boot: Optional[BootResult] = None
    if not args.no_wait:
        with cancel_on_signals(threading.Event()) as cancel:
            boot = manager.wait(descriptor.name, timeout=args.timeout, cancel=cancel)
        if boot.interrupted:
            _report_wait(descriptor.name, boot)
        descriptor = manager.store.load(descriptor.name)
    print_startup_banner(descriptor, boot)
    # A guest that is slow to provision is still a created VM
    return EXIT_INTERRUPTED if boot is not None and boot.interrupted else 0


def cmd_start(manager: VMManager, args: argparse.Namespace) -> int:
    if not args.wait:
        descriptor, _ = manager.start(args.name)
        print_startup_banner(descriptor)
        return 0
    with cancel_on_signals(threading.Event()) as cancel:
        descriptor, boot = manager.start(args.name, wait=True, timeout=args.timeout, cancel=cancel)
    print_startup_banner(descriptor, boot)
    if boot is None:
        return 0
    return _report_wait(args.name, boot)


def cmd_stop(manager: VMManager, args: argparse.Namespace) -> int:
    manager.stop(args.name, grace=args.timeout)
    return 0


def confirm(prompt: str, reader: Callable[[str], str] = input) -> bool:
    try:
        answer = reader(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def cmd_delete(manager: VMManager, args: argparse.Namespace) -> int:
    if not manager.store.exists(args.name):
        log("ERROR", f"VM '{args.name}' does not exist")
        return 1
    if not args.force and not confirm(f"Delete VM '{args.name}' and its disk?"):
        log("INFO", "Aborted")
        return 1
    manager.delete(args.name)
    return 0


def format_summary_row(summary: VMSummary) -> List[str]:
    if summary.descriptor is None:
        return [summary.name, "BROKEN", "-", "-", "-", "-"]
    descriptor = summary.descriptor
    endpoint = "-"
    credentials = "-"
    if summary.status == VMStatus.RUNNING:
        endpoint = ssh_target(descriptor)
        credentials = f"{descriptor.username} / {descriptor.password}"
    return [
        summary.name,
        summary.status.value.upper(),
        descriptor.arch,
        descriptor.image,
        endpoint,
        credentials,
    ]


def cmd_list(manager: VMManager, args: argparse.Namespace) -> int:
    summaries = manager.list_vms()
    if not summaries:
        print("No VMs found")
        return 0
    header = ["NAME", "STATUS", "ARCH", "IMAGE", "SSH", "CREDENTIALS"]
    rows = [format_summary_row(summary) for summary in summaries]
    widths = [max(len(row[idx]) for row in rows + [header]) for idx in range(len(header) - 1)]
    for row in [header] + rows:
        cells = [f"{cell:<{widths[idx]}}" for idx, cell in enumerate(row[:-1])]
        print("  ".join(cells + [row[-1]]).rstrip())
    print()
    print(f"Total VMs: {len(summaries)}")
    return 0


def cmd_status(manager: VMManager, args: argparse.Namespace) -> int:
    report = manager.status(args.name)
    print(f"VM: {report.name}")
    print(f"State: {report.status.value.upper()}" + (f" (PID {report.pid})" if report.pid else ""))
    print(f"Console log: {report.console_log}")
    print()
    if report.boot.state == BootState.UNKNOWN:
        print("VM has not started yet (no console log)")
        return 0 if report.status != VMStatus.BROKEN else 1
    if report.boot.ready:
        print("Cloud-init: READY")
    else:
        print("Cloud-init: still initializing...")
    if report.boot.network_seen:
        print("Network: configured")
        if report.boot.address:
            print(f"   IP Address: {report.boot.address}")
    else:
        print("Network: not yet configured")
    print()
    print("To view full console output:")
    print(f"  tail -f {report.console_log}")
    return 0 if report.status != VMStatus.BROKEN else 1


def cmd_wait(manager: VMManager, args: argparse.Namespace) -> int:
    log("INFO", f"Waiting for VM '{args.name}' to complete boot")
    with cancel_on_signals(threading.Event()) as cancel:
        boot = manager.wait(args.name, timeout=args.timeout, cancel=cancel)
    return _report_wait(args.name, boot)


def cmd_images(manager: VMManager, args: argparse.Namespace) -> int:
    entries = manager.images.catalog()
    max_key = max(len(key) for key, _, _ in entries)
    for key, name, arches in entries:
        cached = [arch for arch in arches if manager.images.is_cached(key, arch)]
        suffix = f"  cached: {', '.join(cached)}" if cached else ""
        print(f"  {key:<{max_key}}  {name}  (arch={', '.join(arches)}){suffix}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vmctl", description="Local QEMU virtual machine manager")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug output")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    create = sub.add_parser("create", help="Create and start a new VM")
    create.add_argument("--name", help="VM name (random when omitted)")
    create.add_argument("--arch", help="Architecture: x86_64, aarch64 (amd64, arm64 accepted)")
    create.add_argument("--image", help="Base image key (see 'vmctl images')")
    create.add_argument("--user", help="Login user")
    create.add_argument("--pass", dest="password", help="Password (generated when omitted)")
    create.add_argument("--memory", help="Memory size, e.g. 2G")
    create.add_argument("--cpus", type=int, help="vCPU count")
    create.add_argument("--disk", help="Disk size, e.g. 20G")
    create.add_argument("--net-type", help="Network type: bridge, portfwd")
    create.add_argument("--virt", help="Accelerator: kvm, hvf, tcg")
    create.add_argument("--ip", help="Static IP address for bridged networking")
    create.add_argument("--ssh-port", type=int, help="Preferred host port for portfwd SSH")
    create.add_argument("--no-wait", action="store_true", help="Return without waiting for provisioning")
    create.add_argument("--timeout", type=int, default=None, help="Boot wait timeout in seconds")
    create.set_defaults(func=cmd_create)

    start = sub.add_parser("start", help="Start a stopped VM")
    start.add_argument("name")
    start.add_argument("--wait", action="store_true", help="Wait for the guest to report readiness")
    start.add_argument("--timeout", type=int, default=None, help="Boot wait timeout in seconds")
    start.set_defaults(func=cmd_start)

    stop = sub.add_parser("stop", help="Stop a running VM")
    stop.add_argument("name")
    stop.add_argument("--timeout", type=int, default=None, help="Seconds to wait before SIGKILL")
    stop.set_defaults(func=cmd_stop)

    delete = sub.add_parser("delete", help="Stop a VM and remove its files")
    delete.add_argument("name")
    delete.add_argument("-f", "--force", action="store_true", help="Do not ask for confirmation")
    delete.set_defaults(func=cmd_delete)

    listing = sub.add_parser("list", help="List all VMs and their status")
    listing.set_defaults(func=cmd_list)

    status = sub.add_parser("status", help="Show VM state and boot progress")
    status.add_argument("name")
    status.set_defaults(func=cmd_status)

    wait = sub.add_parser("wait", help="Wait for a VM to finish provisioning")
    wait.add_argument("name")
    wait.add_argument("--timeout", type=int, default=None, help="Timeout in seconds")
    wait.set_defaults(func=cmd_wait)

    images = sub.add_parser("images", help="List available base images")
    images.set_defaults(func=cmd_images)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        set_verbose(True)

    try:
        settings = load_settings(args.config)
        manager = VMManager(settings)
        return args.func(manager, args)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return EXIT_INTERRUPTED
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
