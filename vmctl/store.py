"""Durable VM descriptors: one directory per VM under the VMs root."""

from __future__ import annotations

import contextlib
import shutil
import tempfile
from pathlib import Path
from typing import ContextManager, Iterator, List

import yaml

from vmctl.config import Settings
from vmctl.exceptions import AlreadyExistsError, CorruptStateError, ManagerError, NotFoundError
from vmctl.identity import sanitize_name
from vmctl.models import VMDescriptor, VMPaths
from vmctl.process import ProcessSupervisor
from vmctl.utils import ensure_directory, log, vm_lock


class VMStore:
    """Source of truth for which VMs exist and their last-known facts."""

    def __init__(self, settings: Settings, supervisor: ProcessSupervisor) -> None:
        self.settings = settings
        self.supervisor = supervisor
        self.root = settings.vms_dir

    def resolve_name(self, name: str) -> str:
        """Map a name given by the user onto the directory key it is stored under.

        Names are sanitized the same way they are at creation, so ``my_vm``
        finds the VM stored as ``my-vm``. Anything that looks like a path is
        rejected before it can reach the filesystem.
        """
        raw = name.strip()
        if not raw or raw.startswith(".") or "/" in raw or "\\" in raw:
            raise ManagerError(f"Invalid VM name '{name}'")
        key = sanitize_name(raw)
        if (self.root / key).parent != self.root:
            raise ManagerError(f"Invalid VM name '{name}'")
        return key

    def paths(self, name: str) -> VMPaths:
        return VMPaths(self.root / self.resolve_name(name))

    def exists(self, name: str) -> bool:
        return self.paths(name).vm_dir.is_dir()

    def lock(self, name: str) -> ContextManager[None]:
        """Advisory lock serializing mutations of one VM.

        The lock file stays in the VMs root after the VM is deleted. Unlinking
        a flock file another process may already have opened would let two
        holders lock different inodes.
        """
        return vm_lock(self.root / f".{self.resolve_name(name)}.lock", self.settings.lock_timeout)

    def list_names(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(entry.name for entry in self.root.iterdir() if entry.is_dir() and self._is_key(entry.name))

    def _is_key(self, name: str) -> bool:
        try:
            return self.resolve_name(name) == name
        except ManagerError:
            return False

    def create(self, descriptor: VMDescriptor) -> VMPaths:
        paths = self.paths(descriptor.name)
        ensure_directory(self.root)
        try:
            paths.vm_dir.mkdir()
        except FileExistsError:
            raise AlreadyExistsError(descriptor.name)
        self._write(paths, descriptor)
        log("DEBUG", f"Descriptor written to {paths.descriptor}")
        return paths

    def load(self, name: str) -> VMDescriptor:
        name = self.resolve_name(name)
        paths = self.paths(name)
        if not paths.vm_dir.is_dir():
            raise NotFoundError(name)
        try:
            raw = paths.descriptor.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise CorruptStateError(name, f"{paths.descriptor.name} is missing")
        except OSError as exc:
            raise CorruptStateError(name, str(exc))
        try:
            descriptor = VMDescriptor.from_dict(yaml.safe_load(raw))
        except (yaml.YAMLError, ValueError) as exc:
            raise CorruptStateError(name, str(exc))
        if descriptor.name != name:
            raise CorruptStateError(name, f"descriptor names a different VM '{descriptor.name}'")
        return descriptor

    def save(self, descriptor: VMDescriptor) -> None:
        paths = self.paths(descriptor.name)
        if not paths.vm_dir.is_dir():
            raise NotFoundError(descriptor.name)
        self._write(paths, descriptor)

    def delete(self, name: str) -> None:
        name = self.resolve_name(name)
        paths = self.paths(name)
        if not paths.vm_dir.is_dir():
            raise NotFoundError(name)
        self.supervisor.stop(paths, grace=self.settings.stop_timeout)
        self.remove_tree(paths)

    def remove_tree(self, paths: VMPaths) -> None:
        shutil.rmtree(paths.vm_dir)
        log("DEBUG", f"Removed {paths.vm_dir}")

    def _write(self, paths: VMPaths, descriptor: VMDescriptor) -> None:
        payload = yaml.safe_dump(descriptor.to_dict(), sort_keys=False, default_flow_style=False)
        with _atomic_target(paths.descriptor) as tmp:
            tmp.write_text(payload, encoding="utf-8")


@contextlib.contextmanager
def _atomic_target(destination: Path) -> Iterator[Path]:
    """Yield a temp path in the same directory; rename it over ``destination`` on success."""
    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent, prefix=f".{destination.name}.") as tmp:
        tmp_path = Path(tmp.name)
    try:
        yield tmp_path
        tmp_path.replace(destination)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
