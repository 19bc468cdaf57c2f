"""Base image catalog, cache and per-VM disk creation."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from vmctl.config import Settings
from vmctl.exceptions import ImageError, ManagerError
from vmctl.utils import SubprocessRunner, download_file, ensure_directory, log, run_checked


class ImageResolver:
    """Maps ``(image, arch)`` to a verified qcow2 file in the local cache."""

    def __init__(
        self,
        settings: Settings,
        runner: Optional[SubprocessRunner] = None,
        downloader: Callable[..., None] = download_file,
    ) -> None:
        self.settings = settings
        self.runner = runner or SubprocessRunner()
        self.downloader = downloader

    def catalog(self) -> List[Tuple[str, str, List[str]]]:
        """``(key, display name, arches)`` for every known image."""
        return [
            (key, str(entry.get("name", key)), sorted(entry["urls"]))
            for key, entry in sorted(self.settings.images.items())
        ]

    def url_for(self, image: str, arch: str) -> str:
        entry: Optional[Dict] = self.settings.images.get(image)
        if entry is None:
            available = ", ".join(sorted(self.settings.images))
            raise ImageError(f"Unknown image '{image}'. Available: {available}")
        url = entry["urls"].get(arch)
        if not url:
            raise ImageError(f"Image '{image}' has no build for {arch}")
        return url

    def cache_path(self, image: str, arch: str) -> Path:
        return self.settings.images_dir / f"{image}-{arch}.qcow2"

    def is_cached(self, image: str, arch: str) -> bool:
        return self.cache_path(image, arch).exists()

    def resolve(self, image: str, arch: str) -> Path:
        url = self.url_for(image, arch)
        dest = self.cache_path(image, arch)
        if dest.exists():
            log("INFO", f"Using cached image: {dest}")
            return dest

        ensure_directory(dest.parent)
        try:
            self.downloader(url, dest, label=f"Downloading {image} ({arch})")
        except ManagerError as exc:
            raise ImageError(str(exc))
        self.verify(dest)
        return dest

    def verify(self, path: Path) -> None:
        """Check the cached file with ``qemu-img info``; drop it if unreadable."""
        result = self.runner.run(["qemu-img", "info", str(path)])
        if result.returncode != 0:
            path.unlink(missing_ok=True)
            raise ImageError(
                f"Downloaded image {path.name} is not a valid disk image: "
                f"{(result.stderr or result.stdout).strip() or 'qemu-img info failed'}"
            )


def create_disk(runner: SubprocessRunner, base: Path, dest: Path, size: str) -> Path:
    """Copy ``base`` into a standalone qcow2 at ``dest`` and grow it to ``size``."""
    log("INFO", f"Creating disk {dest} ({size})")
    run_checked(
        runner,
        ["qemu-img", "convert", "-O", "qcow2", str(base), str(dest)],
        f"Failed to create disk from {base.name}",
    )
    run_checked(runner, ["qemu-img", "resize", str(dest), size], f"Failed to resize {dest.name} to {size}")
    return dest
