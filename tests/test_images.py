"""Tests for vmctl.images module."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from vmctl.exceptions import ExternalToolError, ImageError, ManagerError
from vmctl.images import ImageResolver, create_disk


def _writer(content: bytes = b"QFI\xfb"):
    def _download(url, destination: Path, label: str = "Downloading") -> None:
        destination.write_bytes(content)

    return MagicMock(side_effect=_download)


class TestCatalog:
    def test_lists_builtin_images(self, settings, runner):
        entries = dict((key, arches) for key, _, arches in ImageResolver(settings, runner).catalog())
        assert entries["debian13"] == ["aarch64", "x86_64"]
        assert "debian12" in entries

    def test_unknown_image(self, settings, runner):
        with pytest.raises(ImageError, match="Unknown image 'fedora'. Available: debian12, debian13"):
            ImageResolver(settings, runner).url_for("fedora", "x86_64")

    def test_unknown_arch_for_image(self, settings, runner):
        settings.images["x86only"] = {"name": "X", "urls": {"x86_64": "https://example.com/x.qcow2"}}
        with pytest.raises(ImageError, match="no build for aarch64"):
            ImageResolver(settings, runner).url_for("x86only", "aarch64")


class TestResolve:
    def test_downloads_and_verifies(self, settings, runner):
        downloader = _writer()
        resolver = ImageResolver(settings, runner, downloader=downloader)
        path = resolver.resolve("debian13", "x86_64")
        assert path == settings.images_dir / "debian13-x86_64.qcow2"
        assert path.exists()
        url = downloader.call_args[0][0]
        assert url.endswith("debian-13-genericcloud-amd64.qcow2")
        assert runner.calls == [["qemu-img", "info", str(path)]]

    def test_cache_hit_skips_download(self, settings, runner):
        cached = settings.images_dir / "debian12-aarch64.qcow2"
        cached.parent.mkdir(parents=True)
        cached.write_bytes(b"cached")
        downloader = _writer()
        resolver = ImageResolver(settings, runner, downloader=downloader)
        assert resolver.resolve("debian12", "aarch64") == cached
        downloader.assert_not_called()
        assert resolver.is_cached("debian12", "aarch64") is True

    def test_invalid_download_is_removed(self, settings, runner):
        runner.fail("qemu-img", stderr="qemu-img: Image is not in qcow2 format")
        resolver = ImageResolver(settings, runner, downloader=_writer(b"<html>"))
        with pytest.raises(ImageError, match="not a valid disk image"):
            resolver.resolve("debian13", "x86_64")
        assert not resolver.is_cached("debian13", "x86_64")

    def test_download_failure_becomes_image_error(self, settings, runner):
        downloader = MagicMock(side_effect=ManagerError("HTTP error downloading x: 404 Not Found"))
        resolver = ImageResolver(settings, runner, downloader=downloader)
        with pytest.raises(ImageError, match="404"):
            resolver.resolve("debian13", "x86_64")


class TestCreateDisk:
    def test_convert_then_resize(self, runner, tmp_path):
        base = tmp_path / "base.qcow2"
        dest = tmp_path / "disk.qcow2"
        create_disk(runner, base, dest, "20G")
        assert runner.calls == [
            ["qemu-img", "convert", "-O", "qcow2", str(base), str(dest)],
            ["qemu-img", "resize", str(dest), "20G"],
        ]
        assert dest.exists()

    def test_convert_failure(self, runner, tmp_path):
        runner.fail("qemu-img", returncode=1, stderr="Could not open base")
        with pytest.raises(ExternalToolError, match="Could not open base"):
            create_disk(runner, tmp_path / "base.qcow2", tmp_path / "disk.qcow2", "20G")
        assert len(runner.calls) == 1
