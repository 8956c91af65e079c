"""Tests for archive extraction safety."""

from __future__ import annotations

import io
import os
import stat
import sys
import tarfile
import zipfile
from pathlib import Path

import pytest

from checkout_core.archive_safety import (
    ArchiveExtractionError,
    DecompressionBombError,
    ExtractedSizeLimitError,
    ExtractionLimits,
    PathTraversalError,
    SymlinkError,
    TooManyFilesError,
    is_link_target_safe,
    is_path_safe,
    safe_extract,
    safe_extract_tar,
    safe_extract_zip,
)

posix_only = pytest.mark.skipif(sys.platform.startswith("win"), reason="POSIX file modes and symlinks")


def _write_tar(path: Path, members: list[tarfile.TarInfo], payloads: dict[str, bytes] | None = None, mode: str = "w") -> None:
    payloads = payloads or {}
    with tarfile.open(path, mode) as tf:
        for info in members:
            data = payloads.get(info.name)
            if data is not None:
                info.size = len(data)
                tf.addfile(info, io.BytesIO(data))
            else:
                tf.addfile(info)


def _file(name: str, mode: int = 0o644) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.mode = mode
    return info


def _link(name: str, target: str, kind: bytes = tarfile.SYMTYPE) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.type = kind
    info.linkname = target
    return info


class TestIsPathSafe:
    def test_safe_path(self, tmp_path: Path) -> None:
        assert is_path_safe("repo-abc/src/file.py", tmp_path) == (True, None)

    def test_absolute_path_blocked(self, tmp_path: Path) -> None:
        ok, reason = is_path_safe("/etc/passwd", tmp_path)
        assert ok is False
        assert reason.startswith("absolute_path")

    def test_path_traversal_blocked(self, tmp_path: Path) -> None:
        ok, reason = is_path_safe("../../../etc/passwd", tmp_path)
        assert ok is False
        assert reason.startswith("path_traversal")

    def test_escape_through_the_middle(self, tmp_path: Path) -> None:
        ok, _ = is_path_safe("repo/a/../../../baz", tmp_path)
        assert ok is False

    def test_dotdot_that_stays_inside(self, tmp_path: Path) -> None:
        assert is_path_safe("repo/a/../b.txt", tmp_path)[0] is True


class TestIsLinkTargetSafe:
    def test_sibling_target(self, tmp_path: Path) -> None:
        assert is_link_target_safe("repo/docs/link.md", "../README.md", tmp_path)[0] is True

    def test_escaping_target(self, tmp_path: Path) -> None:
        ok, reason = is_link_target_safe("repo/link", "../../etc", tmp_path)
        assert ok is False
        assert "link_escapes_dest" in reason

    def test_absolute_target(self, tmp_path: Path) -> None:
        assert is_link_target_safe("repo/link", "/etc/passwd", tmp_path)[0] is False


class TestSafeExtractTar:
    def test_extract_gzipped_repository(self, tmp_path: Path, tarball_factory, repo_files) -> None:
        archive = tmp_path / "snapshot.tar.gz"
        archive.write_bytes(tarball_factory(repo_files))
        dest = tmp_path / "out"

        report = safe_extract_tar(archive, dest)

        assert report.files_extracted == 3
        assert (dest / "acme-widgets-abcdef12" / "README.md").read_text() == "# widgets\n"
        assert report.bytes_extracted == sum(len(v.encode()) for v in repo_files.values())

    @posix_only
    def test_executable_bit_is_kept(self, tmp_path: Path) -> None:
        archive = tmp_path / "exec.tar"
        _write_tar(archive, [_file("repo/run.sh", 0o755)], {"repo/run.sh": b"#!/bin/sh\n"})
        safe_extract_tar(archive, tmp_path / "out")
        assert os.access(tmp_path / "out" / "repo" / "run.sh", os.X_OK)

    @posix_only
    def test_in_tree_symlink_is_created(self, tmp_path: Path, tarball_factory) -> None:
        archive = tmp_path / "links.tar.gz"
        archive.write_bytes(
            tarball_factory(
                {"repo/README.md": "hello"},
                symlinks={"repo/docs/readme-link.md": "../README.md"},
            )
        )
        dest = tmp_path / "out"
        report = safe_extract_tar(archive, dest)
        link = dest / "repo" / "docs" / "readme-link.md"
        assert link.is_symlink()
        assert link.read_text() == "hello"
        assert report.symlinks_created == 1
        assert report.files_extracted == 1

    def test_symlinks_can_be_disallowed(self, tmp_path: Path) -> None:
        archive = tmp_path / "links.tar"
        _write_tar(archive, [_link("repo/link", "README.md")])
        with pytest.raises(SymlinkError):
            safe_extract_tar(archive, tmp_path / "out", ExtractionLimits(allow_symlinks=False))

    def test_symlink_escape_blocked(self, tmp_path: Path) -> None:
        archive = tmp_path / "escape.tar"
        _write_tar(archive, [_link("escape", "../../../etc")])
        with pytest.raises(SymlinkError):
            safe_extract_tar(archive, tmp_path / "out")

    def test_absolute_symlink_blocked(self, tmp_path: Path) -> None:
        archive = tmp_path / "abs.tar"
        _write_tar(archive, [_link("repo/passwd", "/etc/passwd")])
        with pytest.raises(SymlinkError):
            safe_extract_tar(archive, tmp_path / "out")

    def test_hardlink_blocked(self, tmp_path: Path) -> None:
        archive = tmp_path / "hardlink.tar"
        _write_tar(archive, [_link("repo/hard", "repo/README.md", tarfile.LNKTYPE)])
        with pytest.raises(SymlinkError, match="Hardlink"):
            safe_extract_tar(archive, tmp_path / "out")

    def test_tarslip_blocked(self, tmp_path: Path) -> None:
        archive = tmp_path / "tarslip.tar"
        _write_tar(archive, [_file("../../etc/passwd")], {"../../etc/passwd": b"malicious"})
        with pytest.raises(PathTraversalError):
            safe_extract_tar(archive, tmp_path / "out")
        assert not (tmp_path / "etc").exists()

    def test_device_file_blocked(self, tmp_path: Path) -> None:
        archive = tmp_path / "device.tar"
        info = tarfile.TarInfo("repo/device")
        info.type = tarfile.CHRTYPE
        info.devmajor = 1
        info.devminor = 3
        _write_tar(archive, [info])
        with pytest.raises(ArchiveExtractionError, match="Device file"):
            safe_extract_tar(archive, tmp_path / "out")

    def test_too_many_files(self, tmp_path: Path) -> None:
        archive = tmp_path / "many.tar"
        members = [_file(f"repo/file{i}.txt") for i in range(20)]
        _write_tar(archive, members, {m.name: b"x" for m in members})
        with pytest.raises(TooManyFilesError):
            safe_extract_tar(archive, tmp_path / "out", ExtractionLimits(max_files=10))


class TestSafeExtractZip:
    def test_extract_zipball(self, tmp_path: Path, zipball_factory, repo_files) -> None:
        archive = tmp_path / "snapshot.zip"
        archive.write_bytes(zipball_factory(repo_files))
        report = safe_extract_zip(archive, tmp_path / "out")
        assert report.files_extracted == 3
        assert (tmp_path / "out" / "acme-widgets-abcdef12" / "src" / "widgets" / "__init__.py").exists()

    @posix_only
    def test_zip_symlink_entry(self, tmp_path: Path) -> None:
        archive = tmp_path / "links.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("repo/README.md", "hello")
            link = zipfile.ZipInfo("repo/link.md")
            link.external_attr = (stat.S_IFLNK | 0o777) << 16
            zf.writestr(link, "README.md")
        report = safe_extract_zip(archive, tmp_path / "out")
        assert (tmp_path / "out" / "repo" / "link.md").is_symlink()
        assert report.symlinks_created == 1

    def test_zipslip_blocked(self, tmp_path: Path) -> None:
        archive = tmp_path / "zipslip.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("../../etc/passwd", "malicious")
        with pytest.raises(PathTraversalError):
            safe_extract_zip(archive, tmp_path / "out")

    def test_size_limit(self, tmp_path: Path) -> None:
        archive = tmp_path / "big.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("big.txt", "x" * 1000)
        with pytest.raises(ExtractedSizeLimitError):
            safe_extract_zip(archive, tmp_path / "out", ExtractionLimits(max_extracted_bytes=100))

    def test_compression_ratio_limit(self, tmp_path: Path) -> None:
        archive = tmp_path / "bomb.zip"
        with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            zf.writestr("zeros.bin", b"\x00" * (1024 * 1024))
        with pytest.raises(DecompressionBombError):
            safe_extract_zip(archive, tmp_path / "out", ExtractionLimits(max_compression_ratio=10))


class TestSafeExtract:
    def test_detects_format_from_content(self, tmp_path: Path, tarball_factory, zipball_factory) -> None:
        # Deliberately misleading names: detection must not rely on suffixes.
        tar_path = tmp_path / "snapshot.zip"
        tar_path.write_bytes(tarball_factory({"repo/a.txt": "a"}))
        zip_path = tmp_path / "snapshot.tar.gz"
        zip_path.write_bytes(zipball_factory({"repo/b.txt": "b"}))

        assert safe_extract(tar_path, tmp_path / "t").files_extracted == 1
        assert safe_extract(zip_path, tmp_path / "z").files_extracted == 1

    def test_unsupported_format(self, tmp_path: Path) -> None:
        archive = tmp_path / "snapshot.rar"
        archive.write_bytes(b"not an archive at all")
        with pytest.raises(ArchiveExtractionError, match="Unsupported"):
            safe_extract(archive, tmp_path / "out")
