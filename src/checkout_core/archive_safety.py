"""Safe extraction of repository archives.

Repository snapshots arrive as tarballs or zipballs from a remote host (or a
third-party mirror), so every member is checked before it touches disk:

- absolute paths and ``..`` components are rejected
- symlinks are created only when their target stays inside the tree
- hardlinks and device files are rejected
- file count, total size and compression ratio are capped

Symlinks are created after all regular files so no write can be redirected
through a link planted earlier in the same archive.
"""

from __future__ import annotations

import logging
import os
import stat
import tarfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from checkout_core.exceptions import CheckoutError

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILES = 200_000
DEFAULT_MAX_EXTRACTED_BYTES = 10 * 1024 * 1024 * 1024  # 10 GB
DEFAULT_MAX_COMPRESSION_RATIO = 100
_CHUNK_SIZE = 1024 * 1024


class ArchiveExtractionError(CheckoutError):
    """An archive member failed a safety check."""

    code = "unsafe_archive"


class PathTraversalError(ArchiveExtractionError):
    code = "path_traversal"


class SymlinkError(ArchiveExtractionError):
    code = "unsafe_link"


class DecompressionBombError(ArchiveExtractionError):
    code = "decompression_bomb"


class TooManyFilesError(ArchiveExtractionError):
    code = "too_many_files"


class ExtractedSizeLimitError(ArchiveExtractionError):
    code = "extracted_size_limit"


@dataclass(frozen=True)
class ExtractionLimits:
    max_files: int = DEFAULT_MAX_FILES
    max_extracted_bytes: int = DEFAULT_MAX_EXTRACTED_BYTES
    max_compression_ratio: float = DEFAULT_MAX_COMPRESSION_RATIO
    allow_symlinks: bool = True


@dataclass
class ExtractionReport:
    archive_path: str
    dest_dir: str
    files_extracted: int = 0
    bytes_extracted: int = 0
    symlinks_created: int = 0
    skipped_links: list[str] = field(default_factory=list)


def is_path_safe(member_path: str, dest_dir: Path) -> tuple[bool, str | None]:
    """Check that ``member_path`` lands inside ``dest_dir``.

    Returns:
        Tuple of (is_safe, error_reason)
    """
    normalized = os.path.normpath(member_path)
    if os.path.isabs(normalized) or member_path.startswith(("/", "\\")):
        return False, f"absolute_path:{member_path}"
    if normalized == ".." or normalized.startswith(("../", "..\\")):
        return False, f"path_traversal:{member_path}"
    try:
        final_path = (dest_dir / normalized).resolve()
        final_path.relative_to(dest_dir.resolve())
    except ValueError:
        return False, f"escapes_dest:{member_path}"
    except OSError as exc:
        return False, f"path_resolution_error:{member_path}:{exc}"
    return True, None


def is_link_target_safe(link_path: str, target: str, dest_dir: Path) -> tuple[bool, str | None]:
    """Check that a symlink at ``link_path`` pointing at ``target`` stays in ``dest_dir``.

    Relative targets are interpreted from the link's own directory, the way the
    filesystem resolves them.
    """
    if not target or os.path.isabs(target) or target.startswith(("/", "\\")):
        return False, f"absolute_link_target:{link_path}->{target}"
    parent = os.path.dirname(os.path.normpath(link_path))
    combined = os.path.normpath(os.path.join(parent, target))
    ok, reason = is_path_safe(combined, dest_dir)
    if not ok:
        return False, f"link_escapes_dest:{link_path}->{target} ({reason})"
    return True, None


def _check_totals(member_count: int, total_bytes: int, compressed_size: int, limits: ExtractionLimits) -> None:
    if member_count > limits.max_files:
        raise TooManyFilesError(
            f"Archive contains {member_count} entries, exceeds limit of {limits.max_files}"
        )
    if total_bytes > limits.max_extracted_bytes:
        raise ExtractedSizeLimitError(
            f"Total uncompressed size {total_bytes} exceeds limit {limits.max_extracted_bytes}"
        )
    if compressed_size > 0:
        ratio = total_bytes / compressed_size
        if ratio > limits.max_compression_ratio:
            raise DecompressionBombError(
                f"Compression ratio {ratio:.1f}x exceeds limit {limits.max_compression_ratio}x"
            )


def _copy_member(src: IO[bytes], target_path: Path, declared_size: int, name: str) -> int:
    target_path.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    with open(target_path, "wb") as dst:
        while True:
            chunk = src.read(_CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            # Allow 10% overhead over the declared size
            if written > declared_size * 1.1 + _CHUNK_SIZE:
                raise DecompressionBombError(f"{name} expanded beyond its declared size")
            dst.write(chunk)
    return written


def _create_links(pending: list[tuple[str, str]], dest_dir: Path, report: ExtractionReport) -> None:
    for name, target in pending:
        link_path = dest_dir / name
        link_path.parent.mkdir(parents=True, exist_ok=True)
        if link_path.is_symlink() or link_path.exists():
            link_path.unlink()
        try:
            os.symlink(target, link_path)
        except OSError as exc:
            # Unprivileged Windows accounts cannot create symlinks.
            logger.warning("Could not create symlink %s -> %s: %s", name, target, exc)
            report.skipped_links.append(name)
            continue
        report.symlinks_created += 1


def _queue_link(name: str, target: str, dest_dir: Path, limits: ExtractionLimits, pending: list[tuple[str, str]]) -> None:
    if not limits.allow_symlinks:
        raise SymlinkError(f"Symlink not allowed: {name}", context={"member": name})
    ok, reason = is_link_target_safe(name, target, dest_dir)
    if not ok:
        raise SymlinkError(f"Symlink target unsafe: {reason}", context={"member": name})
    pending.append((name, target))


def safe_extract_tar(archive_path: Path, dest_dir: Path, limits: ExtractionLimits | None = None) -> ExtractionReport:
    """Extract a (possibly compressed) tarball into ``dest_dir``.

    Raises:
        ArchiveExtractionError: If any member fails a safety check
    """
    limits = limits or ExtractionLimits()
    archive_path = Path(archive_path)
    dest_dir = Path(dest_dir).resolve()
    dest_dir.mkdir(parents=True, exist_ok=True)
    report = ExtractionReport(archive_path=str(archive_path), dest_dir=str(dest_dir))
    pending_links: list[tuple[str, str]] = []

    # "r:*" lets tarfile detect gzip/bz2/xz itself.
    with tarfile.open(archive_path, "r:*") as tf:
        members = tf.getmembers()
        total = sum(m.size for m in members if m.isfile())
        _check_totals(len(members), total, archive_path.stat().st_size, limits)

        for member in members:
            ok, reason = is_path_safe(member.name, dest_dir)
            if not ok:
                raise PathTraversalError(f"Unsafe path in archive: {reason}", context={"member": member.name})
            if member.islnk():
                raise SymlinkError(f"Hardlink not allowed: {member.name}", context={"member": member.name})
            if member.issym():
                _queue_link(member.name, member.linkname, dest_dir, limits, pending_links)
                continue
            if member.isdev():
                raise ArchiveExtractionError(f"Device file not allowed: {member.name}")

            target_path = dest_dir / member.name
            if member.isdir():
                target_path.mkdir(parents=True, exist_ok=True)
                continue
            if not member.isfile():
                continue

            src = tf.extractfile(member)
            if src is None:
                continue
            with src:
                report.bytes_extracted += _copy_member(src, target_path, member.size, member.name)
            if report.bytes_extracted > limits.max_extracted_bytes:
                raise ExtractedSizeLimitError(
                    f"Extracted size {report.bytes_extracted} exceeds limit {limits.max_extracted_bytes}"
                )
            if member.mode & 0o111:
                target_path.chmod(member.mode & 0o777)
            report.files_extracted += 1

    _create_links(pending_links, dest_dir, report)
    logger.debug(
        "TAR extraction complete: files=%d bytes=%d symlinks=%d",
        report.files_extracted,
        report.bytes_extracted,
        report.symlinks_created,
    )
    return report


def safe_extract_zip(archive_path: Path, dest_dir: Path, limits: ExtractionLimits | None = None) -> ExtractionReport:
    """Extract a zip archive into ``dest_dir``.

    Zip entries whose Unix mode marks them as symlinks hold the link target as
    their content.

    Raises:
        ArchiveExtractionError: If any member fails a safety check
    """
    limits = limits or ExtractionLimits()
    archive_path = Path(archive_path)
    dest_dir = Path(dest_dir).resolve()
    dest_dir.mkdir(parents=True, exist_ok=True)
    report = ExtractionReport(archive_path=str(archive_path), dest_dir=str(dest_dir))
    pending_links: list[tuple[str, str]] = []

    with zipfile.ZipFile(archive_path, "r") as zf:
        members = zf.infolist()
        total = sum(m.file_size for m in members)
        _check_totals(len(members), total, archive_path.stat().st_size, limits)

        for member in members:
            ok, reason = is_path_safe(member.filename, dest_dir)
            if not ok:
                raise PathTraversalError(f"Unsafe path in archive: {reason}", context={"member": member.filename})

            target_path = dest_dir / member.filename
            if member.is_dir():
                target_path.mkdir(parents=True, exist_ok=True)
                continue

            mode = member.external_attr >> 16
            if mode and stat.S_ISLNK(mode):
                target = zf.read(member).decode("utf-8", errors="replace")
                _queue_link(member.filename.rstrip("/"), target, dest_dir, limits, pending_links)
                continue

            with zf.open(member) as src:
                report.bytes_extracted += _copy_member(src, target_path, member.file_size, member.filename)
            if report.bytes_extracted > limits.max_extracted_bytes:
                raise ExtractedSizeLimitError(
                    f"Extracted size {report.bytes_extracted} exceeds limit {limits.max_extracted_bytes}"
                )
            if mode & 0o111:
                target_path.chmod(mode & 0o777)
            report.files_extracted += 1

    _create_links(pending_links, dest_dir, report)
    logger.debug(
        "ZIP extraction complete: files=%d bytes=%d symlinks=%d",
        report.files_extracted,
        report.bytes_extracted,
        report.symlinks_created,
    )
    return report


def safe_extract(archive_path: Path, dest_dir: Path, limits: ExtractionLimits | None = None) -> ExtractionReport:
    """Extract ``archive_path`` after sniffing its format from the content.

    Raises:
        ArchiveExtractionError: If any safety check fails or the format is unknown
    """
    archive_path = Path(archive_path)
    if zipfile.is_zipfile(archive_path):
        return safe_extract_zip(archive_path, dest_dir, limits)
    if tarfile.is_tarfile(archive_path):
        return safe_extract_tar(archive_path, dest_dir, limits)
    raise ArchiveExtractionError(
        f"Unsupported archive format: {archive_path.name}",
        context={"archive": str(archive_path)},
    )
