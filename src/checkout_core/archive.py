"""Archive acquisition: populate a directory from a repository snapshot.

Used when no local git client is available. One call resolves the ref,
downloads the archive (through a mirror proxy when one applies, directly
otherwise), extracts it into a staging directory, and moves the content of
its single versioned top-level folder into the target directory.

Transport choice:

- an explicit proxy URL that names a known mirror -> mirror, then direct if
  the mirror allows fallback
- an explicit proxy URL that is not a known mirror -> warning, direct
- no proxy and ``GITHUB_AUTO_MIRROR=true`` -> best probed mirror, then direct
- otherwise -> direct

Each transport is a ``DownloadStrategy`` retried on its own; the next one is
only tried once the previous strategy has exhausted its attempts.

Staging artifacts (``<uuid>.tar.gz`` / ``<uuid>.zip`` and the ``<uuid>``
extraction directory) live inside the target directory and are removed on
success and failure alike.

## Usage

    result = await acquire_archive("acme", "widgets", None, None, Path("widgets"))
    print(result.archive_version)
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import sys
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from checkout_core import github_api
from checkout_core.archive_safety import ExtractionLimits, safe_extract
from checkout_core.config import AUTO_MIRROR_PROBE_TIMEOUT, RetryPolicy, auto_mirror_enabled
from checkout_core.exceptions import (
    ArchiveLayoutError,
    CheckoutError,
    ConfigurationError,
    DownloadError,
    TransientNetworkError,
    UnsupportedMirrorError,
)
from checkout_core.github_api import ArchiveFormat, build_archive_url, build_headers, check_response, http_client
from checkout_core.logging_config import LogContext
from checkout_core.mirror.proxy import MirrorProxy, is_known_mirror
from checkout_core.mirror.selector import MirrorSelector
from checkout_core.retry import execute
from checkout_core.secrets import SecretURL, mask_url_credentials, redact_string

logger = logging.getLogger(__name__)

DIRECT_DOWNLOAD_TIMEOUT = 30.0
MIRROR_DOWNLOAD_TIMEOUT = 60.0

DefaultBranchLookup = Callable[..., Awaitable[str]]


@dataclass(frozen=True)
class DownloadStrategy:
    name: str
    url: SecretURL
    headers: dict[str, str] = field(repr=False)
    timeout: float
    max_attempts: int
    mirror: str | None = None

    async def fetch(self, client: httpx.AsyncClient | None = None) -> bytes:
        logger.info("Downloading the archive (%s): %s", self.name, self.url)
        async with http_client(client, timeout=self.timeout) as http:
            try:
                response = await http.get(
                    self.url.reveal(),
                    headers=self.headers,
                    timeout=httpx.Timeout(self.timeout, connect=github_api.DEFAULT_CONNECT_TIMEOUT),
                )
            except httpx.TransportError as exc:
                raise TransientNetworkError(
                    f"{self.name.capitalize()} download failed: {type(exc).__name__}: "
                    f"{redact_string(str(exc))}",
                    url=self.url.masked,
                ) from exc
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                # Redirect loops, undecodable bodies and bad URLs do not heal on retry.
                raise DownloadError(
                    f"{self.name.capitalize()} download failed: {type(exc).__name__}: "
                    f"{redact_string(str(exc))}",
                    url=self.url.masked,
                ) from exc
        check_response(response, description=f"{self.name.capitalize()} download")
        return response.content


@dataclass
class AcquisitionJob:
    target_dir: Path
    archive_format: ArchiveFormat
    staging_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    archive_version: str | None = None

    @property
    def archive_path(self) -> Path:
        return self.target_dir / f"{self.staging_id}{self.archive_format.suffix}"

    @property
    def extract_path(self) -> Path:
        return self.target_dir / self.staging_id


@dataclass(frozen=True)
class ArchiveAcquisition:
    target_dir: Path
    ref: str | None
    commit: str | None
    archive_version: str
    transport: str
    entries: list[str]


def mirror_strategy(mirror: MirrorProxy, archive_url: str, auth_token: str | None) -> DownloadStrategy:
    """Build the mirror transport for ``archive_url``.

    Raises:
        UnsupportedMirrorError: If the mirror does not serve the archive host
    """
    info = mirror.to_proxy_url(archive_url)
    if not info.supported:
        raise UnsupportedMirrorError(
            f"URL not supported by mirror proxy: {archive_url}",
            hostname=info.mirror_domain,
            mirror=mirror.base_url,
        )
    # Embedded mirror credentials replace the token header.
    token = None if info.has_embedded_auth else auth_token
    return DownloadStrategy(
        name="mirror",
        url=info.proxy_url,
        headers=build_headers(token),
        timeout=mirror.timeout,
        max_attempts=max(1, mirror.retries),
        mirror=mirror.base_url,
    )


def direct_strategy(archive_url: str, auth_token: str | None, retry: RetryPolicy) -> DownloadStrategy:
    return DownloadStrategy(
        name="direct",
        url=SecretURL(archive_url),
        headers=build_headers(auth_token),
        timeout=DIRECT_DOWNLOAD_TIMEOUT,
        max_attempts=retry.max_attempts,
    )


def plan_download_strategies(
    archive_url: str,
    mirror: MirrorProxy | None,
    *,
    auth_token: str | None = None,
    retry: RetryPolicy | None = None,
) -> list[DownloadStrategy]:
    """Ordered transports for one archive download."""
    retry = retry or RetryPolicy()
    strategies: list[DownloadStrategy] = []
    if mirror is not None:
        try:
            strategies.append(mirror_strategy(mirror, archive_url, auth_token))
        except UnsupportedMirrorError as exc:
            logger.warning("%s; skipping mirror", exc.message)
        else:
            auth_info = " (with embedded auth)" if mirror.has_auth else ""
            logger.info("Using GitHub mirror proxy: %s%s", mirror.hostname, auth_info)
            if not mirror.enable_fallback:
                return strategies
    strategies.append(direct_strategy(archive_url, auth_token, retry))
    return strategies


async def choose_mirror(
    proxy_url: str | None,
    selector: MirrorSelector | None = None,
) -> MirrorProxy | None:
    """Pick the mirror to try first, or None for a direct download."""
    if proxy_url and proxy_url.strip():
        known = is_known_mirror(proxy_url) or (
            selector is not None and is_known_mirror(proxy_url, selector.candidates)
        )
        if not known:
            logger.warning(
                "Traditional proxy not supported. Use a GitHub mirror proxy instead: %s",
                mask_url_credentials(proxy_url),
            )
            return None
        try:
            return MirrorProxy(proxy_url, timeout=MIRROR_DOWNLOAD_TIMEOUT)
        except ConfigurationError as exc:
            logger.warning("Ignoring mirror proxy: %s", exc.message)
            return None

    if not auto_mirror_enabled():
        return None

    logger.info("Auto-detecting best GitHub mirror proxy...")
    if selector is None:
        selector = MirrorSelector(probe_timeout=AUTO_MIRROR_PROBE_TIMEOUT)
    try:
        best = await selector.get_best()
    except Exception as exc:
        logger.warning(
            "Mirror detection failed, using direct download: %s: %s", type(exc).__name__, exc
        )
        return None
    if not best:
        logger.info("No available mirrors found, using direct download")
        return None
    logger.info("Auto-selected mirror: %s", best)
    return MirrorProxy(best, timeout=MIRROR_DOWNLOAD_TIMEOUT)


async def download_archive(
    strategies: list[DownloadStrategy],
    *,
    client: httpx.AsyncClient | None = None,
    retry: RetryPolicy | None = None,
) -> tuple[bytes, DownloadStrategy]:
    """Try each strategy in order; return the payload and the one that worked.

    Raises:
        CheckoutError: The last strategy's final error
    """
    if not strategies:
        raise ConfigurationError("No download strategy available")
    for index, strategy in enumerate(strategies):
        try:
            payload = await execute(
                lambda strategy=strategy: strategy.fetch(client),
                policy=retry,
                max_attempts=strategy.max_attempts,
                description=f"{strategy.name.capitalize()} archive download",
            )
        except CheckoutError as exc:
            if index == len(strategies) - 1:
                raise
            logger.warning("%s download failed: %s", strategy.name.capitalize(), exc)
            logger.info("Falling back to %s download", strategies[index + 1].name)
            continue
        logger.info("Successfully downloaded via %s", strategy.name)
        return payload, strategy
    raise AssertionError("unreachable")


def locate_content_root(extract_path: Path) -> Path:
    """The single versioned folder every repository archive nests its content in.

    Raises:
        ArchiveLayoutError: Zero or several top-level entries, or a lone file
    """
    entries = sorted(os.listdir(extract_path))
    if len(entries) != 1:
        raise ArchiveLayoutError(
            f"Expected exactly one directory inside archive, found {len(entries)}",
            entries=entries,
        )
    root = extract_path / entries[0]
    if not root.is_dir() or root.is_symlink():
        raise ArchiveLayoutError(
            "Expected exactly one directory inside archive, found a file", entries=entries
        )
    return root


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


def relocate(source_root: Path, target_dir: Path, *, copy: bool = False) -> list[str]:
    """Move (or copy) every child of ``source_root`` into ``target_dir``.

    A same-named entry already in ``target_dir`` is set aside and only deleted
    once every entry has been relocated. If a later entry fails, the entries
    relocated by this call are removed and the set-aside ones restored, so the
    target is left as it was found.
    """
    token = uuid.uuid4().hex[:8]
    relocated: list[str] = []
    set_aside: dict[str, Path] = {}
    in_flight: str | None = None
    try:
        for name in sorted(os.listdir(source_root)):
            source = source_root / name
            destination = target_dir / name
            if destination.exists() or destination.is_symlink():
                backup = target_dir / f".{name}.{token}.replaced"
                os.replace(destination, backup)
                set_aside[name] = backup
            in_flight = name
            if not copy:
                shutil.move(str(source), str(destination))
            elif source.is_dir() and not source.is_symlink():
                shutil.copytree(source, destination, symlinks=True)
            else:
                shutil.copy2(source, destination, follow_symlinks=False)
            relocated.append(name)
            in_flight = None
    except OSError:
        logger.error("Relocation failed after %d entries; rolling back", len(relocated))
        _roll_back(target_dir, relocated + ([in_flight] if in_flight else []), set_aside)
        raise

    for name, backup in set_aside.items():
        try:
            _remove_path(backup)
        except OSError as exc:
            logger.warning("Could not remove replaced entry %s: %s", name, exc)
    return relocated


def _roll_back(target_dir: Path, names: list[str], set_aside: dict[str, Path]) -> None:
    for name in reversed(names):
        try:
            _remove_path(target_dir / name)
        except OSError as exc:
            logger.warning("Rollback could not remove %s: %s", name, exc)
    for name, backup in set_aside.items():
        try:
            os.replace(backup, target_dir / name)
        except OSError as exc:
            logger.warning("Rollback could not restore %s (kept at %s): %s", name, backup, exc)


def cleanup_staging(job: AcquisitionJob) -> None:
    for path in (job.archive_path, job.extract_path):
        try:
            _remove_path(path)
        except OSError as exc:
            logger.warning("Failed to remove staging artifact %s: %s", path, exc)


async def acquire_archive(
    owner: str,
    repo: str,
    ref: str | None,
    commit: str | None,
    target_dir: Path,
    server_url: str | None = None,
    proxy_url: str | None = None,
    *,
    auth_token: str | None = None,
    selector: MirrorSelector | None = None,
    archive_format: ArchiveFormat | None = None,
    retry: RetryPolicy | None = None,
    client: httpx.AsyncClient | None = None,
    api: DefaultBranchLookup | None = None,
    limits: ExtractionLimits | None = None,
) -> ArchiveAcquisition:
    """Download and unpack a repository snapshot into ``target_dir``.

    Args:
        owner: Repository owner
        repo: Repository name
        ref: Branch or tag; resolved from the default branch when both
            ``ref`` and ``commit`` are empty
        commit: Commit SHA; takes precedence over ``ref`` in the archive URL
        target_dir: Directory to populate; created if missing
        server_url: Repository server, defaults to ``GITHUB_SERVER_URL`` or github.com
        proxy_url: Explicit mirror proxy base URL
        auth_token: Token for the API and direct downloads
        selector: Shared mirror selector used for auto-discovery
        archive_format: Tarball or zipball, defaults to the platform's choice
        retry: Retry policy for API calls and direct downloads
        client: Optional shared HTTP client
        api: Default-branch lookup, defaults to ``github_api.get_default_branch``
        limits: Extraction safety limits

    Returns:
        A summary of what was acquired

    Raises:
        ArchiveLayoutError: The archive does not hold exactly one top-level folder
        ArchiveExtractionError: A member failed a safety check
        CheckoutError: Download or API failure after retries and fallback
    """
    retry = retry or RetryPolicy()
    archive_format = archive_format or ArchiveFormat.default()
    target_dir = Path(target_dir)
    lookup = api or github_api.get_default_branch

    with LogContext(owner=owner, repo=repo):
        if not ref and not commit:
            logger.info("Determining the default branch")
            ref = await lookup(
                owner,
                repo,
                server_url,
                auth_token=auth_token,
                proxy_url=proxy_url,
                client=client,
                retry=retry,
            )

        archive_url = build_archive_url(owner, repo, ref, commit, server_url, archive_format)
        mirror = await choose_mirror(proxy_url, selector)
        strategies = plan_download_strategies(
            archive_url, mirror, auth_token=auth_token, retry=retry
        )
        payload, used = await download_archive(strategies, client=client, retry=retry)

        await asyncio.to_thread(target_dir.mkdir, parents=True, exist_ok=True)
        job = AcquisitionJob(target_dir=target_dir, archive_format=archive_format)
        with LogContext(staging_id=job.staging_id):
            try:
                logger.info("Writing archive to disk")
                await asyncio.to_thread(job.archive_path.write_bytes, payload)
                del payload

                logger.info("Extracting the archive")
                await asyncio.to_thread(job.extract_path.mkdir)
                await asyncio.to_thread(safe_extract, job.archive_path, job.extract_path, limits)
                await asyncio.to_thread(job.archive_path.unlink)

                content_root = await asyncio.to_thread(locate_content_root, job.extract_path)
                job.archive_version = content_root.name
                logger.info("Resolved version %s", job.archive_version)

                copy = sys.platform.startswith("win")
                entries = await asyncio.to_thread(relocate, content_root, target_dir, copy=copy)
            finally:
                await asyncio.to_thread(cleanup_staging, job)

    return ArchiveAcquisition(
        target_dir=target_dir,
        ref=ref,
        commit=commit,
        archive_version=job.archive_version,
        transport=used.name,
        entries=entries,
    )
