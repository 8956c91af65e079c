"""Minimal REST calls against the repository host.

Only what archive acquisition needs: default-branch lookup, archive endpoint
URLs and the response classification shared with the download path.
"""

from __future__ import annotations

import contextlib
import enum
import logging
import sys
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import quote

import httpx

from checkout_core.__version__ import __version__ as VERSION
from checkout_core.config import RetryPolicy
from checkout_core.exceptions import (
    AuthRequiredError,
    CheckoutError,
    DownloadError,
    NotFoundError,
    TransientNetworkError,
)
from checkout_core.retry import execute, is_transient_status_code
from checkout_core.secrets import mask_url_credentials
from checkout_core.urls import get_server_api_url

logger = logging.getLogger(__name__)

API_TIMEOUT = 30.0
DEFAULT_CONNECT_TIMEOUT = 15.0
USER_AGENT = f"checkout-core/{VERSION}"
ACCEPT = "application/vnd.github.v3+json"
WIKI_FALLBACK_BRANCH = "master"


class ArchiveFormat(str, enum.Enum):
    TARBALL = "tarball"
    ZIPBALL = "zipball"

    @classmethod
    def default(cls, platform: str | None = None) -> ArchiveFormat:
        """Zipball on Windows, tarball everywhere else."""
        platform = platform or sys.platform
        return cls.ZIPBALL if platform.startswith("win") else cls.TARBALL

    @property
    def suffix(self) -> str:
        return ".zip" if self is ArchiveFormat.ZIPBALL else ".tar.gz"


def build_headers(auth_token: str | None = None) -> dict[str, str]:
    headers = {"Accept": ACCEPT, "User-Agent": USER_AGENT}
    if auth_token:
        headers["Authorization"] = f"token {auth_token}"
    return headers


def build_archive_url(
    owner: str,
    repo: str,
    ref: str | None,
    commit: str | None,
    server_url: str | None = None,
    archive_format: ArchiveFormat | None = None,
) -> str:
    """``<api>/repos/<owner>/<repo>/<tarball|zipball>/<commit or ref>``."""
    archive_format = archive_format or ArchiveFormat.default()
    target = commit or ref or ""
    return (
        f"{get_server_api_url(server_url)}/repos/{quote(owner, safe='')}/{quote(repo, safe='')}"
        f"/{archive_format.value}/{quote(target, safe='/')}"
    )


def check_response(response: httpx.Response, *, description: str) -> None:
    """Translate a non-success response into the matching ``CheckoutError``.

    Raises:
        AuthRequiredError: 401
        NotFoundError: 404
        TransientNetworkError: 408, 429 and 5xx
        DownloadError: any other non-2xx status
    """
    if response.is_success:
        return
    status = response.status_code
    url = mask_url_credentials(str(response.request.url)) if response.request else None
    message = f"{description} failed: {status} {response.reason_phrase}"
    if status == 401:
        raise AuthRequiredError(message, context={"url": url, "status_code": status})
    if status == 404:
        raise NotFoundError(message, url=url)
    if is_transient_status_code(status):
        raise TransientNetworkError(message, url=url, status_code=status)
    raise DownloadError(message, url=url, status_code=status)


@contextlib.asynccontextmanager
async def http_client(
    client: httpx.AsyncClient | None, *, timeout: float
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield ``client`` untouched, or a short-lived client when it is None."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(
        timeout=httpx.Timeout(timeout, connect=DEFAULT_CONNECT_TIMEOUT),
        follow_redirects=True,
    ) as own_client:
        yield own_client


def normalize_branch(name: str) -> str:
    if name.startswith("refs/"):
        return name
    return f"refs/heads/{name}"


async def get_default_branch(
    owner: str,
    repo: str,
    server_url: str | None = None,
    *,
    auth_token: str | None = None,
    proxy_url: str | None = None,
    client: httpx.AsyncClient | None = None,
    retry: RetryPolicy | None = None,
) -> str:
    """Look up the repository's default branch as a fully-qualified ref.

    Args:
        owner: Repository owner
        repo: Repository name
        server_url: Server URL; the API root is derived from it
        auth_token: Optional token sent as ``Authorization: token ...``
        proxy_url: Accepted for symmetry with downloads; API calls never use it
        client: Optional shared HTTP client
        retry: Retry policy for transient failures

    Returns:
        ``refs/heads/<name>`` (or the ref unchanged if already qualified)

    Raises:
        NotFoundError: Repository does not exist (except for wiki repositories)
        AuthRequiredError: The API rejected the credentials
    """
    if proxy_url:
        logger.warning(
            "Proxy configuration ignored for API calls. Only archive downloads support mirror proxy."
        )
    url = f"{get_server_api_url(server_url)}/repos/{quote(owner, safe='')}/{quote(repo, safe='')}"
    headers = build_headers(auth_token)

    async def _lookup() -> str:
        logger.info("Retrieving the default branch name")
        async with http_client(client, timeout=API_TIMEOUT) as http:
            try:
                response = await http.get(url, headers=headers, timeout=API_TIMEOUT)
            except httpx.TransportError as exc:
                raise TransientNetworkError(
                    f"Default branch lookup failed: {type(exc).__name__}: {exc}", url=url
                ) from exc
        try:
            check_response(response, description="Default branch lookup")
        except NotFoundError:
            if repo.upper().endswith(".WIKI"):
                return WIKI_FALLBACK_BRANCH
            raise
        payload: Any = response.json()
        branch = payload.get("default_branch") if isinstance(payload, dict) else None
        if not branch:
            raise CheckoutError(
                "default_branch cannot be empty",
                code="invalid_api_response",
                context={"url": url},
            )
        return str(branch)

    branch = await execute(_lookup, policy=retry, description="Default branch lookup")
    logger.info("Default branch '%s'", branch)
    return normalize_branch(branch)
