"""Endpoint resolution for repository access.

``resolve_fetch_url`` picks the single URL (or SSH connection string) a git
client should use. The result is a ``SecretURL`` because two of its branches
embed credentials; format it freely, call ``reveal()`` only at the hand-off
to git.

Precedence, first match wins:

1. SSH key            -> ``<user>@<host>:<owner>/<repo>.git``
2. proxy with userinfo -> ``<user>:<pass>@<proxy>/<origin>``
3. proxy              -> ``<proxy>/<origin>``
4. token              -> ``https://<token>:x-oauth-basic@<host>/<owner>/<repo>``
5. otherwise          -> ``https://<host>/<owner>/<repo>``
"""

from __future__ import annotations

import logging
import os
from urllib.parse import quote, urlsplit, urlunsplit

from checkout_core.config import DEFAULT_SERVER_URL, FetchSettings
from checkout_core.exceptions import ConfigurationError
from checkout_core.mirror.proxy import MirrorProxy
from checkout_core.secrets import SecretURL, mask_url_credentials

logger = logging.getLogger(__name__)

TOKEN_SENTINEL_PASSWORD = "x-oauth-basic"
DEFAULT_API_URL = "https://api.github.com"

# Proxies of this family serve the origin path on their own host instead of
# taking the full origin URL as a path.
_HOST_REWRITE_MARKERS = ("fastgit", "gitclone")


def get_server_url(url: str | None = None) -> str:
    """Explicit server URL, else ``GITHUB_SERVER_URL``, else github.com."""
    if url and url.strip():
        resolved = url.strip()
    else:
        resolved = os.environ.get("GITHUB_SERVER_URL") or DEFAULT_SERVER_URL
    parts = urlsplit(resolved)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ConfigurationError(
            f"Invalid server URL: {mask_url_credentials(resolved)}",
            context={"server_url": mask_url_credentials(resolved)},
        )
    return resolved.rstrip("/")


def is_ghes(url: str | None = None) -> bool:
    """Whether the server is a self-hosted GitHub Enterprise Server."""
    resolved = url or os.environ.get("GITHUB_SERVER_URL") or DEFAULT_SERVER_URL
    hostname = (urlsplit(resolved).hostname or "").strip().upper()
    if hostname == "GITHUB.COM":
        return False
    return not hostname.endswith((".GHE.COM", ".LOCALHOST"))


def get_server_api_url(url: str | None = None) -> str:
    """REST API root for the given server.

    Enterprise Server exposes the API under ``/api/v3``; github.com and
    ``*.ghe.com`` use an ``api.`` subdomain.
    """
    if not url or not url.strip():
        return (os.environ.get("GITHUB_API_URL") or DEFAULT_API_URL).rstrip("/")
    server = get_server_url(url)
    parts = urlsplit(server)
    if is_ghes(server):
        return urlunsplit((parts.scheme, parts.netloc, "/api/v3", "", ""))
    host = parts.hostname or ""
    netloc = f"api.{host}:{parts.port}" if parts.port else f"api.{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, "", "")).rstrip("/")


def validate_proxy_url(proxy_url: str | None) -> bool:
    """An empty value is valid (no proxy); anything else must be http(s)."""
    if not proxy_url or not proxy_url.strip():
        return True
    try:
        parts = urlsplit(proxy_url.strip())
        _ = parts.port
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.hostname)


def get_proxy_url(original_url: str, proxy_prefix: str | None) -> str:
    """Route ``original_url`` through a prefix-style proxy.

    Invalid prefixes log a warning and return ``original_url``.
    """
    if not proxy_prefix or not proxy_prefix.strip():
        return original_url
    clean_prefix = proxy_prefix.strip().rstrip("/")
    if not validate_proxy_url(clean_prefix):
        logger.warning(
            "Invalid proxy URL format: %s, using original URL",
            mask_url_credentials(clean_prefix),
        )
        return original_url

    prefix_parts = urlsplit(clean_prefix)
    host = (prefix_parts.hostname or "").lower()
    if any(marker in host for marker in _HOST_REWRITE_MARKERS):
        origin = urlsplit(original_url)
        return urlunsplit(
            (origin.scheme, prefix_parts.netloc, origin.path, origin.query, origin.fragment)
        )
    return f"{clean_prefix}/{original_url}"


def _origin_url(server_url: str, owner: str, repo: str) -> tuple[str, str]:
    parts = urlsplit(server_url)
    origin = f"{parts.scheme}://{parts.netloc.rsplit('@', 1)[-1]}"
    return origin, f"{origin}/{quote(owner, safe='')}/{quote(repo, safe='')}"


def resolve_fetch_url(settings: FetchSettings) -> SecretURL:
    """Decide the endpoint used to reach the repository.

    Args:
        settings: Repository coordinates plus optional SSH key, proxy and token

    Returns:
        The fetch URL; ``str()`` of it is always safe to log

    Raises:
        ConfigurationError: If owner or repository name is missing, or the
            server URL is unusable
    """
    if not settings.repository_owner:
        raise ConfigurationError("repository owner must be defined")
    if not settings.repository_name:
        raise ConfigurationError("repository name must be defined")

    server_url = get_server_url(settings.server_url)
    owner = quote(settings.repository_owner, safe="")
    repo = quote(settings.repository_name, safe="")

    if settings.ssh_key:
        user = settings.ssh_user or "git"
        host = urlsplit(server_url).hostname
        ssh_url = SecretURL(f"{user}@{host}:{owner}/{repo}.git")
        logger.info("Using SSH URL: %s", ssh_url)
        return ssh_url

    origin, origin_url = _origin_url(server_url, settings.repository_owner, settings.repository_name)

    proxy_setting = (settings.proxy_url or "").strip()
    if proxy_setting:
        try:
            proxy = MirrorProxy(proxy_setting)
        except ConfigurationError:
            logger.warning(
                "Invalid proxy URL format: %s, using original URL",
                mask_url_credentials(proxy_setting),
            )
            return SecretURL(origin_url)
        # Only a full username+password pair is carried over.
        base = proxy.authenticated_base()
        fetch_url = SecretURL(f"{base.reveal()}/{origin_url}")
        logger.info(
            "Proxy URL configuration: repository=%s/%s original=%s proxy=%s final=%s auth=%s",
            settings.repository_owner,
            settings.repository_name,
            origin_url,
            base,
            fetch_url,
            "embedded" if proxy.has_auth else "none",
        )
        return fetch_url

    if settings.auth_token:
        host = origin.split("://", 1)[1]
        scheme = origin.split("://", 1)[0]
        userinfo = f"{quote(settings.auth_token, safe='')}:{TOKEN_SENTINEL_PASSWORD}"
        fetch_url = SecretURL(f"{scheme}://{userinfo}@{host}/{owner}/{repo}")
        logger.info("Using token-authenticated URL: %s", fetch_url)
        return fetch_url

    logger.info("Using direct URL: %s", origin_url)
    return SecretURL(origin_url)
