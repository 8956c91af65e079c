"""
Mirror Probe — concurrent reachability and latency checks for mirror proxies.

Each candidate gets one lightweight ``GET <mirror>/https://api.github.com/zen``.
Probes never raise: every failure is folded into a ``MirrorProbeResult`` with
``available=False`` and a ``ProbeErrorKind``.

``detect_best_mirror`` starts one task per candidate and joins all of them.
Without a ``deadline`` the join is bounded by the slowest probe's own
timeout; with one, probes still running when it expires are cancelled and
reported as timeouts.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

import httpx

from checkout_core.__version__ import __version__ as VERSION
from checkout_core.exceptions import ConfigurationError
from checkout_core.mirror.proxy import POPULAR_MIRRORS, MirrorProxy
from checkout_core.secrets import mask_url_credentials
from checkout_core.urls import get_proxy_url, validate_proxy_url

logger = logging.getLogger(__name__)

PROBE_TARGET = "https://api.github.com/zen"
DEFAULT_PROBE_TIMEOUT = 5.0
USER_AGENT = f"checkout-core-mirror-test/{VERSION}"


class ProbeErrorKind(str, enum.Enum):
    HTTP_STATUS = "http_status"
    TIMEOUT = "timeout"
    NETWORK = "network"
    INVALID_CONFIG = "invalid_config"


@dataclass(frozen=True)
class MirrorProbeResult:
    mirror: str
    available: bool
    response_time_ms: float
    error: str | None = None
    error_kind: ProbeErrorKind | None = None


@dataclass(frozen=True)
class MirrorDetection:
    best: str | None
    results: list[MirrorProbeResult] = field(default_factory=list)

    @property
    def best_result(self) -> MirrorProbeResult | None:
        for result in self.results:
            if result.mirror == self.best:
                return result
        return None


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000.0


def _new_client(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
    )


async def check_availability(
    proxy: MirrorProxy,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float | None = None,
    label: str | None = None,
) -> MirrorProbeResult:
    """Probe a single mirror.

    Args:
        proxy: The mirror to probe
        client: Shared client; a short-lived one is created when omitted
        timeout: Probe timeout in seconds, defaults to the mirror's own
        label: Identity reported in the result, defaults to the clean base URL

    Returns:
        A probe result; never raises for network or HTTP failures
    """
    mirror = label or proxy.base_url
    limit = timeout if timeout is not None else proxy.timeout
    test_url = f"{proxy.authenticated_base().reveal()}/{PROBE_TARGET}"
    started = time.monotonic()

    async def _probe(http: httpx.AsyncClient) -> httpx.Response:
        return await http.get(
            test_url,
            headers={"User-Agent": USER_AGENT},
            timeout=httpx.Timeout(limit),
        )

    try:
        if client is None:
            async with _new_client(limit) as own_client:
                response = await asyncio.wait_for(_probe(own_client), timeout=limit)
        else:
            response = await asyncio.wait_for(_probe(client), timeout=limit)
    except (httpx.TimeoutException, asyncio.TimeoutError):
        return MirrorProbeResult(
            mirror=mirror,
            available=False,
            response_time_ms=_elapsed_ms(started),
            error=f"Connection timeout after {limit:g}s",
            error_kind=ProbeErrorKind.TIMEOUT,
        )
    except httpx.HTTPError as exc:
        return MirrorProbeResult(
            mirror=mirror,
            available=False,
            response_time_ms=_elapsed_ms(started),
            error=f"{type(exc).__name__}: {mask_url_credentials(str(exc))}",
            error_kind=ProbeErrorKind.NETWORK,
        )

    elapsed = _elapsed_ms(started)
    if response.is_success:
        return MirrorProbeResult(mirror=mirror, available=True, response_time_ms=elapsed)
    return MirrorProbeResult(
        mirror=mirror,
        available=False,
        response_time_ms=elapsed,
        error=f"HTTP {response.status_code}: {response.reason_phrase}",
        error_kind=ProbeErrorKind.HTTP_STATUS,
    )


async def _probe_candidate(
    candidate: str,
    per_probe_timeout: float,
    client: httpx.AsyncClient | None,
) -> MirrorProbeResult:
    try:
        proxy = MirrorProxy(candidate, timeout=per_probe_timeout)
    except ConfigurationError as exc:
        return MirrorProbeResult(
            mirror=candidate,
            available=False,
            response_time_ms=0.0,
            error=exc.message,
            error_kind=ProbeErrorKind.INVALID_CONFIG,
        )
    return await check_availability(
        proxy, client=client, timeout=per_probe_timeout, label=candidate
    )


def select_best(results: Sequence[MirrorProbeResult]) -> MirrorProbeResult | None:
    """Lowest-latency available result; ties go to the earlier candidate."""
    best: MirrorProbeResult | None = None
    for result in results:
        if not result.available:
            continue
        if best is None or result.response_time_ms < best.response_time_ms:
            best = result
    return best


async def detect_best_mirror(
    candidates: Iterable[str] | None = None,
    per_probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    *,
    client: httpx.AsyncClient | None = None,
    deadline: float | None = None,
) -> MirrorDetection:
    """Probe every candidate concurrently and pick the fastest available one.

    Args:
        candidates: Mirror base URLs, in preference order; defaults to the
            well-known public mirrors
        per_probe_timeout: Timeout applied to each probe independently
        client: Optional shared HTTP client
        deadline: Optional outer cap in seconds for the whole batch

    Returns:
        The best mirror (or None) and one result per candidate, in candidate order
    """
    mirrors = list(POPULAR_MIRRORS.values() if candidates is None else candidates)
    logger.info("Detecting best GitHub mirror proxy among %d candidate(s)", len(mirrors))
    if not mirrors:
        logger.warning("No mirror candidates configured")
        return MirrorDetection(best=None, results=[])

    tasks = [
        asyncio.create_task(
            _probe_candidate(mirror, per_probe_timeout, client),
            name=f"mirror-probe:{idx}",
        )
        for idx, mirror in enumerate(mirrors)
    ]
    started = time.monotonic()
    _done, pending = await asyncio.wait(tasks, timeout=deadline)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)

    results: list[MirrorProbeResult] = []
    for mirror, task in zip(mirrors, tasks):
        if task in pending:
            results.append(
                MirrorProbeResult(
                    mirror=mirror,
                    available=False,
                    response_time_ms=_elapsed_ms(started),
                    error=f"Probe cancelled by {deadline:g}s detection deadline",
                    error_kind=ProbeErrorKind.TIMEOUT,
                )
            )
            continue
        exc = task.exception()
        if exc is not None:
            results.append(
                MirrorProbeResult(
                    mirror=mirror,
                    available=False,
                    response_time_ms=_elapsed_ms(started),
                    error=f"{type(exc).__name__}: {exc}",
                    error_kind=ProbeErrorKind.NETWORK,
                )
            )
            continue
        results.append(task.result())

    best = select_best(results)
    if best:
        logger.info(
            "Best mirror detected: %s (%.0fms)", best.mirror, best.response_time_ms
        )
    else:
        logger.warning("No available GitHub mirror proxy found")
    return MirrorDetection(best=best.mirror if best else None, results=results)


async def test_proxy_connection(
    proxy_url: str,
    target_url: str = "https://github.com",
    timeout: float = 10.0,
    *,
    client: httpx.AsyncClient | None = None,
) -> MirrorProbeResult:
    """HEAD ``target_url`` through a prefix proxy.

    A 403 counts as success since the origin rate-limits anonymous callers.
    """
    if not validate_proxy_url(proxy_url):
        return MirrorProbeResult(
            mirror=mask_url_credentials(proxy_url),
            available=False,
            response_time_ms=0.0,
            error="Invalid proxy URL format",
            error_kind=ProbeErrorKind.INVALID_CONFIG,
        )

    test_url = get_proxy_url(target_url, proxy_url)
    logger.debug("Testing proxy connection to: %s", mask_url_credentials(test_url))
    started = time.monotonic()
    try:
        if client is None:
            async with _new_client(timeout) as own_client:
                response = await own_client.head(test_url, timeout=httpx.Timeout(timeout))
        else:
            response = await client.head(test_url, timeout=httpx.Timeout(timeout))
    except httpx.TimeoutException:
        return MirrorProbeResult(
            mirror=mask_url_credentials(proxy_url),
            available=False,
            response_time_ms=_elapsed_ms(started),
            error=f"Connection timeout after {timeout:g}s",
            error_kind=ProbeErrorKind.TIMEOUT,
        )
    except httpx.HTTPError as exc:
        return MirrorProbeResult(
            mirror=mask_url_credentials(proxy_url),
            available=False,
            response_time_ms=_elapsed_ms(started),
            error=f"{type(exc).__name__}: {mask_url_credentials(str(exc))}",
            error_kind=ProbeErrorKind.NETWORK,
        )

    elapsed = _elapsed_ms(started)
    if response.is_success or response.status_code == 403:
        return MirrorProbeResult(
            mirror=mask_url_credentials(proxy_url), available=True, response_time_ms=elapsed
        )
    return MirrorProbeResult(
        mirror=mask_url_credentials(proxy_url),
        available=False,
        response_time_ms=elapsed,
        error=f"HTTP {response.status_code}: {response.reason_phrase}",
        error_kind=ProbeErrorKind.HTTP_STATUS,
    )


# Keep pytest from collecting this when a test module imports it by name.
test_proxy_connection.__test__ = False  # type: ignore[attr-defined]
