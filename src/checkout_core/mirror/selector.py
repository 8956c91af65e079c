"""
Mirror selector: process-lifetime cache of the best mirror proxy.

The selector owns the candidate list and the cached detection. It is an
explicit object handed to whoever needs a mirror, so tests and callers can
hold independent instances. ``get_best`` is serialised by an ``asyncio.Lock``:
concurrent callers arriving while a detection runs wait for it and reuse its
result instead of probing again.

## Usage

    selector = MirrorSelector(ttl=300)
    best = await selector.get_best()
    if best:
        proxy = MirrorProxy(best)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from checkout_core.mirror.probe import (
    DEFAULT_PROBE_TIMEOUT,
    MirrorDetection,
    MirrorProbeResult,
    detect_best_mirror,
)
from checkout_core.mirror.proxy import POPULAR_MIRRORS

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300.0

Detector = Callable[[list[str]], Awaitable[MirrorDetection]]


@dataclass(frozen=True)
class SelectionEntry:
    best: str
    detected_at: float


def _normalize(mirror: str) -> str:
    return mirror.strip().rstrip("/")


class MirrorSelector:
    def __init__(
        self,
        candidates: Iterable[str] | None = None,
        *,
        ttl: float = DEFAULT_TTL,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        deadline: float | None = None,
        detector: Detector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._candidates: list[str] = []
        for mirror in POPULAR_MIRRORS.values() if candidates is None else candidates:
            normalized = _normalize(mirror)
            if normalized and normalized not in self._candidates:
                self._candidates.append(normalized)
        self.ttl = ttl
        self.probe_timeout = probe_timeout
        self.deadline = deadline
        self._detector = detector or self._default_detector
        self._clock = clock
        self._entry: SelectionEntry | None = None
        self._last_results: list[MirrorProbeResult] = []
        self._lock = asyncio.Lock()

    async def _default_detector(self, candidates: list[str]) -> MirrorDetection:
        return await detect_best_mirror(
            candidates, self.probe_timeout, deadline=self.deadline
        )

    @property
    def candidates(self) -> tuple[str, ...]:
        return tuple(self._candidates)

    @property
    def cached_best(self) -> str | None:
        """The cached mirror if it is still fresh, without probing."""
        if self._entry is None:
            return None
        if self._clock() - self._entry.detected_at >= self.ttl:
            return None
        return self._entry.best

    @property
    def last_results(self) -> list[MirrorProbeResult]:
        return list(self._last_results)

    async def get_best(self, force_refresh: bool = False) -> str | None:
        """Return the best mirror, probing only when the cache cannot answer.

        Args:
            force_refresh: Ignore a fresh cached entry and probe again

        Returns:
            The fastest available mirror base URL, or None if none answered
        """
        async with self._lock:
            cached = self.cached_best
            if cached is not None and not force_refresh:
                logger.debug("Using cached best mirror: %s", cached)
                return cached

            candidates = list(self._candidates)
            detection = await self._detector(candidates)
            self._last_results = list(detection.results)
            # A candidate removed while the probes were in flight must not be cached.
            if detection.best and _normalize(detection.best) in self._candidates:
                self._entry = SelectionEntry(best=detection.best, detected_at=self._clock())
            else:
                self._entry = None
            return self._entry.best if self._entry else None

    def add_candidate(self, mirror: str) -> None:
        normalized = _normalize(mirror)
        if normalized and normalized not in self._candidates:
            self._candidates.append(normalized)
            logger.info("Added mirror candidate: %s", normalized)

    def remove_candidate(self, mirror: str) -> None:
        normalized = _normalize(mirror)
        if normalized not in self._candidates:
            return
        self._candidates.remove(normalized)
        logger.info("Removed mirror candidate: %s", normalized)
        if self._entry is not None and _normalize(self._entry.best) == normalized:
            self._entry = None

    def reset_cache(self) -> None:
        self._entry = None
        logger.debug("Mirror selection cache reset")
