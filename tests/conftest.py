"""
Shared pytest fixtures for checkout-core tests.

Provides common helpers for:
- In-memory repository archives (tarball / zipball)
- Fake HTTP transports
- Deterministic clocks and fast retry policies
"""

from __future__ import annotations

import io
import sys
import tarfile
import zipfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
if SRC_ROOT.is_dir():
    sys.path.insert(0, str(SRC_ROOT))

from checkout_core.config import RetryPolicy  # noqa: E402


# =============================================================================
# Archive builders
# =============================================================================


def build_tarball(files: dict[str, str], *, symlinks: dict[str, str] | None = None) -> bytes:
    """Gzipped tarball holding ``files`` (path -> text) and optional symlinks."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tf:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tf.addfile(info, io.BytesIO(data))
        for name, target in (symlinks or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tf.addfile(info)
    return buffer.getvalue()


def build_zipball(files: dict[str, str]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def tarball_factory() -> Callable[..., bytes]:
    return build_tarball


@pytest.fixture
def zipball_factory() -> Callable[[dict[str, str]], bytes]:
    return build_zipball


@pytest.fixture
def repo_files() -> dict[str, str]:
    """A small repository snapshot nested in its versioned folder."""
    return {
        "acme-widgets-abcdef12/README.md": "# widgets\n",
        "acme-widgets-abcdef12/setup.cfg": "[metadata]\nname = widgets\n",
        "acme-widgets-abcdef12/src/widgets/__init__.py": "VERSION = '1.0'\n",
    }


# =============================================================================
# HTTP fixtures
# =============================================================================


class RecordingHandler:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, responder: Callable[[httpx.Request], Any]) -> None:
        self.responder = responder
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        result = self.responder(request)
        if hasattr(result, "__await__"):
            result = await result
        return result

    @property
    def urls(self) -> list[str]:
        return [str(request.url) for request in self.requests]


@pytest.fixture
def mock_client() -> Callable[[Callable[[httpx.Request], Any]], tuple[httpx.AsyncClient, RecordingHandler]]:
    """Build an AsyncClient whose traffic is answered by ``responder``."""

    def _create(responder: Callable[[httpx.Request], Any]) -> tuple[httpx.AsyncClient, RecordingHandler]:
        handler = RecordingHandler(responder)
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)
        return client, handler

    return _create


# =============================================================================
# Time and retry fixtures
# =============================================================================


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Three attempts with no waiting between them."""
    return RetryPolicy(max_attempts=3, backoff_max=0.0)


@pytest.fixture
def deterministic_clock() -> Any:
    """A clock that advances only when explicitly told to."""

    class DeterministicClock:
        def __init__(self, start: float = 1000.0) -> None:
            self.time = start

        def __call__(self) -> float:
            return self.time

        def advance(self, seconds: float) -> None:
            self.time += seconds

    return DeterministicClock()


@pytest.fixture(autouse=True)
def clean_github_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep CI-provided GITHUB_* variables from leaking into tests."""
    for name in (
        "GITHUB_SERVER_URL",
        "GITHUB_API_URL",
        "GITHUB_AUTO_MIRROR",
        "GITHUB_REPOSITORY",
        "GITHUB_TOKEN",
        "CHECKOUT_PROXY_URL",
        "CHECKOUT_REF",
        "CHECKOUT_COMMIT",
        "CHECKOUT_SSH_KEY",
        "CHECKOUT_SSH_USER",
        "CHECKOUT_MIRRORS",
        "CHECKOUT_MIRROR_TTL",
    ):
        monkeypatch.delenv(name, raising=False)
