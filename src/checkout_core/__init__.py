"""Repository acquisition with mirror-proxy resolution."""

from checkout_core.__version__ import __version__
from checkout_core.archive import ArchiveAcquisition, acquire_archive
from checkout_core.config import CheckoutSettings, FetchSettings, RetryPolicy
from checkout_core.exceptions import (
    ArchiveLayoutError,
    AuthRequiredError,
    CheckoutError,
    ConfigurationError,
    NotFoundError,
    TransientNetworkError,
    UnsupportedMirrorError,
)
from checkout_core.github_api import get_default_branch
from checkout_core.mirror.proxy import MirrorProxy
from checkout_core.mirror.selector import MirrorSelector
from checkout_core.secrets import SecretURL
from checkout_core.urls import resolve_fetch_url

__all__ = [
    "__version__",
    "acquire_archive",
    "ArchiveAcquisition",
    "resolve_fetch_url",
    "get_default_branch",
    "MirrorProxy",
    "MirrorSelector",
    "SecretURL",
    "CheckoutSettings",
    "FetchSettings",
    "RetryPolicy",
    "CheckoutError",
    "ConfigurationError",
    "TransientNetworkError",
    "UnsupportedMirrorError",
    "ArchiveLayoutError",
    "AuthRequiredError",
    "NotFoundError",
]
