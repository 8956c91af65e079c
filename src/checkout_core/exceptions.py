from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping


@dataclass
class CheckoutError(Exception):
    message: str
    code: str = "checkout_error"
    context: dict[str, Any] = field(default_factory=dict)

    retryable = False

    def __init__(self, message: str, *, code: str | None = None, context: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.context = dict(context or {})

    def __str__(self) -> str:
        return self.message

    def as_log_fields(self) -> dict[str, Any]:
        return {
            "error_code": self.code,
            "error_message": self.message,
            "error_context": self.context,
            "retryable": self.retryable,
        }


class ConfigurationError(CheckoutError):
    """Malformed proxy URL, invalid settings file or unsupported combination."""

    code = "configuration_error"


class TransientNetworkError(CheckoutError):
    code = "transient_network_error"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status_code: int | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        merged = dict(context or {})
        if url is not None:
            merged["url"] = url
        if status_code is not None:
            merged["status_code"] = status_code
        super().__init__(message, context=merged)
        self.status_code = status_code


class UnsupportedMirrorError(CheckoutError):
    """The origin host is outside the mirror's supported domains.

    Callers treat this as "skip the mirror", never as a failure of the
    acquisition itself.
    """

    code = "unsupported_mirror"

    def __init__(self, message: str, *, hostname: str, mirror: str) -> None:
        super().__init__(message, context={"hostname": hostname, "mirror": mirror})
        self.hostname = hostname


class ArchiveLayoutError(CheckoutError):
    code = "archive_layout_error"

    def __init__(self, message: str, *, entries: list[str]) -> None:
        super().__init__(message, context={"entries": list(entries), "entry_count": len(entries)})
        self.entries = list(entries)


class AuthRequiredError(CheckoutError):
    code = "auth_required"


class NotFoundError(CheckoutError):
    code = "not_found"

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message, context={"url": url} if url else None)


class DownloadError(CheckoutError):
    """Non-retryable HTTP failure (unexpected 4xx) while downloading."""

    code = "download_error"

    def __init__(self, message: str, *, url: str | None = None, status_code: int | None = None) -> None:
        context: dict[str, Any] = {}
        if url is not None:
            context["url"] = url
        if status_code is not None:
            context["status_code"] = status_code
        super().__init__(message, context=context)
        self.status_code = status_code
