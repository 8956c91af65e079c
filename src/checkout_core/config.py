"""Settings for repository acquisition.

Settings come from three places, in increasing precedence: built-in defaults,
an optional YAML file validated against the packaged ``checkout_settings``
schema, and ``GITHUB_*`` / ``CHECKOUT_*`` environment variables.

The auto-mirror gate (``GITHUB_AUTO_MIRROR``) is deliberately not part of the
settings object: it is read from the environment every time it is consulted.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from functools import cache
from importlib import resources
from pathlib import Path
from typing import Any, Mapping

import yaml
from jsonschema import Draft7Validator, FormatChecker

from checkout_core.exceptions import ConfigurationError
from checkout_core.mirror.proxy import POPULAR_MIRRORS

logger = logging.getLogger(__name__)

AUTO_MIRROR_ENV = "GITHUB_AUTO_MIRROR"
DEFAULT_SERVER_URL = "https://github.com"
DEFAULT_SELECTION_TTL = 300.0
DEFAULT_PROBE_TIMEOUT = 5.0
AUTO_MIRROR_PROBE_TIMEOUT = 3.0


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base: float = 2.0
    backoff_max: float = 20.0

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (0-based)."""
        return min(self.backoff_base**attempt, self.backoff_max)


@dataclasses.dataclass(frozen=True)
class OriginEndpoint:
    owner: str
    repo: str
    server_url: str = DEFAULT_SERVER_URL
    ref: str | None = None
    commit: str | None = None

    @property
    def needs_default_branch(self) -> bool:
        return not self.ref and not self.commit

    @property
    def is_wiki(self) -> bool:
        return self.repo.upper().endswith(".WIKI")


@dataclasses.dataclass
class FetchSettings:
    repository_owner: str
    repository_name: str
    server_url: str | None = None
    ssh_key: str | None = None
    ssh_user: str = ""
    proxy_url: str | None = None
    auth_token: str | None = None
    ref: str | None = None
    commit: str | None = None

    def endpoint(self) -> OriginEndpoint:
        return OriginEndpoint(
            owner=self.repository_owner,
            repo=self.repository_name,
            server_url=self.server_url or DEFAULT_SERVER_URL,
            ref=self.ref,
            commit=self.commit,
        )


@dataclasses.dataclass
class MirrorOptions:
    candidates: list[str] = dataclasses.field(
        default_factory=lambda: list(POPULAR_MIRRORS.values())
    )
    ttl: float = DEFAULT_SELECTION_TTL
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    deadline: float | None = None


@dataclasses.dataclass
class CheckoutSettings:
    fetch: FetchSettings
    mirrors: MirrorOptions = dataclasses.field(default_factory=MirrorOptions)
    retry: RetryPolicy = dataclasses.field(default_factory=RetryPolicy)

    @classmethod
    def from_env(cls, base: CheckoutSettings | None = None) -> CheckoutSettings:
        """Build settings from the environment, layered over ``base`` if given."""
        env = os.environ
        fetch = dataclasses.replace(base.fetch) if base else FetchSettings("", "")
        mirrors = dataclasses.replace(base.mirrors) if base else MirrorOptions()
        retry = base.retry if base else RetryPolicy()

        repository = env.get("GITHUB_REPOSITORY", "").strip()
        if repository:
            if "/" not in repository:
                raise ConfigurationError(
                    f"GITHUB_REPOSITORY must be 'owner/name', got {repository!r}",
                    context={"variable": "GITHUB_REPOSITORY"},
                )
            fetch.repository_owner, fetch.repository_name = repository.split("/", 1)

        fetch.server_url = env.get("GITHUB_SERVER_URL") or fetch.server_url
        fetch.auth_token = env.get("GITHUB_TOKEN") or fetch.auth_token
        fetch.proxy_url = env.get("CHECKOUT_PROXY_URL") or fetch.proxy_url
        fetch.ref = env.get("CHECKOUT_REF") or fetch.ref
        fetch.commit = env.get("CHECKOUT_COMMIT") or fetch.commit
        fetch.ssh_key = env.get("CHECKOUT_SSH_KEY") or fetch.ssh_key
        fetch.ssh_user = env.get("CHECKOUT_SSH_USER") or fetch.ssh_user

        candidates = _normalize_mirror_list(env.get("CHECKOUT_MIRRORS"))
        if candidates:
            mirrors.candidates = candidates
        ttl = env.get("CHECKOUT_MIRROR_TTL")
        if ttl:
            mirrors.ttl = _coerce_float(ttl, "CHECKOUT_MIRROR_TTL")

        return cls(fetch=fetch, mirrors=mirrors, retry=retry)


def auto_mirror_enabled(environ: Mapping[str, str] | None = None) -> bool:
    """Whether automatic mirror discovery is switched on right now."""
    source = os.environ if environ is None else environ
    return source.get(AUTO_MIRROR_ENV) == "true"


def _normalize_mirror_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [str(value).strip()]


def _coerce_float(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"{name} must be a number, got {value!r}", context={"setting": name}
        ) from exc


@cache
def load_schema(schema_name: str) -> dict[str, Any]:
    schema_path = resources.files("checkout_core").joinpath(
        "schemas", f"{schema_name}.schema.json"
    )
    return json.loads(schema_path.read_text(encoding="utf-8"))


def validate_config(config: Any, schema_name: str, *, config_path: Path | None = None) -> None:
    schema = load_schema(schema_name)
    validator = Draft7Validator(schema, format_checker=FormatChecker())
    errors = sorted(validator.iter_errors(config), key=lambda exc: list(exc.path))
    if not errors:
        return
    location = str(config_path) if config_path else "<config>"
    lines = [f"Schema validation failed for {location} ({schema_name})."]
    error_details: list[dict[str, str]] = []
    for error in errors[:10]:
        path = ".".join(str(p) for p in error.path) if error.path else "<root>"
        lines.append(f"- {path}: {error.message}")
        error_details.append({"path": path, "message": error.message})
    if len(errors) > 10:
        lines.append(f"... and {len(errors) - 10} more errors.")
    raise ConfigurationError(
        "\n".join(lines),
        context={
            "path": location,
            "schema": schema_name,
            "errors": error_details,
            "truncated": len(errors) > 10,
        },
    )


def load_settings(path: Path, *, apply_env: bool = True) -> CheckoutSettings:
    """Read a YAML settings file, validate it and layer the environment on top."""
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(
            f"YAML parse error in {path}: {exc}",
            context={"path": str(path), "error": str(exc)},
        ) from exc
    if data is None:
        data = {}
    validate_config(data, "checkout_settings", config_path=path)

    repository = data.get("repository") or {}
    auth = data.get("auth") or {}
    if auth.get("token"):
        logger.warning("auth.token in settings files is ignored; use the GITHUB_TOKEN env var")
    fetch = FetchSettings(
        repository_owner=repository.get("owner", ""),
        repository_name=repository.get("name", ""),
        server_url=repository.get("server_url"),
        ref=repository.get("ref"),
        commit=repository.get("commit"),
        ssh_key=auth.get("ssh_key"),
        ssh_user=auth.get("ssh_user", ""),
        proxy_url=data.get("proxy_url"),
    )

    mirror_cfg = data.get("mirrors") or {}
    mirrors = MirrorOptions()
    if "candidates" in mirror_cfg:
        mirrors.candidates = _normalize_mirror_list(mirror_cfg["candidates"])
    if "ttl_seconds" in mirror_cfg:
        mirrors.ttl = float(mirror_cfg["ttl_seconds"])
    if "probe_timeout_seconds" in mirror_cfg:
        mirrors.probe_timeout = float(mirror_cfg["probe_timeout_seconds"])
    if mirror_cfg.get("deadline_seconds") is not None:
        mirrors.deadline = float(mirror_cfg["deadline_seconds"])

    retry_cfg = data.get("retry") or {}
    retry = RetryPolicy(
        max_attempts=int(retry_cfg.get("max_attempts", RetryPolicy.max_attempts)),
        backoff_base=float(retry_cfg.get("backoff_base", RetryPolicy.backoff_base)),
        backoff_max=float(retry_cfg.get("backoff_max", RetryPolicy.backoff_max)),
    )

    settings = CheckoutSettings(fetch=fetch, mirrors=mirrors, retry=retry)
    if apply_env:
        settings = CheckoutSettings.from_env(settings)
    return settings
