"""Configuration loading and request validation for the Omniscope Workflow MCP gateway."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from urllib.parse import urlsplit, urlunsplit

from omniscope_mcp.constants import (
    DEFAULT_TIMEOUT_MS,
    ENV_ALLOW_BASE_URLS,
    ENV_ALLOWED_PROJECT_PREFIXES,
    ENV_BASE_URL,
    ENV_BASIC_PASSWORD,
    ENV_BASIC_USERNAME,
    ENV_BEARER_TOKEN,
    ENV_CORS_ORIGINS,
    ENV_GATEWAY_PASSWORD,
    ENV_GATEWAY_USERNAME,
    ENV_HEALTHCHECK_PROJECT_PATH,
    ENV_LOG_TOOLS,
    ENV_SESSION_TTL_MS,
    ENV_TIMEOUT_MS,
)
from omniscope_mcp.errors import ConfigError, ValidationError


@dataclass(frozen=True)
class AuthConfig:
    """Credentials attached to upstream Workflow API requests."""

    type: str = "none"
    username: str | None = None
    password: str = ""
    token: str | None = None


@dataclass(frozen=True)
class ServerConfig:
    default_base_url: str
    allowed_base_urls: tuple[str, ...]
    allowed_project_prefixes: tuple[str, ...] = ()
    auth: AuthConfig = field(default_factory=AuthConfig)
    request_timeout_ms: int = DEFAULT_TIMEOUT_MS
    log_tools: bool = True
    health_project_path: str | None = None
    gateway_username: str | None = None
    gateway_password: str | None = None
    session_ttl_ms: int = 0
    cors_origins: tuple[str, ...] = ()


def normalize_base_url(raw: str) -> str:
    """Drop the fragment and trailing slashes; require an absolute http(s) URL."""
    parts = urlsplit(raw.strip())
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValueError(f"not an absolute http(s) URL: {raw!r}")
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, ""))


def _normalize_prefix(raw: str) -> str:
    trimmed = raw.strip()
    if not trimmed:
        raise ConfigError(f"Empty project prefix provided in {ENV_ALLOWED_PROJECT_PREFIXES}")
    return trimmed if trimmed.startswith("/") else f"/{trimmed}"


def _split_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [entry.strip() for entry in raw.split(",") if entry.strip()]


def _parse_auth(environ: Mapping[str, str]) -> AuthConfig:
    token = (environ.get(ENV_BEARER_TOKEN) or "").strip()
    username = (environ.get(ENV_BASIC_USERNAME) or "").strip()
    password = environ.get(ENV_BASIC_PASSWORD) or ""

    if token:
        return AuthConfig(type="bearer", token=token)
    if username:
        return AuthConfig(type="basic", username=username, password=password)
    return AuthConfig()


def _parse_positive_int(environ: Mapping[str, str], name: str, default: int, allow_zero: bool = False) -> int:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        raise ConfigError(f"Invalid {name} value: {raw}") from None
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"Invalid {name} value: {raw}")
    return value


def load_config(environ: Mapping[str, str] | None = None) -> ServerConfig:
    """Build the immutable server configuration from environment variables.

    Raises:
        ConfigError: when the base URL is missing or malformed, a prefix is
            empty, or a numeric setting is not a positive integer.
    """
    env = os.environ if environ is None else environ

    base_url_raw = env.get(ENV_BASE_URL)
    if not base_url_raw or not base_url_raw.strip():
        raise ConfigError(f"{ENV_BASE_URL} environment variable is required")
    try:
        default_base_url = normalize_base_url(base_url_raw)
    except ValueError as e:
        raise ConfigError(f"Invalid {ENV_BASE_URL}: {e}") from e

    allowed_base_urls = [default_base_url]
    for entry in _split_list(env.get(ENV_ALLOW_BASE_URLS)):
        try:
            normalized = normalize_base_url(entry)
        except ValueError as e:
            raise ConfigError(f"Invalid entry in {ENV_ALLOW_BASE_URLS}: {e}") from e
        if normalized not in allowed_base_urls:
            allowed_base_urls.append(normalized)

    prefixes_raw = env.get(ENV_ALLOWED_PROJECT_PREFIXES)
    prefixes = tuple(_normalize_prefix(p) for p in prefixes_raw.split(",") if p.strip()) if prefixes_raw else ()

    health_path = (env.get(ENV_HEALTHCHECK_PROJECT_PATH) or "").strip() or None

    return ServerConfig(
        default_base_url=default_base_url,
        allowed_base_urls=tuple(allowed_base_urls),
        allowed_project_prefixes=prefixes,
        auth=_parse_auth(env),
        request_timeout_ms=_parse_positive_int(env, ENV_TIMEOUT_MS, DEFAULT_TIMEOUT_MS),
        log_tools=(env.get(ENV_LOG_TOOLS) or "").strip().lower() != "false",
        health_project_path=health_path,
        gateway_username=env.get(ENV_GATEWAY_USERNAME) or None,
        gateway_password=env.get(ENV_GATEWAY_PASSWORD) or None,
        session_ttl_ms=_parse_positive_int(env, ENV_SESSION_TTL_MS, 0, allow_zero=True),
        cors_origins=tuple(_split_list(env.get(ENV_CORS_ORIGINS))),
    )


def resolve_base_url(config: ServerConfig, requested: str | None = None) -> str:
    """Return the base URL to call, refusing overrides outside the allow list."""
    if not requested:
        return config.default_base_url

    try:
        normalized = normalize_base_url(requested)
    except ValueError as e:
        raise ValidationError(f"Invalid base_url provided: {e}") from e

    if normalized not in config.allowed_base_urls:
        raise ValidationError("Requested base_url is not in the allowed list")
    return normalized


def validate_project_path(config: ServerConfig, raw: str) -> str:
    """Check a project path against the traversal rules and prefix allow list."""
    trimmed = raw.strip() if isinstance(raw, str) else ""
    if not trimmed:
        raise ValidationError("project_path is required")

    if not trimmed.startswith("/"):
        raise ValidationError('project_path must start with a "/"')

    if ".." in trimmed:
        raise ValidationError('project_path cannot contain ".."')

    if config.allowed_project_prefixes and not trimmed.startswith(config.allowed_project_prefixes):
        raise ValidationError("project_path is not in the allowed prefixes")

    return trimmed
