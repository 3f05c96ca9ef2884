"""Environment-driven runtime settings for the DiffPilot server and CLI.

Every setting has a ``DIFFPILOT_*`` environment variable; the server's
command-line flags override them and are re-checked with the same
``validate_*`` helpers.  Invalid values raise ``ValueError`` so callers can
hand the message to ``argparse``'s ``parser.error``.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import math
import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .constants import DEFAULT_GIT_TIMEOUT_SECONDS, DEFAULT_REMOTE, WORKSPACE_ENV_VAR
from .validation import REMOTE_NAME_PATTERN

ENV_PREFIX = "DIFFPILOT_MCP_"
TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
FALSE_VALUES = frozenset({"0", "false", "no", "off"})
TRANSPORTS = ("stdio", "streamable-http")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOOPBACK_NAMES = frozenset({"localhost", "127.0.0.1", "::1"})
MIN_AUDIT_FIELD_CHARS = 64


@dataclass(frozen=True)
class RuntimeGitDefaults:
    """Settings every git call inherits."""

    git_timeout_seconds: float
    default_remote: str
    workspace: str


@dataclass(frozen=True)
class RuntimePathResolutionDefaults:
    """Host-to-runtime path rewrites and the roots requests may point into."""

    path_mappings: tuple[tuple[str, str], ...]
    allowed_roots: tuple[str, ...]


@dataclass(frozen=True)
class RuntimeSettings:
    transport: str
    host: str
    port: int
    allow_public_http: bool
    audit_log_path: str
    audit_redact_sensitive: bool
    audit_max_field_chars: int
    rate_limit_per_minute: int
    log_level: str
    git: RuntimeGitDefaults
    path_resolution: RuntimePathResolutionDefaults


class _EnvReader:
    """Typed lookups over an environment mapping; blank values mean "unset"."""

    def __init__(self, env: Mapping[str, str] | None) -> None:
        self._env = os.environ if env is None else env

    def raw(self, key: str) -> str:
        return str(self._env.get(key) or "").strip()

    def text(self, key: str, default: str) -> str:
        return self.raw(key) or default

    def flag(self, key: str, default: bool) -> bool:
        value = self.raw(key).lower()
        if not value:
            return default
        if value in TRUE_VALUES:
            return True
        if value in FALSE_VALUES:
            return False
        raise ValueError(f"{key} must be true or false, got {value!r}.")

    def integer(self, key: str, default: int) -> int:
        value = self.raw(key)
        if not value:
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise ValueError(f"{key} must be an integer, got {value!r}.") from exc

    def number(self, key: str, default: float) -> float:
        value = self.raw(key)
        if not value:
            return default
        try:
            parsed = float(value)
        except ValueError as exc:
            raise ValueError(f"{key} must be a number, got {value!r}.") from exc
        if not math.isfinite(parsed):
            raise ValueError(f"{key} must be a finite number.")
        return parsed

    def json(self, key: str, expected: str) -> Any:
        value = self.raw(key)
        if not value:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValueError(f"{key} must be {expected}.") from exc


def load_runtime_settings(env: Mapping[str, str] | None = None) -> RuntimeSettings:
    """Read and validate every server setting from ``env`` (``os.environ`` by default)."""
    reader = _EnvReader(env)

    transport = reader.text(ENV_PREFIX + "TRANSPORT", "stdio")
    if transport not in TRANSPORTS:
        raise ValueError(f"{ENV_PREFIX}TRANSPORT must be one of: {', '.join(TRANSPORTS)}.")
    port = reader.integer(ENV_PREFIX + "PORT", 8000)
    if not 1 <= port <= 65535:
        raise ValueError(f"{ENV_PREFIX}PORT must be between 1 and 65535.")
    log_level = reader.text(ENV_PREFIX + "LOG_LEVEL", "WARNING").upper()
    if log_level not in LOG_LEVELS:
        raise ValueError(f"{ENV_PREFIX}LOG_LEVEL must be one of: {', '.join(LOG_LEVELS)}.")

    settings = RuntimeSettings(
        transport=transport,
        host=reader.text(ENV_PREFIX + "HOST", "127.0.0.1"),
        port=port,
        allow_public_http=reader.flag(ENV_PREFIX + "ALLOW_PUBLIC_HTTP", False),
        audit_log_path=reader.raw(ENV_PREFIX + "AUDIT_LOG"),
        audit_redact_sensitive=reader.flag(ENV_PREFIX + "AUDIT_REDACT", True),
        audit_max_field_chars=reader.integer(ENV_PREFIX + "AUDIT_MAX_FIELD_CHARS", 4000),
        rate_limit_per_minute=reader.integer(ENV_PREFIX + "RATE_LIMIT_PER_MINUTE", 0),
        log_level=log_level,
        git=_read_git_defaults(reader),
        path_resolution=_read_path_resolution(reader),
    )
    validate_runtime_settings(settings)
    return settings


def validate_runtime_settings(settings: RuntimeSettings) -> None:
    """Re-check a settings record after command-line overrides were applied."""
    validate_streamable_http_binding(settings.transport, settings.host, settings.allow_public_http)
    validate_runtime_operation_values(settings.rate_limit_per_minute, settings.audit_max_field_chars)
    validate_runtime_git_values(settings.git.git_timeout_seconds, settings.git.default_remote)


def describe_runtime_settings(settings: RuntimeSettings) -> dict[str, Any]:
    """JSON-ready view of ``settings`` for ``--print-effective-config``."""
    return {
        "transport": settings.transport,
        "host": settings.host,
        "port": settings.port,
        "allow_public_http": settings.allow_public_http,
        "audit": {
            "log_file": settings.audit_log_path or None,
            "redact_sensitive": settings.audit_redact_sensitive,
            "max_field_chars": settings.audit_max_field_chars,
        },
        "rate_limit_per_minute": settings.rate_limit_per_minute,
        "log_level": settings.log_level,
        "git": {
            "timeout_seconds": settings.git.git_timeout_seconds,
            "default_remote": settings.git.default_remote,
            "workspace": settings.git.workspace or None,
        },
        "path_resolution": {
            "path_mappings": [
                {"from": host_path, "to": runtime_path}
                for host_path, runtime_path in settings.path_resolution.path_mappings
            ],
            "allowed_roots": list(settings.path_resolution.allowed_roots),
        },
    }


def get_runtime_git_defaults(env: Mapping[str, str] | None = None) -> RuntimeGitDefaults:
    return _read_git_defaults(_EnvReader(env))


def get_runtime_path_resolution_defaults(
    env: Mapping[str, str] | None = None,
) -> RuntimePathResolutionDefaults:
    return _read_path_resolution(_EnvReader(env))


def configure_logging(level: str) -> None:
    """Send log records to stderr; stdout carries the MCP stdio channel."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )


def validate_runtime_operation_values(rate_limit_per_minute: int, audit_max_field_chars: int) -> None:
    if rate_limit_per_minute < 0:
        raise ValueError("rate-limit-per-minute must be >= 0.")
    if audit_max_field_chars < 0 or 0 < audit_max_field_chars < MIN_AUDIT_FIELD_CHARS:
        raise ValueError(f"audit-max-field-chars must be 0 or >= {MIN_AUDIT_FIELD_CHARS}.")


def validate_runtime_git_values(git_timeout_seconds: float, default_remote: str) -> None:
    if not math.isfinite(git_timeout_seconds) or git_timeout_seconds <= 0:
        raise ValueError("git-timeout-seconds must be a positive number.")
    if not REMOTE_NAME_PATTERN.match(default_remote):
        raise ValueError("default-remote may only contain letters, digits, '_' and '-'.")


def validate_streamable_http_binding(transport: str, host: str, allow_public_http: bool) -> None:
    """Refuse to expose the HTTP transport beyond loopback unless opted in."""
    if transport != "streamable-http":
        return
    if not host.strip():
        raise ValueError("Host must not be empty when using streamable-http transport.")
    if not allow_public_http and not is_loopback_host(host):
        raise ValueError(
            f"Refusing to bind streamable-http to non-loopback host {host!r}. "
            f"Pass --allow-public-http or set {ENV_PREFIX}ALLOW_PUBLIC_HTTP=true."
        )


def is_loopback_host(host: str) -> bool:
    name = host.strip().lower().strip("[]")
    if name in LOOPBACK_NAMES:
        return True
    try:
        return ipaddress.ip_address(name).is_loopback
    except ValueError:
        return False


def _read_git_defaults(reader: _EnvReader) -> RuntimeGitDefaults:
    defaults = RuntimeGitDefaults(
        git_timeout_seconds=reader.number(ENV_PREFIX + "GIT_TIMEOUT_SECONDS", DEFAULT_GIT_TIMEOUT_SECONDS),
        default_remote=reader.text(ENV_PREFIX + "DEFAULT_REMOTE", DEFAULT_REMOTE),
        workspace=reader.raw(WORKSPACE_ENV_VAR),
    )
    validate_runtime_git_values(defaults.git_timeout_seconds, defaults.default_remote)
    return defaults


def _read_path_resolution(reader: _EnvReader) -> RuntimePathResolutionDefaults:
    return RuntimePathResolutionDefaults(
        path_mappings=_read_path_mappings(reader, ENV_PREFIX + "PATH_MAP"),
        allowed_roots=_read_allowed_roots(reader, ENV_PREFIX + "ALLOWED_ROOTS"),
    )


def _read_path_mappings(reader: _EnvReader, key: str) -> tuple[tuple[str, str], ...]:
    """Accept ``{"/host": "/runtime"}`` or ``[{"from": "/host", "to": "/runtime"}]``."""
    payload = reader.json(key, 'a JSON object or a list of {"from": ..., "to": ...} entries')
    if payload is None:
        return ()

    if isinstance(payload, dict):
        entries = list(payload.items())
    elif isinstance(payload, list):
        entries = []
        for index, item in enumerate(payload):
            if not isinstance(item, Mapping):
                raise ValueError(f"{key}[{index}] must be an object with 'from' and 'to' fields.")
            entries.append((item.get("from"), item.get("to")))
    else:
        raise ValueError(f'{key} must be a JSON object or a list of {{"from": ..., "to": ...}} entries.')

    mappings: dict[tuple[str, str], None] = {}
    for host_path, runtime_path in entries:
        if not isinstance(host_path, str) or not isinstance(runtime_path, str):
            raise ValueError(f"{key} mappings must use string paths.")
        mappings[(_absolute_path(host_path, key), _absolute_path(runtime_path, key))] = None
    return tuple(mappings)


def _read_allowed_roots(reader: _EnvReader, key: str) -> tuple[str, ...]:
    """Accept a comma-separated list or a JSON list of absolute paths."""
    value = reader.raw(key)
    if not value:
        return ()
    if value.startswith("["):
        payload = reader.json(key, "a comma-separated list or a JSON list of absolute paths")
        if not isinstance(payload, list) or not all(isinstance(item, str) for item in payload):
            raise ValueError(f"{key} JSON form must be a list of path strings.")
        items = payload
    else:
        items = [part for part in value.split(",") if part.strip()]
    return tuple(dict.fromkeys(_absolute_path(item, key) for item in items))


def _absolute_path(value: str, key: str) -> str:
    text = value.strip()
    if not text:
        raise ValueError(f"{key} contains an empty path.")
    path = Path(text).expanduser()
    if not path.is_absolute():
        raise ValueError(f"{key} paths must be absolute: {text}")
    return str(path.resolve(strict=False))
