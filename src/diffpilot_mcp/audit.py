"""JSONL audit trail of DiffPilot tool calls.

Tool payloads routinely carry diff text, so every string is passed through
``REDACTION_RULES`` before it is written; keys that name a credential are
replaced wholesale.  Git object names (SHA-1) and UUIDs are left readable.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Union

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
TRUNCATION_SUFFIX = "...[TRUNCATED]"
EVENT_TYPE = "mcp_tool_call"

SENSITIVE_KEY_PATTERN = re.compile(
    r"(?i)(password|passwd|pwd|secret|token|api[_-]?key|authorization|private[_-]?key)"
)
SENSITIVE_ASSIGNMENT_PATTERN = re.compile(
    r"(?i)\b(password|passwd|pwd|secret|token|api[_-]?key|authorization|client[_-]?secret)"
    r"\s*[:=]\s*([^\s,;]+)"
)
BEARER_TOKEN_PATTERN = re.compile(r"(?i)\bbearer\s+[a-z0-9\-._~+/]+=*")
JWT_PATTERN = re.compile(r"\beyJ[A-Za-z0-9_\-]*\.[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+\b")
API_KEY_PREFIX_PATTERN = re.compile(
    r"\b(?:sk|rk|pk|ghp|gho|ghu|ghs|ghr|github_pat)_[A-Za-z0-9_\-]{16,}\b"
)
AWS_ACCESS_KEY_PATTERN = re.compile(r"\bAKIA[0-9A-Z]{16}\b")
SLACK_TOKEN_PATTERN = re.compile(r"\bxox[baprs]-[0-9A-Za-z\-]{10,}")
PRIVATE_KEY_BLOCK_PATTERN = re.compile(
    r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----",
    re.DOTALL,
)
BASE64_LIKE_PATTERN = re.compile(r"\b[A-Za-z0-9+/]{40,}={0,2}\b")
LONG_TOKEN_PATTERN = re.compile(r"\b[A-Za-z0-9_\-]{64,}\b")
UUID_PATTERN = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}"
    r"-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
SHA1_PATTERN = re.compile(r"\b[0-9a-fA-F]{40}\b")


def _unless_git_object_name(match: re.Match[str]) -> str:
    token = match.group(0)
    if SHA1_PATTERN.fullmatch(token) or UUID_PATTERN.fullmatch(token):
        return token
    return REDACTED


Replacement = Union[str, Callable[[re.Match[str]], str]]

# Applied in order; whole private-key blocks go first so their base64 body
# is not left behind in pieces.
REDACTION_RULES: tuple[tuple[re.Pattern[str], Replacement], ...] = (
    (PRIVATE_KEY_BLOCK_PATTERN, REDACTED),
    (SENSITIVE_ASSIGNMENT_PATTERN, rf"\1={REDACTED}"),
    (BEARER_TOKEN_PATTERN, f"Bearer {REDACTED}"),
    (JWT_PATTERN, REDACTED),
    (API_KEY_PREFIX_PATTERN, REDACTED),
    (AWS_ACCESS_KEY_PATTERN, REDACTED),
    (SLACK_TOKEN_PATTERN, REDACTED),
    (BASE64_LIKE_PATTERN, _unless_git_object_name),
    (LONG_TOKEN_PATTERN, _unless_git_object_name),
)


@dataclass(slots=True)
class AuditLogger:
    """Append one JSON line per tool call to ``log_path``; disabled when it is ``None``."""

    log_path: Path | None = None
    redact_sensitive: bool = True
    max_field_chars: int = 4000

    @property
    def enabled(self) -> bool:
        return self.log_path is not None

    def log_tool_event(
        self,
        tool_name: str,
        status: str,
        request_payload: dict[str, Any],
        response_payload: dict[str, Any],
    ) -> None:
        if self.log_path is None:
            return

        line = json.dumps(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "event_type": EVENT_TYPE,
                "tool_name": tool_name,
                "status": status,
                "request": self.sanitize(request_payload),
                "response": self.sanitize(response_payload),
            },
            ensure_ascii=True,
            sort_keys=True,
        )
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:
            logger.warning("Unable to write audit event to %s: %s", self.log_path, exc)

    def sanitize(self, payload: Any) -> Any:
        """Return ``payload`` as it will be written: redacted, then truncated."""
        if self.redact_sensitive:
            payload = redact_payload(payload)
        if self.max_field_chars > 0:
            limit = self.max_field_chars
            payload = _map_strings(payload, lambda value: truncate_string(value, limit))
        return payload


def redact_payload(payload: Any) -> Any:
    """Mask credential-named keys outright and scrub every other string."""
    if isinstance(payload, dict):
        return {
            key: REDACTED if SENSITIVE_KEY_PATTERN.search(str(key)) else redact_payload(value)
            for key, value in payload.items()
        }
    if isinstance(payload, list):
        return [redact_payload(item) for item in payload]
    if isinstance(payload, str):
        return redact_string(payload)
    return payload


def redact_string(value: str) -> str:
    for pattern, replacement in REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


def truncate_string(value: str, max_chars: int) -> str:
    if len(value) <= max_chars:
        return value
    if max_chars <= len(TRUNCATION_SUFFIX):
        return TRUNCATION_SUFFIX[:max_chars]
    return value[: max_chars - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


def _map_strings(payload: Any, transform: Callable[[str], str]) -> Any:
    if isinstance(payload, dict):
        return {key: _map_strings(value, transform) for key, value in payload.items()}
    if isinstance(payload, list):
        return [_map_strings(item, transform) for item in payload]
    if isinstance(payload, str):
        return transform(payload)
    return payload
