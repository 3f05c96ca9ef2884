"""Pattern-based detection of credentials introduced by a diff."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

from .audit import (
    API_KEY_PREFIX_PATTERN,
    AWS_ACCESS_KEY_PATTERN,
    JWT_PATTERN,
    SHA1_PATTERN,
    SLACK_TOKEN_PATTERN,
)
from .models import SecretFinding

HUNK_HEADER_PATTERN = re.compile(r"^@@ -\d+(?:,\d+)? \+(\d+)(?:,\d+)? @@")
NEW_FILE_PREFIX = "+++ b/"
UNKNOWN_FILE = "unknown"


@dataclass(frozen=True)
class SecretPattern:
    name: str
    description: str
    regex: re.Pattern[str]
    accept: Callable[[str], bool] | None = None

    def matches(self, content: str) -> list[re.Match[str]]:
        return [
            match
            for match in self.regex.finditer(content)
            if self.accept is None or self.accept(match.group(0))
        ]


def _looks_like_aws_secret(value: str) -> bool:
    # Commit hashes and plain words share the 40-character shape.
    if SHA1_PATTERN.fullmatch(value):
        return False
    return (
        any(char.islower() for char in value)
        and any(char.isupper() for char in value)
        and any(char.isdigit() for char in value)
    )


SECRET_PATTERNS: tuple[SecretPattern, ...] = (
    SecretPattern(
        "API Key",
        "Generic API key assignment",
        re.compile(r"""(?i)['"]?[a-z0-9_\-]*api[_-]?key['"]?\s*[:=]\s*['"]?[a-z0-9_\-]{20,}['"]?"""),
    ),
    SecretPattern("AWS Access Key", "AWS access key ID", AWS_ACCESS_KEY_PATTERN),
    SecretPattern(
        "AWS Secret Key",
        "AWS secret access key",
        re.compile(r"(?<![A-Za-z0-9/+])[A-Za-z0-9/+]{40}(?![A-Za-z0-9/+])"),
        accept=_looks_like_aws_secret,
    ),
    SecretPattern("Provider Token", "GitHub or API provider token", API_KEY_PREFIX_PATTERN),
    SecretPattern(
        "Private Key",
        "Private key block",
        re.compile(r"-----BEGIN\s+(?:RSA |DSA |EC |OPENSSH |ENCRYPTED )?PRIVATE KEY-----"),
    ),
    SecretPattern(
        "Password in URL",
        "Password in connection string",
        re.compile(r"(?i)\b[a-z][a-z0-9+.\-]*://[^\s:/@]+:[^\s@/]+@"),
    ),
    SecretPattern(
        "Password Assignment",
        "Password variable assignment",
        re.compile(r"""(?i)['"]?passw(?:or)?d['"]?\s*[:=]\s*['"][^'"]{8,}['"]"""),
    ),
    SecretPattern(
        "Bearer Token",
        "Bearer authentication token",
        re.compile(r"(?i)\bbearer\s+[A-Za-z0-9\-._~+/]{16,}=*"),
    ),
    SecretPattern(
        "Azure Connection String",
        "Azure storage connection string",
        re.compile(r"DefaultEndpointsProtocol=https?;AccountName=[^;\s]+;AccountKey=[^;\s]+"),
    ),
    SecretPattern("JWT Token", "JSON Web Token", JWT_PATTERN),
    SecretPattern("Slack Token", "Slack bot/webhook token", SLACK_TOKEN_PATTERN),
    SecretPattern(
        "Generic Secret",
        "Generic secret/token assignment",
        re.compile(r"""(?i)['"]?(?:secret|token|key|auth)['"]?\s*[:=]\s*['"][a-z0-9_\-]{16,}['"]"""),
    ),
)


def mask_secret(value: str) -> str:
    """Keep the first and last four characters of long values, star the rest."""
    if len(value) <= 8:
        return "*" * len(value)
    return value[:4] + "*" * (len(value) - 8) + value[-4:]


def scan_diff(diff: str, source: str) -> list[SecretFinding]:
    """Scan the added lines of a unified diff.

    Removed and context lines are ignored: deleting a secret is not a leak.
    File headers are only honoured between hunks, so an added line whose
    content starts with ``++`` is still scanned.
    """
    findings: list[SecretFinding] = []
    current_file = UNKNOWN_FILE
    line_number: int | None = None

    for line in diff.splitlines():
        if line.startswith("diff --git "):
            line_number = None
            continue
        if line_number is None:
            if line.startswith(NEW_FILE_PREFIX):
                current_file = line[len(NEW_FILE_PREFIX) :]
                continue
            if line.startswith(("+++ ", "--- ")):
                continue
        hunk = HUNK_HEADER_PATTERN.match(line)
        if hunk:
            line_number = int(hunk.group(1))
            continue
        if line.startswith("+"):
            findings.extend(_scan_line(line[1:], current_file, line_number, source))
            if line_number is not None:
                line_number += 1
        elif line.startswith(" ") and line_number is not None:
            line_number += 1

    return findings


def _scan_line(content: str, path: str, line_number: int | None, source: str) -> list[SecretFinding]:
    findings: list[SecretFinding] = []
    claimed: list[tuple[int, int]] = []
    for pattern in SECRET_PATTERNS:
        for match in pattern.matches(content):
            start, end = match.span()
            # One finding per span; broader patterns overlap the specific ones.
            if any(start < taken_end and taken_start < end for taken_start, taken_end in claimed):
                continue
            claimed.append((start, end))
            findings.append(
                SecretFinding(
                    type=pattern.name,
                    description=pattern.description,
                    file=path,
                    line=line_number,
                    source=source,
                    masked_match=mask_secret(match.group(0)),
                )
            )
    return findings
