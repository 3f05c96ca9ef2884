"""Parameter validation for names that end up in git command lines."""

from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import ValidationError

from .constants import DEFAULT_REMOTE, MAX_BRANCH_NAME_LENGTH, MAX_REMOTE_NAME_LENGTH
from .errors import DiffPilotError, ErrorCode

logger = logging.getLogger(__name__)

BRANCH_NAME_PATTERN = re.compile(r"^[A-Za-z0-9/_.\-]+$")
REMOTE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")


def validate_branch_name(value: str | None, field_name: str = "branch") -> str | None:
    """Return a safe branch name, ``None`` for blank input, or raise."""
    if value is None or not value.strip():
        return None
    value = value.replace("\0", "").strip()

    if len(value) > MAX_BRANCH_NAME_LENGTH:
        raise _invalid_branch(
            field_name,
            f"'{field_name}' exceeds maximum length of {MAX_BRANCH_NAME_LENGTH} characters.",
        )
    if not BRANCH_NAME_PATTERN.match(value):
        raise _invalid_branch(
            field_name,
            f"'{field_name}' contains invalid characters. "
            "Only letters, digits, slash, underscore, hyphen and dot are allowed.",
        )
    if ".." in value:
        raise _invalid_branch(field_name, f"'{field_name}' must not contain '..'.")
    if value.startswith("-"):
        raise _invalid_branch(field_name, f"'{field_name}' must not start with '-'.")
    return value


def validate_remote_name(value: str | None) -> str:
    """Return a safe remote name; blank input means the default remote."""
    if value is None or not value.strip():
        return DEFAULT_REMOTE
    value = value.replace("\0", "").strip()

    if len(value) > MAX_REMOTE_NAME_LENGTH:
        raise DiffPilotError(
            ErrorCode.INVALID_REMOTE_NAME,
            f"Remote name exceeds maximum length of {MAX_REMOTE_NAME_LENGTH} characters.",
            "Use the short name of a configured remote, e.g. 'origin'.",
        )
    if not REMOTE_NAME_PATTERN.match(value):
        logger.warning("Rejected remote name with invalid characters")
        raise DiffPilotError(
            ErrorCode.INVALID_REMOTE_NAME,
            "Remote name contains invalid characters.",
            "Only letters, digits, underscore and hyphen are allowed.",
        )
    if value.startswith("-"):
        raise DiffPilotError(
            ErrorCode.INVALID_REMOTE_NAME,
            "Remote name must not start with '-'.",
            "Use the short name of a configured remote, e.g. 'origin'.",
        )
    return value


def is_valid_branch_name(value: str | None) -> bool:
    try:
        return validate_branch_name(value) is not None
    except DiffPilotError:
        return False


def build_validation_error_details(exc: ValidationError) -> dict[str, Any]:
    """Convert a pydantic ``ValidationError`` into a JSON-safe details payload."""
    try:
        raw_errors = exc.errors(include_context=False, include_input=False)
    except TypeError:
        raw_errors = exc.errors()

    errors: list[dict[str, Any]] = []
    hints: list[str] = []
    for error in raw_errors:
        location = ".".join(str(part) for part in error.get("loc", ()))
        error_type = str(error.get("type", ""))
        errors.append(
            {
                "field": location,
                "type": error_type,
                "message": str(error.get("msg", "")),
            }
        )
        if error_type == "string_pattern_mismatch":
            hints.append(f"{location}: use only letters, digits, '/', '_', '-' and '.'.")
        elif error_type == "enum":
            hints.append(f"{location}: {error.get('msg', '')}.")
        elif error_type in {"string_type", "bool_type", "bool_parsing"}:
            hints.append(f"{location}: check the value type.")

    details: dict[str, Any] = {"errors": errors}
    if hints:
        details["hints"] = hints
    return details


def _invalid_branch(field_name: str, message: str) -> DiffPilotError:
    logger.warning("Rejected branch parameter '%s'", field_name)
    return DiffPilotError(
        ErrorCode.INVALID_BRANCH_NAME,
        message,
        "Pass a plain git branch name such as 'main' or 'feature/login'.",
        {"field": field_name},
    )
