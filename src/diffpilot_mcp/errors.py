"""Domain-specific error types for DiffPilot tools."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Supported error codes exposed by DiffPilot tools."""

    INVALID_DIRECTORY = "INVALID_DIRECTORY"
    NOT_A_GIT_REPOSITORY = "NOT_A_GIT_REPOSITORY"
    INVALID_BRANCH_NAME = "INVALID_BRANCH_NAME"
    INVALID_REMOTE_NAME = "INVALID_REMOTE_NAME"
    DETACHED_HEAD = "DETACHED_HEAD"
    BASE_BRANCH_UNRESOLVED = "BASE_BRANCH_UNRESOLVED"
    GIT_COMMAND_FAILED = "GIT_COMMAND_FAILED"
    INVALID_INPUT = "INVALID_INPUT"
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"
    NO_CHANGES = "NO_CHANGES"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass
class DiffPilotError(Exception):
    """Structured exception carrying a stable error contract."""

    code: ErrorCode
    message: str
    suggestion: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": "error",
            "error_code": self.code.value,
            "message": self.message,
            "suggestion": self.suggestion or "",
            "details": self.details,
        }
