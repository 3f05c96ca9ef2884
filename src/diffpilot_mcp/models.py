"""Pydantic models for DiffPilot tool inputs and outputs."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from .constants import (
    MAX_BRANCH_NAME_LENGTH,
    MAX_FOCUS_AREAS_LENGTH,
    MAX_REMOTE_NAME_LENGTH,
    MAX_SCOPE_LENGTH,
    MAX_TICKET_URL_LENGTH,
)


class TitleStyle(str, Enum):
    CONVENTIONAL = "conventional"
    TICKET = "ticket"
    DESCRIPTIVE = "descriptive"


class CommitStyle(str, Enum):
    CONVENTIONAL = "conventional"
    SIMPLE = "simple"


class ChangelogFormat(str, Enum):
    KEEPACHANGELOG = "keepachangelog"
    SIMPLE = "simple"


class ChangeCategory(str, Enum):
    """Keep a Changelog sections, in the order they are rendered."""

    ADDED = "Added"
    CHANGED = "Changed"
    FIXED = "Fixed"
    DEPRECATED = "Deprecated"
    REMOVED = "Removed"
    SECURITY = "Security"
    OTHER = "Other"


class RepositoryRequest(BaseModel):
    directory: str = Field(
        default="",
        description="Repository directory; blank uses DIFFPILOT_WORKSPACE or the process cwd",
    )


class CurrentBranchRequest(RepositoryRequest):
    pass


class BaseBranchRequest(RepositoryRequest):
    current_branch: str = Field(default="", max_length=MAX_BRANCH_NAME_LENGTH)
    remote: str = Field(default="", max_length=MAX_REMOTE_NAME_LENGTH)


class BranchRangeRequest(RepositoryRequest):
    base_branch: str = Field(default="", max_length=MAX_BRANCH_NAME_LENGTH)
    feature_branch: str = Field(default="", max_length=MAX_BRANCH_NAME_LENGTH)
    remote: str = Field(default="", max_length=MAX_REMOTE_NAME_LENGTH)

    @field_validator("base_branch", "feature_branch", "remote")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class PrDiffRequest(BranchRangeRequest):
    fetch: bool = False


class DiffStatsRequest(BranchRangeRequest):
    pass


class ReviewPrChangesRequest(BranchRangeRequest):
    fetch: bool = False
    focus_areas: str = Field(default="", max_length=MAX_FOCUS_AREAS_LENGTH)


class PrTitleRequest(BranchRangeRequest):
    fetch: bool = False
    style: TitleStyle = TitleStyle.CONVENTIONAL


class PrDescriptionRequest(BranchRangeRequest):
    fetch: bool = False
    include_checklist: bool = True
    ticket_url: str = Field(default="", max_length=MAX_TICKET_URL_LENGTH)

    @field_validator("ticket_url")
    @classmethod
    def _validate_ticket_url(cls, value: str) -> str:
        value = value.strip()
        if value and not value.lower().startswith(("http://", "https://")):
            raise ValueError("ticket_url must be an http(s) URL")
        return value


class ScanSecretsRequest(BranchRangeRequest):
    scan_staged: bool = True
    scan_unstaged: bool = True
    scan_branch: bool = False


class CommitMessageRequest(RepositoryRequest):
    style: CommitStyle = CommitStyle.CONVENTIONAL
    scope: str = Field(default="", max_length=MAX_SCOPE_LENGTH, pattern=r"^[A-Za-z0-9_.\-/]*$")
    include_body: bool = True


class ChangelogRequest(BranchRangeRequest):
    fetch: bool = False
    changelog_format: ChangelogFormat = ChangelogFormat.KEEPACHANGELOG


class BaseToolResponse(BaseModel):
    status: Literal["success", "error"]
    message: str = ""
    error_code: str = ""
    suggestion: str = ""
    details: dict[str, Any] = Field(default_factory=dict)


class CurrentBranchResponse(BaseToolResponse):
    branch: str = ""
    directory: str = ""


class BaseBranchResponse(BaseToolResponse):
    remote: str = ""
    base_branch: str = ""
    feature_branch: str = ""


class BranchRangeResponse(BaseToolResponse):
    remote: str = ""
    base_branch: str = ""
    feature_branch: str = ""
    compare_range: str = ""


class PrDiffResponse(BranchRangeResponse):
    diff: str = ""
    truncated: bool = False
    total_chars: int = 0


class FileChange(BaseModel):
    path: str
    additions: int = 0
    deletions: int = 0
    binary: bool = False


class DiffStatsResponse(BranchRangeResponse):
    files: list[FileChange] = Field(default_factory=list)
    files_changed: int = 0
    total_additions: int = 0
    total_deletions: int = 0
    commits: list[str] = Field(default_factory=list)


class PrReviewResponse(BranchRangeResponse):
    change_summary: str = ""
    truncated: bool = False
    prompt: str = ""


class PrTitleResponse(BranchRangeResponse):
    style: TitleStyle = TitleStyle.CONVENTIONAL
    ticket: str | None = None
    commits: list[str] = Field(default_factory=list)
    prompt: str = ""


class PrDescriptionResponse(BranchRangeResponse):
    ticket: str | None = None
    commits: list[str] = Field(default_factory=list)
    truncated: bool = False
    prompt: str = ""


class SecretFinding(BaseModel):
    type: str
    description: str
    file: str
    line: int | None = None
    source: str
    masked_match: str


class SecretScanResponse(BaseToolResponse):
    clean: bool = True
    findings_count: int = 0
    sources_scanned: list[str] = Field(default_factory=list)
    findings: list[SecretFinding] = Field(default_factory=list)


class CommitMessageResponse(BaseToolResponse):
    change_source: Literal["staged", "unstaged", ""] = ""
    files: list[str] = Field(default_factory=list)
    lines_added: int = 0
    lines_removed: int = 0
    change_type: str = ""
    commit_type: str = ""
    suggested_message: str = ""
    change_summary: str = ""
    diff_preview: str = ""
    truncated: bool = False


class ChangelogEntry(BaseModel):
    hash: str
    message: str
    author: str = ""
    date: str = ""
    category: ChangeCategory = ChangeCategory.OTHER


class ChangelogResponse(BranchRangeResponse):
    changelog_format: ChangelogFormat = ChangelogFormat.KEEPACHANGELOG
    entries: list[ChangelogEntry] = Field(default_factory=list)
    changelog: str = ""
