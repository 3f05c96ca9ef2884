"""PR review operations built on the branch resolver and git executor."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .constants import (
    COMMIT_DIFF_PREVIEW_LENGTH,
    DEFAULT_REMOTE,
    MAX_DIFF_CONTENT_LENGTH,
    NO_CHANGES_MESSAGE,
    WORKSPACE_ENV_VAR,
)
from .errors import DiffPilotError, ErrorCode
from .executor import CommandResult, GitCommandExecutor
from .models import (
    BaseBranchRequest,
    BaseBranchResponse,
    BranchRangeRequest,
    ChangelogRequest,
    ChangelogResponse,
    CommitMessageRequest,
    CommitMessageResponse,
    CurrentBranchRequest,
    CurrentBranchResponse,
    DiffStatsRequest,
    DiffStatsResponse,
    FileChange,
    PrDescriptionRequest,
    PrDescriptionResponse,
    PrDiffRequest,
    PrDiffResponse,
    PrReviewResponse,
    PrTitleRequest,
    PrTitleResponse,
    ReviewPrChangesRequest,
    ScanSecretsRequest,
    SecretFinding,
    SecretScanResponse,
)
from .resolver import HEADS_PREFIX, REMOTES_PREFIX, BranchResolver, CommandRunner
from .review import (
    analyze_changes,
    build_commit_template,
    build_description_prompt,
    build_review_prompt,
    build_title_prompt,
    determine_commit_type,
    extract_ticket,
    parse_changelog_log,
    render_changelog,
)
from .runtime import RuntimeGitDefaults, RuntimePathResolutionDefaults
from .scanning import scan_diff
from .validation import validate_branch_name, validate_remote_name

logger = logging.getLogger(__name__)


class BranchRange:
    """Validated base/feature pair plus the refs used to compare them."""

    def __init__(
        self,
        remote: str,
        base_branch: str,
        feature_branch: str,
        base_ref: str,
        feature_ref: str,
    ) -> None:
        self.remote = remote
        self.base_branch = base_branch
        self.feature_branch = feature_branch
        self.base_ref = base_ref
        self.feature_ref = feature_ref

    @property
    def display_range(self) -> str:
        return f"{_short_ref(self.base_ref)}...{_short_ref(self.feature_ref)}"

    @property
    def three_dot(self) -> str:
        return f"{self.base_ref}...{self.feature_ref}"

    @property
    def two_dot(self) -> str:
        return f"{self.base_ref}..{self.feature_ref}"

    def response_fields(self) -> dict[str, str]:
        return {
            "remote": self.remote,
            "base_branch": self.base_branch,
            "feature_branch": self.feature_branch,
            "compare_range": self.display_range,
        }


class DiffPilotEngine:
    """Main service implementing DiffPilot tool operations."""

    def __init__(
        self,
        executor: CommandRunner | None = None,
        resolver: BranchResolver | None = None,
        path_mappings: list[tuple[str, str]] | tuple[tuple[str, str], ...] | None = None,
        allowed_roots: list[str] | tuple[str, ...] | None = None,
        workspace: str | None = None,
        default_remote: str = DEFAULT_REMOTE,
        max_diff_chars: int = MAX_DIFF_CONTENT_LENGTH,
    ) -> None:
        self.executor = executor or GitCommandExecutor()
        self.resolver = resolver or BranchResolver(self.executor)
        self.default_remote = default_remote
        self.max_diff_chars = max_diff_chars
        self._workspace = workspace if workspace is not None else os.environ.get(WORKSPACE_ENV_VAR, "")
        self._path_mappings = self._normalize_path_mappings(path_mappings or [])
        self._allowed_roots = self._normalize_allowed_roots(allowed_roots or [])

    async def current_branch(self, request: CurrentBranchRequest) -> CurrentBranchResponse:
        """Report the checked-out branch of a repository."""
        directory = self._resolve_repository(request.directory)
        branch = await self.resolver.resolve_current_branch(directory)
        if branch is None:
            raise _detached_head_error(directory)
        return CurrentBranchResponse(
            status="success",
            message=f"Current branch is '{branch}'",
            branch=branch,
            directory=str(directory),
        )

    async def base_branch(self, request: BaseBranchRequest) -> BaseBranchResponse:
        """Report the branch the current (or given) branch was created from."""
        directory = self._resolve_repository(request.directory)
        remote = validate_remote_name(request.remote or self.default_remote)
        feature = validate_branch_name(request.current_branch, "current_branch")
        if feature is None:
            feature = await self.resolver.resolve_current_branch(directory)
            if feature is None:
                raise _detached_head_error(directory)

        resolved = await self.resolver.resolve_base_branch(directory, feature, remote)
        if resolved is None:
            raise _unresolved_base_error(feature)
        base = validate_branch_name(resolved.branch, "base_branch") or ""
        resolved_remote = validate_remote_name(resolved.remote)
        return BaseBranchResponse(
            status="success",
            message=f"'{feature}' was created from '{resolved_remote}/{base}'",
            remote=resolved_remote,
            base_branch=base,
            feature_branch=feature,
        )

    async def pr_diff(self, request: PrDiffRequest) -> PrDiffResponse:
        """Return the diff a pull request from feature into base would show."""
        directory = self._resolve_repository(request.directory)
        await self._fetch_if_requested(directory, request.remote, request.fetch)
        branch_range = await self._resolve_branch_range(directory, request)
        raw_diff = await self._range_diff(directory, branch_range)
        diff, truncated = truncate_content(raw_diff, self.max_diff_chars)
        return PrDiffResponse(
            status="success",
            message=f"Diff: {branch_range.display_range}",
            **branch_range.response_fields(),
            diff=diff,
            truncated=truncated,
            total_chars=len(raw_diff),
        )

    async def diff_stats(self, request: DiffStatsRequest) -> DiffStatsResponse:
        """Summarize per-file changes and commits between base and feature."""
        directory = self._resolve_repository(request.directory)
        branch_range = await self._resolve_branch_range(directory, request)

        numstat = await self.executor.execute(
            ["diff", "--numstat", "--no-color", branch_range.three_dot, "--"], directory
        )
        self._require_success(numstat, "git diff --numstat failed")
        files = parse_numstat(numstat.output)
        commits = await self._commit_subjects(directory, branch_range)

        return DiffStatsResponse(
            status="success",
            message=f"{len(files)} file(s) changed in {branch_range.display_range}",
            **branch_range.response_fields(),
            files=files,
            files_changed=len(files),
            total_additions=sum(item.additions for item in files),
            total_deletions=sum(item.deletions for item in files),
            commits=commits,
        )

    async def review_pr_changes(self, request: ReviewPrChangesRequest) -> PrReviewResponse:
        """Build a code-review prompt from the PR diff and its change summary."""
        directory = self._resolve_repository(request.directory)
        await self._fetch_if_requested(directory, request.remote, request.fetch)
        branch_range = await self._resolve_branch_range(directory, request)
        diff, truncated = truncate_content(
            await self._range_diff(directory, branch_range), self.max_diff_chars
        )
        change_summary = await self._change_summary(directory, branch_range)
        prompt = build_review_prompt(
            base_branch=branch_range.base_branch,
            feature_branch=branch_range.feature_branch,
            change_summary=change_summary,
            diff=diff,
            focus_areas=request.focus_areas,
        )
        return PrReviewResponse(
            status="success",
            message=f"Review prompt for {branch_range.display_range}",
            **branch_range.response_fields(),
            change_summary=change_summary,
            truncated=truncated,
            prompt=prompt,
        )

    async def generate_pr_title(self, request: PrTitleRequest) -> PrTitleResponse:
        """Build a prompt asking for PR title suggestions in the requested style."""
        directory = self._resolve_repository(request.directory)
        await self._fetch_if_requested(directory, request.remote, request.fetch)
        branch_range = await self._resolve_branch_range(directory, request)
        commits = await self._commit_subjects(directory, branch_range)
        change_summary = await self._change_summary(directory, branch_range)
        ticket = extract_ticket(branch_range.feature_branch)
        prompt = build_title_prompt(
            feature_branch=branch_range.feature_branch,
            style=request.style,
            ticket=ticket,
            commits=commits,
            change_summary=change_summary,
        )
        return PrTitleResponse(
            status="success",
            message=f"Title prompt for {branch_range.display_range} ({len(commits)} commit(s))",
            **branch_range.response_fields(),
            style=request.style,
            ticket=ticket,
            commits=commits,
            prompt=prompt,
        )

    async def generate_pr_description(self, request: PrDescriptionRequest) -> PrDescriptionResponse:
        """Build a prompt that fills a PR description template from the branch changes."""
        directory = self._resolve_repository(request.directory)
        await self._fetch_if_requested(directory, request.remote, request.fetch)
        branch_range = await self._resolve_branch_range(directory, request)
        commits = await self._commit_subjects(directory, branch_range)
        change_summary = await self._change_summary(directory, branch_range)
        diff, truncated = truncate_content(
            await self._range_diff(directory, branch_range), self.max_diff_chars
        )
        ticket = extract_ticket(branch_range.feature_branch)
        prompt = build_description_prompt(
            base_branch=branch_range.base_branch,
            feature_branch=branch_range.feature_branch,
            ticket=ticket,
            ticket_url=request.ticket_url,
            commits=commits,
            change_summary=change_summary,
            diff=diff,
            include_checklist=request.include_checklist,
        )
        return PrDescriptionResponse(
            status="success",
            message=f"Description prompt for {branch_range.display_range}",
            **branch_range.response_fields(),
            ticket=ticket,
            commits=commits,
            truncated=truncated,
            prompt=prompt,
        )

    async def scan_secrets(self, request: ScanSecretsRequest) -> SecretScanResponse:
        """Scan staged, unstaged and optionally branch changes for credentials.

        Only added lines are inspected. Findings carry a masked match so the
        response itself never repeats a secret in full.
        """
        directory = self._resolve_repository(request.directory)
        sources: list[tuple[str, list[str]]] = []
        if request.scan_staged:
            sources.append(("staged", ["diff", "--cached", "--no-color", "--"]))
        if request.scan_unstaged:
            sources.append(("unstaged", ["diff", "--no-color", "--"]))
        if request.scan_branch:
            branch_range = await self._resolve_branch_range(directory, request)
            sources.append(("branch", ["diff", "--no-color", branch_range.three_dot, "--"]))
        if not sources:
            raise DiffPilotError(
                ErrorCode.INVALID_INPUT,
                "No change source selected for scanning.",
                "Enable at least one of scan_staged, scan_unstaged or scan_branch.",
            )

        findings: list[SecretFinding] = []
        scanned: list[str] = []
        for source, args in sources:
            result = await self.executor.execute(args, directory)
            self._require_success(result, f"git diff ({source}) failed")
            if not result.has_output:
                continue
            scanned.append(source)
            findings.extend(scan_diff(result.output, source))

        if findings:
            logger.warning("Secret scan found %d potential secret(s) in %s", len(findings), directory)
            message = f"{len(findings)} potential secret(s) found"
        elif scanned:
            message = f"No secrets detected in {', '.join(scanned)} changes"
        else:
            message = "No changes to scan"
        return SecretScanResponse(
            status="success",
            message=message,
            clean=not findings,
            findings_count=len(findings),
            sources_scanned=scanned,
            findings=findings,
        )

    async def generate_commit_message(self, request: CommitMessageRequest) -> CommitMessageResponse:
        """Suggest a commit message skeleton for staged (else unstaged) changes."""
        directory = self._resolve_repository(request.directory)
        change_source = ""
        stat_args: list[str] = []
        diff = ""
        for source, extra in (("staged", ["--cached"]), ("unstaged", [])):
            result = await self.executor.execute(["diff", *extra, "--no-color", "--"], directory)
            self._require_success(result, f"git diff ({source}) failed")
            if result.has_output:
                change_source, diff = source, result.output
                stat_args = ["diff", *extra, "--stat", "--no-color", "--"]
                break
        if not change_source:
            raise DiffPilotError(
                ErrorCode.NO_CHANGES,
                "No staged or unstaged changes found.",
                "Stage changes with 'git add' or edit files first.",
                {"directory": str(directory)},
            )

        stat_result = await self.executor.execute(stat_args, directory)
        self._require_success(stat_result, "git diff --stat failed")
        analysis = analyze_changes(diff)
        commit_type = determine_commit_type(analysis, diff)
        preview, truncated = truncate_content(diff, COMMIT_DIFF_PREVIEW_LENGTH)
        return CommitMessageResponse(
            status="success",
            message=f"Suggested '{commit_type}' commit for {len(analysis.files)} {change_source} file(s)",
            change_source=change_source,
            files=list(analysis.files),
            lines_added=analysis.lines_added,
            lines_removed=analysis.lines_removed,
            change_type=analysis.change_type,
            commit_type=commit_type,
            suggested_message=build_commit_template(
                commit_type=commit_type,
                style=request.style,
                scope=request.scope,
                include_body=request.include_body,
            ),
            change_summary=stat_result.output.strip(),
            diff_preview=preview,
            truncated=truncated,
        )

    async def generate_changelog(self, request: ChangelogRequest) -> ChangelogResponse:
        """Render a changelog from the commits the feature branch adds."""
        directory = self._resolve_repository(request.directory)
        await self._fetch_if_requested(directory, request.remote, request.fetch)
        branch_range = await self._resolve_branch_range(directory, request)
        log_result = await self.executor.execute(
            [
                "log",
                "--no-color",
                "--date=short",
                "--pretty=format:%h%x1f%s%x1f%an%x1f%ad",
                branch_range.two_dot,
                "--",
            ],
            directory,
        )
        self._require_success(log_result, "git log failed")
        entries = parse_changelog_log(log_result.output)
        if not entries:
            return ChangelogResponse(
                status="success",
                message=f"No commits found in {branch_range.display_range}",
                **branch_range.response_fields(),
                changelog_format=request.changelog_format,
            )
        return ChangelogResponse(
            status="success",
            message=f"Changelog for {len(entries)} commit(s) in {branch_range.display_range}",
            **branch_range.response_fields(),
            changelog_format=request.changelog_format,
            entries=entries,
            changelog=render_changelog(
                entries,
                base_branch=branch_range.base_branch,
                feature_branch=branch_range.feature_branch,
                changelog_format=request.changelog_format,
            ),
        )

    def resolve_directory(self, directory: str) -> dict[str, str]:
        """Resolve a request directory into the effective runtime path."""
        requested, resolved = self._resolve_existing_directory_with_metadata(directory)
        return {
            "directory_requested": str(requested),
            "directory_resolved": str(resolved),
        }

    async def _resolve_branch_range(
        self, directory: Path, request: BranchRangeRequest
    ) -> BranchRange:
        """Validate explicit branches, auto-detecting whichever is missing."""
        remote = validate_remote_name(request.remote or self.default_remote)
        feature = validate_branch_name(request.feature_branch, "feature_branch")
        base = validate_branch_name(request.base_branch, "base_branch")

        if feature is None:
            feature = await self.resolver.resolve_current_branch(directory)
            if feature is None:
                raise _detached_head_error(directory)
            feature = validate_branch_name(feature, "feature_branch") or ""

        if base is None:
            resolved = await self.resolver.resolve_base_branch(directory, feature, remote)
            if resolved is None:
                raise _unresolved_base_error(feature)
            remote = validate_remote_name(resolved.remote)
            base = validate_branch_name(resolved.branch, "base_branch") or ""

        base_ref = await self._find_ref(directory, base, remote, prefer_remote=True)
        feature_ref = await self._find_ref(directory, feature, remote, prefer_remote=False)
        return BranchRange(
            remote=remote,
            base_branch=base,
            feature_branch=feature,
            base_ref=base_ref,
            feature_ref=feature_ref,
        )

    async def _find_ref(self, directory: Path, branch: str, remote: str, prefer_remote: bool) -> str:
        local_ref = f"{HEADS_PREFIX}{branch}"
        remote_ref = f"{REMOTES_PREFIX}{remote}/{branch}"
        candidates = [remote_ref, local_ref] if prefer_remote else [local_ref, remote_ref]
        for ref in candidates:
            result = await self.executor.execute(
                ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], directory
            )
            if result.ok:
                return ref
        raise DiffPilotError(
            ErrorCode.GIT_COMMAND_FAILED,
            f"Branch '{branch}' was not found locally or on remote '{remote}'",
            "Check the branch name, or fetch the remote first (fetch=true).",
            {"branch": branch, "remote": remote},
        )

    async def _fetch_if_requested(self, directory: Path, remote: str, fetch: bool) -> None:
        if not fetch:
            return
        remote = validate_remote_name(remote or self.default_remote)
        fetch_result = await self.executor.execute(["fetch", remote], directory)
        self._require_success(fetch_result, "git fetch failed")

    async def _range_diff(self, directory: Path, branch_range: BranchRange) -> str:
        diff_result = await self.executor.execute(
            ["diff", "--no-color", branch_range.three_dot, "--"], directory
        )
        self._require_success(diff_result, "git diff failed")
        return diff_result.output if diff_result.has_output else NO_CHANGES_MESSAGE

    async def _change_summary(self, directory: Path, branch_range: BranchRange) -> str:
        stat_result = await self.executor.execute(
            ["diff", "--stat", "--no-color", branch_range.three_dot, "--"], directory
        )
        self._require_success(stat_result, "git diff --stat failed")
        return stat_result.output.strip()

    async def _commit_subjects(self, directory: Path, branch_range: BranchRange) -> list[str]:
        log_result = await self.executor.execute(
            ["log", "--oneline", "--no-color", branch_range.two_dot, "--"], directory
        )
        self._require_success(log_result, "git log failed")
        return [line.strip() for line in log_result.output.splitlines() if line.strip()]

    def _require_success(self, result: CommandResult, operation: str) -> None:
        if result.ok:
            return
        if result.timed_out:
            raise DiffPilotError(
                ErrorCode.TIMEOUT,
                f"{operation}: command timed out",
                "Retry, or raise DIFFPILOT_MCP_GIT_TIMEOUT_SECONDS for large repositories.",
            )
        raise DiffPilotError(
            ErrorCode.GIT_COMMAND_FAILED,
            operation,
            "Inspect details.output for the git diagnostic.",
            {"exit_code": result.exit_code, "output": result.output.strip()},
        )

    def _resolve_repository(self, directory: str) -> Path:
        """Resolve a directory and require it to be inside a git work tree."""
        _, resolved = self._resolve_existing_directory_with_metadata(directory)
        for candidate in (resolved, *resolved.parents):
            if (candidate / ".git").exists():
                return resolved
        raise DiffPilotError(
            ErrorCode.NOT_A_GIT_REPOSITORY,
            f"Not a git repository: {resolved}",
            "Point directory (or DIFFPILOT_WORKSPACE) at a git working tree.",
            {"directory": str(resolved)},
        )

    def _resolve_existing_directory_with_metadata(self, directory: str) -> tuple[Path, Path]:
        """Resolve a directory path, applying optional host/container path mapping."""
        requested = self._normalize_runtime_path(directory or self._workspace)
        candidates = self._build_directory_candidates(requested)
        blocked_paths: list[Path] = []

        for candidate in candidates:
            if not candidate.is_dir():
                continue
            if self._allowed_roots and not self._is_allowed_directory(candidate):
                blocked_paths.append(candidate)
                continue
            return requested, candidate

        details: dict[str, Any] = {
            "requested_directory": str(requested),
            "candidate_paths": [str(path) for path in candidates],
        }
        if blocked_paths:
            details["blocked_paths"] = [str(path) for path in blocked_paths]
            details["allowed_roots"] = [str(root) for root in self._allowed_roots]
            raise DiffPilotError(
                ErrorCode.INVALID_DIRECTORY,
                f"Directory path is outside configured allowed roots: {directory}",
                "Use a path under DIFFPILOT_MCP_ALLOWED_ROOTS or adjust the allowlist.",
                details=details,
            )

        suggestion = "Provide an existing directory path."
        if len(candidates) > 1:
            suggestion = (
                "Provide an existing directory path or configure DIFFPILOT_MCP_PATH_MAP to "
                "translate host paths to runtime paths."
            )
        raise DiffPilotError(
            ErrorCode.INVALID_DIRECTORY,
            f"Invalid directory path: {directory or requested}",
            suggestion,
            details=details,
        )

    def _build_directory_candidates(self, requested: Path) -> list[Path]:
        candidates: list[Path] = [requested]
        for source_root, target_root in self._path_mappings:
            try:
                suffix = requested.relative_to(source_root)
            except ValueError:
                continue
            mapped = (target_root / suffix).resolve(strict=False)
            if mapped not in candidates:
                candidates.append(mapped)
        return candidates

    def _is_allowed_directory(self, path: Path) -> bool:
        return any(path == root or root in path.parents for root in self._allowed_roots)

    def _normalize_runtime_path(self, value: str) -> Path:
        normalized = str(value).strip() or "."
        return Path(normalized).expanduser().resolve(strict=False)

    def _normalize_path_mappings(
        self,
        mappings: list[tuple[str, str]] | tuple[tuple[str, str], ...],
    ) -> tuple[tuple[Path, Path], ...]:
        """Normalize mappings, longest source prefix first."""
        normalized = {
            (_absolute_path(source, "path_mappings.from"), _absolute_path(target, "path_mappings.to"))
            for source, target in mappings
        }
        return tuple(sorted(normalized, key=lambda item: len(item[0].parts), reverse=True))

    def _normalize_allowed_roots(self, roots: list[str] | tuple[str, ...]) -> tuple[Path, ...]:
        normalized = {_absolute_path(root, "allowed_roots") for root in roots}
        return tuple(sorted(normalized, key=lambda item: len(item.parts), reverse=True))


def truncate_content(content: str, max_length: int = MAX_DIFF_CONTENT_LENGTH) -> tuple[str, bool]:
    """Cut ``content`` to ``max_length`` characters, appending a size note."""
    if max_length <= 0 or len(content) <= max_length:
        return content, False
    note = (
        f"\n\n[... Diff truncated at {max_length:,} characters. "
        f"Total size: {len(content):,} characters]"
    )
    return content[:max_length] + note, True


def parse_numstat(output: str) -> list[FileChange]:
    """Parse ``git diff --numstat`` lines; binary files report ``-`` counts."""
    files: list[FileChange] = []
    for line in output.splitlines():
        parts = line.split("\t", 2)
        if len(parts) != 3 or not parts[2].strip():
            continue
        added, deleted, path = parts
        if added == "-" and deleted == "-":
            files.append(FileChange(path=path, binary=True))
            continue
        if not (added.isdigit() and deleted.isdigit()):
            continue
        files.append(FileChange(path=path, additions=int(added), deletions=int(deleted)))
    return files


def _short_ref(ref: str) -> str:
    for prefix in (HEADS_PREFIX, REMOTES_PREFIX):
        if ref.startswith(prefix):
            return ref[len(prefix) :]
    return ref


def _absolute_path(value: str, field_name: str) -> Path:
    normalized = str(value).strip()
    if not normalized:
        raise ValueError(f"{field_name} must be a non-empty absolute path.")
    path = Path(normalized).expanduser()
    if not path.is_absolute():
        raise ValueError(f"{field_name} must be an absolute path: {normalized}")
    return path.resolve(strict=False)


def _detached_head_error(directory: Path) -> DiffPilotError:
    return DiffPilotError(
        ErrorCode.DETACHED_HEAD,
        "Could not determine the current branch; HEAD may be detached.",
        "Check out a branch or pass the branch name explicitly.",
        {"directory": str(directory)},
    )


def _unresolved_base_error(feature_branch: str) -> DiffPilotError:
    return DiffPilotError(
        ErrorCode.BASE_BRANCH_UNRESOLVED,
        f"Could not determine the base branch for '{feature_branch}'.",
        "Pass base_branch explicitly (e.g. 'main' or 'develop').",
        {"feature_branch": feature_branch},
    )


def build_engine(
    runtime_git: RuntimeGitDefaults,
    path_resolution: RuntimePathResolutionDefaults,
) -> DiffPilotEngine:
    """Create an engine wired to a git executor with the configured timeout."""
    executor = GitCommandExecutor(default_timeout_seconds=runtime_git.git_timeout_seconds)
    return DiffPilotEngine(
        executor=executor,
        path_mappings=path_resolution.path_mappings,
        allowed_roots=path_resolution.allowed_roots,
        workspace=runtime_git.workspace,
        default_remote=runtime_git.default_remote,
    )
