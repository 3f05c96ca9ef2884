"""MCP server entrypoint and tool definitions for DiffPilot."""

from __future__ import annotations

import argparse
import json
import logging
import time
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Annotated, Any, Awaitable, Callable

from mcp.server.fastmcp import FastMCP
from pydantic import Field, ValidationError

from . import __version__
from .audit import AuditLogger
from .constants import (
    MAX_BRANCH_NAME_LENGTH,
    MAX_FOCUS_AREAS_LENGTH,
    MAX_REMOTE_NAME_LENGTH,
    MAX_SCOPE_LENGTH,
    MAX_TICKET_URL_LENGTH,
)
from .engine import DiffPilotEngine, build_engine
from .errors import DiffPilotError, ErrorCode
from .limits import RateLimiter
from .models import (
    BaseBranchRequest,
    ChangelogFormat,
    ChangelogRequest,
    CommitMessageRequest,
    CommitStyle,
    CurrentBranchRequest,
    DiffStatsRequest,
    PrDescriptionRequest,
    PrDiffRequest,
    PrTitleRequest,
    ReviewPrChangesRequest,
    ScanSecretsRequest,
    TitleStyle,
)
from .runtime import (
    LOG_LEVELS,
    TRANSPORTS,
    RuntimeSettings,
    configure_logging,
    describe_runtime_settings,
    load_runtime_settings,
    validate_runtime_settings,
)
from .validation import build_validation_error_details

logger = logging.getLogger(__name__)


SERVER_INSTRUCTIONS = (
    "Review local git branches before opening a pull request. "
    "Use get_current_branch and find_base_branch to learn where work started, "
    "get_pr_diff and get_diff_stats to inspect what the PR would contain, and "
    "review_pr_changes, generate_pr_title, generate_pr_description and generate_changelog "
    "for review and PR-writing prompts. scan_secrets and generate_commit_message work on "
    "uncommitted changes. Branch names are auto-detected when omitted."
)

mcp = FastMCP("diffpilot", instructions=SERVER_INSTRUCTIONS, json_response=True)

engine = DiffPilotEngine()
audit_logger = AuditLogger()
rate_limiter = RateLimiter()

READ_ONLY_TOOL_ANNOTATIONS = {
    "readOnlyHint": True,
    "idempotentHint": True,
    "destructiveHint": False,
    "openWorldHint": False,
}

# Tools with a fetch option talk to the remote, so they are not closed-world.
NETWORK_READ_TOOL_ANNOTATIONS = {
    "readOnlyHint": True,
    "idempotentHint": True,
    "destructiveHint": False,
    "openWorldHint": True,
}


def _error_payload_from_exception(exc: Exception) -> dict[str, Any]:
    """Convert internal exceptions into stable MCP error payloads."""
    if isinstance(exc, DiffPilotError):
        payload = exc.to_payload()
    elif isinstance(exc, ValidationError):
        validation_details = build_validation_error_details(exc)
        suggestion = "Check field constraints and request schema."
        if validation_details.get("hints"):
            suggestion = "Check details.hints for accepted values and retry."
        payload = {
            "status": "error",
            "error_code": ErrorCode.INVALID_INPUT.value,
            "message": "Input validation failed",
            "suggestion": suggestion,
            "details": validation_details,
        }
    else:
        logger.exception("Unhandled server exception", exc_info=exc)
        payload = {
            "status": "error",
            "error_code": ErrorCode.INTERNAL_ERROR.value,
            "message": str(exc),
            "suggestion": "Check server logs and retry the operation.",
            "details": {},
        }
    return payload


def _build_correlation_id() -> str:
    """Generate short operation correlation IDs for diagnostics."""
    return uuid.uuid4().hex[:12]


def _is_timeout_exception(exc: Exception) -> bool:
    """Return whether an exception represents timeout/deadline exhaustion."""
    if isinstance(exc, TimeoutError):
        return True
    if isinstance(exc, DiffPilotError):
        return exc.code == ErrorCode.TIMEOUT
    message = str(exc).lower()
    return any(marker in message for marker in ("deadline exceeded", "timed out"))


def _log_tool_phase(
    *,
    correlation_id: str,
    tool_name: str,
    phase: str,
    status: str,
    elapsed_seconds: float,
    details: dict[str, Any] | None = None,
) -> None:
    """Emit structured phase-level diagnostics for tool execution."""
    payload: dict[str, Any] = {
        "event_type": "mcp_tool_phase",
        "correlation_id": correlation_id,
        "tool_name": tool_name,
        "phase": phase,
        "status": status,
        "elapsed_ms": round(elapsed_seconds * 1000, 3),
    }
    if details:
        payload["details"] = details
    logger.info("mcp_tool_phase %s", json.dumps(payload, ensure_ascii=True, sort_keys=True))


async def _run_tool(
    tool_name: str,
    request_payload: dict[str, Any],
    operation: Callable[[], Awaitable[dict[str, Any]]],
) -> dict[str, Any]:
    """Execute tool operation and emit structured audit event."""
    total_start = time.perf_counter()
    correlation_id = _build_correlation_id()
    validation_start = time.perf_counter()
    enriched_request_payload = dict(request_payload)
    enriched_request_payload["correlation_id"] = correlation_id
    directory_resolution: dict[str, str] = {}
    directory = request_payload.get("directory")
    if isinstance(directory, str):
        try:
            directory_resolution = engine.resolve_directory(directory)
        except DiffPilotError:
            directory_resolution = {}
        else:
            enriched_request_payload.update(directory_resolution)

    allowed, retry_after_seconds = rate_limiter.allow(tool_name)
    _log_tool_phase(
        correlation_id=correlation_id,
        tool_name=tool_name,
        phase="validation",
        status="ok" if allowed else "rate_limited",
        elapsed_seconds=time.perf_counter() - validation_start,
        details={"directory_resolution_applied": bool(directory_resolution)},
    )
    if not allowed:
        error_payload = DiffPilotError(
            ErrorCode.RATE_LIMITED,
            f"Rate limit exceeded for tool '{tool_name}'",
            "Retry later or increase rate-limit-per-minute.",
            {"retry_after_seconds": retry_after_seconds},
        ).to_payload()
        return _finish_error(
            tool_name, correlation_id, total_start, enriched_request_payload, error_payload
        )

    operation_start = time.perf_counter()
    try:
        response_payload = dict(await operation())
    except Exception as exc:  # noqa: BLE001
        operation_elapsed = time.perf_counter() - operation_start
        timeout_detected = _is_timeout_exception(exc)
        _log_tool_phase(
            correlation_id=correlation_id,
            tool_name=tool_name,
            phase="operation_execution",
            status="timeout" if timeout_detected else "error",
            elapsed_seconds=operation_elapsed,
            details={"exception": exc.__class__.__name__},
        )
        if timeout_detected and not isinstance(exc, DiffPilotError):
            error_payload = DiffPilotError(
                ErrorCode.TIMEOUT,
                f"Tool '{tool_name}' timed out.",
                "Retry the request and provide correlation_id for server-side trace lookup.",
                {
                    "phase": "operation_execution",
                    "elapsed_ms": round(operation_elapsed * 1000, 3),
                },
            ).to_payload()
        else:
            error_payload = _error_payload_from_exception(exc)
        if directory_resolution:
            error_payload = {**error_payload, **directory_resolution}
        return _finish_error(
            tool_name, correlation_id, total_start, enriched_request_payload, error_payload
        )

    _log_tool_phase(
        correlation_id=correlation_id,
        tool_name=tool_name,
        phase="operation_execution",
        status="ok",
        elapsed_seconds=time.perf_counter() - operation_start,
    )
    response_payload["correlation_id"] = correlation_id
    if directory_resolution and response_payload.get("status") == "success":
        response_payload = {**response_payload, **directory_resolution}
    _log_tool_phase(
        correlation_id=correlation_id,
        tool_name=tool_name,
        phase="total",
        status="ok",
        elapsed_seconds=time.perf_counter() - total_start,
    )
    audit_logger.log_tool_event(
        tool_name=tool_name,
        status="success",
        request_payload=enriched_request_payload,
        response_payload=response_payload,
    )
    return response_payload


def _finish_error(
    tool_name: str,
    correlation_id: str,
    total_start: float,
    request_payload: dict[str, Any],
    error_payload: dict[str, Any],
) -> dict[str, Any]:
    error_payload["correlation_id"] = correlation_id
    _log_tool_phase(
        correlation_id=correlation_id,
        tool_name=tool_name,
        phase="total",
        status="error",
        elapsed_seconds=time.perf_counter() - total_start,
        details={"error_code": error_payload.get("error_code")},
    )
    audit_logger.log_tool_event(
        tool_name=tool_name,
        status="error",
        request_payload=request_payload,
        response_payload=error_payload,
    )
    return error_payload


DirectoryParam = Annotated[
    str,
    Field(description="Repository directory (blank uses DIFFPILOT_WORKSPACE or the server cwd)"),
]
RemoteParam = Annotated[
    str,
    Field(
        max_length=MAX_REMOTE_NAME_LENGTH,
        description="Remote name (blank uses the configured default remote)",
    ),
]
BaseBranchParam = Annotated[
    str,
    Field(
        max_length=MAX_BRANCH_NAME_LENGTH,
        description="Target branch of the PR; auto-detected from reflog/tracking/merge-base when blank",
    ),
]
FeatureBranchParam = Annotated[
    str,
    Field(
        max_length=MAX_BRANCH_NAME_LENGTH,
        description="Source branch of the PR; defaults to the checked-out branch",
    ),
]


@mcp.tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
async def get_current_branch(directory: DirectoryParam = "") -> dict[str, Any]:
    """Return the name of the checked-out branch."""
    request_payload = {"directory": directory}

    async def _operation() -> dict[str, Any]:
        request = CurrentBranchRequest(directory=directory)
        return (await engine.current_branch(request)).model_dump(mode="json")

    return await _run_tool("get_current_branch", request_payload=request_payload, operation=_operation)


@mcp.tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
async def find_base_branch(
    directory: DirectoryParam = "",
    current_branch: Annotated[
        str,
        Field(
            max_length=MAX_BRANCH_NAME_LENGTH,
            description="Branch whose origin should be found; defaults to the checked-out branch",
        ),
    ] = "",
    remote: RemoteParam = "",
) -> dict[str, Any]:
    """Find the branch the current branch was created from.

    Tries the branch reflog first, then the upstream tracking config, then
    merge-base ancestry against every other branch. Reports an error rather
    than guessing when the answer is ambiguous.
    """
    request_payload = {
        "directory": directory,
        "current_branch": current_branch,
        "remote": remote,
    }

    async def _operation() -> dict[str, Any]:
        request = BaseBranchRequest(directory=directory, current_branch=current_branch, remote=remote)
        return (await engine.base_branch(request)).model_dump(mode="json")

    return await _run_tool("find_base_branch", request_payload=request_payload, operation=_operation)


@mcp.tool(annotations=NETWORK_READ_TOOL_ANNOTATIONS)
async def get_pr_diff(
    directory: DirectoryParam = "",
    base_branch: BaseBranchParam = "",
    feature_branch: FeatureBranchParam = "",
    remote: RemoteParam = "",
    fetch: Annotated[
        bool,
        Field(description="Run 'git fetch <remote>' before diffing (default: false)"),
    ] = False,
) -> dict[str, Any]:
    """Get the diff between the base branch and the feature branch, as a PR would show it."""
    request_payload = {
        "directory": directory,
        "base_branch": base_branch,
        "feature_branch": feature_branch,
        "remote": remote,
        "fetch": fetch,
    }

    async def _operation() -> dict[str, Any]:
        request = PrDiffRequest(
            directory=directory,
            base_branch=base_branch,
            feature_branch=feature_branch,
            remote=remote,
            fetch=fetch,
        )
        return (await engine.pr_diff(request)).model_dump(mode="json")

    return await _run_tool("get_pr_diff", request_payload=request_payload, operation=_operation)


@mcp.tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
async def get_diff_stats(
    directory: DirectoryParam = "",
    base_branch: BaseBranchParam = "",
    feature_branch: FeatureBranchParam = "",
    remote: RemoteParam = "",
) -> dict[str, Any]:
    """Summarize changed files, line counts and commits between base and feature."""
    request_payload = {
        "directory": directory,
        "base_branch": base_branch,
        "feature_branch": feature_branch,
        "remote": remote,
    }

    async def _operation() -> dict[str, Any]:
        request = DiffStatsRequest(
            directory=directory,
            base_branch=base_branch,
            feature_branch=feature_branch,
            remote=remote,
        )
        return (await engine.diff_stats(request)).model_dump(mode="json")

    return await _run_tool("get_diff_stats", request_payload=request_payload, operation=_operation)


FetchParam = Annotated[
    bool,
    Field(description="Run 'git fetch <remote>' before reading the branches (default: false)"),
]


@mcp.tool(annotations=NETWORK_READ_TOOL_ANNOTATIONS)
async def review_pr_changes(
    directory: DirectoryParam = "",
    base_branch: BaseBranchParam = "",
    feature_branch: FeatureBranchParam = "",
    remote: RemoteParam = "",
    fetch: FetchParam = False,
    focus_areas: Annotated[
        str,
        Field(
            max_length=MAX_FOCUS_AREAS_LENGTH,
            description="Extra areas the reviewer should concentrate on, e.g. 'caching, retries'",
        ),
    ] = "",
) -> dict[str, Any]:
    """Build a critical code-review prompt for the PR diff.

    The prompt lists security, correctness, error-handling, performance and
    maintainability checks, then the diff and the expected output format.
    """
    request_payload = {
        "directory": directory,
        "base_branch": base_branch,
        "feature_branch": feature_branch,
        "remote": remote,
        "fetch": fetch,
        "focus_areas": focus_areas,
    }

    async def _operation() -> dict[str, Any]:
        request = ReviewPrChangesRequest(**request_payload)
        return (await engine.review_pr_changes(request)).model_dump(mode="json")

    return await _run_tool("review_pr_changes", request_payload=request_payload, operation=_operation)


@mcp.tool(annotations=NETWORK_READ_TOOL_ANNOTATIONS)
async def generate_pr_title(
    directory: DirectoryParam = "",
    base_branch: BaseBranchParam = "",
    feature_branch: FeatureBranchParam = "",
    remote: RemoteParam = "",
    fetch: FetchParam = False,
    style: Annotated[
        str,
        Field(description="Title style: conventional, ticket or descriptive"),
    ] = TitleStyle.CONVENTIONAL.value,
) -> dict[str, Any]:
    """Build a prompt for PR title suggestions from the branch commits and changed files."""
    request_payload = {
        "directory": directory,
        "base_branch": base_branch,
        "feature_branch": feature_branch,
        "remote": remote,
        "fetch": fetch,
        "style": style,
    }

    async def _operation() -> dict[str, Any]:
        request = PrTitleRequest(**request_payload)
        return (await engine.generate_pr_title(request)).model_dump(mode="json")

    return await _run_tool("generate_pr_title", request_payload=request_payload, operation=_operation)


@mcp.tool(annotations=NETWORK_READ_TOOL_ANNOTATIONS)
async def generate_pr_description(
    directory: DirectoryParam = "",
    base_branch: BaseBranchParam = "",
    feature_branch: FeatureBranchParam = "",
    remote: RemoteParam = "",
    fetch: FetchParam = False,
    include_checklist: Annotated[
        bool,
        Field(description="Append a reviewer checklist to the template (default: true)"),
    ] = True,
    ticket_url: Annotated[
        str,
        Field(max_length=MAX_TICKET_URL_LENGTH, description="Optional http(s) link to the tracked issue"),
    ] = "",
) -> dict[str, Any]:
    """Build a prompt that fills a PR description template from commits and diff."""
    request_payload = {
        "directory": directory,
        "base_branch": base_branch,
        "feature_branch": feature_branch,
        "remote": remote,
        "fetch": fetch,
        "include_checklist": include_checklist,
        "ticket_url": ticket_url,
    }

    async def _operation() -> dict[str, Any]:
        request = PrDescriptionRequest(**request_payload)
        return (await engine.generate_pr_description(request)).model_dump(mode="json")

    return await _run_tool(
        "generate_pr_description", request_payload=request_payload, operation=_operation
    )


@mcp.tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
async def scan_secrets(
    directory: DirectoryParam = "",
    scan_staged: Annotated[bool, Field(description="Scan 'git diff --cached' (default: true)")] = True,
    scan_unstaged: Annotated[bool, Field(description="Scan 'git diff' (default: true)")] = True,
    scan_branch: Annotated[
        bool,
        Field(description="Also scan the PR diff between base and feature (default: false)"),
    ] = False,
    base_branch: BaseBranchParam = "",
    feature_branch: FeatureBranchParam = "",
    remote: RemoteParam = "",
) -> dict[str, Any]:
    """Detect API keys, tokens, passwords and private keys in added lines.

    Matches are masked in the response. A clean scan is not proof that no
    secret is present.
    """
    request_payload = {
        "directory": directory,
        "scan_staged": scan_staged,
        "scan_unstaged": scan_unstaged,
        "scan_branch": scan_branch,
        "base_branch": base_branch,
        "feature_branch": feature_branch,
        "remote": remote,
    }

    async def _operation() -> dict[str, Any]:
        request = ScanSecretsRequest(**request_payload)
        return (await engine.scan_secrets(request)).model_dump(mode="json")

    return await _run_tool("scan_secrets", request_payload=request_payload, operation=_operation)


@mcp.tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
async def generate_commit_message(
    directory: DirectoryParam = "",
    style: Annotated[
        str,
        Field(description="Message style: conventional or simple"),
    ] = CommitStyle.CONVENTIONAL.value,
    scope: Annotated[
        str,
        Field(max_length=MAX_SCOPE_LENGTH, description="Optional conventional-commit scope, e.g. 'api'"),
    ] = "",
    include_body: Annotated[bool, Field(description="Include a body placeholder (default: true)")] = True,
) -> dict[str, Any]:
    """Suggest a commit message for staged changes, falling back to unstaged ones."""
    request_payload = {
        "directory": directory,
        "style": style,
        "scope": scope,
        "include_body": include_body,
    }

    async def _operation() -> dict[str, Any]:
        request = CommitMessageRequest(**request_payload)
        return (await engine.generate_commit_message(request)).model_dump(mode="json")

    return await _run_tool(
        "generate_commit_message", request_payload=request_payload, operation=_operation
    )


@mcp.tool(annotations=NETWORK_READ_TOOL_ANNOTATIONS)
async def generate_changelog(
    directory: DirectoryParam = "",
    base_branch: BaseBranchParam = "",
    feature_branch: FeatureBranchParam = "",
    remote: RemoteParam = "",
    fetch: FetchParam = False,
    changelog_format: Annotated[
        str,
        Field(description="Output format: keepachangelog or simple"),
    ] = ChangelogFormat.KEEPACHANGELOG.value,
) -> dict[str, Any]:
    """Group the commits the feature branch adds into a changelog."""
    request_payload = {
        "directory": directory,
        "base_branch": base_branch,
        "feature_branch": feature_branch,
        "remote": remote,
        "fetch": fetch,
        "changelog_format": changelog_format,
    }

    async def _operation() -> dict[str, Any]:
        request = ChangelogRequest(**request_payload)
        return (await engine.generate_changelog(request)).model_dump(mode="json")

    return await _run_tool("generate_changelog", request_payload=request_payload, operation=_operation)


def main() -> None:
    """Run DiffPilot MCP server in stdio or streamable HTTP mode."""
    parser = argparse.ArgumentParser(description="DiffPilot MCP server")
    try:
        settings = load_runtime_settings()
    except ValueError as exc:
        parser.error(str(exc))
    parser.add_argument(
        "--transport",
        choices=TRANSPORTS,
        default=settings.transport,
        help="Server transport mode (default: stdio).",
    )
    parser.add_argument(
        "--host",
        default=settings.host,
        help="Host for streamable HTTP transport.",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.port,
        help="Port for streamable HTTP transport.",
    )
    parser.add_argument(
        "--allow-public-http",
        action=argparse.BooleanOptionalAction,
        default=settings.allow_public_http,
        help=(
            "Allow non-loopback streamable-http host binding. "
            "Required for 0.0.0.0 or other public interface hosts."
        ),
    )
    parser.add_argument(
        "--audit-log-file",
        default=settings.audit_log_path,
        help="Optional JSONL audit log path for MCP tool calls.",
    )
    parser.add_argument(
        "--audit-redact-sensitive",
        action=argparse.BooleanOptionalAction,
        default=settings.audit_redact_sensitive,
        help="Redact sensitive-looking fields in audit logs (default: enabled).",
    )
    parser.add_argument(
        "--rate-limit-per-minute",
        type=int,
        default=settings.rate_limit_per_minute,
        help="Max calls per tool per minute (0 disables limiter).",
    )
    parser.add_argument(
        "--audit-max-field-chars",
        type=int,
        default=settings.audit_max_field_chars,
        help="Max characters for each string field written to audit logs.",
    )
    parser.add_argument(
        "--git-timeout-seconds",
        type=float,
        default=settings.git.git_timeout_seconds,
        help="Kill git commands (and their children) running longer than this.",
    )
    parser.add_argument(
        "--default-remote",
        default=settings.git.default_remote,
        help="Remote used when a request does not name one (default: origin).",
    )
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default=settings.log_level,
        help="Log level for stderr diagnostics.",
    )
    parser.add_argument(
        "--check-config",
        action="store_true",
        help="Validate runtime settings and exit without starting server transport.",
    )
    parser.add_argument(
        "--print-effective-config",
        action="store_true",
        help="Print effective runtime configuration and exit.",
    )
    args = parser.parse_args()
    effective = replace(
        settings,
        transport=str(args.transport),
        host=str(args.host),
        port=int(args.port),
        allow_public_http=bool(args.allow_public_http),
        audit_log_path=str(args.audit_log_file).strip(),
        audit_redact_sensitive=bool(args.audit_redact_sensitive),
        audit_max_field_chars=int(args.audit_max_field_chars),
        rate_limit_per_minute=int(args.rate_limit_per_minute),
        log_level=str(args.log_level),
        git=replace(
            settings.git,
            git_timeout_seconds=float(args.git_timeout_seconds),
            default_remote=str(args.default_remote).strip(),
        ),
    )
    try:
        validate_runtime_settings(effective)
    except ValueError as exc:
        parser.error(str(exc))

    configure_logging(effective.log_level)
    _apply_runtime_settings(effective)

    if args.print_effective_config:
        print(json.dumps(describe_runtime_settings(effective), indent=2, sort_keys=True))
    if args.check_config or args.print_effective_config:
        if not args.print_effective_config:
            print("Configuration is valid.")
        return

    logger.info("Starting DiffPilot MCP server %s (transport=%s)", __version__, effective.transport)
    if effective.transport == "stdio":
        mcp.run()
        return

    mcp.run(transport="streamable-http")


def _apply_runtime_settings(settings: RuntimeSettings) -> None:
    """Rebuild the module-level engine, audit logger and limiter from ``settings``."""
    global audit_logger
    global engine
    engine = build_engine(settings.git, settings.path_resolution)
    audit_logger = AuditLogger(
        log_path=Path(settings.audit_log_path) if settings.audit_log_path else None,
        redact_sensitive=settings.audit_redact_sensitive,
        max_field_chars=settings.audit_max_field_chars,
    )
    rate_limiter.configure(settings.rate_limit_per_minute)
    mcp.settings.host = settings.host
    mcp.settings.port = settings.port


if __name__ == "__main__":
    main()
