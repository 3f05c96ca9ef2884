"""Command line interface for DiffPilot with parity to MCP tools."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from pydantic import ValidationError

from .engine import DiffPilotEngine, build_engine
from .errors import DiffPilotError, ErrorCode
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
    configure_logging,
    get_runtime_git_defaults,
    get_runtime_path_resolution_defaults,
)
from .validation import build_validation_error_details

# Tests may pin an engine here; otherwise main() builds one from the environment.
engine: DiffPilotEngine | None = None

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_SECRETS_FOUND = 3


def _print_payload(payload: dict[str, Any], as_json: bool) -> None:
    if as_json:
        print(json.dumps(payload, indent=2))
        return

    status = payload.get("status", "unknown").upper()
    message = payload.get("message", "")
    print(f"[{status}] {message}")

    if payload.get("status") == "error":
        error_code = payload.get("error_code", "")
        suggestion = payload.get("suggestion", "")
        if error_code:
            print(f"error_code: {error_code}")
        if suggestion:
            print(f"suggestion: {suggestion}")
        return

    for key in ("branch", "remote", "base_branch", "feature_branch", "compare_range", "ticket"):
        if key in payload and payload[key] not in ("", None):
            print(f"{key}: {payload[key]}")

    if "files_changed" in payload:
        for item in payload["files"]:
            if item.get("binary"):
                print(f"  {item.get('path')} (binary)")
            else:
                print(f"  {item.get('path')} +{item.get('additions', 0)} -{item.get('deletions', 0)}")
        print(
            f"total: {payload.get('files_changed', 0)} files, "
            f"+{payload.get('total_additions', 0)} -{payload.get('total_deletions', 0)}"
        )

    if "commits" in payload:
        print(f"commits ({len(payload['commits'])}):")
        for commit in payload["commits"]:
            print(f"  {commit}")

    for finding in payload.get("findings", []):
        location = finding.get("file", "")
        if finding.get("line") is not None:
            location = f"{location}:{finding['line']}"
        print(
            f"  [{finding.get('type')}] {location} ({finding.get('source')}) "
            f"{finding.get('masked_match')}"
        )

    if payload.get("suggested_message"):
        print()
        print(payload["suggested_message"])

    for key in ("diff", "prompt", "changelog"):
        if payload.get(key):
            print()
            print(payload[key])


def _error_payload(exc: Exception) -> dict[str, Any]:
    if isinstance(exc, DiffPilotError):
        return exc.to_payload()
    if isinstance(exc, ValidationError):
        return {
            "status": "error",
            "error_code": ErrorCode.INVALID_INPUT.value,
            "message": "Input validation failed",
            "suggestion": "Check command arguments and constraints.",
            "details": build_validation_error_details(exc),
        }
    return {
        "status": "error",
        "error_code": ErrorCode.INTERNAL_ERROR.value,
        "message": str(exc),
        "suggestion": "Retry with --json for diagnostics and inspect logs.",
        "details": {},
    }


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-d",
        "--directory",
        default="",
        help="Repository directory (default: DIFFPILOT_WORKSPACE or current directory)",
    )
    parser.add_argument("--json", action="store_true", help="Output machine-readable JSON")


def _add_remote_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--remote",
        default="",
        help="Remote name (default: DIFFPILOT_MCP_DEFAULT_REMOTE or origin)",
    )


def _add_range_arguments(parser: argparse.ArgumentParser, with_fetch: bool = False) -> None:
    parser.add_argument("--base", default="", help="Base branch (auto-detected when omitted)")
    parser.add_argument("--feature", default="", help="Feature branch (default: current branch)")
    _add_remote_argument(parser)
    if with_fetch:
        parser.add_argument("--fetch", action="store_true", help="Fetch the remote first")


def _range_fields(args: argparse.Namespace) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "directory": args.directory,
        "base_branch": args.base,
        "feature_branch": args.feature,
        "remote": args.remote,
    }
    if hasattr(args, "fetch"):
        fields["fetch"] = args.fetch
    return fields


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="diffpilot-cli", description="DiffPilot PR review CLI")
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default=None,
        help="Enable stderr diagnostics at this level",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    current = subparsers.add_parser("current-branch", help="Show the checked-out branch")
    _add_common_arguments(current)

    base = subparsers.add_parser("base-branch", help="Find the branch the current branch was created from")
    _add_common_arguments(base)
    base.add_argument("--branch", default="", help="Branch to inspect (default: current branch)")
    _add_remote_argument(base)

    diff = subparsers.add_parser("diff", help="Show the PR diff between base and feature")
    _add_common_arguments(diff)
    _add_range_arguments(diff, with_fetch=True)

    stats = subparsers.add_parser("stats", help="Summarize files and commits between base and feature")
    _add_common_arguments(stats)
    _add_range_arguments(stats)

    review = subparsers.add_parser("review", help="Build a code-review prompt for the PR diff")
    _add_common_arguments(review)
    _add_range_arguments(review, with_fetch=True)
    review.add_argument("--focus", default="", help="Extra focus areas for the reviewer")

    title = subparsers.add_parser("pr-title", help="Build a prompt for PR title suggestions")
    _add_common_arguments(title)
    _add_range_arguments(title, with_fetch=True)
    title.add_argument(
        "--style",
        choices=[style.value for style in TitleStyle],
        default=TitleStyle.CONVENTIONAL.value,
        help="Title style (default: conventional)",
    )

    description = subparsers.add_parser("pr-description", help="Build a prompt for the PR description")
    _add_common_arguments(description)
    _add_range_arguments(description, with_fetch=True)
    description.add_argument("--ticket-url", default="", help="Link to the tracked issue")
    description.add_argument(
        "--checklist",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Append a reviewer checklist (default: enabled)",
    )

    scan = subparsers.add_parser(
        "scan-secrets",
        help="Scan added lines for credentials (exit code 3 when something is found)",
    )
    _add_common_arguments(scan)
    _add_range_arguments(scan)
    scan.add_argument("--staged", action=argparse.BooleanOptionalAction, default=True)
    scan.add_argument("--unstaged", action=argparse.BooleanOptionalAction, default=True)
    scan.add_argument("--branch", action="store_true", help="Also scan the PR diff")

    commit = subparsers.add_parser("commit-message", help="Suggest a commit message for local changes")
    _add_common_arguments(commit)
    commit.add_argument(
        "--style",
        choices=[style.value for style in CommitStyle],
        default=CommitStyle.CONVENTIONAL.value,
        help="Message style (default: conventional)",
    )
    commit.add_argument("--scope", default="", help="Conventional-commit scope")
    commit.add_argument(
        "--body",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Include a body placeholder (default: enabled)",
    )

    changelog = subparsers.add_parser("changelog", help="Build a changelog from the branch commits")
    _add_common_arguments(changelog)
    _add_range_arguments(changelog, with_fetch=True)
    changelog.add_argument(
        "--format",
        dest="changelog_format",
        choices=[item.value for item in ChangelogFormat],
        default=ChangelogFormat.KEEPACHANGELOG.value,
        help="Changelog format (default: keepachangelog)",
    )

    return parser


async def _dispatch(args: argparse.Namespace, active: DiffPilotEngine) -> dict[str, Any]:
    if args.command == "current-branch":
        response = await active.current_branch(CurrentBranchRequest(directory=args.directory))
    elif args.command == "base-branch":
        response = await active.base_branch(
            BaseBranchRequest(
                directory=args.directory,
                current_branch=args.branch,
                remote=args.remote,
            )
        )
    elif args.command == "diff":
        response = await active.pr_diff(PrDiffRequest(**_range_fields(args)))
    elif args.command == "stats":
        response = await active.diff_stats(DiffStatsRequest(**_range_fields(args)))
    elif args.command == "review":
        response = await active.review_pr_changes(
            ReviewPrChangesRequest(**_range_fields(args), focus_areas=args.focus)
        )
    elif args.command == "pr-title":
        response = await active.generate_pr_title(PrTitleRequest(**_range_fields(args), style=args.style))
    elif args.command == "pr-description":
        response = await active.generate_pr_description(
            PrDescriptionRequest(
                **_range_fields(args),
                ticket_url=args.ticket_url,
                include_checklist=args.checklist,
            )
        )
    elif args.command == "scan-secrets":
        response = await active.scan_secrets(
            ScanSecretsRequest(
                **_range_fields(args),
                scan_staged=args.staged,
                scan_unstaged=args.unstaged,
                scan_branch=args.branch,
            )
        )
    elif args.command == "commit-message":
        response = await active.generate_commit_message(
            CommitMessageRequest(
                directory=args.directory,
                style=args.style,
                scope=args.scope,
                include_body=args.body,
            )
        )
    else:
        response = await active.generate_changelog(
            ChangelogRequest(**_range_fields(args), changelog_format=args.changelog_format)
        )
    return response.model_dump(mode="json")


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    as_json = bool(getattr(args, "json", False))
    if args.log_level:
        configure_logging(args.log_level)

    active = engine
    if active is None:
        try:
            active = build_engine(get_runtime_git_defaults(), get_runtime_path_resolution_defaults())
        except ValueError as exc:
            parser.error(str(exc))

    try:
        response = asyncio.run(_dispatch(args, active))
    except Exception as exc:  # noqa: BLE001
        payload = _error_payload(exc)
        _print_payload(payload, as_json=as_json)
        return EXIT_ERROR

    _print_payload(response, as_json=as_json)
    if response.get("findings_count"):
        return EXIT_SECRETS_FOUND
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
