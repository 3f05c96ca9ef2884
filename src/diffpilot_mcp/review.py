"""Prompt and report builders for PR review, titles, commits and changelogs."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import PurePosixPath

from .models import ChangeCategory, ChangelogEntry, ChangelogFormat, CommitStyle, TitleStyle

TICKET_PATTERN = re.compile(r"[A-Za-z]+-\d+")
CONVENTIONAL_PREFIX_PATTERN = re.compile(
    r"^(feat|fix|docs|style|refactor|test|chore|perf|ci|build|revert)(\([^)]+\))?!?:\s*",
    re.IGNORECASE,
)
LOG_FIELD_SEPARATOR = "\x1f"

REVIEW_CHECKLIST: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "Security Vulnerabilities (highest priority)",
        (
            "**Injection Flaws**: SQL, command, LDAP and XPath injection",
            "**XSS**: reflected, stored and DOM-based cross-site scripting",
            "**Authentication/Authorization**: broken auth, missing access controls, privilege escalation",
            "**Sensitive Data Exposure**: hardcoded secrets, PII leakage, insecure transmission",
            "**Insecure Deserialization**: untrusted data deserialized without validation",
            "**SSRF/CSRF**: server-side and cross-site request forgery",
            "**Path Traversal**: directory traversal and file inclusion",
            "**Cryptographic Failures**: weak algorithms, poor key management, missing encryption",
        ),
    ),
    (
        "Correctness & Logic Errors",
        (
            "**Logic Flaws**: incorrect conditions, off-by-one errors, race conditions",
            "**Null Handling**: missing None/null checks, uninitialized variables",
            "**Edge Cases**: boundary conditions, empty inputs, overflow",
            "**Resource Leaks**: unclosed connections, file handles or memory",
            "**Concurrency Issues**: thread safety, deadlocks, data races",
        ),
    ),
    (
        "Error Handling & Resilience",
        (
            "**Missing Exception Handling**: unhandled or swallowed errors",
            "**Information Disclosure**: stack traces or verbose errors exposed to users",
            "**Fail-Open Behavior**: security controls that fail permissively",
            "**Missing Input Validation**: unvalidated or unsanitized user input",
        ),
    ),
    (
        "Performance & Efficiency",
        (
            "**N+1 Queries**: database queries issued inside loops",
            "**Memory Inefficiency**: unnecessary allocations, large object retention",
            "**Algorithm Complexity**: quadratic work where linear is possible",
            "**Resource Exhaustion**: unbounded loops, missing pagination",
        ),
    ),
    (
        "Code Quality & Maintainability",
        (
            "**Duplication**: copy-pasted logic",
            "**Design**: classes or functions with more than one responsibility",
            "**Readability**: unclear names, magic numbers",
            "**Test Coverage Gaps**: untested paths and edge cases",
        ),
    ),
)

REVIEW_OUTPUT_FORMAT = """## Output Format

Structure your review as:
1. **Critical Issues** (must fix before merge)
2. **Major Issues** (should fix, high impact)
3. **Minor Issues** (nice to fix, low impact)
4. **Suggestions** (optional improvements)

For each issue, provide:
- File path and line number
- Severity level (Critical/Major/Minor)
- Clear description of the problem
- Recommended fix or mitigation"""

TITLE_GUIDANCE: dict[TitleStyle, tuple[str, ...]] = {
    TitleStyle.CONVENTIONAL: (
        "**Format:** `type(scope): description`",
        "",
        "Types: `feat`, `fix`, `refactor`, `chore`, `docs`, `test`, `perf`, `style`",
        "",
        "Examples:",
        "- `feat(auth): add OAuth2 login support`",
        "- `fix(api): handle null response from external service`",
        "- `refactor(git): reorganize service into modular structure`",
    ),
    TitleStyle.TICKET: (
        "**Format:** `[{ticket}] Description`",
        "",
        "Examples:",
        "- `[PROJ-123] Add user authentication flow`",
        "- `[BUG-456] Fix null reference in order processing`",
    ),
    TitleStyle.DESCRIPTIVE: (
        "**Format:** Clear, concise description starting with a verb",
        "",
        "Examples:",
        "- `Add OAuth2 login support for enterprise users`",
        "- `Fix null reference exception in order processing`",
        "- `Reorganize git service into modular architecture`",
    ),
}

DESCRIPTION_CHECKLIST = (
    "- [ ] Code follows project style guidelines",
    "- [ ] Self-review completed",
    "- [ ] Tests added/updated for changes",
    "- [ ] Documentation updated if needed",
    "- [ ] No breaking changes (or documented)",
)

TEST_PATH_MARKERS = ("test", "spec")
DOC_SUFFIXES = (".md", ".rst", ".txt", ".adoc")
CONFIG_SUFFIXES = (".json", ".yaml", ".yml", ".toml", ".ini", ".cfg", ".conf", ".env")
FIX_KEYWORDS = ("fix", "bug", "error", "issue")


def extract_ticket(branch: str) -> str | None:
    """Return the first ``ABC-123`` style ticket id in a branch name, upper-cased."""
    match = TICKET_PATTERN.search(branch)
    return match.group(0).upper() if match else None


def _fenced(body: str, language: str = "") -> list[str]:
    return [f"```{language}", body.strip() or "(none)", "```", ""]


def build_review_prompt(
    *,
    base_branch: str,
    feature_branch: str,
    change_summary: str,
    diff: str,
    focus_areas: str = "",
) -> str:
    """Render a code-review request that asks for defects before praise."""
    lines = ["# Code Review Request", "", f"**Branch:** `{feature_branch}` -> `{base_branch}`", ""]
    if change_summary.strip():
        lines += ["## Change Summary", *_fenced(change_summary)]

    lines += [
        "## Review Instructions",
        "",
        "**Critical review mode**: focus on finding problems, not praise.",
        "",
        "Analyze the code changes below and identify all issues. "
        "Limit positive feedback to 1-2 items and prioritize defects.",
        "",
    ]
    for title, items in REVIEW_CHECKLIST:
        lines.append(f"### {title}")
        lines.extend(f"- {item}" for item in items)
        lines.append("")

    if focus_areas.strip():
        lines += [f"**Additional Focus Areas:** {focus_areas.strip()}", ""]

    lines += ["## Diff", "", *_fenced(diff, "diff"), "---", "", REVIEW_OUTPUT_FORMAT]
    return "\n".join(lines)


def build_title_prompt(
    *,
    feature_branch: str,
    style: TitleStyle,
    ticket: str | None,
    commits: Iterable[str],
    change_summary: str,
) -> str:
    lines = ["# PR Title Generator", "", f"**Branch:** `{feature_branch}`", f"**Style:** {style.value}"]
    if ticket:
        lines.append(f"**Ticket:** {ticket}")
    lines += [
        "",
        "## Commits in this PR",
        *_fenced("\n".join(commits)),
        "## Files Changed",
        *_fenced(change_summary),
        "## Instructions",
        "",
        "Based on the commits and changes above, generate a PR title following these guidelines:",
        "",
    ]
    lines.extend(line.format(ticket=ticket or "TICKET-XXX") for line in TITLE_GUIDANCE[style])
    lines += ["", "---", "Please provide 2-3 title suggestions based on the actual changes."]
    return "\n".join(lines)


def build_description_prompt(
    *,
    base_branch: str,
    feature_branch: str,
    ticket: str | None,
    ticket_url: str,
    commits: Iterable[str],
    change_summary: str,
    diff: str,
    include_checklist: bool = True,
) -> str:
    lines = ["# PR Description Generator", "", f"**Branch:** `{feature_branch}` -> `{base_branch}`"]
    if ticket:
        lines.append(f"**Ticket:** {ticket}")
    lines += [
        "",
        "## Commits",
        *_fenced("\n".join(commits)),
        "## Files Changed",
        *_fenced(change_summary),
        "## Diff",
        *_fenced(diff, "diff"),
        "---",
        "",
        "## Instructions",
        "",
        "Based on the commits, files changed and diff above, generate a PR description "
        "using this template:",
        "",
        "```markdown",
        "## Summary",
        "[Brief description of what this PR does and why]",
        "",
    ]
    if ticket_url:
        lines += ["## Related Issue", f"[{ticket or 'Ticket'}]({ticket_url})", ""]
    elif ticket:
        lines += ["## Related Issue", ticket, ""]

    lines += [
        "## Changes",
        "- [List key changes, one per line]",
        "- [Focus on WHAT changed and WHY]",
        "- [Group related changes together]",
        "",
        "## Testing",
        "- [How was this tested?]",
        "- [Any manual testing steps needed?]",
        "- [Were unit tests added/updated?]",
    ]
    if include_checklist:
        lines += ["", "## Checklist", *DESCRIPTION_CHECKLIST]
    lines += ["```", "", "Please fill in the template based on the actual changes shown above."]
    return "\n".join(lines)


@dataclass(frozen=True)
class ChangeAnalysis:
    files: tuple[str, ...]
    lines_added: int
    lines_removed: int

    @property
    def change_type(self) -> str:
        if self.lines_added > self.lines_removed * 2:
            return "addition"
        if self.lines_removed > self.lines_added * 2:
            return "removal"
        return "modification"


def analyze_changes(diff: str) -> ChangeAnalysis:
    """Count files and added/removed lines in a unified diff."""
    files: list[str] = []
    added = removed = 0
    for line in diff.splitlines():
        if line.startswith("+++ b/"):
            files.append(line[len("+++ b/") :])
        elif line.startswith("+") and not line.startswith("+++"):
            added += 1
        elif line.startswith("-") and not line.startswith("---"):
            removed += 1
    return ChangeAnalysis(files=tuple(files), lines_added=added, lines_removed=removed)


def is_test_path(path: str) -> bool:
    lowered = path.lower()
    return any(marker in lowered for marker in TEST_PATH_MARKERS)


def is_doc_path(path: str) -> bool:
    name = PurePosixPath(path.lower())
    return name.suffix in DOC_SUFFIXES or name.stem == "readme" or "docs" in name.parts


def is_config_path(path: str) -> bool:
    return PurePosixPath(path.lower()).suffix in CONFIG_SUFFIXES


def determine_commit_type(analysis: ChangeAnalysis, diff: str) -> str:
    """Pick a conventional-commit type, judging by file kinds before content."""
    files = analysis.files
    if files and all(is_test_path(path) for path in files):
        return "test"
    if files and all(is_doc_path(path) for path in files):
        return "docs"
    if files and all(is_config_path(path) for path in files):
        return "chore"
    added_text = "\n".join(
        line[1:].lower() for line in diff.splitlines() if line.startswith("+") and not line.startswith("+++")
    )
    if any(keyword in added_text for keyword in FIX_KEYWORDS):
        return "fix"
    if analysis.lines_removed > analysis.lines_added:
        return "refactor"
    return "feat"


def build_commit_template(
    *,
    commit_type: str,
    style: CommitStyle,
    scope: str = "",
    include_body: bool = True,
) -> str:
    if style is CommitStyle.SIMPLE:
        subject = "<Brief description of changes>"
    else:
        scope_part = f"({scope})" if scope else ""
        subject = f"{commit_type}{scope_part}: <brief description>"
    if not include_body:
        return subject
    return f"{subject}\n\n<Detailed explanation of what changed and why>"


def parse_changelog_log(output: str) -> list[ChangelogEntry]:
    """Parse ``git log`` lines written with :data:`LOG_FIELD_SEPARATOR` between fields."""
    entries: list[ChangelogEntry] = []
    for line in output.splitlines():
        parts = line.split(LOG_FIELD_SEPARATOR)
        if len(parts) != 4 or not parts[0].strip():
            continue
        commit_hash, subject, author, date = (part.strip() for part in parts)
        entries.append(
            ChangelogEntry(
                hash=commit_hash,
                message=subject,
                author=author,
                date=date,
                category=categorize_commit(subject),
            )
        )
    return entries


def categorize_commit(message: str) -> ChangeCategory:
    lowered = message.lower()
    if lowered.startswith("feat") or "add " in lowered or "new " in lowered:
        return ChangeCategory.ADDED
    if lowered.startswith("fix") or "bug" in lowered or "issue" in lowered:
        return ChangeCategory.FIXED
    if (
        lowered.startswith("refactor")
        or "change" in lowered
        or "update" in lowered
        or "improve" in lowered
    ):
        return ChangeCategory.CHANGED
    if "deprecat" in lowered:
        return ChangeCategory.DEPRECATED
    if "remove" in lowered or "delete" in lowered:
        return ChangeCategory.REMOVED
    if "security" in lowered or "vulnerab" in lowered or "cve" in lowered:
        return ChangeCategory.SECURITY
    return ChangeCategory.OTHER


def clean_commit_message(message: str) -> str:
    """Drop a conventional-commit prefix and capitalize what is left."""
    cleaned = CONVENTIONAL_PREFIX_PATTERN.sub("", message, count=1).strip()
    return cleaned[:1].upper() + cleaned[1:]


def render_changelog(
    entries: list[ChangelogEntry],
    *,
    base_branch: str,
    feature_branch: str,
    changelog_format: ChangelogFormat,
) -> str:
    lines = ["# Changelog", "", f"Changes from `{base_branch}` to `{feature_branch}`"]
    if entries:
        # git log lists newest first.
        lines.append(f"Period: {entries[-1].date} to {entries[0].date}")
    lines.append("")

    if changelog_format is ChangelogFormat.KEEPACHANGELOG:
        lines += ["## [Unreleased]", ""]
        for category in ChangeCategory:
            members = [entry for entry in entries if entry.category is category]
            if not members:
                continue
            lines.append(f"### {category.value}")
            lines.extend(f"- {clean_commit_message(entry.message)} ({entry.hash})" for entry in members)
            lines.append("")
    else:
        lines += ["## Changes", ""]
        lines.extend(f"- {entry.message} ({entry.hash}) - {entry.author}" for entry in entries)
        lines.append("")

    lines += ["---", "", "*Generated by DiffPilot*"]
    return "\n".join(lines)
