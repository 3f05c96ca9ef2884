from __future__ import annotations

import pytest

from diffpilot_mcp.models import ChangeCategory, ChangelogFormat, CommitStyle, TitleStyle
from diffpilot_mcp.review import (
    analyze_changes,
    build_commit_template,
    build_description_prompt,
    build_review_prompt,
    build_title_prompt,
    categorize_commit,
    clean_commit_message,
    determine_commit_type,
    extract_ticket,
    parse_changelog_log,
    render_changelog,
)

SAMPLE_DIFF = "\n".join(
    [
        "diff --git a/src/app.py b/src/app.py",
        "--- a/src/app.py",
        "+++ b/src/app.py",
        "@@ -1,2 +1,3 @@",
        " import os",
        "+import sys",
        "+print(sys.argv)",
        "-print(os.getcwd())",
    ]
)


@pytest.mark.parametrize(
    ("branch", "expected"),
    [
        ("feature/PROJ-123-login", "PROJ-123"),
        ("bugfix/abc-42", "ABC-42"),
        ("main", None),
    ],
)
def test_extract_ticket(branch: str, expected: str | None) -> None:
    assert extract_ticket(branch) == expected


def test_review_prompt_contains_summary_diff_and_focus() -> None:
    prompt = build_review_prompt(
        base_branch="main",
        feature_branch="feature/x",
        change_summary=" src/app.py | 3 ++-",
        diff=SAMPLE_DIFF,
        focus_areas="thread safety",
    )

    assert prompt.startswith("# Code Review Request")
    assert "**Branch:** `feature/x` -> `main`" in prompt
    assert "## Change Summary" in prompt
    assert "### Security Vulnerabilities (highest priority)" in prompt
    assert "**Additional Focus Areas:** thread safety" in prompt
    assert "```diff\n" + SAMPLE_DIFF + "\n```" in prompt
    assert prompt.rstrip().endswith("- Recommended fix or mitigation")


def test_review_prompt_omits_empty_sections() -> None:
    prompt = build_review_prompt(base_branch="main", feature_branch="f", change_summary="", diff="x")
    assert "## Change Summary" not in prompt
    assert "Additional Focus Areas" not in prompt


def test_title_prompt_uses_ticket_for_ticket_style() -> None:
    prompt = build_title_prompt(
        feature_branch="feature/PROJ-7-search",
        style=TitleStyle.TICKET,
        ticket="PROJ-7",
        commits=["abc123 add search"],
        change_summary="search.py | 10 +",
    )

    assert "**Ticket:** PROJ-7" in prompt
    assert "**Format:** `[PROJ-7] Description`" in prompt
    assert "abc123 add search" in prompt


def test_title_prompt_placeholder_ticket_when_branch_has_none() -> None:
    prompt = build_title_prompt(
        feature_branch="feature/search",
        style=TitleStyle.TICKET,
        ticket=None,
        commits=[],
        change_summary="",
    )
    assert "`[TICKET-XXX] Description`" in prompt
    assert "**Ticket:**" not in prompt


def test_description_prompt_links_ticket_and_toggles_checklist() -> None:
    with_checklist = build_description_prompt(
        base_branch="main",
        feature_branch="feature/PROJ-9",
        ticket="PROJ-9",
        ticket_url="https://tracker.example.com/PROJ-9",
        commits=["abc fix search"],
        change_summary="search.py | 2 +-",
        diff=SAMPLE_DIFF,
    )
    without_checklist = build_description_prompt(
        base_branch="main",
        feature_branch="feature/plain",
        ticket=None,
        ticket_url="",
        commits=[],
        change_summary="",
        diff="",
        include_checklist=False,
    )

    assert "[PROJ-9](https://tracker.example.com/PROJ-9)" in with_checklist
    assert "## Checklist" in with_checklist
    assert "## Related Issue" not in without_checklist
    assert "## Checklist" not in without_checklist
    assert "## Testing" in without_checklist


def test_analyze_changes_counts_lines_and_files() -> None:
    analysis = analyze_changes(SAMPLE_DIFF)
    assert analysis.files == ("src/app.py",)
    assert analysis.lines_added == 2
    assert analysis.lines_removed == 1
    assert analysis.change_type == "modification"


def test_commit_type_prefers_file_kinds() -> None:
    tests_only = "+++ b/tests/test_app.py\n+def test_x():\n+    assert fix()\n"
    docs_only = "+++ b/README.md\n+Usage\n+++ b/docs/guide.rst\n+More\n"
    config_only = "+++ b/pyproject.toml\n+[tool.x]\n"

    assert determine_commit_type(analyze_changes(tests_only), tests_only) == "test"
    assert determine_commit_type(analyze_changes(docs_only), docs_only) == "docs"
    assert determine_commit_type(analyze_changes(config_only), config_only) == "chore"


def test_commit_type_falls_back_to_content() -> None:
    fix = "+++ b/src/app.py\n+# fix off-by-one bug\n+x = 1\n"
    refactor = "+++ b/src/app.py\n+x = 1\n-a = 1\n-b = 2\n"
    feature = SAMPLE_DIFF

    assert determine_commit_type(analyze_changes(fix), fix) == "fix"
    assert determine_commit_type(analyze_changes(refactor), refactor) == "refactor"
    assert determine_commit_type(analyze_changes(feature), feature) == "feat"


def test_commit_template_styles() -> None:
    assert (
        build_commit_template(commit_type="feat", style=CommitStyle.CONVENTIONAL, scope="api", include_body=False)
        == "feat(api): <brief description>"
    )
    simple = build_commit_template(commit_type="fix", style=CommitStyle.SIMPLE)
    assert simple.startswith("<Brief description of changes>\n\n")


@pytest.mark.parametrize(
    ("message", "category"),
    [
        ("feat: add search", ChangeCategory.ADDED),
        ("fix: crash on empty input", ChangeCategory.FIXED),
        ("refactor parser", ChangeCategory.CHANGED),
        ("Deprecate old endpoint", ChangeCategory.DEPRECATED),
        ("Remove legacy flag", ChangeCategory.REMOVED),
        ("Patch CVE-2024-1234", ChangeCategory.SECURITY),
        ("Bump version", ChangeCategory.OTHER),
    ],
)
def test_categorize_commit(message: str, category: ChangeCategory) -> None:
    assert categorize_commit(message) is category


def test_clean_commit_message() -> None:
    assert clean_commit_message("feat(api): add search endpoint") == "Add search endpoint"
    assert clean_commit_message("fix!: drop python 3.8") == "Drop python 3.8"
    assert clean_commit_message("plain message") == "Plain message"


def test_parse_changelog_log_skips_malformed_lines() -> None:
    output = (
        "a1\x1ffeat: add search\x1fAda\x1f2024-05-02\n"
        "not a log line\n"
        "b2\x1ffix: typo | pipes\x1fBob\x1f2024-05-01\n"
    )

    entries = parse_changelog_log(output)

    assert [(entry.hash, entry.category) for entry in entries] == [
        ("a1", ChangeCategory.ADDED),
        ("b2", ChangeCategory.FIXED),
    ]
    assert entries[1].message == "fix: typo | pipes"


def test_render_changelog_keepachangelog_groups_by_category() -> None:
    entries = parse_changelog_log(
        "a1\x1ffeat: add search\x1fAda\x1f2024-05-02\nb2\x1ffix: typo\x1fBob\x1f2024-05-01\n"
    )

    text = render_changelog(
        entries,
        base_branch="main",
        feature_branch="feature/search",
        changelog_format=ChangelogFormat.KEEPACHANGELOG,
    )

    assert "Period: 2024-05-01 to 2024-05-02" in text
    assert "## [Unreleased]" in text
    assert text.index("### Added") < text.index("### Fixed")
    assert "- Add search (a1)" in text
    assert "### Removed" not in text
    assert text.endswith("*Generated by DiffPilot*")


def test_render_changelog_simple_lists_authors() -> None:
    entries = parse_changelog_log("a1\x1ffeat: add search\x1fAda\x1f2024-05-02\n")

    text = render_changelog(
        entries,
        base_branch="main",
        feature_branch="f",
        changelog_format=ChangelogFormat.SIMPLE,
    )

    assert "- feat: add search (a1) - Ada" in text
    assert "[Unreleased]" not in text
