from __future__ import annotations

import asyncio
from collections.abc import Sequence
from pathlib import Path

import pytest

from diffpilot_mcp.executor import CommandResult, GitCommandExecutor
from diffpilot_mcp.resolver import (
    BranchCandidate,
    BranchResolver,
    ResolvedBranch,
    find_reflog_source,
    parse_ref_listing,
    parse_reflog,
    strip_ref_prefix,
)

REPO = Path("/repo")


class _ScriptedGit:
    """Answers git invocations from a table; anything unscripted fails like git would."""

    def __init__(self) -> None:
        self.responses: dict[tuple[str, ...], CommandResult] = {}
        self.calls: list[tuple[str, ...]] = []

    def on(self, *args: str, output: str = "", exit_code: int = 0) -> "_ScriptedGit":
        self.responses[args] = CommandResult(exit_code=exit_code, output=output)
        return self

    async def execute(
        self,
        args: str | Sequence[str],
        working_directory: str | Path,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        key = tuple(args)
        self.calls.append(key)
        return self.responses.get(key, CommandResult(exit_code=128, output="fatal: unscripted\n"))


def _reflog(git: _ScriptedGit, ref: str, *lines: str) -> None:
    """Script a reflog; ``lines`` are given newest first, as git prints them."""
    git.on("reflog", "show", "--format=%gs", ref, "--", output="".join(f"{line}\n" for line in lines))


def _resolve(git: _ScriptedGit, branch: str = "feat", remote: str = "origin") -> ResolvedBranch | None:
    return asyncio.run(BranchResolver(git).resolve_base_branch(REPO, branch, remote))


def _merge_base_setup(git: _ScriptedGit, *local: str, remote_refs: str = "") -> None:
    git.on("rev-parse", "--verify", "--quiet", "refs/heads/feat^{commit}", output="tip\n")
    git.on(
        "for-each-ref",
        "--format=%(refname)",
        "refs/heads/",
        output="".join(f"refs/heads/{name}\n" for name in local),
    )
    if remote_refs:
        git.on("for-each-ref", "--format=%(refname)", "refs/remotes/origin/", output=remote_refs)


def _candidate(git: _ScriptedGit, ref: str, merge_base: str, ahead: str) -> None:
    git.on("merge-base", "refs/heads/feat", ref, output=f"{merge_base}\n")
    git.on("rev-list", "--count", f"{ref}..refs/heads/feat", output=f"{ahead}\n")


def test_parse_reflog_returns_oldest_first() -> None:
    entries = parse_reflog("commit: second\n\ncommit: first\nbranch: Created from main\n")
    assert [entry.raw_line for entry in entries] == [
        "branch: Created from main",
        "commit: first",
        "commit: second",
    ]


def test_find_reflog_source_skips_head_and_commit_hashes() -> None:
    entries = parse_reflog(
        "checkout: moving from develop to feat\n"
        "branch: Created from 1a2b3c4d\n"
        "branch: Created from HEAD\n"
    )
    assert find_reflog_source(entries, "feat") == "develop"


def test_find_reflog_source_ignores_checkouts_to_other_branches() -> None:
    entries = parse_reflog("checkout: moving from main to other\n")
    assert find_reflog_source(entries, "feat") is None


def test_find_reflog_source_matches_case_insensitively() -> None:
    entries = parse_reflog("BRANCH: created from release/1.2\n")
    assert find_reflog_source(entries, "feat") == "release/1.2"


def test_strip_ref_prefix_variants() -> None:
    remotes = ["origin", "upstream"]
    assert strip_ref_prefix("refs/heads/main", remotes) == "main"
    assert strip_ref_prefix("refs/remotes/upstream/release/2.0", remotes) == "release/2.0"
    assert strip_ref_prefix("origin/develop", remotes) == "develop"
    assert strip_ref_prefix("feature/login", remotes) == "feature/login"


def test_parse_ref_listing_skips_symbolic_head() -> None:
    listing = "refs/remotes/origin/HEAD\nrefs/remotes/origin/main\nrefs/remotes/origin/dev\n"
    assert parse_ref_listing(listing, "refs/remotes/origin/") == ["main", "dev"]


def test_branch_candidate_ref() -> None:
    assert BranchCandidate(name="main").ref == "refs/heads/main"
    assert BranchCandidate(name="main", remote="origin").ref == "refs/remotes/origin/main"


def test_resolved_branch_requires_names() -> None:
    with pytest.raises(ValueError):
        ResolvedBranch(remote="origin", branch=" ")


def test_current_branch_reads_abbrev_ref() -> None:
    git = _ScriptedGit().on("rev-parse", "--abbrev-ref", "HEAD", output="feature/x\n")
    assert asyncio.run(BranchResolver(git).resolve_current_branch(REPO)) == "feature/x"


@pytest.mark.parametrize(
    "output, exit_code",
    [("HEAD\n", 0), ("", 0), ("fatal: not a git repository\n", 128)],
)
def test_current_branch_none_when_detached_or_failing(output: str, exit_code: int) -> None:
    git = _ScriptedGit().on("rev-parse", "--abbrev-ref", "HEAD", output=output, exit_code=exit_code)
    assert asyncio.run(BranchResolver(git).resolve_current_branch(REPO)) is None


def test_blank_branch_resolves_to_none_without_git_calls() -> None:
    git = _ScriptedGit()
    assert _resolve(git, branch="   ") is None
    assert git.calls == []


def test_reflog_created_from_local_branch() -> None:
    git = _ScriptedGit()
    _reflog(git, "refs/heads/feat", "commit: add parser", "branch: Created from main")
    git.on("remote", output="origin\n")
    git.on("config", "--get", "branch.main.remote", output="origin\n")

    assert _resolve(git) == ResolvedBranch(remote="origin", branch="main")


def test_reflog_created_from_remote_tracking_ref() -> None:
    git = _ScriptedGit()
    _reflog(git, "refs/heads/feat", "branch: Created from origin/develop")
    git.on("remote", output="origin\n")
    git.on("rev-parse", "--verify", "--quiet", "refs/remotes/origin/develop", output="abc\n")

    assert _resolve(git) == ResolvedBranch(remote="origin", branch="develop")


def test_reflog_uses_oldest_entry() -> None:
    git = _ScriptedGit()
    _reflog(
        git,
        "refs/heads/feat",
        "checkout: moving from develop to feat",
        "commit: wip",
        "branch: Created from main",
    )
    git.on("remote", output="origin\n")

    assert _resolve(git) == ResolvedBranch(remote="origin", branch="main")


def test_reflog_falls_back_to_head_checkout_entry() -> None:
    git = _ScriptedGit()
    _reflog(git, "refs/heads/feat", "commit: work", "branch: Created from HEAD")
    _reflog(
        git,
        "HEAD",
        "commit: work",
        "checkout: moving from develop to feat",
        "branch: Created from release",
    )
    git.on("remote", output="origin\n")

    assert _resolve(git) == ResolvedBranch(remote="origin", branch="develop")


def test_reflog_picks_remote_hosting_the_branch() -> None:
    git = _ScriptedGit()
    _reflog(git, "refs/heads/feat", "branch: Created from release")
    git.on("remote", output="origin\nupstream\n")
    git.on("rev-parse", "--verify", "--quiet", "refs/remotes/upstream/release", output="abc\n")

    assert _resolve(git) == ResolvedBranch(remote="upstream", branch="release")


def test_reflog_source_equal_to_current_branch_is_rejected() -> None:
    git = _ScriptedGit()
    _reflog(git, "refs/heads/feat", "branch: Created from origin/feat")
    git.on("remote", output="origin\n")

    assert _resolve(git) is None


def test_reflog_wins_over_tracking_config() -> None:
    git = _ScriptedGit()
    _reflog(git, "refs/heads/feat", "branch: Created from develop")
    git.on("remote", output="origin\n")
    git.on("config", "--get", "branch.feat.merge", output="refs/heads/main\n")

    assert _resolve(git) == ResolvedBranch(remote="origin", branch="develop")
    assert ("config", "--get", "branch.feat.merge") not in git.calls


def test_tracking_config_used_when_reflog_missing() -> None:
    git = _ScriptedGit()
    git.on("config", "--get", "branch.feat.merge", output="refs/heads/develop\n")
    git.on("config", "--get", "branch.feat.remote", output="upstream\n")

    assert _resolve(git) == ResolvedBranch(remote="upstream", branch="develop")


def test_tracking_config_local_upstream_uses_caller_remote() -> None:
    git = _ScriptedGit()
    git.on("config", "--get", "branch.feat.merge", output="refs/heads/main\n")
    git.on("config", "--get", "branch.feat.remote", output=".\n")

    assert _resolve(git, remote="fork") == ResolvedBranch(remote="fork", branch="main")


def test_tracking_config_pointing_at_itself_falls_through_to_merge_base() -> None:
    git = _ScriptedGit()
    git.on("config", "--get", "branch.feat.merge", output="refs/heads/feat\n")
    _merge_base_setup(git, "feat", "main")
    _candidate(git, "refs/heads/main", "m1", "2")

    assert _resolve(git) == ResolvedBranch(remote="origin", branch="main")


def test_merge_base_single_candidate() -> None:
    git = _ScriptedGit()
    _merge_base_setup(git, "feat", "main")
    _candidate(git, "refs/heads/main", "m1", "3")

    assert _resolve(git) == ResolvedBranch(remote="origin", branch="main")


def test_merge_base_prefers_most_specific_ancestor() -> None:
    git = _ScriptedGit()
    _merge_base_setup(git, "develop", "feat", "main")
    _candidate(git, "refs/heads/develop", "d1", "2")
    _candidate(git, "refs/heads/main", "m1", "5")
    git.on("rev-list", "--left-right", "--count", "d1...m1", output="3\t0\n")
    git.on("rev-list", "--left-right", "--count", "m1...d1", output="0\t3\n")

    assert _resolve(git) == ResolvedBranch(remote="origin", branch="develop")


def test_merge_base_ambiguous_candidates_resolve_to_none() -> None:
    git = _ScriptedGit()
    _merge_base_setup(git, "feat", "main", "release")
    _candidate(git, "refs/heads/main", "m1", "2")
    _candidate(git, "refs/heads/release", "r1", "2")
    git.on("rev-list", "--left-right", "--count", "m1...r1", output="1\t1\n")
    git.on("rev-list", "--left-right", "--count", "r1...m1", output="1\t1\n")

    assert _resolve(git) is None


def test_merge_base_skips_branches_containing_current_tip() -> None:
    git = _ScriptedGit()
    _merge_base_setup(git, "ahead", "feat", "main")
    git.on("merge-base", "refs/heads/feat", "refs/heads/ahead", output="tip\n")
    _candidate(git, "refs/heads/main", "m1", "1")

    assert _resolve(git) == ResolvedBranch(remote="origin", branch="main")


def test_merge_base_skips_candidates_with_no_unique_commits() -> None:
    git = _ScriptedGit()
    _merge_base_setup(git, "feat", "main", "stale")
    _candidate(git, "refs/heads/main", "m1", "4")
    _candidate(git, "refs/heads/stale", "s1", "0")

    assert _resolve(git) == ResolvedBranch(remote="origin", branch="main")


def test_merge_base_considers_remote_only_branches() -> None:
    git = _ScriptedGit()
    _merge_base_setup(
        git,
        "feat",
        remote_refs="refs/remotes/origin/HEAD\nrefs/remotes/origin/main\n",
    )
    _candidate(git, "refs/remotes/origin/main", "m1", "2")

    assert _resolve(git) == ResolvedBranch(remote="origin", branch="main")


def test_merge_base_without_current_tip_gives_up() -> None:
    git = _ScriptedGit()
    assert _resolve(git) is None
    assert ("for-each-ref", "--format=%(refname)", "refs/heads/") not in git.calls


def test_no_evidence_returns_none() -> None:
    git = _ScriptedGit()
    _merge_base_setup(git, "feat")

    assert _resolve(git) is None


def test_reflog_branch_created_from_main(git_repo) -> None:
    git_repo.branch_from_here("feature/login")
    git_repo.commit("login.py", "print('login')\n", "add login")

    resolver = BranchResolver(GitCommandExecutor())
    current = asyncio.run(resolver.resolve_current_branch(git_repo.path))
    resolved = asyncio.run(resolver.resolve_base_branch(git_repo.path, current or ""))

    assert current == "feature/login"
    assert resolved == ResolvedBranch(remote="origin", branch="main")


def test_nested_branch_resolves_to_immediate_parent(git_repo) -> None:
    git_repo.branch_from_here("develop")
    git_repo.commit("dev.txt", "dev\n", "develop work")
    git_repo.branch_from_here("feature")
    git_repo.commit("feature.txt", "feature\n", "feature work")

    resolved = asyncio.run(BranchResolver().resolve_base_branch(git_repo.path, "feature"))
    assert resolved == ResolvedBranch(remote="origin", branch="develop")


def test_merge_base_fallback_after_reflog_expiry(git_repo) -> None:
    git_repo.commit("main2.txt", "main\n", "more main work")
    git_repo.branch_from_here("develop")
    git_repo.commit("dev.txt", "dev\n", "develop work")
    git_repo.branch_from_here("feature")
    git_repo.commit("feature.txt", "feature\n", "feature work")
    git_repo.expire_reflogs()

    resolved = asyncio.run(BranchResolver().resolve_base_branch(git_repo.path, "feature"))
    assert resolved == ResolvedBranch(remote="origin", branch="develop")


def test_fork_points_decide_when_parents_keep_moving(git_repo) -> None:
    git_repo.branch_from_here("develop")
    git_repo.commit("dev.txt", "dev\n", "develop work")
    git_repo.branch_from_here("feature")
    git_repo.commit("feature.txt", "feature\n", "feature work")
    git_repo.checkout("develop")
    git_repo.commit("dev2.txt", "dev2\n", "develop moves on")
    git_repo.checkout("main")
    git_repo.commit("main2.txt", "main2\n", "main moves on")
    git_repo.checkout("feature")
    git_repo.expire_reflogs()

    resolved = asyncio.run(BranchResolver().resolve_base_branch(git_repo.path, "feature"))
    assert resolved == ResolvedBranch(remote="origin", branch="develop")


def test_diverged_siblings_are_ambiguous(git_repo) -> None:
    git_repo.branch_from_here("feature")
    git_repo.commit("feature.txt", "feature\n", "feature work")
    git_repo.checkout("main")
    git_repo.commit("main.txt", "main\n", "main moves on")
    git_repo.git("branch", "release", "HEAD~1")
    git_repo.checkout("release")
    git_repo.commit("release.txt", "release\n", "release fix")
    git_repo.checkout("feature")
    git_repo.expire_reflogs()

    resolved = asyncio.run(BranchResolver().resolve_base_branch(git_repo.path, "feature"))
    assert resolved is None
