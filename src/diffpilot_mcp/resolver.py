"""Current-branch and base-branch resolution on top of git plumbing.

The base branch is the branch the current branch was created from. It is
resolved by trying evidence sources in a fixed priority order and returning
on the first one that produces a single, unambiguous answer:

1. the branch reflog (``branch: Created from X`` / ``checkout: moving from X``),
2. the tracking configuration (``branch.<name>.merge``),
3. merge-base analysis over every other local and remote branch.

Nothing here guesses: when no source is conclusive the result is ``None`` and
the caller decides what to do. Any failing git call only removes that piece
of evidence; it never aborts the resolution.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Protocol

from .constants import DEFAULT_REMOTE
from .executor import CommandResult, GitCommandExecutor

logger = logging.getLogger(__name__)

HEAD_REF = "HEAD"
HEADS_PREFIX = "refs/heads/"
REMOTES_PREFIX = "refs/remotes/"

CREATED_FROM_PATTERN = re.compile(r"branch:\s*Created from\s+(\S+)", re.IGNORECASE)
CHECKOUT_PATTERN = re.compile(r"checkout:\s*moving from\s+(\S+)\s+to\s+(\S+)", re.IGNORECASE)
COMMIT_HASH_PATTERN = re.compile(r"^[0-9a-fA-F]{7,40}$")
LEFT_RIGHT_COUNT_PATTERN = re.compile(r"^(\d+)\s+(\d+)$")


class CommandRunner(Protocol):
    async def execute(
        self,
        args: str | Sequence[str],
        working_directory: str | Path,
        timeout_seconds: float | None = None,
    ) -> CommandResult: ...


@dataclass(frozen=True)
class ResolvedBranch:
    """A base branch together with the remote expected to host it."""

    remote: str
    branch: str

    def __post_init__(self) -> None:
        if not self.remote.strip() or not self.branch.strip():
            raise ValueError("ResolvedBranch requires non-empty remote and branch names.")


@dataclass
class BranchCandidate:
    """One branch considered during merge-base disambiguation."""

    name: str
    remote: str | None = None
    merge_base_commit: str | None = None
    ahead_count: int | None = None

    @property
    def ref(self) -> str:
        if self.remote:
            return f"{REMOTES_PREFIX}{self.remote}/{self.name}"
        return f"{HEADS_PREFIX}{self.name}"


@dataclass(frozen=True)
class ReflogEntry:
    raw_line: str

    def source_branch(self, current_branch: str, include_created: bool = True) -> str | None:
        """Return the branch this entry names as the origin of ``current_branch``."""
        created = CREATED_FROM_PATTERN.search(self.raw_line) if include_created else None
        if created:
            return created.group(1)
        checkout = CHECKOUT_PATTERN.search(self.raw_line)
        if checkout and checkout.group(2) == current_branch:
            return checkout.group(1)
        return None


def is_commit_hash(value: str) -> bool:
    return bool(COMMIT_HASH_PATTERN.match(value))


def parse_reflog(output: str) -> list[ReflogEntry]:
    """Parse ``git reflog --format=%gs`` output into entries, oldest first."""
    entries = [ReflogEntry(line.strip()) for line in output.splitlines() if line.strip()]
    entries.reverse()
    return entries


def find_reflog_source(
    entries: Sequence[ReflogEntry],
    current_branch: str,
    include_created: bool = True,
) -> str | None:
    """Return the first usable creation source in chronological order."""
    for entry in entries:
        source = entry.source_branch(current_branch, include_created=include_created)
        if not source:
            continue
        if source == HEAD_REF or is_commit_hash(source):
            logger.debug("Ignoring non-branch reflog source %r for %s", source, current_branch)
            continue
        return source
    return None


def strip_ref_prefix(name: str, remotes: Sequence[str]) -> str:
    """Reduce ``refs/heads/x``, ``refs/remotes/r/x`` or ``r/x`` to ``x``."""
    if name.startswith(HEADS_PREFIX):
        return name[len(HEADS_PREFIX) :]
    if name.startswith(REMOTES_PREFIX):
        name = name[len(REMOTES_PREFIX) :]
        _, _, rest = name.partition("/")
        return rest
    head, sep, rest = name.partition("/")
    if sep and rest and head in remotes:
        return rest
    return name


def parse_ref_listing(output: str, prefix: str) -> list[str]:
    """Strip ``prefix`` from each listed ref, keeping listing order."""
    names: list[str] = []
    for line in output.splitlines():
        ref = line.strip()
        if not ref.startswith(prefix):
            continue
        name = ref[len(prefix) :]
        if name and name != HEAD_REF:
            names.append(name)
    return names


def first_line(output: str) -> str | None:
    for line in output.splitlines():
        if line.strip():
            return line.strip()
    return None


class BranchResolver:
    """Resolve current and base branches for a working directory."""

    def __init__(
        self,
        executor: CommandRunner | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.executor = executor or GitCommandExecutor()
        self.timeout_seconds = timeout_seconds

    async def resolve_current_branch(self, working_directory: str | Path) -> str | None:
        """Return the checked-out branch, or ``None`` when detached or on error."""
        branch = await self._git_value(working_directory, "rev-parse", "--abbrev-ref", HEAD_REF)
        if branch is None or branch == HEAD_REF:
            return None
        return branch

    async def resolve_base_branch(
        self,
        working_directory: str | Path,
        current_branch: str,
        remote: str = DEFAULT_REMOTE,
    ) -> ResolvedBranch | None:
        """Return the branch ``current_branch`` was created from, or ``None``."""
        current_branch = current_branch.strip()
        remote = remote.strip() or DEFAULT_REMOTE
        if not current_branch:
            return None

        strategies: tuple[
            tuple[str, Callable[[str | Path, str, str], Awaitable[ResolvedBranch | None]]], ...
        ] = (
            ("reflog", self._from_reflog),
            ("tracking_config", self._from_tracking_config),
            ("merge_base", self._from_merge_base),
        )
        for name, strategy in strategies:
            resolved = await strategy(working_directory, current_branch, remote)
            if resolved is not None:
                logger.debug(
                    "Base branch for %s resolved by %s: %s/%s",
                    current_branch,
                    name,
                    resolved.remote,
                    resolved.branch,
                )
                return resolved
            logger.debug("Base branch strategy %s produced no evidence for %s", name, current_branch)
        return None

    async def _from_reflog(
        self, working_directory: str | Path, current_branch: str, remote: str
    ) -> ResolvedBranch | None:
        source = await self._reflog_source(
            working_directory, f"{HEADS_PREFIX}{current_branch}", current_branch
        )
        if source is None:
            # The first checkout after creation is only recorded in HEAD's reflog,
            # whose "Created from" lines may belong to other branches.
            source = await self._reflog_source(
                working_directory, HEAD_REF, current_branch, include_created=False
            )
        if source is None:
            return None

        remotes = await self._list_remotes(working_directory)
        branch = strip_ref_prefix(source, [*remotes, remote])
        if not branch or branch == current_branch:
            return None
        hosting_remote = await self._hosting_remote(working_directory, branch, remote, remotes)
        return ResolvedBranch(remote=hosting_remote, branch=branch)

    async def _from_tracking_config(
        self, working_directory: str | Path, current_branch: str, remote: str
    ) -> ResolvedBranch | None:
        merge_ref = await self._git_value(
            working_directory, "config", "--get", f"branch.{current_branch}.merge"
        )
        if merge_ref is None:
            return None
        branch = merge_ref[len(HEADS_PREFIX) :] if merge_ref.startswith(HEADS_PREFIX) else merge_ref
        if not branch or branch == current_branch:
            return None

        tracking_remote = await self._tracking_remote(working_directory, current_branch)
        return ResolvedBranch(remote=tracking_remote or remote, branch=branch)

    async def _from_merge_base(
        self, working_directory: str | Path, current_branch: str, remote: str
    ) -> ResolvedBranch | None:
        current_ref = f"{HEADS_PREFIX}{current_branch}"
        current_tip = await self._git_value(
            working_directory, "rev-parse", "--verify", "--quiet", f"{current_ref}^{{commit}}"
        )
        if current_tip is None:
            return None

        best: BranchCandidate | None = None
        survivors = 0
        for candidate in await self._collect_candidates(working_directory, current_branch, remote):
            merge_base = await self._git_value(working_directory, "merge-base", current_ref, candidate.ref)
            if merge_base is None or merge_base == current_tip:
                continue
            candidate.merge_base_commit = merge_base

            ahead_count = await self._count_commits(working_directory, candidate.ref, current_ref)
            if not ahead_count:
                continue
            candidate.ahead_count = ahead_count

            if best is None:
                best, survivors = candidate, 1
            elif await self._is_more_specific(working_directory, candidate, best):
                best, survivors = candidate, 1
            elif await self._is_more_specific(working_directory, best, candidate):
                continue
            else:
                survivors += 1
                logger.debug(
                    "Merge-base candidates %s and %s are independent", best.ref, candidate.ref
                )

        if best is None or survivors != 1:
            return None
        return ResolvedBranch(remote=remote, branch=best.name)

    async def _collect_candidates(
        self, working_directory: str | Path, current_branch: str, remote: str
    ) -> list[BranchCandidate]:
        """Local branches first, then remote-only branches, both in listing order."""
        local_output = await self._git_output(
            working_directory, "for-each-ref", "--format=%(refname)", HEADS_PREFIX
        )
        local_names = parse_ref_listing(local_output or "", HEADS_PREFIX)
        remote_prefix = f"{REMOTES_PREFIX}{remote}/"
        remote_output = await self._git_output(
            working_directory, "for-each-ref", "--format=%(refname)", remote_prefix
        )
        remote_names = parse_ref_listing(remote_output or "", remote_prefix)

        local_set = set(local_names)
        candidates = [BranchCandidate(name=name) for name in local_names if name != current_branch]
        candidates.extend(
            BranchCandidate(name=name, remote=remote)
            for name in remote_names
            if name not in local_set
        )
        return candidates

    async def _is_more_specific(
        self,
        working_directory: str | Path,
        candidate: BranchCandidate,
        other: BranchCandidate,
    ) -> bool:
        """Return whether ``candidate`` descends from ``other`` on the current branch's history.

        Fork points (merge-base commits) are compared first; when both
        candidates fork at the same commit, their tips decide. Comparing tips
        alone would let a parent branch that kept moving look like a
        descendant of the branch actually forked from it.
        """
        if candidate.merge_base_commit != other.merge_base_commit:
            return await self._is_strictly_ahead(
                working_directory, candidate.merge_base_commit or "", other.merge_base_commit or ""
            )
        return await self._is_strictly_ahead(working_directory, candidate.ref, other.ref)

    async def _is_strictly_ahead(self, working_directory: str | Path, ref: str, other: str) -> bool:
        """True when ``ref`` has commits ``other`` lacks and lacks none of ``other``'s."""
        if not ref or not other:
            return False
        counts = await self._git_value(
            working_directory, "rev-list", "--left-right", "--count", f"{other}...{ref}"
        )
        match = LEFT_RIGHT_COUNT_PATTERN.match(counts or "")
        if match is None:
            return False
        behind, ahead = int(match.group(1)), int(match.group(2))
        return ahead > 0 and behind == 0

    async def _count_commits(self, working_directory: str | Path, since: str, until: str) -> int | None:
        value = await self._git_value(working_directory, "rev-list", "--count", f"{since}..{until}")
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None

    async def _reflog_source(
        self,
        working_directory: str | Path,
        ref: str,
        current_branch: str,
        include_created: bool = True,
    ) -> str | None:
        output = await self._git_output(working_directory, "reflog", "show", "--format=%gs", ref, "--")
        if output is None:
            return None
        return find_reflog_source(parse_reflog(output), current_branch, include_created)

    async def _hosting_remote(
        self,
        working_directory: str | Path,
        branch: str,
        default_remote: str,
        remotes: Sequence[str],
    ) -> str:
        tracking_remote = await self._tracking_remote(working_directory, branch)
        if tracking_remote:
            return tracking_remote
        remote_order = [default_remote, *(name for name in remotes if name != default_remote)]
        for name in remote_order:
            result = await self._git(
                working_directory,
                "rev-parse",
                "--verify",
                "--quiet",
                f"{REMOTES_PREFIX}{name}/{branch}",
            )
            if result.ok:
                return name
        return default_remote

    async def _tracking_remote(self, working_directory: str | Path, branch: str) -> str | None:
        value = await self._git_value(working_directory, "config", "--get", f"branch.{branch}.remote")
        # "." marks a branch that tracks another local branch.
        if value is None or value == ".":
            return None
        return value

    async def _list_remotes(self, working_directory: str | Path) -> list[str]:
        output = await self._git_output(working_directory, "remote")
        if output is None:
            return []
        return [line.strip() for line in output.splitlines() if line.strip()]

    async def _git(self, working_directory: str | Path, *args: str) -> CommandResult:
        return await self.executor.execute(list(args), working_directory, self.timeout_seconds)

    async def _git_output(self, working_directory: str | Path, *args: str) -> str | None:
        result = await self._git(working_directory, *args)
        if not result.ok or not result.has_output:
            return None
        return result.output

    async def _git_value(self, working_directory: str | Path, *args: str) -> str | None:
        output = await self._git_output(working_directory, *args)
        if output is None:
            return None
        return first_line(output)


async def resolve_current_branch(working_directory: str | Path) -> str | None:
    return await BranchResolver().resolve_current_branch(working_directory)


async def resolve_base_branch(
    working_directory: str | Path,
    current_branch: str,
    remote: str = DEFAULT_REMOTE,
) -> ResolvedBranch | None:
    return await BranchResolver().resolve_base_branch(working_directory, current_branch, remote)
