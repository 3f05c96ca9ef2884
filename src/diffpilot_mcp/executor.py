"""Asynchronous git command execution with output capture and timeouts."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
import sys
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from .constants import DEFAULT_GIT_TIMEOUT_SECONDS, GIT_BINARY, SENTINEL_EXIT_CODE

logger = logging.getLogger(__name__)

# Unix kills the whole process group; Windows falls back to taskkill /T.
_USE_PROCESS_GROUP = sys.platform != "win32"
_READ_CHUNK_BYTES = 64 * 1024
_REAP_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class CommandResult:
    """Exit status and combined stdout/stderr of one command."""

    exit_code: int
    output: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def has_output(self) -> bool:
        return bool(self.output.strip())


class _OutputBuffer:
    """Line sink shared by the stdout and stderr readers."""

    def __init__(self) -> None:
        self._lines: list[str] = []
        self._lock = asyncio.Lock()

    async def drain(self, stream: asyncio.StreamReader | None) -> None:
        """Split ``stream`` into lines by hand; minified files can exceed any readline limit."""
        if stream is None:
            return
        pending = bytearray()
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            pending.extend(chunk)
            if b"\n" not in chunk:
                continue
            *complete, rest = bytes(pending).split(b"\n")
            pending = bytearray(rest)
            await self._append(complete)
        if pending:
            await self._append([bytes(pending)])

    async def _append(self, raw_lines: list[bytes]) -> None:
        texts = [raw.decode("utf-8", errors="replace").rstrip("\r") for raw in raw_lines]
        async with self._lock:
            self._lines.extend(texts)

    def getvalue(self) -> str:
        return "".join(f"{line}\n" for line in self._lines)


class GitCommandExecutor:
    """Run a version-control binary without a shell and capture its output.

    Every call is independent: the executor keeps no state between
    invocations, so concurrent calls (even in the same repository) are safe
    for read-only commands. Failures never raise; they are reported through
    ``CommandResult.exit_code``:

    * ``0`` and other non-negative codes come from the process itself.
    * ``-1`` marks a timeout (``timed_out=True``), a process that could not
      be started at all, or output that could not be read.
    """

    def __init__(
        self,
        binary: str = GIT_BINARY,
        default_timeout_seconds: float = DEFAULT_GIT_TIMEOUT_SECONDS,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0.")
        self.binary = binary
        self.default_timeout_seconds = float(default_timeout_seconds)
        self._env = dict(os.environ if env is None else env)
        # A credential prompt would block until the timeout fires.
        self._env.setdefault("GIT_TERMINAL_PROMPT", "0")

    async def execute(
        self,
        args: str | Sequence[str],
        working_directory: str | Path,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        """Run ``binary args`` in ``working_directory`` and wait for it."""
        argv = [self.binary, *_split_arguments(args)]
        timeout = self.default_timeout_seconds if timeout_seconds is None else float(timeout_seconds)
        command_label = shlex.join(argv)
        started = time.perf_counter()

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(working_directory),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env,
                start_new_session=_USE_PROCESS_GROUP,
            )
        except OSError as exc:
            logger.debug("Unable to start %s: %s", command_label, exc)
            return CommandResult(
                exit_code=SENTINEL_EXIT_CODE,
                output=f"Failed to start '{self.binary}': {exc}\n",
            )

        buffer = _OutputBuffer()
        readers = [
            asyncio.create_task(buffer.drain(process.stdout)),
            asyncio.create_task(buffer.drain(process.stderr)),
        ]

        try:
            exit_code = await asyncio.wait_for(
                _wait_for_exit(process, readers),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            await _terminate_process_tree(process)
            await _cancel_readers(readers)
            logger.warning(
                "git command timed out after %.1fs and was terminated: %s",
                timeout,
                command_label,
            )
            return CommandResult(
                exit_code=SENTINEL_EXIT_CODE,
                output=f"Command timed out after {timeout:g} seconds: {command_label}\n",
                timed_out=True,
            )
        except asyncio.CancelledError:
            await _terminate_process_tree(process)
            await _cancel_readers(readers)
            raise
        except Exception as exc:  # noqa: BLE001
            await _terminate_process_tree(process)
            await _cancel_readers(readers)
            logger.warning("Reading output of %s failed: %s", command_label, exc)
            return CommandResult(
                exit_code=SENTINEL_EXIT_CODE,
                output=f"Failed to read output of '{self.binary}': {exc}\n",
            )

        logger.debug(
            "git command finished exit_code=%s elapsed_ms=%.3f: %s",
            exit_code,
            (time.perf_counter() - started) * 1000,
            command_label,
        )
        return CommandResult(exit_code=exit_code, output=buffer.getvalue())


def _split_arguments(args: str | Sequence[str]) -> list[str]:
    """Turn an argument string into argv using shell-word rules, without a shell."""
    if isinstance(args, str):
        return shlex.split(args)
    return [str(arg) for arg in args]


async def _wait_for_exit(
    process: asyncio.subprocess.Process,
    readers: list[asyncio.Task[None]],
) -> int:
    await asyncio.gather(*readers)
    return await process.wait()


async def _cancel_readers(readers: list[asyncio.Task[None]]) -> None:
    for reader in readers:
        reader.cancel()
    await asyncio.gather(*readers, return_exceptions=True)


async def _terminate_process_tree(process: asyncio.subprocess.Process) -> None:
    """Kill a child process together with everything it spawned."""
    if _USE_PROCESS_GROUP:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
    else:
        try:
            killer = await asyncio.create_subprocess_exec(
                "taskkill",
                "/T",
                "/F",
                "/PID",
                str(process.pid),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await killer.wait()
        except OSError:
            logger.debug("taskkill unavailable; killing pid %s only", process.pid)
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass

    try:
        await asyncio.wait_for(process.wait(), timeout=_REAP_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("Process %s did not exit after kill", process.pid)
