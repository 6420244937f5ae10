from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import os
import shutil
import subprocess
import sys
from typing import Mapping, Sequence

logger = logging.getLogger("lra.core.process")

AGENT_BROWSER = "agent-browser"
DEFAULT_TIMEOUT_MS = 30_000
# Output pipes can outlive the child when it hands them to a background daemon.
_DRAIN_GRACE_SECONDS = 1.0


class ToolMissingError(RuntimeError):
    def __init__(self, tool: str) -> None:
        super().__init__(f"Required tool not found on PATH: {tool}")
        self.tool = tool


class ProcessFailedError(RuntimeError):
    def __init__(self, cmd: Sequence[str], returncode: int, stdout: str, stderr: str) -> None:
        super().__init__(f"Process failed with code {returncode}: {' '.join(cmd)}")
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@dataclass(frozen=True)
class ProcessResult:
    stdout: str
    stderr: str
    returncode: int


@dataclass(frozen=True)
class CommandResult:
    """Normalized outcome of one external command.

    `output` holds whatever stdout was captured, even on failure or timeout.
    """

    success: bool
    output: str = ""
    error: str | None = None
    returncode: int | None = None


def ensure_tool(name: str) -> str:
    path = shutil.which(name)
    if not path:
        raise ToolMissingError(name)
    return path


def run_checked(cmd: Sequence[str], *, cwd: str | os.PathLike[str] | None = None) -> ProcessResult:
    proc = subprocess.run(list(cmd), capture_output=True, text=True, cwd=cwd)
    if proc.returncode != 0:
        raise ProcessFailedError(cmd, proc.returncode, proc.stdout, proc.stderr)
    return ProcessResult(stdout=proc.stdout, stderr=proc.stderr, returncode=proc.returncode)


async def _drain(stream: asyncio.StreamReader, sink: list[bytes]) -> None:
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            return
        sink.append(chunk)


async def run_process(
    cmd: Sequence[str],
    *,
    silent: bool = False,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run `cmd` without a shell and wait for it cooperatively.

    Never raises for failures of the external program: a missing binary,
    a non-zero exit or a timeout all come back as `success=False`.
    In non-silent mode the child shares our stderr and its captured stdout
    is echoed there too, keeping our stdout free for JSON envelopes.
    """
    argv = list(cmd)
    merged_env = {**os.environ, **(env or {})}
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE if silent else None,
            env=merged_env,
        )
    except FileNotFoundError:
        return CommandResult(success=False, error=f"Required tool not found on PATH: {argv[0]}")
    except OSError as exc:
        return CommandResult(success=False, error=f"Failed to start {argv[0]}: {exc}")

    out_chunks: list[bytes] = []
    err_chunks: list[bytes] = []
    readers = [asyncio.create_task(_drain(proc.stdout, out_chunks))]
    if proc.stderr is not None:
        readers.append(asyncio.create_task(_drain(proc.stderr, err_chunks)))

    timed_out = False
    try:
        await asyncio.wait_for(proc.wait(), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        timed_out = True
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()

    _, pending = await asyncio.wait(readers, timeout=_DRAIN_GRACE_SECONDS)
    for task in pending:
        task.cancel()

    output = b"".join(out_chunks).decode("utf-8", errors="replace")
    stderr = b"".join(err_chunks).decode("utf-8", errors="replace")
    if not silent and output:
        sys.stderr.write(output)
        sys.stderr.flush()

    if timed_out:
        logger.debug("command timed out after %sms: %s", timeout_ms, argv)
        return CommandResult(
            success=False,
            output=output,
            error=f"Command timed out after {timeout_ms}ms: {' '.join(argv)}",
            returncode=proc.returncode,
        )
    if proc.returncode != 0:
        message = f"Command failed with code {proc.returncode}: {' '.join(argv)}"
        if stderr.strip():
            message = f"{message}\n{stderr.strip()}"
        return CommandResult(success=False, output=output, error=message, returncode=proc.returncode)
    return CommandResult(success=True, output=output, returncode=proc.returncode)


class AgentBrowser:
    """Gateway to the agent-browser CLI.

    Arguments are passed as an argv list, so text taken from test steps is
    never interpreted by a shell.
    """

    def __init__(
        self,
        binary: str = AGENT_BROWSER,
        *,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.binary = binary
        self.default_timeout_ms = default_timeout_ms
        self.env = dict(env or {})

    def is_installed(self) -> bool:
        return shutil.which(self.binary) is not None

    async def run(
        self,
        args: Sequence[str],
        *,
        silent: bool = False,
        timeout_ms: int | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        logger.debug("%s %s", self.binary, list(args))
        return await run_process(
            [self.binary, *args],
            silent=silent,
            timeout_ms=timeout_ms or self.default_timeout_ms,
            env={**self.env, **(env or {})},
        )
