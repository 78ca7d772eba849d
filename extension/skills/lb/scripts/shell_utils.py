#!/usr/bin/env python3
"""Async subprocess helpers shared by the tmux, lb and git adapters."""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence


@dataclass
class CommandResult:
    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandError(RuntimeError):
    def __init__(self, result: CommandResult) -> None:
        self.result = result
        detail = (result.stderr or result.stdout).strip().replace("\n", " ")
        super().__init__(
            f"{' '.join(result.args)} exited with code {result.returncode}"
            + (f": {detail[:300]}" if detail else "")
        )


class CommandTimeout(TimeoutError):
    def __init__(self, args: Sequence[str], timeout: float) -> None:
        self.args_list = list(args)
        self.timeout = timeout
        super().__init__(f"{' '.join(args)} timed out after {timeout:g}s")


async def run_command(
    args: Sequence[str],
    *,
    cwd: Path | str | None = None,
    timeout: float | None = None,
    check: bool = True,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run ``args`` without a shell and collect its output.

    The process is killed when ``timeout`` expires. With ``check`` a non-zero
    exit raises ``CommandError``; a missing executable surfaces as ``OSError``.
    """
    proc = await asyncio.create_subprocess_exec(
        *args,
        cwd=str(cwd) if cwd is not None else None,
        env={**os.environ, **env} if env else None,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise CommandTimeout(args, timeout or 0.0) from None

    result = CommandResult(
        args=list(args),
        returncode=proc.returncode or 0,
        stdout=(stdout_bytes or b"").decode("utf-8", errors="replace"),
        stderr=(stderr_bytes or b"").decode("utf-8", errors="replace"),
    )
    if check and not result.ok:
        raise CommandError(result)
    return result
