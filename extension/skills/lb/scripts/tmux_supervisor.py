#!/usr/bin/env python3
"""tmux adapter: detached named sessions that outlive the coordinator."""

from __future__ import annotations

import re
from pathlib import Path

from shell_utils import CommandTimeout, run_command


# tmux treats '.' and ':' as target separators, and a hyphen followed by
# digits confuses session lookup.
_UNSAFE_SESSION_CHARS = re.compile(r"[-.:]")


def derive_tmux_session(task_id: str) -> str:
    return _UNSAFE_SESSION_CHARS.sub("_", task_id.strip())


def branch_from_tmux_session(session_name: str) -> str:
    return session_name.replace("_", "-")


class TmuxSupervisor:
    def __init__(self, tmux_bin: str = "tmux", timeout: float = 10.0) -> None:
        self.tmux_bin = tmux_bin
        self.timeout = timeout

    async def new_session(self, name: str, cwd: Path | str, command: list[str]) -> None:
        await run_command(
            [self.tmux_bin, "new-session", "-d", "-s", name, "-c", str(cwd), *command],
            timeout=self.timeout,
        )

    async def has_session(self, name: str) -> bool:
        try:
            result = await run_command(
                [self.tmux_bin, "has-session", "-t", name],
                timeout=self.timeout,
                check=False,
            )
        except (OSError, CommandTimeout):
            return False
        return result.ok

    async def kill_session(self, name: str) -> None:
        await run_command([self.tmux_bin, "kill-session", "-t", name], timeout=self.timeout)

    async def capture_pane(self, name: str, lines: int = 50) -> str:
        result = await run_command(
            [self.tmux_bin, "capture-pane", "-t", name, "-p", "-S", f"-{max(1, lines)}"],
            timeout=self.timeout,
        )
        return result.stdout.strip()
