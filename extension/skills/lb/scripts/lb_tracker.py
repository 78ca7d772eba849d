#!/usr/bin/env python3
"""Adapters over the `lb` issue-tracker CLI and the git working copy.

Only the handful of `lb` subcommands the orchestrator depends on are wrapped
here: show, list, update, sync and worktree create/delete.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from shell_utils import CommandError, CommandTimeout, run_command


class LbTracker:
    def __init__(self, lb_bin: str = "lb", cwd: Path | str | None = None, timeout: float = 30.0) -> None:
        self.lb_bin = lb_bin
        self.cwd = cwd
        self.timeout = timeout

    async def _lb(self, *args: str, timeout: float | None = None, env: dict[str, str] | None = None) -> str:
        result = await run_command(
            [self.lb_bin, *args],
            cwd=self.cwd,
            timeout=timeout or self.timeout,
            env=env,
        )
        return result.stdout

    async def show(self, issue_id: str) -> dict[str, Any]:
        raw = await self._lb("show", issue_id, "--json")
        data = json.loads(raw.strip())
        if not isinstance(data, dict):
            raise ValueError(f"lb show {issue_id} returned {type(data).__name__}, expected object")
        return data

    async def show_text(self, issue_id: str) -> str:
        return (await self._lb("show", issue_id)).strip()

    async def description(self, issue_id: str) -> tuple[str, str | None]:
        """Best-effort issue description: ``(text, error)``; text is "" when degraded."""
        try:
            issue = await self.show(issue_id)
            return str(issue.get("description") or issue.get("title") or ""), None
        except (OSError, CommandError, CommandTimeout, ValueError) as exc:
            json_error = str(exc)
        try:
            return await self.show_text(issue_id), None
        except (OSError, CommandError, CommandTimeout) as exc:
            return "", f"{json_error}; {exc}"

    async def list_by_status(self, status: str, timeout: float) -> list[dict[str, Any]]:
        """List issues in ``status`` from the local cache, killing `lb` after ``timeout``."""
        raw = await self._lb(
            "list", "--status", status, "--json", "--no-sync",
            timeout=timeout,
            env={"LB_TIMEOUT_MS": str(int(timeout * 1000))},
        )
        raw = raw.strip()
        if not raw:
            return []
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ValueError(f"lb list returned {type(data).__name__}, expected array")
        return [item for item in data if isinstance(item, dict)]

    async def set_status(self, issue_id: str, status: str) -> None:
        await self._lb("update", issue_id, "--status", status)

    async def set_description(self, issue_id: str, description: str) -> None:
        await self._lb("update", issue_id, "-d", description)

    async def sync(self) -> None:
        await self._lb("sync")

    async def create_worktree(self, branch: str) -> None:
        await self._lb("worktree", "create", branch)

    async def delete_worktree(self, branch: str, force: bool = True) -> None:
        args = ["worktree", "delete", branch]
        if force:
            args.append("--force")
        await self._lb(*args)


class GitWorkspace:
    def __init__(self, git_bin: str = "git", cwd: Path | str | None = None, timeout: float = 15.0) -> None:
        self.git_bin = git_bin
        self.cwd = cwd
        self.timeout = timeout

    async def repo_root(self) -> Path:
        result = await run_command(
            [self.git_bin, "rev-parse", "--show-toplevel"],
            cwd=self.cwd,
            timeout=self.timeout,
        )
        return Path(result.stdout.strip())

    async def diff_stat(self, worktree_path: str) -> str | None:
        """`git diff --stat HEAD` for a worktree, or None when empty or unavailable."""
        if not worktree_path:
            return None
        try:
            result = await run_command(
                [self.git_bin, "-C", worktree_path, "diff", "--stat", "HEAD"],
                timeout=self.timeout,
                check=False,
            )
        except (OSError, CommandTimeout):
            return None
        if not result.ok:
            return None
        return result.stdout.strip() or None
