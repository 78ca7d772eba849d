#!/usr/bin/env python3
"""MCP server exposing lb background-agent orchestration tools.

The orchestrator is built on the first tool call, inside the server's event
loop, and reconstructs its registry from lb and tmux before any tool runs.
"""

from __future__ import annotations

import argparse
import asyncio
import time
import traceback
from pathlib import Path
from typing import Any, Awaitable, Callable

from orchestrator import CLEANUP_STATUSES, Orchestrator, read_orchestrator_config

try:
    from mcp.server.fastmcp import FastMCP
except ImportError as exc:  # pragma: no cover
    raise RuntimeError(
        "mcp>=1.0 is required. Install with: pip install 'mcp>=1.0.0'"
    ) from exc


_ORCHESTRATOR: Orchestrator | None = None
_ORCHESTRATOR_LOCK: asyncio.Lock | None = None
_PROJECT_DIR: Path | None = None


async def get_orchestrator() -> Orchestrator:
    global _ORCHESTRATOR, _ORCHESTRATOR_LOCK
    if _ORCHESTRATOR is not None:
        return _ORCHESTRATOR
    if _ORCHESTRATOR_LOCK is None:
        _ORCHESTRATOR_LOCK = asyncio.Lock()
    async with _ORCHESTRATOR_LOCK:
        if _ORCHESTRATOR is None:
            config = read_orchestrator_config()
            if _PROJECT_DIR is not None:
                config.project_dir = _PROJECT_DIR
            orchestrator = Orchestrator(config)
            await orchestrator.reconstruct()
            orchestrator.logger.event(
                "info",
                "mcp.server.ready",
                status="ok",
                extra={"project_dir": str(config.project_dir), "agents": orchestrator.registry.size()},
            )
            _ORCHESTRATOR = orchestrator
    return _ORCHESTRATOR


def set_orchestrator(orchestrator: Orchestrator | None) -> None:
    global _ORCHESTRATOR
    _ORCHESTRATOR = orchestrator


async def _run_tool(
    tool: str,
    fn: Callable[[Orchestrator], Awaitable[dict[str, Any]]],
    *,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    start = time.perf_counter()
    orchestrator = await get_orchestrator()
    logger = orchestrator.logger
    logger.event("debug", "mcp.tool.start", tool=tool, extra=extra or {})

    try:
        result = await fn(orchestrator)
    except Exception as exc:
        logger.event(
            "error",
            "mcp.tool.exception",
            tool=tool,
            status="failed",
            error_code="UNHANDLED_EXCEPTION",
            error=str(exc),
            extra={"traceback": traceback.format_exc(limit=8)},
        )
        return {"status": "error", "code": "INTERNAL_ERROR", "error": f"{tool} failed: {exc}"}

    duration_ms = int((time.perf_counter() - start) * 1000)
    if result.get("status") in ("error", "not_found", "failed"):
        logger.event(
            "warn",
            "mcp.tool.error",
            tool=tool,
            status=result.get("status"),
            error=result.get("error"),
            duration_ms=duration_ms,
        )
    else:
        logger.event("info", "mcp.tool.ok", tool=tool, status="ok", duration_ms=duration_ms)
    return result


mcp = FastMCP("lb-orchestrator")


@mcp.tool()
async def lb_dispatch(
    issue_id: str,
    prompt: str,
    model: str = "",
    provider: str = "",
    slug: str = "",
    skip_worktree: bool = False,
) -> dict[str, Any]:
    """Dispatch an lb issue to a background worktree agent.

    Creates a worktree, launches opencode serve in tmux, creates a session and
    sends the task prompt. Returns agent metadata (port, session, tmux, branch).
    """

    async def impl(orchestrator: Orchestrator) -> dict[str, Any]:
        return await orchestrator.dispatch(
            issue_id,
            prompt,
            model=model or None,
            provider=provider or None,
            slug=slug or None,
            skip_worktree=skip_worktree,
        )

    return await _run_tool("lb_dispatch", impl, extra={"issue_id": issue_id, "skip_worktree": skip_worktree})


@mcp.tool()
async def lb_check(issue_id: str, lines: int = 10) -> dict[str, Any]:
    """Check on a background agent: status, recent messages and diff stat."""

    async def impl(orchestrator: Orchestrator) -> dict[str, Any]:
        return await orchestrator.check(issue_id, lines)

    return await _run_tool("lb_check", impl, extra={"issue_id": issue_id})


@mcp.tool()
async def lb_followup(issue_id: str, message: str) -> dict[str, Any]:
    """Send a follow-up message to a running background agent."""

    async def impl(orchestrator: Orchestrator) -> dict[str, Any]:
        return await orchestrator.followup(issue_id, message)

    return await _run_tool("lb_followup", impl, extra={"issue_id": issue_id})


@mcp.tool()
async def lb_abort(issue_id: str) -> dict[str, Any]:
    """Abort a background agent's current operation. The server keeps running."""

    async def impl(orchestrator: Orchestrator) -> dict[str, Any]:
        return await orchestrator.abort(issue_id)

    return await _run_tool("lb_abort", impl, extra={"issue_id": issue_id})


@mcp.tool()
async def lb_cleanup(issue_id: str, status: str = "in_review", force: bool = True) -> dict[str, Any]:
    """Clean up a background agent: kill tmux, delete worktree, update lb status.

    status is one of in_review, todo_refined or done.
    """

    async def impl(orchestrator: Orchestrator) -> dict[str, Any]:
        return await orchestrator.cleanup(issue_id, status=status or None, force=force)

    return await _run_tool(
        "lb_cleanup",
        impl,
        extra={"issue_id": issue_id, "status": status, "allowed": list(CLEANUP_STATUSES)},
    )


@mcp.tool()
async def lb_agents() -> dict[str, Any]:
    """List background agents with status, port, session, branch and reachability."""

    async def impl(orchestrator: Orchestrator) -> dict[str, Any]:
        return await orchestrator.list_agents()

    return await _run_tool("lb_agents", impl)


@mcp.tool()
async def lb_poll() -> dict[str, Any]:
    """Re-check every background agent; call when the coordinator goes idle."""

    async def impl(orchestrator: Orchestrator) -> dict[str, Any]:
        observed = await orchestrator.on_coordinator_idle()
        return {"status": "ok", "observed": observed, "count": len(observed)}

    return await _run_tool("lb_poll", impl)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="lb background-agent MCP server")
    parser.add_argument("--project-dir", default="")
    return parser.parse_args()


def main() -> None:
    global _PROJECT_DIR
    args = parse_args()
    if args.project_dir:
        _PROJECT_DIR = Path(args.project_dir).resolve()
    mcp.run()


if __name__ == "__main__":
    main()
