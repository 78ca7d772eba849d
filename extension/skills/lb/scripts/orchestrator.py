#!/usr/bin/env python3
"""Background-agent orchestrator for lb (linear-beads) issues.

This module dispatches lb issues to `opencode serve` workers running in tmux
sessions and git worktrees, tracks them in an in-memory registry, checks
their control API, and rebuilds the registry after a restart from the
metadata fragment recorded on each issue.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import random
import re
import shlex
import signal
import sys
import time
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from agent_registry import (
    NO_WORKTREE,
    AgentEntry,
    AgentMetadata,
    AgentRegistry,
    encode_agent_metadata,
    parse_agent_metadata,
)
from control_client import (
    FINISHED,
    UNREACHABLE,
    ControlAPIError,
    WorkerControlClient,
    extract_message_texts,
    fetch_session_status,
)
from lb_tracker import GitWorkspace, LbTracker
from lifecycle import LifecycleBus, LifecycleEvent, LifecycleEventKind, log_notifier
from logging_utils import JsonlLogger, read_logging_config, stable_hash, utc_now_iso
from tmux_supervisor import TmuxSupervisor, derive_tmux_session


DEFAULT_MODEL = "claude-sonnet-4-6"
DEFAULT_PROVIDER = "anthropic"
CLAIMED_STATUS = "in_progress"
CLEANUP_STATUSES = ("in_review", "todo_refined", "done")
DEFAULT_CLEANUP_STATUS = "in_review"

PORT_RE = re.compile(r"listening on http://(?:127\.0\.0\.1|localhost):(\d+)")
TMUX_FALLBACK_LINES = 50
TMUX_FALLBACK_CHARS = 2000


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name, "") or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_str(name: str, default: str) -> str:
    return (os.environ.get(name, "") or "").strip() or default


def _safe_filename(raw: str) -> str:
    value = re.sub(r"[^A-Za-z0-9._-]+", "-", (raw or "").strip()).strip("-")
    return value or "task"


@dataclass
class OrchestratorConfig:
    project_dir: Path = field(default_factory=Path.cwd)
    lb_bin: str = "lb"
    tmux_bin: str = "tmux"
    git_bin: str = "git"
    worker_command: str = "opencode serve"
    log_dir: Path = Path("/tmp")
    default_model: str = DEFAULT_MODEL
    default_provider: str = DEFAULT_PROVIDER
    port_timeout: float = 30.0
    port_poll_interval: float = 0.5
    http_timeout: float = 5.0
    command_timeout: float = 30.0
    reconstruct_timeout: float = 10.0
    poll_interval: float = 30.0
    server_password: str = ""
    debug_log_path: Path | None = None
    debug_log_level: str = "info"

    def log_file_for(self, task_id: str) -> Path:
        return self.log_dir / f"agent-{_safe_filename(task_id)}.log"

    @property
    def resolved_debug_log_path(self) -> Path:
        return self.debug_log_path or (self.log_dir / "lb-orchestrator.jsonl")


def read_orchestrator_config() -> OrchestratorConfig:
    debug_log_path = (os.environ.get("LB_DEBUG_LOG_PATH", "") or "").strip()
    return OrchestratorConfig(
        project_dir=Path(_env_str("LB_PROJECT_DIR", ".")).resolve(),
        lb_bin=_env_str("LB_BIN", "lb"),
        tmux_bin=_env_str("LB_TMUX_BIN", "tmux"),
        git_bin=_env_str("LB_GIT_BIN", "git"),
        worker_command=_env_str("LB_WORKER_COMMAND", "opencode serve"),
        log_dir=Path(_env_str("LB_LOG_DIR", "/tmp")),
        default_model=_env_str("LB_DEFAULT_MODEL", DEFAULT_MODEL),
        default_provider=_env_str("LB_DEFAULT_PROVIDER", DEFAULT_PROVIDER),
        port_timeout=_env_float("LB_PORT_TIMEOUT_SECONDS", 30.0),
        port_poll_interval=_env_float("LB_PORT_POLL_INTERVAL_SECONDS", 0.5),
        http_timeout=_env_float("LB_HTTP_TIMEOUT_SECONDS", 5.0),
        command_timeout=_env_float("LB_COMMAND_TIMEOUT_SECONDS", 30.0),
        reconstruct_timeout=_env_float("LB_RECONSTRUCT_TIMEOUT_SECONDS", 10.0),
        poll_interval=_env_float("LB_POLL_INTERVAL_SECONDS", 30.0),
        server_password=(os.environ.get("OPENCODE_SERVER_PASSWORD", "") or "").strip(),
        debug_log_path=Path(debug_log_path) if debug_log_path else None,
        debug_log_level=_env_str("LB_DEBUG_LOG_LEVEL", "info"),
    )


class PortDiscoveryTimeout(TimeoutError):
    pass


async def wait_for_port(log_file: Path, timeout: float = 30.0, interval: float = 0.5) -> int:
    """Wait for opencode serve to announce its port in ``log_file``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        try:
            text = log_file.read_text(encoding="utf-8", errors="replace")
        except OSError:
            # tee may not have created the file yet.
            text = ""
        match = PORT_RE.search(text)
        if match:
            return int(match.group(1))
        if loop.time() >= deadline:
            raise PortDiscoveryTimeout(
                f"Timed out waiting for opencode serve to start ({int(timeout * 1000)}ms)"
            )
        await asyncio.sleep(interval)


def worker_shell_command(worker_command: str, log_file: Path) -> str:
    """Shell line that runs the worker with stdout and stderr tee'd into ``log_file``.

    The command is grouped so every part of a compound command reaches the log.
    """
    return f"{{ {worker_command.strip().rstrip(';')}; }} 2>&1 | tee {shlex.quote(str(log_file))}"


@dataclass
class _AdmissionSlot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def _error_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _status_idle(body: Any) -> bool:
    if not isinstance(body, dict):
        return False
    return body.get("status") == "idle" or body.get("type") == "idle" or body.get("idle") is True


class Poller:
    """Re-checks every registered agent and raises lifecycle events on state changes.

    Checks run concurrently and are isolated from one another. The poller
    never removes registry entries.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        client: WorkerControlClient,
        bus: LifecycleBus,
        tracker: LbTracker,
        logger: JsonlLogger,
    ) -> None:
        self.registry = registry
        self.client = client
        self.bus = bus
        self.tracker = tracker
        self.logger = logger
        self._last_seen: dict[str, str] = {}
        self._stop = asyncio.Event()

    async def poll_once(self) -> dict[str, str]:
        snapshot = list(self.registry.entries())
        results = await asyncio.gather(
            *(self._check_one(task_id, agent) for task_id, agent in snapshot),
            return_exceptions=True,
        )
        observed: dict[str, str] = {}
        for (task_id, _agent), result in zip(snapshot, results):
            if isinstance(result, BaseException):
                self.logger.event("error", "poll.check.crashed", task_id=task_id, error=_error_text(result))
                continue
            observed[task_id] = result

        for task_id in list(self._last_seen):
            if not self.registry.has(task_id):
                del self._last_seen[task_id]

        try:
            await self.tracker.sync()
        except Exception as exc:
            self.logger.event("warn", "poll.sync.failed", error=_error_text(exc))
        self.logger.event("debug", "poll.cycle", status="ok", extra={"observed": observed})
        return observed

    async def _check_one(self, task_id: str, agent: AgentEntry) -> str:
        try:
            resp = await self.client.session_status(agent.port, agent.session_id)
        except httpx.HTTPError as exc:
            self.logger.event("warn", "poll.check.error", task_id=task_id, error=_error_text(exc))
            return self._observe(
                agent,
                "errored",
                error="Agent unreachable; it may have been cleaned up externally",
            )
        if not resp.is_success:
            return self._observe(
                agent,
                "errored",
                error=f"HTTP {resp.status_code} from agent status endpoint",
            )
        try:
            body = resp.json()
        except ValueError:
            body = None
        if _status_idle(body):
            return self._observe(agent, FINISHED)
        return self._observe(agent, "running")

    def _observe(self, agent: AgentEntry, state: str, error: str | None = None) -> str:
        previous = self._last_seen.get(agent.task_id)
        self._last_seen[agent.task_id] = state
        if state == previous:
            return state
        if state == "errored":
            kind = LifecycleEventKind.ERRORED
        elif state == FINISHED:
            kind = LifecycleEventKind.FINISHED
        else:
            return state
        self.bus.emit(
            LifecycleEvent(kind, agent.task_id, branch=agent.branch, port=agent.port, error=error)
        )
        return state

    async def run(self, interval: float) -> None:
        self._stop.clear()
        while not self._stop.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stop.set()


class Orchestrator:
    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        *,
        registry: AgentRegistry | None = None,
        bus: LifecycleBus | None = None,
        client: WorkerControlClient | None = None,
        supervisor: TmuxSupervisor | None = None,
        tracker: LbTracker | None = None,
        workspace: GitWorkspace | None = None,
        logger: JsonlLogger | None = None,
    ) -> None:
        self.config = config or read_orchestrator_config()
        self.run_id = f"run-{int(time.time())}-{random.randint(1000, 9999)}"
        self.logger = logger or JsonlLogger(
            self.config.resolved_debug_log_path,
            component="orchestrator",
            run_id=self.run_id,
            config=read_logging_config(self.config.debug_log_level),
        )
        self.registry = registry if registry is not None else AgentRegistry()
        if bus is None:
            bus = LifecycleBus(logger=self.logger)
            for kind in LifecycleEventKind:
                bus.subscribe(kind, log_notifier(self.logger))
        self.bus = bus
        self.client = client or WorkerControlClient(
            timeout=self.config.http_timeout,
            server_password=self.config.server_password,
        )
        self.supervisor = supervisor or TmuxSupervisor(self.config.tmux_bin, timeout=self.config.command_timeout)
        self.tracker = tracker or LbTracker(
            self.config.lb_bin,
            cwd=self.config.project_dir,
            timeout=self.config.command_timeout,
        )
        self.workspace = workspace or GitWorkspace(
            self.config.git_bin,
            cwd=self.config.project_dir,
            timeout=self.config.command_timeout,
        )
        self.poller = Poller(self.registry, self.client, self.bus, self.tracker, self.logger)
        self._admission: dict[str, _AdmissionSlot] = {}

    # --- Dispatch ---

    async def dispatch(
        self,
        task_id: str,
        prompt: str,
        model: str | None = None,
        provider: str | None = None,
        slug: str | None = None,
        skip_worktree: bool = False,
    ) -> dict[str, Any]:
        existing = self.registry.get(task_id)
        if existing is not None:
            return {"status": "already_dispatched", **existing.to_dict()}

        slot = self._admission.setdefault(task_id, _AdmissionSlot())
        slot.users += 1
        try:
            async with slot.lock:
                # A concurrent dispatch for the same id may have finished while we waited.
                existing = self.registry.get(task_id)
                if existing is not None:
                    return {"status": "already_dispatched", **existing.to_dict()}
                return await self._dispatch_admitted(task_id, prompt, model, provider, slug, skip_worktree)
        finally:
            slot.users -= 1
            if slot.users == 0:
                self._admission.pop(task_id, None)

    async def _dispatch_admitted(
        self,
        task_id: str,
        prompt: str,
        model: str | None,
        provider: str | None,
        slug: str | None,
        skip_worktree: bool,
    ) -> dict[str, Any]:
        model_id = model or self.config.default_model
        provider_id = provider or self.config.default_provider
        branch = f"{task_id}-{slug}" if slug else task_id
        tmux_session = derive_tmux_session(task_id)
        log_file = self.config.log_file_for(task_id)
        log = self.logger.bind(task_id=task_id)
        t0 = time.monotonic()
        log.event(
            "info",
            "dispatch.start",
            branch=branch,
            tmux=tmux_session,
            skip_worktree=skip_worktree,
            extra={"model": model_id, "provider": provider_id, "prompt_hash": stable_hash(prompt)},
        )

        step = "describe"
        try:
            description, description_error = await self.tracker.description(task_id)
            if description_error:
                log.event("warn", "dispatch.description.degraded", error=description_error)
            full_prompt = (
                f"## Issue: {task_id}\n\n{description}\n\n---\n\n{prompt}" if description else prompt
            )

            step = "claim"
            await self.tracker.set_status(task_id, CLAIMED_STATUS)
            self.bus.emit(LifecycleEvent(LifecycleEventKind.CLAIMED, task_id, branch=branch))

            step = "worktree"
            repo_root = await self.workspace.repo_root()
            if skip_worktree:
                worktree_path = repo_root
            else:
                await self.tracker.create_worktree(branch)
                worktree_path = repo_root.parent / branch

            step = "launch"
            # Admission holds and the registry has no entry, so a session by this
            # name is left over from an earlier failed dispatch.
            if await self.supervisor.has_session(tmux_session):
                await self.supervisor.kill_session(tmux_session)
                log.event("warn", "dispatch.stale_session.killed", tmux=tmux_session)
            log_file.parent.mkdir(parents=True, exist_ok=True)
            log_file.unlink(missing_ok=True)
            log_file.write_text("", encoding="utf-8")
            serve_cmd = worker_shell_command(self.config.worker_command, log_file)
            await self.supervisor.new_session(tmux_session, worktree_path, ["bash", "-c", serve_cmd])

            step = "port"
            port = await wait_for_port(
                log_file,
                timeout=self.config.port_timeout,
                interval=self.config.port_poll_interval,
            )

            step = "session"
            session_id = await self.client.create_session(port, task_id)

            step = "prompt"
            resp = await self.client.prompt_async(port, session_id, full_prompt, model_id, provider_id)
            if not resp.is_success:
                raise ControlAPIError(f"prompt_async failed status={resp.status_code}")

            step = "metadata"
            entry_branch = NO_WORKTREE if skip_worktree else branch
            metadata = AgentMetadata(port, tmux_session, session_id, entry_branch)
            await self.tracker.set_description(task_id, encode_agent_metadata(metadata))
        except Exception as exc:
            log.event(
                "error",
                "dispatch.failed",
                status="failed",
                step=step,
                error_code=type(exc).__name__,
                error=_error_text(exc),
                duration_ms=int((time.monotonic() - t0) * 1000),
                extra={"traceback": traceback.format_exc(limit=8)},
            )
            return {"status": "error", "task_id": task_id, "step": step, "error": _error_text(exc)}

        entry = AgentEntry(
            task_id=task_id,
            port=port,
            session_id=session_id,
            tmux_session=tmux_session,
            branch=entry_branch,
            worktree_path=str(worktree_path),
            dispatched_at=utc_now_iso(),
        )
        self.registry.set(task_id, entry)
        self.bus.emit(LifecycleEvent(LifecycleEventKind.RUNNING, task_id, branch=branch, port=port))
        log.event(
            "info",
            "dispatch.ok",
            status="ok",
            port=port,
            session_id=session_id,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        return {"status": "dispatched", **entry.to_dict()}

    # --- On-demand operations ---

    def _not_found(self, task_id: str) -> dict[str, Any]:
        return {
            "status": "not_found",
            "task_id": task_id,
            "hint": "Agent not in registry. It may have been cleaned up or started before this session.",
        }

    async def check(self, task_id: str, lines: int | None = None) -> dict[str, Any]:
        agent = self.registry.get(task_id)
        if agent is None:
            return self._not_found(task_id)

        limit = lines or 10
        session_status = await fetch_session_status(self.client, agent.port, agent.session_id)
        diff_stat = await self.workspace.diff_stat(agent.worktree_path)

        try:
            resp = await self.client.messages(agent.port, agent.session_id)
            if not resp.is_success:
                return {
                    "status": session_status,
                    "task_id": task_id,
                    "http_status": resp.status_code,
                    "diff_stat": diff_stat,
                    "agent": agent.to_dict(),
                }
            messages = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            return await self._tmux_fallback(agent, exc)

        return {
            "status": session_status,
            "task_id": task_id,
            "port": agent.port,
            "tmux": agent.tmux_session,
            "branch": agent.branch,
            "diff_stat": diff_stat,
            "recent_messages": extract_message_texts(messages if isinstance(messages, list) else [], limit),
        }

    async def _tmux_fallback(self, agent: AgentEntry, api_error: BaseException) -> dict[str, Any]:
        try:
            output = await self.supervisor.capture_pane(agent.tmux_session, lines=TMUX_FALLBACK_LINES)
        except Exception as exc:
            self.logger.event(
                "warn",
                "check.unreachable",
                task_id=agent.task_id,
                error=_error_text(api_error),
                extra={"capture_error": _error_text(exc)},
            )
            return {
                "status": UNREACHABLE,
                "task_id": agent.task_id,
                "error": _error_text(api_error),
                "agent": agent.to_dict(),
            }
        return {
            "status": "api_unreachable_tmux_fallback",
            "degraded": True,
            "task_id": agent.task_id,
            "error": _error_text(api_error),
            "tmux_output": output[-TMUX_FALLBACK_CHARS:],
            "agent": agent.to_dict(),
        }

    async def followup(self, task_id: str, message: str) -> dict[str, Any]:
        agent = self.registry.get(task_id)
        if agent is None:
            return self._not_found(task_id)
        try:
            resp = await self.client.prompt_async(
                agent.port,
                agent.session_id,
                message,
                self.config.default_model,
                self.config.default_provider,
            )
        except httpx.HTTPError as exc:
            self.logger.event("warn", "followup.error", task_id=task_id, error=_error_text(exc))
            return {"status": "error", "task_id": task_id, "error": _error_text(exc)}
        return {
            "status": "sent" if resp.is_success else "failed",
            "task_id": task_id,
            "http_status": resp.status_code,
        }

    async def abort(self, task_id: str) -> dict[str, Any]:
        agent = self.registry.get(task_id)
        if agent is None:
            return self._not_found(task_id)
        try:
            resp = await self.client.abort(agent.port, agent.session_id)
        except httpx.HTTPError as exc:
            self.logger.event("warn", "abort.error", task_id=task_id, error=_error_text(exc))
            return {"status": "error", "task_id": task_id, "error": _error_text(exc)}
        if resp.is_success:
            self.bus.emit(
                LifecycleEvent(LifecycleEventKind.ABORTED, task_id, branch=agent.branch, port=agent.port)
            )
        return {
            "status": "aborted" if resp.is_success else "failed",
            "task_id": task_id,
            "http_status": resp.status_code,
        }

    async def cleanup(self, task_id: str, status: str | None = None, force: bool = True) -> dict[str, Any]:
        """Tear down an agent. Every step runs even if an earlier one failed."""
        agent = self.registry.get(task_id)
        if agent is None:
            return self._not_found(task_id)

        new_status = status or DEFAULT_CLEANUP_STATUS
        if new_status not in CLEANUP_STATUSES:
            return {
                "status": "error",
                "task_id": task_id,
                "error": f"Unsupported status {new_status!r}; expected one of {', '.join(CLEANUP_STATUSES)}",
            }

        steps: list[dict[str, Any]] = []

        def record(step: str, ok: bool, detail: str) -> None:
            steps.append({"step": step, "ok": ok, "detail": detail})

        try:
            await self.supervisor.kill_session(agent.tmux_session)
            record("tmux", True, "tmux killed")
        except Exception:
            record("tmux", False, "tmux already gone")

        if agent.has_worktree:
            try:
                await self.tracker.delete_worktree(agent.branch, force=force)
                record("worktree", True, "worktree deleted")
            except Exception as exc:
                record("worktree", False, f"worktree delete failed: {_error_text(exc)}")

        try:
            await self.tracker.set_status(task_id, new_status)
            record("status", True, f"status set to {new_status}")
        except Exception as exc:
            record("status", False, f"status update failed: {_error_text(exc)}")

        if new_status == "in_review":
            self.bus.emit(
                LifecycleEvent(LifecycleEventKind.FINISHED, task_id, branch=agent.branch, port=agent.port)
            )
        elif new_status == "done":
            self.bus.emit(
                LifecycleEvent(LifecycleEventKind.CLOSED, task_id, branch=agent.branch, port=agent.port)
            )

        try:
            await self.tracker.sync()
            record("sync", True, "synced")
        except Exception as exc:
            record("sync", False, f"sync failed: {_error_text(exc)}")

        self.registry.delete(task_id)
        record("registry", True, "removed from registry")

        try:
            self.config.log_file_for(task_id).unlink(missing_ok=True)
            record("log", True, "log file removed")
        except OSError as exc:
            record("log", False, f"log file removal failed: {exc}")

        self.logger.event(
            "info",
            "cleanup.done",
            task_id=task_id,
            status=new_status,
            extra={"failed_steps": [s["step"] for s in steps if not s["ok"]]},
        )
        return {
            "status": "cleaned_up",
            "task_id": task_id,
            "actions": [s["detail"] for s in steps],
            "steps": steps,
        }

    async def list_agents(self) -> dict[str, Any]:
        snapshot = list(self.registry.entries())
        agents = await asyncio.gather(*(self._describe_agent(agent) for _task_id, agent in snapshot))
        return {"agents": list(agents), "count": len(agents)}

    async def _describe_agent(self, agent: AgentEntry) -> dict[str, Any]:
        session_status, tmux_alive, diff_stat = await asyncio.gather(
            fetch_session_status(self.client, agent.port, agent.session_id),
            self.supervisor.has_session(agent.tmux_session),
            self.workspace.diff_stat(agent.worktree_path),
        )
        return {
            "task_id": agent.task_id,
            "port": agent.port,
            "session_id": agent.session_id,
            "tmux": agent.tmux_session,
            "branch": agent.branch,
            "reachable": session_status != UNREACHABLE,
            "tmux_alive": tmux_alive,
            "session_status": session_status,
            "diff_stat": diff_stat,
            "dispatched_at": agent.dispatched_at,
        }

    # --- Polling & recovery ---

    async def on_coordinator_idle(self) -> dict[str, str]:
        return await self.poller.poll_once()

    async def reconstruct(self) -> dict[str, Any]:
        """Rebuild the registry from in-progress lb issues whose tmux session is alive.

        Best-effort: never raises. Already-registered ids are left untouched.
        """
        restored: list[str] = []
        skipped: list[dict[str, str]] = []
        try:
            issues = await self.tracker.list_by_status(CLAIMED_STATUS, timeout=self.config.reconstruct_timeout)
        except Exception as exc:
            self.logger.event("warn", "reconstruct.failed", status="failed", error=_error_text(exc))
            return {"restored": restored, "skipped": skipped, "error": _error_text(exc)}

        for issue in issues:
            task_id = str(issue.get("identifier") or issue.get("id") or "")
            try:
                reason = await self._reconstruct_issue(task_id, issue)
            except Exception as exc:
                reason = f"error: {_error_text(exc)}"
            if reason is None:
                restored.append(task_id)
            else:
                skipped.append({"task_id": task_id, "reason": reason})

        self.logger.event(
            "info",
            "reconstruct.done",
            status="ok",
            extra={"restored": restored, "skipped": skipped, "registry_size": self.registry.size()},
        )
        return {"restored": restored, "skipped": skipped}

    async def _reconstruct_issue(self, task_id: str, issue: dict[str, Any]) -> str | None:
        if not task_id:
            return "missing_id"
        if self.registry.has(task_id):
            return "already_registered"
        metadata = parse_agent_metadata(issue.get("description"))
        if metadata is None:
            return "no_metadata"
        if not await self.supervisor.has_session(metadata.tmux_session):
            return "tmux_dead"
        self.registry.set(
            task_id,
            AgentEntry(
                task_id=task_id,
                port=metadata.port,
                session_id=metadata.session_id,
                tmux_session=metadata.tmux_session,
                branch=metadata.resolved_branch,
                worktree_path="",
                dispatched_at=str(issue.get("updated_at") or utc_now_iso()),
            ),
        )
        self.logger.event("info", "reconstruct.restored", task_id=task_id, port=metadata.port)
        return None

    async def aclose(self) -> None:
        self.poller.stop()
        await self.bus.aclose()
        await self.client.aclose()


# --- CLI ---


def _print_json(data: Any) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


def config_from_args(args: argparse.Namespace) -> OrchestratorConfig:
    """Environment configuration with CLI flags taking precedence."""
    config = read_orchestrator_config()
    if args.project_dir:
        config.project_dir = Path(args.project_dir).resolve()
    if args.debug_log_level:
        config.debug_log_level = args.debug_log_level
    return config


async def _run_command(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    orchestrator = Orchestrator(config)
    try:
        await orchestrator.reconstruct()
        if args.command == "dispatch":
            result = await orchestrator.dispatch(
                args.task_id,
                args.prompt,
                model=args.model,
                provider=args.provider,
                slug=args.slug,
                skip_worktree=args.skip_worktree,
            )
        elif args.command == "check":
            result = await orchestrator.check(args.task_id, args.lines)
        elif args.command == "followup":
            result = await orchestrator.followup(args.task_id, args.message)
        elif args.command == "abort":
            result = await orchestrator.abort(args.task_id)
        elif args.command == "cleanup":
            result = await orchestrator.cleanup(args.task_id, status=args.status, force=not args.no_force)
        elif args.command == "agents":
            result = await orchestrator.list_agents()
        elif args.command == "reconstruct":
            result = {"registry": orchestrator.registry.to_dict()}
        elif args.command == "watch":
            await _watch(orchestrator, args.interval or config.poll_interval)
            return 0
        else:  # pragma: no cover
            raise RuntimeError(f"Unknown command: {args.command}")
        _print_json(result)
        return 1 if result.get("status") in ("error", "not_found") else 0
    finally:
        await orchestrator.aclose()


async def _watch(orchestrator: Orchestrator, interval: float) -> None:
    def print_event(event: LifecycleEvent) -> None:
        print(json.dumps(event.to_dict(), ensure_ascii=False), flush=True)

    for kind in LifecycleEventKind:
        orchestrator.bus.subscribe(kind, print_event)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, orchestrator.poller.stop)
    print(f"Watching {orchestrator.registry.size()} agent(s) every {interval:g}s", file=sys.stderr)
    await orchestrator.poller.run(interval)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="lb background-agent orchestrator")
    parser.add_argument("--project-dir", default="")
    parser.add_argument("--debug-log-level", default="")
    sub = parser.add_subparsers(dest="command", required=True)

    dispatch = sub.add_parser("dispatch", help="Dispatch an issue to a background worktree agent")
    dispatch.add_argument("task_id")
    dispatch.add_argument("prompt")
    dispatch.add_argument("--model", default=None)
    dispatch.add_argument("--provider", default=None)
    dispatch.add_argument("--slug", default=None)
    dispatch.add_argument("--skip-worktree", action="store_true")

    check = sub.add_parser("check", help="Show status and recent messages of an agent")
    check.add_argument("task_id")
    check.add_argument("--lines", type=int, default=10)

    followup = sub.add_parser("followup", help="Send a follow-up message to an agent")
    followup.add_argument("task_id")
    followup.add_argument("message")

    abort = sub.add_parser("abort", help="Abort an agent's current operation")
    abort.add_argument("task_id")

    cleanup = sub.add_parser("cleanup", help="Kill tmux, delete worktree, update lb status")
    cleanup.add_argument("task_id")
    cleanup.add_argument("--status", choices=list(CLEANUP_STATUSES), default=None)
    cleanup.add_argument("--no-force", action="store_true")

    sub.add_parser("agents", help="List tracked background agents")
    sub.add_parser("reconstruct", help="Print the registry rebuilt from lb and tmux")

    watch = sub.add_parser("watch", help="Poll agents at a fixed interval and print lifecycle events")
    watch.add_argument("--interval", type=float, default=None)

    return parser


def main() -> None:
    args = build_parser().parse_args()
    sys.exit(asyncio.run(_run_command(args)))


if __name__ == "__main__":
    main()
