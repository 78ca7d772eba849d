#!/usr/bin/env python3
"""In-memory registry of dispatched background agents.

The registry has no persistence of its own. The only durable trace of an
agent is the metadata fragment written into its lb issue description (see
``encode_agent_metadata``), from which the registry is rebuilt on restart.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any, Iterator

from tmux_supervisor import branch_from_tmux_session


NO_WORKTREE = "(no worktree)"
METADATA_VERSION = "lb-agent/v1"


@dataclass(frozen=True)
class AgentEntry:
    task_id: str
    port: int
    session_id: str
    tmux_session: str
    branch: str
    worktree_path: str
    dispatched_at: str

    @property
    def has_worktree(self) -> bool:
        return self.branch != NO_WORKTREE

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AgentRegistry:
    def __init__(self) -> None:
        self._agents: dict[str, AgentEntry] = {}

    def set(self, task_id: str, entry: AgentEntry) -> None:
        self._agents[task_id] = entry

    def get(self, task_id: str) -> AgentEntry | None:
        return self._agents.get(task_id)

    def has(self, task_id: str) -> bool:
        return task_id in self._agents

    def delete(self, task_id: str) -> bool:
        return self._agents.pop(task_id, None) is not None

    def entries(self) -> "_RegistrySnapshot":
        return _RegistrySnapshot(list(self._agents.items()))

    def size(self) -> int:
        return len(self._agents)

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._agents

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {task_id: entry.to_dict() for task_id, entry in self._agents.items()}


class _RegistrySnapshot:
    """Restartable view over the (task_id, entry) pairs present at snapshot time."""

    def __init__(self, items: list[tuple[str, AgentEntry]]) -> None:
        self._items = items

    def __iter__(self) -> Iterator[tuple[str, AgentEntry]]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)


@dataclass(frozen=True)
class AgentMetadata:
    port: int
    tmux_session: str
    session_id: str
    branch: str = ""

    @property
    def resolved_branch(self) -> str:
        return self.branch or branch_from_tmux_session(self.tmux_session)


def encode_agent_metadata(meta: AgentMetadata) -> str:
    text = f"{METADATA_VERSION} Port: {meta.port}, tmux: {meta.tmux_session}, session: {meta.session_id}"
    if meta.branch:
        text += f", branch: {meta.branch}"
    return text


_VERSION_RE = re.compile(r"lb-agent/v(\d+)")
_FIELD_RES = {
    "port": re.compile(r"Port:\s*(\d+)"),
    "tmux": re.compile(r"tmux:\s*([^\s,]+)"),
    "session": re.compile(r"session:\s*([^\s,]+)"),
    # Branch labels may contain the no-worktree sentinel, which has a space.
    "branch": re.compile(r"branch:\s*(\(no worktree\)|[^\s,]+)"),
}


def parse_agent_metadata(text: Any) -> AgentMetadata | None:
    """Extract agent metadata from an issue description.

    Accepts the versioned fragment and the older un-versioned
    ``Port: <n>, tmux: <name>, session: <id>`` form. Never raises; returns
    None unless port, tmux session and session id are all present and valid.
    """
    if not isinstance(text, str) or not text:
        return None
    version = _VERSION_RE.search(text)
    if version and version.group(1) != "1":
        return None

    found: dict[str, str] = {}
    for key, pattern in _FIELD_RES.items():
        match = pattern.search(text)
        if match:
            found[key] = match.group(1)
    if not {"port", "tmux", "session"} <= found.keys():
        return None

    port = int(found["port"])
    if not 0 < port <= 65535:
        return None
    return AgentMetadata(
        port=port,
        tmux_session=found["tmux"],
        session_id=found["session"],
        branch=found.get("branch", ""),
    )
