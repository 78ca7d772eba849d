#!/usr/bin/env python3
"""Structured JSONL logging for the lb background-agent orchestrator.

Every record is one JSON object per line carrying ``ts``, ``level``,
``component``, ``event`` and ``run_id``, then any context bound with
``JsonlLogger.bind()``, then the keyword fields of the call itself.
"""

from __future__ import annotations

import hashlib
import json
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


LEVELS = ("debug", "info", "warn", "error")
_LEVEL_ALIASES = {"warning": "warn", "err": "error"}


def normalize_level(level: str) -> str:
    name = (level or "").strip().lower()
    name = _LEVEL_ALIASES.get(name, name)
    return name if name in LEVELS else "info"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def stable_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


@dataclass
class LoggerConfig:
    level: str = "info"
    max_bytes: int = 20 * 1024 * 1024
    backup_count: int = 10

    def enabled(self, level: str) -> bool:
        return LEVELS.index(normalize_level(level)) >= LEVELS.index(normalize_level(self.level))


def rotate_if_needed(path: Path, max_bytes: int, backup_count: int) -> None:
    """Move ``path`` aside once it reaches ``max_bytes``; keep the newest ``backup_count`` copies."""
    try:
        if path.stat().st_size < max(max_bytes, 1):
            return
    except FileNotFoundError:
        return
    path.rename(path.with_name(f"{path.name}.{time.time_ns() // 1_000_000}"))

    backups = sorted(path.parent.glob(f"{path.name}.*"), key=lambda p: p.stat().st_mtime)
    for stale in backups[: max(len(backups) - max(backup_count, 1), 0)]:
        stale.unlink(missing_ok=True)


class JsonlLogger:
    def __init__(
        self,
        file_path: Path,
        component: str,
        run_id: str,
        config: LoggerConfig | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.file_path = Path(file_path)
        self.component = component
        self.run_id = run_id
        self.config = config or LoggerConfig()
        self.context = dict(context or {})
        try:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            pass

    def bind(self, **context: Any) -> "JsonlLogger":
        """Child logger on the same file that stamps ``context`` on each record."""
        return JsonlLogger(
            self.file_path,
            component=self.component,
            run_id=self.run_id,
            config=self.config,
            context={**self.context, **context},
        )

    def event(self, level: str, event: str, **fields: Any) -> None:
        if not self.config.enabled(level):
            return
        record = {
            "ts": utc_now_iso(),
            "level": normalize_level(level),
            "component": self.component,
            "event": event,
            "run_id": self.run_id,
            **self.context,
            **fields,
        }
        line = json.dumps(record, ensure_ascii=False, default=str)
        try:
            rotate_if_needed(self.file_path, self.config.max_bytes, self.config.backup_count)
            with self.file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError:
            # Logging never raises into the caller.
            pass


def _positive_int_env(name: str, default: int) -> int:
    raw = (os.environ.get(name, "") or "").strip()
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def read_logging_config(level: str = "info") -> LoggerConfig:
    """Logger settings: ``level`` as resolved by the caller, rotation from ``LB_DEBUG_LOG_*``."""
    return LoggerConfig(
        level=normalize_level(level),
        max_bytes=_positive_int_env("LB_DEBUG_LOG_ROTATION_MB", 20) * 1024 * 1024,
        backup_count=_positive_int_env("LB_DEBUG_LOG_RETENTION_FILES", 10),
    )
