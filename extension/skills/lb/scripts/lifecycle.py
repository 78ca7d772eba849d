#!/usr/bin/env python3
"""Lifecycle event bus for background-agent status transitions.

Events:
    claimed   - issue picked up (lb update --status in_progress)
    running   - dispatch complete, opencode serve is up with a session
    finished  - agent went idle, or the issue moved to in_review
    errored   - agent crashed or is unreachable
    aborted   - in-flight operation aborted
    closed    - issue marked done

``emit()`` never blocks and never runs handlers inline: every subscription
owns a bounded queue drained by its own task, so a slow or broken observer
cannot stall the emitting operation or any other observer.
"""

from __future__ import annotations

import asyncio
import inspect
import traceback
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from logging_utils import JsonlLogger


class LifecycleEventKind(str, Enum):
    CLAIMED = "claimed"
    RUNNING = "running"
    FINISHED = "finished"
    ERRORED = "errored"
    ABORTED = "aborted"
    CLOSED = "closed"


@dataclass(frozen=True)
class LifecycleEvent:
    kind: LifecycleEventKind
    task_id: str
    branch: str | None = None
    port: int | None = None
    error: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return {k: v for k, v in data.items() if v is not None}


LifecycleHandler = Callable[[LifecycleEvent], Union[None, Awaitable[None]]]


class _Subscription:
    def __init__(self, kind: LifecycleEventKind, handler: LifecycleHandler, maxsize: int) -> None:
        self.kind = kind
        self.handler = handler
        self.queue: asyncio.Queue[LifecycleEvent] = asyncio.Queue(maxsize=maxsize)
        self.task: asyncio.Task[None] | None = None


class LifecycleBus:
    def __init__(self, logger: JsonlLogger | None = None, queue_size: int = 100) -> None:
        self.logger = logger
        self.queue_size = max(1, queue_size)
        self._subs: dict[LifecycleEventKind, list[_Subscription]] = {}
        self._closed = False

    def subscribe(self, kind: LifecycleEventKind | str, handler: LifecycleHandler) -> None:
        kind = LifecycleEventKind(kind)
        self._subs.setdefault(kind, []).append(_Subscription(kind, handler, self.queue_size))

    def unsubscribe(self, kind: LifecycleEventKind | str, handler: LifecycleHandler) -> None:
        kind = LifecycleEventKind(kind)
        remaining: list[_Subscription] = []
        for sub in self._subs.get(kind, []):
            if sub.handler == handler:
                if sub.task is not None:
                    sub.task.cancel()
            else:
                remaining.append(sub)
        self._subs[kind] = remaining

    def emit(self, event: LifecycleEvent) -> None:
        if self._closed:
            return
        for sub in list(self._subs.get(event.kind, [])):
            self._ensure_consumer(sub)
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                self._log(
                    "warn",
                    "lifecycle.dropped",
                    task_id=event.task_id,
                    kind=event.kind.value,
                    handler=_handler_name(sub.handler),
                )

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        for subs in list(self._subs.values()):
            for sub in subs:
                if sub.task is not None and not sub.task.done():
                    await sub.queue.join()

    async def aclose(self) -> None:
        await self.drain()
        self._closed = True
        tasks = [sub.task for subs in self._subs.values() for sub in subs if sub.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for subs in self._subs.values():
            for sub in subs:
                sub.task = None

    def _ensure_consumer(self, sub: _Subscription) -> None:
        if sub.task is None or sub.task.done():
            sub.task = asyncio.get_running_loop().create_task(self._consume(sub))

    async def _consume(self, sub: _Subscription) -> None:
        while True:
            event = await sub.queue.get()
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log(
                    "warn",
                    "lifecycle.handler.error",
                    task_id=event.task_id,
                    kind=event.kind.value,
                    handler=_handler_name(sub.handler),
                    error=str(exc),
                    extra={"traceback": traceback.format_exc(limit=6)},
                )
            finally:
                sub.queue.task_done()

    def _log(self, level: str, event: str, **kwargs: Any) -> None:
        if self.logger is not None:
            self.logger.event(level, event, **kwargs)


def _handler_name(handler: LifecycleHandler) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


def log_notifier(logger: JsonlLogger) -> LifecycleHandler:
    """Observer that records each event as a ``lifecycle.<kind>`` log record."""

    def notify(event: LifecycleEvent) -> None:
        level = "warn" if event.kind in (LifecycleEventKind.ERRORED, LifecycleEventKind.ABORTED) else "info"
        logger.event(level, f"lifecycle.{event.kind.value}", **event.to_dict())

    return notify
