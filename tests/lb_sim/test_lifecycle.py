#!/usr/bin/env python3
from __future__ import annotations

import asyncio
import json
import tempfile
import unittest
from pathlib import Path

from lifecycle import LifecycleBus, LifecycleEvent, LifecycleEventKind, log_notifier
from logging_utils import JsonlLogger, LoggerConfig


def _read_records(path: Path) -> list[dict]:
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


class LifecycleBusTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory(prefix="lb-bus-test-")
        self.log_path = Path(self._tmp.name) / "bus.jsonl"
        self.logger = JsonlLogger(
            self.log_path,
            component="lifecycle",
            run_id="run-test",
            config=LoggerConfig(level="debug"),
        )
        self.bus = LifecycleBus(logger=self.logger)

    async def asyncTearDown(self) -> None:
        await self.bus.aclose()
        self._tmp.cleanup()

    async def test_events_reach_only_their_kind(self) -> None:
        finished: list[LifecycleEvent] = []
        errored: list[LifecycleEvent] = []
        self.bus.subscribe(LifecycleEventKind.FINISHED, finished.append)
        self.bus.subscribe("errored", errored.append)

        self.bus.emit(LifecycleEvent(LifecycleEventKind.FINISHED, "AGE-1", branch="AGE-1", port=4100))
        self.bus.emit(LifecycleEvent(LifecycleEventKind.CLAIMED, "AGE-2"))
        await self.bus.drain()

        self.assertEqual([e.task_id for e in finished], ["AGE-1"])
        self.assertEqual(errored, [])

    async def test_failing_handler_does_not_affect_others(self) -> None:
        seen: list[str] = []

        def broken(event: LifecycleEvent) -> None:
            raise RuntimeError("observer exploded")

        self.bus.subscribe(LifecycleEventKind.RUNNING, broken)
        self.bus.subscribe(LifecycleEventKind.RUNNING, lambda e: seen.append(e.task_id))

        self.bus.emit(LifecycleEvent(LifecycleEventKind.RUNNING, "AGE-1"))
        self.bus.emit(LifecycleEvent(LifecycleEventKind.RUNNING, "AGE-2"))
        await self.bus.drain()

        self.assertEqual(seen, ["AGE-1", "AGE-2"])
        errors = [r for r in _read_records(self.log_path) if r["event"] == "lifecycle.handler.error"]
        self.assertEqual(len(errors), 2)
        self.assertEqual(errors[0]["error"], "observer exploded")

    async def test_async_handler_is_awaited(self) -> None:
        seen: list[str] = []

        async def slow(event: LifecycleEvent) -> None:
            await asyncio.sleep(0.01)
            seen.append(event.task_id)

        self.bus.subscribe(LifecycleEventKind.ABORTED, slow)
        self.bus.emit(LifecycleEvent(LifecycleEventKind.ABORTED, "AGE-3"))
        self.assertEqual(seen, [])
        await self.bus.drain()
        self.assertEqual(seen, ["AGE-3"])

    async def test_unsubscribe_stops_delivery(self) -> None:
        seen: list[str] = []
        self.bus.subscribe(LifecycleEventKind.CLOSED, seen.append)
        self.bus.unsubscribe(LifecycleEventKind.CLOSED, seen.append)
        self.bus.emit(LifecycleEvent(LifecycleEventKind.CLOSED, "AGE-4"))
        await self.bus.drain()
        self.assertEqual(seen, [])

    async def test_full_queue_drops_and_logs(self) -> None:
        bus = LifecycleBus(logger=self.logger, queue_size=1)
        seen: list[str] = []
        bus.subscribe(LifecycleEventKind.FINISHED, lambda e: seen.append(e.task_id))

        # emit() is synchronous, so the consumer cannot run between these calls.
        bus.emit(LifecycleEvent(LifecycleEventKind.FINISHED, "AGE-1"))
        bus.emit(LifecycleEvent(LifecycleEventKind.FINISHED, "AGE-2"))
        await bus.aclose()

        self.assertEqual(seen, ["AGE-1"])
        dropped = [r for r in _read_records(self.log_path) if r["event"] == "lifecycle.dropped"]
        self.assertEqual([r["task_id"] for r in dropped], ["AGE-2"])

    async def test_log_notifier_writes_lifecycle_records(self) -> None:
        self.bus.subscribe(LifecycleEventKind.ERRORED, log_notifier(self.logger))
        self.bus.emit(LifecycleEvent(LifecycleEventKind.ERRORED, "AGE-5", port=4100, error="HTTP 500"))
        await self.bus.drain()

        records = [r for r in _read_records(self.log_path) if r["event"] == "lifecycle.errored"]
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0]["level"], "warn")
        self.assertEqual(records[0]["task_id"], "AGE-5")
        self.assertEqual(records[0]["error"], "HTTP 500")

    def test_event_dict_omits_empty_fields(self) -> None:
        event = LifecycleEvent(LifecycleEventKind.CLAIMED, "AGE-6", branch="AGE-6")
        self.assertEqual(event.to_dict(), {"kind": "claimed", "task_id": "AGE-6", "branch": "AGE-6"})


if __name__ == "__main__":
    unittest.main(verbosity=2)
