#!/usr/bin/env python3
"""Environment config, CLI parsing and port discovery."""

from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from logging_utils import read_logging_config
from orchestrator import (
    Orchestrator,
    PortDiscoveryTimeout,
    build_parser,
    config_from_args,
    read_orchestrator_config,
    wait_for_port,
)


class ConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            config = read_orchestrator_config()
            logging_config = read_logging_config()
        self.assertEqual(config.lb_bin, "lb")
        self.assertEqual(config.worker_command, "opencode serve")
        self.assertEqual(config.log_dir, Path("/tmp"))
        self.assertEqual(config.port_timeout, 30.0)
        self.assertEqual(config.resolved_debug_log_path, Path("/tmp/lb-orchestrator.jsonl"))
        self.assertEqual(logging_config.level, "info")
        self.assertEqual(logging_config.max_bytes, 20 * 1024 * 1024)

    def test_environment_overrides_and_bad_numbers(self) -> None:
        env = {
            "LB_BIN": "/opt/lb",
            "LB_LOG_DIR": "/var/tmp/lb",
            "LB_DEFAULT_MODEL": "gpt-5",
            "LB_PORT_TIMEOUT_SECONDS": "12.5",
            "LB_HTTP_TIMEOUT_SECONDS": "soon",
            "LB_POLL_INTERVAL_SECONDS": "-3",
            "OPENCODE_SERVER_PASSWORD": " secret ",
            "LB_DEBUG_LOG_ROTATION_MB": "0",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = read_orchestrator_config()
            logging_config = read_logging_config()
        self.assertEqual(config.lb_bin, "/opt/lb")
        self.assertEqual(config.log_file_for("AGE-1"), Path("/var/tmp/lb/agent-AGE-1.log"))
        self.assertEqual(config.default_model, "gpt-5")
        self.assertEqual(config.port_timeout, 12.5)
        self.assertEqual(config.http_timeout, 5.0)
        self.assertEqual(config.poll_interval, 30.0)
        self.assertEqual(config.server_password, "secret")
        self.assertEqual(logging_config.max_bytes, 20 * 1024 * 1024)


class CliOverrideTests(unittest.IsolatedAsyncioTestCase):
    async def test_debug_log_level_flag_beats_environment(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env = {"LB_DEBUG_LOG_LEVEL": "error", "LB_LOG_DIR": tmpdir}
            with mock.patch.dict(os.environ, env, clear=True):
                args = build_parser().parse_args(["--debug-log-level", "debug", "--project-dir", tmpdir, "agents"])
                config = config_from_args(args)
                orchestrator = Orchestrator(config)
            try:
                self.assertEqual(config.debug_log_level, "debug")
                self.assertEqual(config.project_dir, Path(tmpdir).resolve())
                self.assertEqual(orchestrator.logger.config.level, "debug")
                orchestrator.logger.event("debug", "cli.override.check")
                self.assertIn("cli.override.check", config.resolved_debug_log_path.read_text(encoding="utf-8"))
            finally:
                await orchestrator.aclose()

    def test_environment_level_applies_without_flag(self) -> None:
        with mock.patch.dict(os.environ, {"LB_DEBUG_LOG_LEVEL": "warning"}, clear=True):
            config = config_from_args(build_parser().parse_args(["agents"]))
        self.assertEqual(read_logging_config(config.debug_log_level).level, "warn")

    def test_logging_config_takes_level_from_caller(self) -> None:
        with mock.patch.dict(os.environ, {"LB_DEBUG_LOG_LEVEL": "error"}, clear=True):
            self.assertEqual(read_logging_config("debug").level, "debug")


class WaitForPortTests(unittest.IsolatedAsyncioTestCase):
    async def test_port_is_read_from_log(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            log_file = Path(tmpdir) / "agent-AGE-1.log"
            log_file.write_text("booting\nopencode server listening on http://localhost:40123\n", encoding="utf-8")
            self.assertEqual(await wait_for_port(log_file, timeout=1.0, interval=0.01), 40123)

    async def test_missing_log_times_out(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            with self.assertRaises(PortDiscoveryTimeout):
                await wait_for_port(Path(tmpdir) / "never.log", timeout=0.1, interval=0.02)


class ParserTests(unittest.TestCase):
    def test_dispatch_arguments(self) -> None:
        args = build_parser().parse_args(
            ["--project-dir", "/work/repo", "dispatch", "AGE-1", "Fix it", "--slug", "login", "--skip-worktree"]
        )
        self.assertEqual(args.command, "dispatch")
        self.assertEqual(args.project_dir, "/work/repo")
        self.assertEqual((args.task_id, args.prompt, args.slug), ("AGE-1", "Fix it", "login"))
        self.assertTrue(args.skip_worktree)
        self.assertIsNone(args.model)

    def test_cleanup_status_is_restricted(self) -> None:
        args = build_parser().parse_args(["cleanup", "AGE-1", "--status", "done", "--no-force"])
        self.assertEqual(args.status, "done")
        self.assertTrue(args.no_force)
        with mock.patch("sys.stderr"), self.assertRaises(SystemExit):
            build_parser().parse_args(["cleanup", "AGE-1", "--status", "archived"])

    def test_command_is_required(self) -> None:
        with mock.patch("sys.stderr"), self.assertRaises(SystemExit):
            build_parser().parse_args([])


if __name__ == "__main__":
    unittest.main(verbosity=2)
