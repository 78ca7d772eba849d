"""Simulation tests for the lb background-agent orchestrator."""

from __future__ import annotations

import sys
from pathlib import Path

# The orchestrator ships as flat scripts that import each other by module name.
SCRIPTS_DIR = Path(__file__).resolve().parents[2] / "extension" / "skills" / "lb" / "scripts"
if str(SCRIPTS_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPTS_DIR))
