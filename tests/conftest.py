"""Pytest configuration to ensure project package importability."""

from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT_DIR)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

os.environ.setdefault("BRIDGE_CONFIG_DIR", str(ROOT_DIR / "config"))
os.environ.setdefault("BRIDGE_METRICS_DIR", tempfile.mkdtemp(prefix="bridge-metrics-"))
