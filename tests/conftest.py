from __future__ import annotations

import sys
import os
from pathlib import Path

import pytest


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(repo_root))
    os.environ.setdefault("DG_TRANSPORT_GMRES_MAX_MB", "256")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Keep CI runtime under control by skipping the slowest integration tests."""
    if os.environ.get("DG_TRANSPORT_CI", "0") != "1":
        return

    slow_mark = pytest.mark.skip(reason="Skipped slow integration test in CI mode.")
    slow_patterns = (
        "test_full_physics_",
        "test_cli_run_",
    )
    for item in items:
        nodeid = item.nodeid
        if any(pat in nodeid for pat in slow_patterns):
            item.add_marker(slow_mark)
