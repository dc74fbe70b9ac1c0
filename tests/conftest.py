from __future__ import annotations

import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    """
    Ensure `src/` is on sys.path so tests can import `canvas_engine`
    without requiring an editable install.
    """
    repo_root = Path(__file__).resolve().parents[1]
    src_root = repo_root / "src"
    sys.path.insert(0, str(src_root))


@pytest.fixture(autouse=True)
def reset_registry():
    """Give every test the built-in capability tables and default config."""
    from canvas_engine.providers.registry import get_registry

    registry = get_registry()
    registry.reset()
    yield registry
    registry.reset()
