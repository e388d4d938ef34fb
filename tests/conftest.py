from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Iterator

import pytest


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from portal_order_agent.state import StateStore  # noqa: E402


def pytest_configure(config: Any) -> None:
    config.addinivalue_line(
        "markers",
        "portal: integration smoke tests that drive a real lab portal (need credentials and a test order)",
    )


@pytest.fixture()
def state(tmp_path: Path) -> Iterator[StateStore]:
    """A fresh state DB per test."""
    s = StateStore(str(tmp_path / "state.db"))
    try:
        yield s
    finally:
        s.close()
