"""
pytest configuration for restore pipeline tests.

Adds src directory to Python path for imports and resets logging state.
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))

from core.logging.context import clear_log_context  # noqa: E402


@pytest.fixture(autouse=True)
def reset_log_context():
    """Context variables must not leak between tests."""
    clear_log_context()
    yield
    clear_log_context()


class FakeClock:
    """Monotonic clock advanced only by its own sleep."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        # Let other tasks reserve before time moves on
        await asyncio.sleep(0)
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()
