"""Pytest configuration."""

import os

import pytest

# Ensure test environment
os.environ.setdefault("BG_DEBUG", "true")
os.environ.setdefault("BG_TELEGRAM_BOT_TOKEN", "")
os.environ.setdefault("BG_TELEGRAM_CHAT_ID", "")


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
