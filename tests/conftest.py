"""Pytest configuration and fixtures."""

import pytest

from proofline.config import CheckerConfig
from tests.fakes import FakeClock


@pytest.fixture
def fast_config() -> CheckerConfig:
    """Config without debounce or throttle delays."""
    return CheckerConfig(
        debounce_ms=0,
        throttle_ms=0,
        min_text_length=10,
        chunk_threshold=100,
        chunk_size=100,
        chunk_overlap=20,
        respect_sentences=False,
        max_concurrency=2,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
