"""Shared pytest setup for the drift worker tests."""

import sys
from pathlib import Path

import pytest

# src for drift_worker, tests for azure_mock
for path in (Path(__file__).parent.parent / "src", Path(__file__).parent):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from azure_mock import RecordingProgress  # noqa: E402


@pytest.fixture
def progress() -> RecordingProgress:
    """Progress sink that keeps every reported event."""
    return RecordingProgress()
