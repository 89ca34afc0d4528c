"""Pytest configuration: custom markers and shared fixtures."""

import pytest

from worldtrack.model import CameraIntrinsics


class ManualClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start_ms: float = 1_000.0) -> None:
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float) -> None:
        self.now_ms += ms


def pytest_addoption(parser):
    parser.addoption(
        "--slow", action="store_true", default=False,
        help="Run slow tests (large synthetic depth maps)",
    )


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "slow: mark test as slow (large synthetic inputs)"
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--slow"):
        return
    skip_slow = pytest.mark.skip(reason="needs --slow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


@pytest.fixture
def intrinsics() -> CameraIntrinsics:
    return CameraIntrinsics(fx=500.0, fy=500.0, cx=320.0, cy=240.0)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()
