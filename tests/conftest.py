import base64

import pytest

from oembed_snap.config import Settings


class FakeClock:
    """Manually advanced stand-in for time.monotonic."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def sample_png():
    """Minimal valid PNG (1x1 white pixel)."""
    return base64.b64decode(
        "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR4"
        "nGP4z8BQDwAEgAF/pooBPQAAAABJRU5ErkJggg=="
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fast_settings():
    """Settings with the idle/settle waits zeroed so renders finish immediately."""
    return Settings(network_idle_ms=0, settle_ms=0, render_timeout_ms=2000, browser_acquire_timeout_s=1.0)


@pytest.fixture(autouse=True)
def _no_env_side_effects(monkeypatch):
    for k in (
        "SNAP_REDIS_URL",
        "SNAP_MIN_TTL_SECONDS",
        "SNAP_DEFAULT_TTL_SECONDS",
        "SNAP_MAX_TTL_SECONDS",
        "SNAP_MEMORY_MAX_ENTRIES",
        "SNAP_CORS_ORIGINS",
        "PLAYWRIGHT_CONCURRENCY",
    ):
        monkeypatch.delenv(k, raising=False)
