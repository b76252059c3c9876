from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

_HERE = Path(__file__).resolve()
_PROJECT_ROOT = _HERE.parents[1]

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 OEmbedSnap/1.0"
)


def load_env_files() -> None:
    # Local dev: pick up SNAP_* settings from the project's .env.
    load_dotenv(_PROJECT_ROOT / ".env", override=False)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(minimum, float(raw))
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    viewport_width: int = 600
    viewport_height: int = 600
    network_idle_ms: int = 1000
    settle_ms: int = 1000
    render_timeout_ms: int = 20000
    fetch_timeout_ms: int = 8000
    default_ttl_seconds: int = 14400
    # Redis-style stores (and the KV this service grew up on) won't keep a key
    # for less than a minute.
    min_ttl_seconds: int = 60
    max_ttl_seconds: int = 2592000
    memory_max_entries: int = 1024
    content_selector: str = "body div"
    user_agent: str = DEFAULT_USER_AGENT
    redis_url: str | None = None
    browser_concurrency: int = 1
    browser_acquire_timeout_s: float = 10.0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            viewport_width=_env_int("SNAP_VIEWPORT_WIDTH", 600, minimum=1),
            viewport_height=_env_int("SNAP_VIEWPORT_HEIGHT", 600, minimum=1),
            network_idle_ms=_env_int("SNAP_NETWORK_IDLE_MS", 1000),
            settle_ms=_env_int("SNAP_SETTLE_MS", 1000),
            render_timeout_ms=_env_int("SNAP_RENDER_TIMEOUT_MS", 20000, minimum=1),
            fetch_timeout_ms=_env_int("SNAP_FETCH_TIMEOUT_MS", 8000, minimum=1),
            default_ttl_seconds=_env_int("SNAP_DEFAULT_TTL_SECONDS", 14400),
            min_ttl_seconds=_env_int("SNAP_MIN_TTL_SECONDS", 60),
            max_ttl_seconds=_env_int("SNAP_MAX_TTL_SECONDS", 2592000),
            memory_max_entries=_env_int("SNAP_MEMORY_MAX_ENTRIES", 1024, minimum=1),
            content_selector=os.getenv("SNAP_CONTENT_SELECTOR", "").strip() or "body div",
            user_agent=os.getenv("SNAP_USER_AGENT", "").strip() or DEFAULT_USER_AGENT,
            redis_url=os.getenv("SNAP_REDIS_URL", "").strip() or None,
            browser_concurrency=_env_int("PLAYWRIGHT_CONCURRENCY", 1, minimum=1),
            browser_acquire_timeout_s=_env_float("PLAYWRIGHT_ACQUIRE_TIMEOUT_S", 10.0),
        )
