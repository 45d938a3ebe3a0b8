import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Load .env from repo root for local/dev runs (no-op if missing)
# Avoid loading .env in production so platform env vars are authoritative.
BASE_DIR = Path(__file__).resolve().parents[2]
_ENV_PATH = BASE_DIR / ".env"
_ENVIRONMENT = os.environ.get("ENVIRONMENT", "").strip().lower()
if _ENVIRONMENT not in {"production", "prod"}:
    load_dotenv(_ENV_PATH, override=False)

HOUR = 60 * 60
DAY = 24 * HOUR


@dataclass
class RefreshPolicy:
    # All values in seconds.
    fresh_window: float = 6 * HOUR
    refresh_timeout: float = 12.0
    background_trigger: float = 2 * HOUR
    hard_stale: float = 5 * DAY
    interval: float = 6 * HOUR
    startup_delay: float = 30.0


class Settings:
    def __init__(self) -> None:
        def _read_positive(name: str, fallback: float) -> float:
            raw = (os.environ.get(name) or "").strip()
            if not raw:
                return fallback
            try:
                value = float(raw)
            except ValueError:
                return fallback
            if value != value or value <= 0:
                return fallback
            return value

        # API prefix
        self.api_prefix = os.environ.get("DCA_API_PREFIX", "/api")

        # Logging / method metadata
        self.log_path = os.environ.get("DCA_LOG_PATH", "dca-lab.log")
        self.method_version = os.environ.get("DCA_METHOD_VERSION", "v1.0.0")

        # Persisted market cache
        self.cache_dir = Path(os.environ.get("DCA_CACHE_DIR", str(BASE_DIR / "data" / "market-cache")))
        self.user_agent = os.environ.get("DCA_USER_AGENT", "dca-lab/1.0")

        # Upstream safeguards
        self.min_history_rows = int(_read_positive("DCA_MIN_HISTORY_ROWS", 200))
        ratio = _read_positive("DCA_REGRESSION_RATIO", 0.85)
        self.regression_ratio = ratio if ratio <= 1 else 0.85

        # Background refresh toggle (tests and one-off scripts turn it off)
        self.auto_refresh = os.environ.get("DCA_AUTO_REFRESH", "1") == "1"

        defaults = RefreshPolicy()
        self.refresh = RefreshPolicy(
            fresh_window=_read_positive("DCA_REQUEST_FRESH_WINDOW_SEC", defaults.fresh_window),
            refresh_timeout=_read_positive("DCA_REQUEST_REFRESH_TIMEOUT_SEC", defaults.refresh_timeout),
            background_trigger=_read_positive("DCA_BACKGROUND_REFRESH_TRIGGER_SEC", defaults.background_trigger),
            hard_stale=_read_positive("DCA_CACHE_HARD_STALE_SEC", defaults.hard_stale),
            interval=_read_positive("DCA_BACKGROUND_REFRESH_INTERVAL_SEC", defaults.interval),
            startup_delay=_read_positive("DCA_STARTUP_REFRESH_DELAY_SEC", defaults.startup_delay),
        )


settings = Settings()
