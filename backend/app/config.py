import os
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv("APP_DATABASE_URL") or os.getenv('DATABASE_URL') or 'postgresql://localhost/pos_ledger'
        # Comma-separated list of allowed CORS origins for the dashboard.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Scheduled runs: window = [checkpoint - lookback minutes, now], or the
        # default lookback in days for connections that never completed a sync.
        self.pos_sync_default_lookback_days = _env_int("POS_SYNC_DEFAULT_LOOKBACK_DAYS", 90)
        self.pos_sync_lookback_minutes = _env_int("POS_SYNC_LOOKBACK_MINUTES", 60)
        self.pos_sync_classify_limit = _env_int("POS_SYNC_CLASSIFY_LIMIT", 10000)
        # Shared secret the scheduler presents as X-Pos-Sync-Key.
        self.pos_sync_key = os.getenv("POS_SYNC_KEY", "").strip()

settings = Settings()
