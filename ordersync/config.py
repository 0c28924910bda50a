from pydantic_settings import BaseSettings
from typing import Dict, List, Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    # Defaults to a local sqlite file; production points this at Postgres.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./order_sync.db")
    LOG_LEVEL: str = "INFO"

    # Global kill switch for scheduled and manual sync runs.
    SYNC_ENABLED: bool = True

    # Store order API (per request / per run limits)
    STORE_REQUEST_MIN_DELAY_MS: int = 250
    STORE_MAX_REQUESTS_PER_RUN: int = 200
    STORE_MAX_IN_FLIGHT: int = 2
    STORE_MAX_PAGE_SIZE: int = 100
    STORE_HTTP_TIMEOUT_SECONDS: float = 30.0

    # Bounded retry for transport failures at the fetch call site.
    FETCH_MAX_RETRIES: int = 3
    FETCH_RETRY_BACKOFF_SECONDS: float = 1.0

    # Pages read when a store has neither a cursor nor local orders.
    INITIAL_BACKFILL_PAGES: int = 5

    # Backward re-scan of recently synced orders.
    DRIFT_SCAN_ENABLED: bool = True
    DRIFT_SCAN_LOCAL_ORDERS: int = 500
    DRIFT_SCAN_MAX_ID_RANGE: int = 1000
    DRIFT_SCAN_MAX_API_CALLS: int = 50
    # When True, a confirmed high-water-mark drift rewrites the cursor to the
    # upstream maximum instead of only flagging the store.
    DRIFT_AUTO_HEAL: bool = False

    # Runs
    SYNC_RUN_TIMEOUT_SECONDS: float = 60.0
    RUN_STALE_MINUTES: int = 10
    MAX_CONCURRENT_STORES: int = 3
    RATE_LIMIT_DEFAULT_RETRY_SECONDS: int = 60

    # Schedule (hours are wall-clock hours in SCHEDULER_TIMEZONE)
    SCHEDULER_TIMEZONE: str = "UTC"
    SCHEDULER_POLL_SECONDS: float = 30.0
    NEW_ORDERS_INTERVAL_MINUTES: int = 60
    NEW_ORDERS_WINDOW_START_HOUR: int = 8
    NEW_ORDERS_WINDOW_END_HOUR: int = 20
    STATUS_SYNC_INTERVAL_HOURS: int = 6
    CLEANUP_HOUR: int = 2
    HISTORY_RETENTION_DAYS: int = 30

    # Delivery status collaborator
    DELIVERY_API_BASE_URL: str = "https://backend.maystro-delivery.com"
    DELIVERY_REQUEST_MIN_DELAY_MS: int = 100
    STATUS_SYNC_BATCH_LIMIT: int = 200
    STATUS_SYNC_COMMIT_EVERY: int = 25
    # JSON mapping: {"primary": {"api_key": "...", "stores": ["ALPH"]}, ...}
    DELIVERY_CREDENTIALS: Dict[str, Dict] = {}
    DELIVERY_DEFAULT_CREDENTIAL: Optional[str] = None

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def store_request_min_delay(self) -> float:
        return self.STORE_REQUEST_MIN_DELAY_MS / 1000.0

    @property
    def delivery_request_min_delay(self) -> float:
        return self.DELIVERY_REQUEST_MIN_DELAY_MS / 1000.0

    def numbered_delivery_keys(self) -> List[Dict[str, object]]:
        """Read DELIVERY_API_KEY, DELIVERY_API_KEY_2 .. _N from the environment.

        Each key may carry a ``_NAME`` and a comma separated ``_STORES`` list.
        """
        entries: List[Dict[str, object]] = []
        suffixes = [""] + [f"_{n}" for n in range(2, 21)]
        for suffix in suffixes:
            api_key = os.getenv(f"DELIVERY_API_KEY{suffix}")
            if not api_key:
                continue
            name = os.getenv(f"DELIVERY_API_KEY{suffix}_NAME") or (
                "primary" if not suffix else f"key{suffix}"
            )
            stores_raw = os.getenv(f"DELIVERY_API_KEY{suffix}_STORES", "")
            stores = [s.strip() for s in stores_raw.split(",") if s.strip()]
            entries.append({"name": name, "api_key": api_key, "stores": stores})
        return entries


settings = Settings()
