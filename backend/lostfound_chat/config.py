"""Runtime configuration, read once from environment variables."""

import os
from datetime import timedelta


MONGODB_URI: str = os.getenv("MONGODB_URI", "mongodb://localhost:27017")
MONGODB_DB: str = os.getenv("MONGODB_DB", "lost_found_platform")

JWT_SECRET: str = os.getenv("JWT_SECRET", "change-me")
JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")

# Empty means single-process mode with local fan-out only
REDIS_URL: str | None = os.getenv("REDIS_URL") or None

AUTO_CLOSE_DAYS: int = int(os.getenv("AUTO_CLOSE_DAYS", "7"))
SWEEP_INTERVAL_SECONDS: float = float(os.getenv("SWEEP_INTERVAL_SECONDS", "3600"))

MESSAGE_MAX_LENGTH: int = int(os.getenv("MESSAGE_MAX_LENGTH", "1000"))
TITLE_MAX_LENGTH: int = 100
HISTORY_PAGE_MAX: int = 200

RATE_LIMIT_MAX_EVENTS: int = int(os.getenv("RATE_LIMIT_MAX_EVENTS", "30"))
RATE_LIMIT_WINDOW_SECONDS: float = float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "10"))

CONNECTION_QUEUE_SIZE: int = int(os.getenv("CONNECTION_QUEUE_SIZE", "256"))

LOG_FORMAT: str = os.getenv("LOG_FORMAT", "dev")
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


def auto_close_window() -> timedelta:
    return timedelta(days=AUTO_CLOSE_DAYS)
