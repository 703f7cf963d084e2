import os
from functools import lru_cache
from typing import List


def _float_env(name: str, default: float) -> float:
    return float(os.getenv(name, default))


class Settings:
    def __init__(self) -> None:
        self.MONGO_URI: str = os.getenv("MONGO_URI", "mongodb://localhost:27017")
        self.DATABASE_NAME: str = os.getenv("DATABASE_NAME", "parking")
        self.SLOT_COLLECTION: str = os.getenv("SLOT_COLLECTION", "parkingslots")
        self.MONGO_TIMEOUT_MS: int = int(os.getenv("MONGO_TIMEOUT_MS", 5000))

        self.PORT: int = int(os.getenv("PORT", 8000))
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
        self.CORS_ORIGINS: List[str] = [
            o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
        ]
        self.SSE_KEEPALIVE_SECONDS: float = _float_env("SSE_KEEPALIVE_SECONDS", 15.0)
        # events a feed subscriber may fall behind before it is disconnected
        self.SUBSCRIBER_QUEUE_SIZE: int = int(os.getenv("SUBSCRIBER_QUEUE_SIZE", 1000))

        # Change-stream watcher
        self.WATCH_RETRY_DELAY: float = _float_env("WATCH_RETRY_DELAY", 1.0)
        self.WATCH_MAX_RETRY_DELAY: float = _float_env("WATCH_MAX_RETRY_DELAY", 30.0)
        self.WATCH_MAX_AWAIT_MS: int = int(os.getenv("WATCH_MAX_AWAIT_MS", 1000))


@lru_cache()
def get_settings() -> Settings:
    return Settings()
