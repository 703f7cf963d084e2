"""
MongoDB connection handle.

One ``Database`` is created per process entry point (API lifespan, watcher CLI)
and passed to the components that need it; nothing here is module-global.
"""
import logging
from typing import List, Optional

from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

import errors
from config import Settings

logger = logging.getLogger(__name__)


class Database:
    def __init__(self, settings: Settings, client: Optional[MongoClient] = None):
        self.settings = settings
        self._client = client
        self._db = None
        self._slots: Optional[Collection] = None

    @property
    def client(self) -> MongoClient:
        if self._client is None:
            raise errors.StoreUnavailable("Database not configured")
        return self._client

    @property
    def slots(self) -> Collection:
        if self._slots is None:
            raise errors.StoreUnavailable("Database not configured")
        return self._slots

    @property
    def connected(self) -> bool:
        return self._slots is not None

    def connect(self, ensure_indexes: bool = True) -> "Database":
        if self._client is None:
            self._client = MongoClient(
                self.settings.MONGO_URI,
                serverSelectionTimeoutMS=self.settings.MONGO_TIMEOUT_MS,
            )
        self._db = self._client[self.settings.DATABASE_NAME]
        self._slots = self._db[self.settings.SLOT_COLLECTION]
        if ensure_indexes:
            self.ensure_indexes()
        logger.info(
            "Connected to MongoDB database %s (collection %s)",
            self.settings.DATABASE_NAME,
            self.settings.SLOT_COLLECTION,
        )
        return self

    def ensure_indexes(self) -> None:
        self.slots.create_index([("slotNumber", ASCENDING)], unique=True, name="slotNumber_unique")

    def ping(self) -> bool:
        try:
            self.client.admin.command("ping")
            return True
        except (PyMongoError, errors.StoreUnavailable):
            return False

    def collection_names(self) -> List[str]:
        if self._db is None:
            return []
        return self._db.list_collection_names()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            logger.info("MongoDB connection closed")
        self._client = None
        self._db = None
        self._slots = None
