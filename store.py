"""
Durable slot table backed by a MongoDB collection.

Every mutation is a single-document write. ``save`` writes with ``$set`` so a
writer that only touches some fields leaves the others as they are in the
store; where two writers overlap (``isOccupied``) the later commit wins.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from pymongo import ASCENDING, ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import ConnectionFailure, DuplicateKeyError

import errors
from change_feed import ChangeFeed
from schemas import MUTABLE_FIELDS, ChangeEvent, Slot

logger = logging.getLogger(__name__)

# Nested records written field by field (``userData.name``) rather than whole.
DOTTED_FIELDS = ("userData",)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def set_operations(document: Dict[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    for name in fields:
        value = document[name]
        if name in DOTTED_FIELDS and isinstance(value, dict):
            for key, sub_value in value.items():
                changes[f"{name}.{key}"] = sub_value
        else:
            changes[name] = value
    return changes


class SlotStore:
    def __init__(
        self,
        collection: Collection,
        feed: Optional[ChangeFeed] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.collection = collection
        self.feed = feed
        self.clock = clock
        # per-slot: a slot's commit+publish pairs reach the feed in commit order
        self._slot_locks: Dict[int, threading.Lock] = {}
        self._slot_locks_guard = threading.Lock()

    def _commit_lock(self, slot_number: int) -> threading.Lock:
        with self._slot_locks_guard:
            return self._slot_locks.setdefault(slot_number, threading.Lock())

    @contextmanager
    def _store_errors(self):
        try:
            yield
        except ConnectionFailure as exc:
            logger.error("MongoDB unavailable: %s", exc)
            raise errors.StoreUnavailable("Database unavailable") from exc

    def _publish(self, operation: str, slot: Slot, updated_fields: Optional[Dict[str, Any]] = None) -> None:
        if self.feed is None:
            return
        self.feed.publish(
            ChangeEvent(
                operation_type=operation,
                slot_number=slot.slot_number,
                full_document=slot.model_dump(by_alias=True),
                updated_fields=updated_fields,
                timestamp=self.clock(),
            )
        )

    def create(self, slot: Slot) -> Slot:
        document = slot.to_document()
        with self._store_errors(), self._commit_lock(slot.slot_number):
            try:
                result = self.collection.insert_one(document)
            except DuplicateKeyError as exc:
                raise errors.DuplicateKey(f"Slot {slot.slot_number} already exists") from exc
            created = slot.model_copy(update={"id": str(result.inserted_id)})
            self._publish("insert", created)
        return created

    def find_by_slot_number(self, slot_number: int) -> Slot:
        with self._store_errors():
            document = self.collection.find_one({"slotNumber": slot_number})
        if document is None:
            raise errors.NotFound("Slot not found")
        return Slot.model_validate(document)

    def exists(self, slot_number: int) -> bool:
        with self._store_errors():
            return self.collection.count_documents({"slotNumber": slot_number}, limit=1) > 0

    def save(self, slot: Slot, fields: Optional[Iterable[str]] = None) -> Slot:
        """Write ``fields`` (all mutable fields by default) and return the stored slot."""
        names = tuple(MUTABLE_FIELDS if fields is None else fields)
        unknown = set(names) - set(MUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"Not a mutable slot field: {', '.join(sorted(unknown))}")

        changes = set_operations(slot.to_document(), names)
        with self._store_errors(), self._commit_lock(slot.slot_number):
            document = self.collection.find_one_and_update(
                {"slotNumber": slot.slot_number},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
            if document is None:
                raise errors.NotFound("Slot not found")
            saved = Slot.model_validate(document)
            self._publish("update", saved, updated_fields=changes)
        return saved

    def list_all(self) -> List[Slot]:
        with self._store_errors():
            documents = list(self.collection.find().sort("slotNumber", ASCENDING))
        return [Slot.model_validate(d) for d in documents]
