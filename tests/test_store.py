"""Tests for the MongoDB-backed slot store."""

import threading
from unittest.mock import MagicMock

import pytest
from pymongo.errors import AutoReconnect

import errors
from schemas import MLDetection, Slot, UserData
from store import SlotStore, set_operations


def test_create_and_find(store):
    created = store.create(Slot(slot_number=1))

    assert created.id is not None
    found = store.find_by_slot_number(1)
    assert found.slot_number == 1
    assert found.floor == 1
    assert found.is_occupied is False
    assert found.user_data == UserData()
    assert found.ml_detection is None


def test_create_duplicate_slot_number_rejected(store, collection):
    store.create(Slot(slot_number=7))

    with pytest.raises(errors.DuplicateKey):
        store.create(Slot(slot_number=7, floor=2))

    assert collection.count_documents({"slotNumber": 7}) == 1


def test_find_unknown_slot(store):
    with pytest.raises(errors.NotFound):
        store.find_by_slot_number(404)


def test_exists(store):
    store.create(Slot(slot_number=3))

    assert store.exists(3) is True
    assert store.exists(4) is False


def test_save_writes_only_named_fields(store, collection):
    store.create(Slot(slot_number=2))
    slot = store.find_by_slot_number(2)
    slot.floor = 5
    slot.vehicle_number = "KA01AB1234"

    store.save(slot, ["vehicleNumber"])

    document = collection.find_one({"slotNumber": 2})
    assert document["vehicleNumber"] == "KA01AB1234"
    assert document["floor"] == 1


def test_save_defaults_to_all_mutable_fields(store):
    store.create(Slot(slot_number=2))
    slot = store.find_by_slot_number(2)
    slot.floor = 3
    slot.is_occupied = True

    saved = store.save(slot)

    assert saved.floor == 3
    assert saved.is_occupied is True


def test_save_rejects_immutable_field(store):
    store.create(Slot(slot_number=2))
    slot = store.find_by_slot_number(2)

    with pytest.raises(ValueError):
        store.save(slot, ["slotNumber"])


def test_save_unknown_slot(store):
    with pytest.raises(errors.NotFound):
        store.save(Slot(slot_number=99), ["isOccupied"])


def test_list_all_sorted(store):
    for number in (3, 1, 2):
        store.create(Slot(slot_number=number))

    assert [s.slot_number for s in store.list_all()] == [1, 2, 3]


def test_user_data_written_as_dotted_paths():
    document = Slot(slot_number=1, user_data=UserData(name="Asha")).to_document()

    changes = set_operations(document, ["userData", "isOccupied"])

    assert changes["userData.name"] == "Asha"
    assert changes["userData.vehicleType"] == "car"
    assert "userData" not in changes
    assert changes["isOccupied"] is False


def test_overlapping_writers_last_commit_wins(store, clock):
    """Two writers load the same slot; the later save wins only where they overlap."""
    store.create(Slot(slot_number=1))
    booking_copy = store.find_by_slot_number(1)
    sensor_copy = store.find_by_slot_number(1)

    sensor_copy.is_occupied = False
    sensor_copy.ml_detection = MLDetection(last_update=clock(), confidence=0.8, status="empty")
    booking_copy.is_occupied = True
    booking_copy.vehicle_number = "KA01AB1234"

    store.save(sensor_copy, ["isOccupied", "mlDetection"])
    final = store.save(booking_copy, ["isOccupied", "vehicleNumber"])

    assert final.is_occupied is True
    assert final.vehicle_number == "KA01AB1234"
    assert final.ml_detection.status == "empty"


def test_connection_failure_is_store_unavailable():
    collection = MagicMock()
    collection.find_one.side_effect = AutoReconnect("connection reset")

    with pytest.raises(errors.StoreUnavailable):
        SlotStore(collection).find_by_slot_number(1)


def test_commits_are_published_in_order(store, feed):
    subscription = feed.subscribe()
    store.create(Slot(slot_number=1))
    slot = store.find_by_slot_number(1)
    slot.is_occupied = True
    store.save(slot, ["isOccupied"])

    first = subscription.get(timeout=1)
    second = subscription.get(timeout=1)

    assert first.operation_type == "insert"
    assert first.full_document["slotNumber"] == 1
    assert second.operation_type == "update"
    assert second.updated_fields == {"isOccupied": True}
    assert second.full_document["isOccupied"] is True


def test_failed_write_publishes_nothing(store, feed):
    store.create(Slot(slot_number=1))
    subscription = feed.subscribe()

    with pytest.raises(errors.DuplicateKey):
        store.create(Slot(slot_number=1))

    assert subscription.get(timeout=0.05) is None


class SlowForSlotOne:
    """Collection wrapper whose slot 1 updates wait until released."""

    def __init__(self, collection):
        self._collection = collection
        self.entered = threading.Event()
        self.release = threading.Event()

    def __getattr__(self, name):
        return getattr(self._collection, name)

    def find_one_and_update(self, query, *args, **kwargs):
        if query["slotNumber"] == 1:
            self.entered.set()
            self.release.wait(5)
        return self._collection.find_one_and_update(query, *args, **kwargs)


def test_writes_to_different_slots_do_not_wait_on_each_other(store, monkeypatch):
    store.create(Slot(slot_number=1))
    store.create(Slot(slot_number=2))
    first = store.find_by_slot_number(1)
    second = store.find_by_slot_number(2)
    collection = SlowForSlotOne(store.collection)
    monkeypatch.setattr(store, "collection", collection)

    slow = threading.Thread(target=store.save, args=(first, ["floor"]), daemon=True)
    slow.start()
    assert collection.entered.wait(5)

    fast = threading.Thread(target=store.save, args=(second, ["floor"]), daemon=True)
    fast.start()
    fast.join(timeout=5)
    finished_while_slot_one_pending = not fast.is_alive()
    collection.release.set()
    slow.join(timeout=5)

    assert finished_while_slot_one_pending
    assert not slow.is_alive()
