"""
Change feed for parking slot mutations.

Two sources produce the same ``ChangeEvent`` records:

* ``ChangeFeed`` is the in-process publisher. The slot store publishes to it
  after every committed write, and each subscriber drains its own FIFO queue,
  so a subscriber sees events in store commit order. It only sees writes made
  by this process.
* ``MongoChangeSource`` tails the collection's MongoDB change stream and
  therefore sees every writer, including out-of-band administrative deletes.

Subscriptions from either source are context managers exposing
``events(stop)``, which blocks for the next event and returns once the
subscription is closed or ``stop`` is set. ``ChangeFeed.subscribe_async``
hands out a subscription for code running on an asyncio event loop (the SSE
endpoint); its queue is fed through ``call_soon_threadsafe`` so readers never
hold a worker thread while waiting.

Subscriber queues are bounded. A subscriber that falls ``max_queue_size``
events behind is disconnected rather than buffered without limit.
"""
import asyncio
import logging
import queue
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional

from pydantic import ValidationError
from pymongo.collection import Collection

from schemas import ChangeEvent

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000


class BaseSubscription:
    def events(self, stop: Optional[threading.Event] = None) -> Iterator[ChangeEvent]:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class Subscription(BaseSubscription):
    """A subscriber's view of the in-process feed."""

    def __init__(self, feed: "ChangeFeed", poll_interval: float = 0.5, maxsize: int = DEFAULT_QUEUE_SIZE):
        self._feed = feed
        self._queue: "queue.Queue[Optional[ChangeEvent]]" = queue.Queue(maxsize=maxsize)
        self.poll_interval = poll_interval
        self.closed = False

    def put(self, event: ChangeEvent) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning("Change feed subscriber fell %d events behind, disconnecting", self._queue.maxsize)
            self.close()

    def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Wait for the next event; ``None`` on timeout or once closed."""
        if self.closed:
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def events(self, stop: Optional[threading.Event] = None) -> Iterator[ChangeEvent]:
        while not self.closed and not (stop is not None and stop.is_set()):
            event = self.get(timeout=self.poll_interval)
            if event is not None:
                yield event

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed.unsubscribe(self)
        # wake a reader blocked in get(); a full queue has no blocked reader
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass


class AsyncSubscription:
    """A subscriber's view of the feed, read from an asyncio event loop.

    ``put`` and ``close`` may be called from any thread; the queue itself is
    only touched on ``loop``. Events published before ``close`` are still
    handed out, then ``get`` returns ``None`` for good.
    """

    def __init__(self, feed: "ChangeFeed", loop: asyncio.AbstractEventLoop, maxsize: int = DEFAULT_QUEUE_SIZE):
        self._feed = feed
        self._loop = loop
        self._queue: "asyncio.Queue[Optional[ChangeEvent]]" = asyncio.Queue(maxsize=maxsize)
        self._overflowed = False
        self._drained = False
        self.closed = False

    def _call_on_loop(self, callback, *args) -> None:
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # event loop already shut down
            self.closed = True
            self._feed.unsubscribe(self)

    def put(self, event: ChangeEvent) -> None:
        if not self.closed:
            self._call_on_loop(self._deliver, event)

    def _deliver(self, event: ChangeEvent) -> None:
        if self._overflowed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Change feed subscriber fell %d events behind, disconnecting", self._queue.maxsize)
            self._overflowed = True
            while not self._queue.empty():
                self._queue.get_nowait()
            self.close()

    def _wake(self) -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Wait for the next event; ``None`` on timeout or once closed and drained."""
        if self._drained:
            return None
        try:
            event = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if event is None:
            self._drained = True
        return event

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed.unsubscribe(self)
        self._call_on_loop(self._wake)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()
        return False


class ChangeFeed:
    def __init__(self, max_queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.max_queue_size = max_queue_size
        self._subscribers: List[Any] = []
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def _add(self, subscription):
        with self._lock:
            self._subscribers.append(subscription)
            total = len(self._subscribers)
        logger.debug("Change feed subscriber added (%d total)", total)
        return subscription

    def subscribe(self, poll_interval: float = 0.5) -> Subscription:
        return self._add(Subscription(self, poll_interval=poll_interval, maxsize=self.max_queue_size))

    def subscribe_async(self) -> AsyncSubscription:
        """Subscribe from a coroutine; events are delivered on the running loop."""
        loop = asyncio.get_running_loop()
        return self._add(AsyncSubscription(self, loop, maxsize=self.max_queue_size))

    def unsubscribe(self, subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.put(event)

    def close(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.close()


# --- MongoDB change streams ---------------------------------------------------

def _plain_document(document: Mapping[str, Any]) -> Dict[str, Any]:
    plain = dict(document)
    if "_id" in plain:
        plain["_id"] = str(plain["_id"])
    return plain


def _change_time(change: Mapping[str, Any]) -> datetime:
    wall_time = change.get("wallTime")
    if isinstance(wall_time, datetime):
        return wall_time
    cluster_time = change.get("clusterTime")
    if cluster_time is not None and hasattr(cluster_time, "as_datetime"):
        return cluster_time.as_datetime()
    return datetime.now(timezone.utc)


def _slot_number(value: Any) -> Optional[int]:
    # out-of-band writes may store anything under slotNumber
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        logger.warning("Ignoring non-numeric slotNumber %r in change document", value)
        return None
    if isinstance(value, float) and number != value:
        logger.warning("Ignoring non-integral slotNumber %r in change document", value)
        return None
    return number


def event_from_change(change: Mapping[str, Any]) -> Optional[ChangeEvent]:
    """Convert a raw change-stream document; ``None`` for non-slot operations."""
    operation = change.get("operationType")
    if operation == "replace":
        operation = "update"
    if operation not in ("insert", "update", "delete"):
        return None

    full_document = change.get("fullDocument")
    if full_document is not None:
        full_document = _plain_document(full_document)

    updated_fields = None
    removed_fields: List[str] = []
    description = change.get("updateDescription")
    if description:
        updated_fields = dict(description.get("updatedFields") or {})
        removed_fields = list(description.get("removedFields") or [])

    raw_number = None
    if full_document is not None:
        raw_number = full_document.get("slotNumber")
    elif updated_fields and "slotNumber" in updated_fields:
        raw_number = updated_fields["slotNumber"]
    slot_number = _slot_number(raw_number)

    timestamp = _change_time(change)
    try:
        return ChangeEvent(
            operation_type=operation,
            slot_number=slot_number,
            full_document=full_document,
            updated_fields=updated_fields,
            removed_fields=removed_fields,
            timestamp=timestamp,
        )
    except ValidationError as exc:
        logger.warning("Unreadable %s change, forwarding without details: %s", operation, exc)
        return ChangeEvent(operation_type=operation, slot_number=slot_number, timestamp=timestamp)


class MongoSubscription(BaseSubscription):
    def __init__(self, stream):
        self._stream = stream

    def events(self, stop: Optional[threading.Event] = None) -> Iterator[ChangeEvent]:
        while self._stream.alive and not (stop is not None and stop.is_set()):
            # blocks server-side for up to max_await_time_ms
            change = self._stream.try_next()
            if change is None:
                continue
            if change.get("operationType") == "invalidate":
                logger.warning("Change stream invalidated")
                return
            event = event_from_change(change)
            if event is not None:
                yield event

    def close(self) -> None:
        self._stream.close()


class MongoChangeSource:
    def __init__(self, collection: Collection, max_await_ms: int = 1000):
        self.collection = collection
        self.max_await_ms = max_await_ms

    def subscribe(self) -> MongoSubscription:
        stream = self.collection.watch(
            full_document="updateLookup",
            max_await_time_ms=self.max_await_ms,
        )
        return MongoSubscription(stream)
