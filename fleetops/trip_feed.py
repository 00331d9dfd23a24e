"""
Live feed of a driver's assigned trips.

``LiveTripQuery`` plays the real-time query: each poll yields the full
matching set plus the changes since the previous delivery. ``TripFeedSession``
holds the per-subscription state that separates trips already present when
the feed attached from trips assigned afterwards; only the latter notify.
``TripFeedSubscription`` ties the two together on an asyncio polling task.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from .config import config
from .errors import SubscriptionError
from .notifications import Notifier
from .persistence import query_trips
from .trips import TripRecord, TripStatus, decode_trip, decode_trips, trip_to_document

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class TripChange:
    type: ChangeType
    document: Dict[str, Any]


@dataclass(frozen=True)
class FeedUpdate:
    documents: List[Dict[str, Any]]
    changes: List[TripChange] = field(default_factory=list)


def diff_snapshots(previous: Optional[Dict[str, Dict[str, Any]]], documents: List[Dict[str, Any]]) -> List[TripChange]:
    """Classify ``documents`` against the previous delivery. The first delivery is all additions."""
    if previous is None:
        return [TripChange(ChangeType.ADDED, doc) for doc in documents]

    changes = []
    current_ids = set()
    for doc in documents:
        doc_id = doc.get("id")
        current_ids.add(doc_id)
        if doc_id not in previous:
            changes.append(TripChange(ChangeType.ADDED, doc))
        elif previous[doc_id] != doc:
            changes.append(TripChange(ChangeType.MODIFIED, doc))
    for doc_id, doc in previous.items():
        if doc_id not in current_ids:
            changes.append(TripChange(ChangeType.REMOVED, doc))
    return changes


class TripFeedSession:
    """Per-subscription state: known trip ids and the initial-load squelch."""

    def __init__(self, driver_id: str, notifier: Optional[Notifier] = None):
        self.driver_id = driver_id
        self.notifier = notifier
        self.known_trip_ids: Set[str] = set()
        self.is_initial_load = True
        self.visible_trips: List[TripRecord] = []
        self.closed = False

    def apply(self, update: FeedUpdate) -> List[TripRecord]:
        """Apply one feed delivery and return the trips that were notified."""
        if self.closed:
            return []

        trips = decode_trips(update.documents)
        if len(trips) > 1:
            trips = sorted(trips, key=lambda t: t.start_time)
        self.visible_trips = trips

        notified = []
        for change in update.changes:
            if change.type != ChangeType.ADDED:
                continue
            result = decode_trip(change.document)
            if not result.ok:
                continue
            trip = result.trip
            if trip.id in self.known_trip_ids:
                continue
            if not self.is_initial_load:
                self._notify(trip)
                notified.append(trip)
            self.known_trip_ids.add(trip.id)

        self.is_initial_load = False
        return notified

    def _notify(self, trip: TripRecord):
        if self.notifier is None:
            return
        try:
            self.notifier.notify_new_trip(trip)
            logger.info("Notified driver %s of new trip %s", self.driver_id, trip.id)
        except Exception as e:
            logger.warning("Notification for trip %s failed: %s", trip.id, e)

    def close(self):
        """Discard all state and drop queued alerts; later deliveries are ignored."""
        self.closed = True
        if self.notifier is not None:
            try:
                self.notifier.close()
            except Exception as e:
                logger.warning("Closing notifier for driver %s failed: %s", self.driver_id, e)
        self.notifier = None
        self.known_trip_ids = set()
        self.visible_trips = []


class LiveTripQuery:
    """Polling rendition of ``driverId == X AND status == Y`` with change classification."""

    def __init__(self, session_factory, driver_id: str, status: str = TripStatus.ASSIGNED.value):
        self.session_factory = session_factory
        self.driver_id = driver_id
        self.status = status
        self._previous: Optional[Dict[str, Dict[str, Any]]] = None

    def poll(self) -> Optional[FeedUpdate]:
        """Return the next delivery, or None when nothing changed since the last one."""
        db = self.session_factory()
        try:
            documents = [trip_to_document(trip) for trip in query_trips(db, self.driver_id, self.status)]
        except SQLAlchemyError as e:
            raise SubscriptionError(f"Trip query for driver {self.driver_id} failed: {e}") from e
        finally:
            db.close()

        first = self._previous is None
        changes = diff_snapshots(self._previous, documents)
        self._previous = {doc["id"]: doc for doc in documents}
        if not first and not changes:
            return None
        return FeedUpdate(documents=documents, changes=changes)


async def _maybe_await(value):
    if inspect.isawaitable(value):
        await value


class TripFeedSubscription:
    """One driver's live subscription. Build a new one to resubscribe."""

    def __init__(
        self,
        session_factory,
        driver_id: str,
        notifier: Optional[Notifier] = None,
        on_update: Optional[Callable[[List[TripRecord]], Any]] = None,
        on_error: Optional[Callable[[SubscriptionError], Any]] = None,
        poll_interval: Optional[float] = None
    ):
        self.driver_id = driver_id
        self.query = LiveTripQuery(session_factory, driver_id)
        self.session = TripFeedSession(driver_id, notifier)
        self.on_update = on_update
        self.on_error = on_error
        self.poll_interval = poll_interval or config.feed_poll_interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def is_active(self) -> bool:
        return not self.session.closed

    async def start(self):
        """Attach: deliver the initial snapshot, then keep polling in the background."""
        try:
            await self.refresh()
        except SubscriptionError:
            self.stop()
            raise
        self._task = asyncio.create_task(self._run())
        logger.info("Trip feed subscribed for driver %s", self.driver_id)

    async def refresh(self) -> List[TripRecord]:
        """Poll once and apply the delivery, if any."""
        if self.session.closed:
            return []
        # The query is blocking; keep it off the event loop
        update = await asyncio.to_thread(self.query.poll)
        if update is None or self.session.closed:
            return []
        notified = self.session.apply(update)
        if self.on_update is not None:
            await _maybe_await(self.on_update(list(self.session.visible_trips)))
        return notified

    async def _run(self):
        while not self.session.closed:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.refresh()
            except SubscriptionError as e:
                logger.error("Trip feed for driver %s interrupted: %s", self.driver_id, e)
                self.session.close()
                if self.on_error is not None:
                    await _maybe_await(self.on_error(e))
                return

    def stop(self):
        """Stop notifications immediately and cancel the polling task."""
        self.session.close()
        task, self._task = self._task, None
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not None and not task.done() and task is not current:
            task.cancel()
        logger.info("Trip feed unsubscribed for driver %s", self.driver_id)
