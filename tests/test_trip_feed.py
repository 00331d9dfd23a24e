import asyncio
import pytest
from sqlalchemy.orm import sessionmaker
from fleetops.db import make_engine
from fleetops.errors import SubscriptionError
from fleetops.notifications import LogNotifier, WebSocketNotifier, new_trip_notification
from fleetops.persistence import create_trip, start_trip
from fleetops.trip_feed import (
    ChangeType,
    FeedUpdate,
    LiveTripQuery,
    TripChange,
    TripFeedSession,
    TripFeedSubscription,
    diff_snapshots
)
from fleetops.trips import TripRecord
from fleetops.wsmanager import ConnectionManager
from helpers import RecordingNotifier, at, trip_document


def added(*documents):
    return [TripChange(ChangeType.ADDED, doc) for doc in documents]


def initial_update(*documents):
    return FeedUpdate(documents=list(documents), changes=added(*documents))


def broken_session_factory():
    return sessionmaker(bind=make_engine("sqlite:////nonexistent-dir/feed.db"))


class TestTripFeedSession:
    """Test the initial-load squelch and new-trip detection."""

    def test_initial_snapshot_does_not_notify(self):
        notifier = RecordingNotifier()
        session = TripFeedSession("D1", notifier)

        notified = session.apply(initial_update(trip_document("T1"), trip_document("T2", hour=10)))

        assert notified == []
        assert notifier.trips == []
        assert session.known_trip_ids == {"T1", "T2"}
        assert not session.is_initial_load

    def test_later_addition_notifies_once(self):
        notifier = RecordingNotifier()
        session = TripFeedSession("D1", notifier)
        t1, t2, t3 = trip_document("T1"), trip_document("T2", hour=10), trip_document("T3", hour=11)
        session.apply(initial_update(t1, t2))

        notified = session.apply(FeedUpdate(documents=[t1, t2, t3], changes=added(t3)))

        assert [t.id for t in notified] == ["T3"]
        assert notifier.trip_ids == ["T3"]
        assert [t.id for t in session.visible_trips] == ["T1", "T2", "T3"]

    def test_repeated_delivery_does_not_notify_again(self):
        notifier = RecordingNotifier()
        session = TripFeedSession("D1", notifier)
        t1, t3 = trip_document("T1"), trip_document("T3")
        session.apply(initial_update(t1))
        session.apply(FeedUpdate(documents=[t1, t3], changes=added(t3)))

        session.apply(FeedUpdate(documents=[t1, t3], changes=added(t3)))

        assert notifier.trip_ids == ["T3"]

    def test_empty_initial_snapshot_still_arms_notifications(self):
        notifier = RecordingNotifier()
        session = TripFeedSession("D1", notifier)
        session.apply(FeedUpdate(documents=[]))

        t1 = trip_document("T1")
        session.apply(FeedUpdate(documents=[t1], changes=added(t1)))

        assert notifier.trip_ids == ["T1"]

    def test_modified_and_removed_changes_do_not_notify(self):
        notifier = RecordingNotifier()
        session = TripFeedSession("D1", notifier)
        t1 = trip_document("T1")
        session.apply(initial_update(t1))

        moved = trip_document("T1", hour=12)
        session.apply(FeedUpdate(documents=[moved], changes=[TripChange(ChangeType.MODIFIED, moved)]))
        session.apply(FeedUpdate(documents=[], changes=[TripChange(ChangeType.REMOVED, moved)]))

        assert notifier.trips == []
        assert session.visible_trips == []

    def test_visible_trips_sorted_by_start_time(self):
        session = TripFeedSession("D1")
        late, early = trip_document("T1", hour=15), trip_document("T2", hour=7)

        session.apply(initial_update(late, early))

        assert [t.id for t in session.visible_trips] == ["T2", "T1"]

    def test_malformed_document_is_skipped(self):
        notifier = RecordingNotifier()
        session = TripFeedSession("D1", notifier)
        session.apply(initial_update(trip_document("T1")))

        broken = trip_document("T2")
        del broken["vehicleId"]
        good = trip_document("T3")
        session.apply(FeedUpdate(documents=[trip_document("T1"), broken, good], changes=added(broken, good)))

        assert notifier.trip_ids == ["T3"]
        assert [t.id for t in session.visible_trips] == ["T1", "T3"]
        assert "T2" not in session.known_trip_ids

    def test_closed_session_ignores_deliveries(self):
        notifier = RecordingNotifier()
        session = TripFeedSession("D1", notifier)
        session.apply(initial_update(trip_document("T1")))
        session.close()

        t3 = trip_document("T3")
        assert session.apply(FeedUpdate(documents=[t3], changes=added(t3))) == []
        assert notifier.trips == []

    def test_new_session_squelches_again(self):
        """Resubscribing treats the current set as the initial load."""
        notifier = RecordingNotifier()
        first = TripFeedSession("D1", notifier)
        first.apply(initial_update(trip_document("T1")))
        first.close()

        second = TripFeedSession("D1", notifier)
        second.apply(initial_update(trip_document("T1"), trip_document("T3")))

        assert notifier.trips == []

    def test_failing_notifier_does_not_break_the_feed(self):
        class ExplodingNotifier:
            def notify_new_trip(self, trip):
                raise RuntimeError("push service down")

        session = TripFeedSession("D1", ExplodingNotifier())
        session.apply(FeedUpdate(documents=[]))

        t1 = trip_document("T1")
        assert [t.id for t in session.apply(FeedUpdate(documents=[t1], changes=added(t1)))] == ["T1"]
        assert "T1" in session.known_trip_ids


class TestDiffSnapshots:
    """Test change classification between deliveries."""

    def test_first_delivery_is_all_additions(self):
        changes = diff_snapshots(None, [trip_document("T1"), trip_document("T2")])
        assert [c.type for c in changes] == [ChangeType.ADDED, ChangeType.ADDED]

    def test_added_modified_removed(self):
        previous = {"T1": trip_document("T1"), "T2": trip_document("T2")}
        current = [trip_document("T1", hour=11), trip_document("T3")]

        changes = {c.document["id"]: c.type for c in diff_snapshots(previous, current)}

        assert changes == {
            "T1": ChangeType.MODIFIED,
            "T2": ChangeType.REMOVED,
            "T3": ChangeType.ADDED
        }

    def test_unchanged_delivery_has_no_changes(self):
        previous = {"T1": trip_document("T1")}
        assert diff_snapshots(previous, [trip_document("T1")]) == []


class TestLiveTripQuery:
    """Test the polling query against the trip store."""

    def test_poll_reports_changes(self, db, session_factory):
        create_trip(db, trip_document("T1"))
        create_trip(db, trip_document("T2", driver_id="D2"))
        query = LiveTripQuery(session_factory, "D1")

        first = query.poll()
        assert [d["id"] for d in first.documents] == ["T1"]
        assert [c.type for c in first.changes] == [ChangeType.ADDED]

        assert query.poll() is None

        create_trip(db, trip_document("T3"))
        update = query.poll()
        assert [(c.type, c.document["id"]) for c in update.changes] == [(ChangeType.ADDED, "T3")]

        start_trip(db, "T1", at(9, 5))
        update = query.poll()
        assert [(c.type, c.document["id"]) for c in update.changes] == [(ChangeType.REMOVED, "T1")]
        assert [d["id"] for d in update.documents] == ["T3"]

    def test_empty_first_poll_is_delivered(self, session_factory):
        update = LiveTripQuery(session_factory, "D1").poll()
        assert update.documents == []
        assert update.changes == []

    def test_store_failure_raises_subscription_error(self):
        with pytest.raises(SubscriptionError):
            LiveTripQuery(broken_session_factory(), "D1").poll()


class TestTripFeedSubscription:
    """Test the asyncio subscription lifecycle."""

    def test_start_refresh_stop(self, db, session_factory):
        create_trip(db, trip_document("T1"))
        create_trip(db, trip_document("T2", hour=10))
        notifier = RecordingNotifier()
        updates = []

        async def scenario():
            subscription = TripFeedSubscription(
                session_factory, "D1", notifier, on_update=updates.append, poll_interval=60
            )
            await subscription.start()
            assert subscription.is_active

            create_trip(db, trip_document("T3", hour=11))
            notified = await subscription.refresh()

            subscription.stop()
            create_trip(db, trip_document("T4", hour=12))
            after_stop = await subscription.refresh()
            return subscription, notified, after_stop

        subscription, notified, after_stop = asyncio.run(scenario())

        assert [t.id for t in notified] == ["T3"]
        assert after_stop == []
        assert not subscription.is_active
        assert notifier.closed
        assert notifier.trip_ids == ["T3"]
        assert [[t.id for t in trips] for trips in updates] == [["T1", "T2"], ["T1", "T2", "T3"]]

    def test_async_callback_is_awaited(self, db, session_factory):
        create_trip(db, trip_document("T1"))
        received = []

        async def on_update(trips):
            received.append([t.id for t in trips])

        async def scenario():
            subscription = TripFeedSubscription(session_factory, "D1", on_update=on_update, poll_interval=60)
            await subscription.start()
            subscription.stop()

        asyncio.run(scenario())

        assert received == [["T1"]]

    def test_attach_failure(self):
        async def scenario():
            subscription = TripFeedSubscription(broken_session_factory(), "D1", poll_interval=60)
            with pytest.raises(SubscriptionError):
                await subscription.start()
            return subscription

        assert not asyncio.run(scenario()).is_active

    def test_interruption_reports_error(self, session_factory):
        broken = broken_session_factory()
        state = {"broken": False}
        errors = []

        def factory():
            return broken() if state["broken"] else session_factory()

        async def scenario():
            subscription = TripFeedSubscription(factory, "D1", on_error=errors.append, poll_interval=0.01)
            await subscription.start()
            state["broken"] = True
            for _ in range(100):
                if errors:
                    break
                await asyncio.sleep(0.01)
            return subscription

        subscription = asyncio.run(scenario())

        assert len(errors) == 1
        assert isinstance(errors[0], SubscriptionError)
        assert not subscription.is_active


class FakeSocket:
    def __init__(self):
        self.sent = []

    async def accept(self):
        pass

    async def send_json(self, message):
        self.sent.append(message)

    async def close(self, code=1000):
        pass

    def of_type(self, message_type):
        return [m for m in self.sent if m["type"] == message_type]


class TestNotifications:
    """Test new-trip notification content and delivery."""

    def test_notification_content(self):
        trip = TripRecord.model_validate(trip_document("T7"))

        content = new_trip_notification(trip)

        assert content["identifier"] == "newTrip_T7"
        assert content["title"] == "New Trip Assigned"
        assert content["body"] == "Pickup: Koramangala, Bengaluru → Drop: Kempegowda Airport at 09:00"
        assert content["trip_id"] == "T7"

    def test_websocket_notifier_pushes_to_its_socket(self):
        manager = ConnectionManager(max_connections=10)
        socket = FakeSocket()
        trip = TripRecord.model_validate(trip_document("T7"))

        async def scenario():
            await manager.connect("D1", socket)
            WebSocketNotifier(manager, "D1", socket).notify_new_trip(trip)
            await asyncio.sleep(0)

        asyncio.run(scenario())

        assert socket.sent == [{"type": "new_trip", "payload": new_trip_notification(trip)}]

    def test_websocket_notifier_without_loop_drops_alert(self):
        socket = FakeSocket()
        notifier = WebSocketNotifier(ConnectionManager(max_connections=10), "D1", socket)

        notifier.notify_new_trip(TripRecord.model_validate(trip_document("T7")))

        assert socket.sent == []
        assert notifier.pending == 0

    def test_close_cancels_queued_alerts(self):
        socket = FakeSocket()
        notifier = WebSocketNotifier(ConnectionManager(max_connections=10), "D1", socket)

        async def scenario():
            notifier.notify_new_trip(TripRecord.model_validate(trip_document("T7")))
            assert notifier.pending == 1
            notifier.close()
            await asyncio.sleep(0)

        asyncio.run(scenario())

        assert socket.sent == []
        assert notifier.pending == 0

    def test_each_session_alerts_only_its_own_socket(self, db, session_factory):
        """Two open sessions for one driver each get the new trip exactly once."""
        create_trip(db, trip_document("T1"))
        manager = ConnectionManager(max_connections=10)
        first, second = FakeSocket(), FakeSocket()

        async def scenario():
            subscriptions = []
            for socket in (first, second):
                await manager.connect("D1", socket)
                subscription = TripFeedSubscription(
                    session_factory, "D1", WebSocketNotifier(manager, "D1", socket), poll_interval=60
                )
                await subscription.start()
                subscriptions.append(subscription)

            create_trip(db, trip_document("T3", hour=11))
            for subscription in subscriptions:
                await subscription.refresh()
            for _ in range(3):
                await asyncio.sleep(0)
            for subscription in subscriptions:
                subscription.stop()

        asyncio.run(scenario())

        for socket in (first, second):
            alerts = socket.of_type("new_trip")
            assert len(alerts) == 1
            assert alerts[0]["payload"]["trip_id"] == "T3"

    def test_log_notifier(self, caplog):
        with caplog.at_level("INFO", logger="fleetops.notifications"):
            LogNotifier().notify_new_trip(TripRecord.model_validate(trip_document("T7")))
        assert "Kempegowda Airport" in caplog.text
