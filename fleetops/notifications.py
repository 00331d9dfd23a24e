"""
New-trip notifications. Delivery is fire and forget: a dispatcher never
reports back and never raises into the trip feed.
"""
import asyncio
import logging
from typing import Dict, Protocol, Set

from .trips import TripRecord

logger = logging.getLogger(__name__)


def new_trip_notification(trip: TripRecord) -> Dict[str, str]:
    return {
        "identifier": f"newTrip_{trip.id}",
        "title": "New Trip Assigned",
        "body": f"Pickup: {trip.start_location} → Drop: {trip.end_location} at {trip.time}",
        "trip_id": trip.id,
    }


class Notifier(Protocol):
    def notify_new_trip(self, trip: TripRecord) -> None:
        ...

    def close(self) -> None:
        ...


class LogNotifier:
    """Writes the alert to the log; used when no device channel is attached."""

    def notify_new_trip(self, trip: TripRecord) -> None:
        content = new_trip_notification(trip)
        logger.info("New trip notification for driver %s: %s", trip.driver_id, content["body"])

    def close(self) -> None:
        pass


class WebSocketNotifier:
    """Pushes the alert to the one socket that owns the subscription."""

    def __init__(self, manager, driver_id: str, websocket):
        self.manager = manager
        self.driver_id = driver_id
        self.websocket = websocket
        self._pending: Set[asyncio.Task] = set()

    def notify_new_trip(self, trip: TripRecord) -> None:
        message = {"type": "new_trip", "payload": new_trip_notification(trip)}
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running loop; dropping notification for trip %s", trip.id)
            return
        task = loop.create_task(
            self.manager.send_personal_message(message, self.websocket, self.driver_id)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def close(self) -> None:
        """Cancel sends that have not gone out yet."""
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()
