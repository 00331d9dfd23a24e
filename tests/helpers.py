"""Shared test data builders."""
from datetime import datetime

import pytz


def at(hour, minute=0, second=0, day=19):
    """An instant on October ``day``, 2026 (UTC)."""
    return datetime(2026, 10, day, hour, minute, second, tzinfo=pytz.utc)


def trip_document(trip_id, driver_id="D1", status="assigned", hour=9, **overrides):
    document = {
        "id": trip_id,
        "driverId": driver_id,
        "vehicleId": "KA01AB1234",
        "startLocation": "Koramangala, Bengaluru",
        "endLocation": "Kempegowda Airport",
        "date": "2026-10-19",
        "time": f"{hour:02d}:00",
        "startTime": at(hour).isoformat(),
        "status": status,
        "vehicleType": "Sedan",
    }
    document.update(overrides)
    return document


class RecordingNotifier:
    def __init__(self):
        self.trips = []
        self.closed = False

    def notify_new_trip(self, trip):
        self.trips.append(trip)

    @property
    def trip_ids(self):
        return [trip.id for trip in self.trips]

    def close(self):
        self.closed = True
