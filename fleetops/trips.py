"""
Trip record schema and the document decode step.

Trip documents arrive as loosely-typed mappings with camelCase keys. Each one
is validated on its own and turned into a tagged result, so a single
malformed document is skipped instead of failing the batch.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .clock import ensure_utc
from .errors import ParseError
from .models import Trip

logger = logging.getLogger(__name__)


class TripStatus(str, Enum):
    ASSIGNED = "assigned"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    DELAYED = "delayed"
    CANCELLED = "cancelled"

    @property
    def display_name(self) -> str:
        return {
            TripStatus.ASSIGNED: "Assigned",
            TripStatus.IN_PROGRESS: "In Progress",
            TripStatus.COMPLETED: "Completed",
            TripStatus.DELAYED: "Delayed",
            TripStatus.CANCELLED: "Cancelled",
        }[self]


class TripRecord(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    driver_id: str = Field(alias="driverId")
    vehicle_id: str = Field(alias="vehicleId")
    start_location: str = Field(alias="startLocation")
    end_location: str = Field(alias="endLocation")
    date: str
    time: str
    start_time: datetime = Field(alias="startTime")
    end_time: Optional[datetime] = Field(default=None, alias="endTime")
    status: TripStatus
    vehicle_type: str = Field(alias="vehicleType")
    passengers: Optional[int] = None
    load_weight: Optional[float] = Field(default=None, alias="loadWeight")
    go_clicked: Optional[str] = Field(default=None, alias="goClicked")
    end_clicked: Optional[str] = Field(default=None, alias="endClicked")

    @field_validator('start_time', 'end_time')
    @classmethod
    def as_utc(cls, v):
        return ensure_utc(v)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


@dataclass(frozen=True)
class TripParsed:
    trip: TripRecord
    ok: bool = True


@dataclass(frozen=True)
class TripParseFailed:
    error: ParseError
    ok: bool = False


TripDecodeResult = Union[TripParsed, TripParseFailed]


def decode_trip(document: Mapping[str, Any]) -> TripDecodeResult:
    """Validate one trip document."""
    document_id = document.get("id") if isinstance(document, Mapping) else None
    try:
        trip = TripRecord.model_validate(dict(document))
    except (ValidationError, TypeError, ValueError) as e:
        if isinstance(e, ValidationError):
            missing = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
            reason = f"invalid or missing fields: {', '.join(missing)}"
        else:
            reason = str(e)
        return TripParseFailed(error=ParseError(str(document_id) if document_id else None, reason))
    return TripParsed(trip=trip)


def decode_trips(documents: Iterable[Mapping[str, Any]]) -> List[TripRecord]:
    """Decode a batch, logging and skipping documents that fail to parse."""
    trips = []
    for document in documents:
        result = decode_trip(document)
        if result.ok:
            trips.append(result.trip)
        else:
            logger.warning("Skipping malformed trip document: %s", result.error)
    return trips


def trip_to_document(trip: Trip) -> Dict[str, Any]:
    """Render a stored trip as a camelCase document. Absent fields are omitted."""
    document = {
        "id": trip.id,
        "driverId": trip.driver_id,
        "vehicleId": trip.vehicle_id,
        "startLocation": trip.start_location,
        "endLocation": trip.end_location,
        "date": trip.date,
        "time": trip.time,
        "startTime": ensure_utc(trip.start_time).isoformat() if trip.start_time else None,
        "endTime": ensure_utc(trip.end_time).isoformat() if trip.end_time else None,
        "status": trip.status,
        "vehicleType": trip.vehicle_type,
        "passengers": trip.passengers,
        "loadWeight": trip.load_weight,
        "goClicked": trip.go_clicked,
        "endClicked": trip.end_clicked,
    }
    return {key: value for key, value in document.items() if value is not None}


def document_to_columns(document: Mapping[str, Any]) -> Dict[str, Any]:
    """Column values for a ``Trip`` row from a validated document."""
    trip = TripRecord.model_validate(dict(document))
    return {
        "id": trip.id,
        "driver_id": trip.driver_id,
        "vehicle_id": trip.vehicle_id,
        "start_location": trip.start_location,
        "end_location": trip.end_location,
        "date": trip.date,
        "time": trip.time,
        "start_time": trip.start_time,
        "end_time": trip.end_time,
        "status": trip.status.value,
        "vehicle_type": trip.vehicle_type,
        "passengers": trip.passengers,
        "load_weight": trip.load_weight,
        "go_clicked": trip.go_clicked,
        "end_clicked": trip.end_clicked,
    }
