from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import List, Dict, Any, Optional
from datetime import datetime
from ..attendance import AttendanceLedger, ClockEventType, daily_logbook, logbook_records
from ..clock import SystemClock
from ..config import config
from ..db import get_db, SessionLocal
from ..errors import ParseError, StorageError, TripNotFound
from ..geo import GeoPoint, build_corridor
from ..persistence import (
    create_driver,
    list_drivers,
    create_trip,
    get_driver_trips,
    start_trip,
    complete_trip,
    cancel_trip,
    mark_trip_delayed,
    save_trip_charges,
    log_route_deviation,
    get_trip_deviations,
)
from ..trips import trip_to_document

router = APIRouter()

_clock = SystemClock()
_ledger = AttendanceLedger(SessionLocal, _clock)

def get_clock() -> SystemClock:
    """Dependency to get the service clock."""
    return _clock

def get_ledger() -> AttendanceLedger:
    """Dependency to get the attendance ledger."""
    return _ledger

class DriverCreate(BaseModel):
    external_id: str
    name: Optional[str] = None

class ClockRequest(BaseModel):
    type: ClockEventType
    event_id: Optional[str] = None

class ChargesRequest(BaseModel):
    misc: float = 0.0
    fuel_log: float = 0.0
    toll_fees: float = 0.0

class DeviationRequest(BaseModel):
    vehicle_id: str
    driver_id: str
    distance_m: float
    lat: float
    lon: float
    timestamp: Optional[datetime] = None

class PointIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)

class CorridorRequest(BaseModel):
    path: List[PointIn]
    tolerance_m: Optional[float] = Field(default=None, gt=0)
    close_final_point: Optional[bool] = None

def _storage_failure(e: Exception) -> HTTPException:
    return HTTPException(status_code=503, detail=f"Database error: {str(e)}")

def _parse_date_key(value: str) -> str:
    try:
        datetime.strptime(value, config.attendance_date_format)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD")
    return value

def _summary(driver_id: str, date_key: str, record) -> Dict[str, Any]:
    return {
        "driver_id": driver_id,
        "date": date_key,
        "total_worked_seconds": record.total_worked_seconds if record else 0,
        "is_clocked_in": record.is_clocked_in if record else False
    }

def _attendance_summary(ledger: AttendanceLedger, driver_id: str) -> Dict[str, Any]:
    date_key = ledger.clock.date_key()
    return _summary(driver_id, date_key, ledger.fetch_attendance_record(driver_id, date_key))

@router.post("/drivers")
def register_driver(request: DriverCreate, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Register a driver so it appears in the logbook."""
    try:
        driver = create_driver(db, request.external_id, request.name)
    except SQLAlchemyError as e:
        raise _storage_failure(e)
    return {"id": driver.id, "external_id": driver.external_id, "name": driver.name}

@router.get("/drivers")
def get_drivers(db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    """Get list of all registered drivers."""
    try:
        drivers = list_drivers(db)
    except SQLAlchemyError as e:
        raise _storage_failure(e)
    return [
        {
            "id": driver.id,
            "external_id": driver.external_id,
            "name": driver.name,
            "created_at": driver.created_at.isoformat() if driver.created_at else None
        }
        for driver in drivers
    ]

@router.post("/drivers/{driver_id}/attendance/clock")
def clock_event(
    driver_id: str,
    request: ClockRequest,
    ledger: AttendanceLedger = Depends(get_ledger)
) -> Dict[str, Any]:
    """Record a clock-in or clock-out for today."""
    try:
        record = ledger.submit_clock_event(driver_id, request.type, event_id=request.event_id)
        return _summary(driver_id, record.date, record)
    except StorageError as e:
        raise _storage_failure(e)

@router.get("/drivers/{driver_id}/attendance/today")
def attendance_today(
    driver_id: str,
    ledger: AttendanceLedger = Depends(get_ledger)
) -> Dict[str, Any]:
    """Get today's worked seconds and clock state. No record means zero, not an error."""
    try:
        return _attendance_summary(ledger, driver_id)
    except StorageError as e:
        raise _storage_failure(e)

@router.get("/drivers/{driver_id}/attendance/{date}")
def attendance_record(
    driver_id: str,
    date: str,
    ledger: AttendanceLedger = Depends(get_ledger)
) -> Dict[str, Any]:
    """Get a driver's attendance record for a day (``record`` is null when absent)."""
    date_key = _parse_date_key(date)
    try:
        record = ledger.fetch_attendance_record(driver_id, date_key)
    except StorageError as e:
        raise _storage_failure(e)
    if record is None:
        return {"record": None}
    data = record.model_dump(mode="json")
    data["is_clocked_in"] = record.is_clocked_in
    return {"record": data}

@router.get("/attendance/logbook")
def attendance_logbook(
    date: Optional[str] = Query(None, description="Date in YYYY-MM-DD format (default: today)"),
    db: Session = Depends(get_db),
    ledger: AttendanceLedger = Depends(get_ledger)
) -> List[Dict[str, Any]]:
    """Fleet manager's daily logbook: presence and worked minutes per driver."""
    date_key = _parse_date_key(date) if date else ledger.clock.date_key()
    try:
        return logbook_records(daily_logbook(db, date_key, ledger.clock))
    except StorageError as e:
        raise _storage_failure(e)

@router.post("/trips")
def dispatch_trip(document: Dict[str, Any], db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Store a trip document produced by dispatch."""
    try:
        trip = create_trip(db, document)
    except ParseError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StorageError as e:
        raise _storage_failure(e)
    return trip_to_document(trip)

@router.get("/drivers/{driver_id}/trips")
def get_driver_trips_endpoint(
    driver_id: str,
    db: Session = Depends(get_db),
    status: Optional[str] = Query(None, description="Filter by trip status"),
    limit: int = Query(config.api_default_limit, ge=1, le=config.api_max_limit, description="Number of trips to return"),
    offset: int = Query(0, ge=0, description="Number of trips to skip")
) -> List[Dict[str, Any]]:
    """Get trips for a specific driver."""
    try:
        trips = get_driver_trips(db, driver_id, status, limit, offset)
    except SQLAlchemyError as e:
        raise _storage_failure(e)
    return [trip_to_document(trip) for trip in trips]

def _transition(action, db: Session, trip_id: str, *args) -> Dict[str, Any]:
    try:
        trip = action(db, trip_id, *args)
    except TripNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (StorageError, SQLAlchemyError) as e:
        raise _storage_failure(e)
    return trip_to_document(trip)

@router.post("/trips/{trip_id}/start")
def start_trip_endpoint(
    trip_id: str,
    db: Session = Depends(get_db),
    clock: SystemClock = Depends(get_clock)
) -> Dict[str, Any]:
    return _transition(start_trip, db, trip_id, clock.now())

@router.post("/trips/{trip_id}/complete")
def complete_trip_endpoint(
    trip_id: str,
    db: Session = Depends(get_db),
    clock: SystemClock = Depends(get_clock)
) -> Dict[str, Any]:
    return _transition(complete_trip, db, trip_id, clock.now())

@router.post("/trips/{trip_id}/cancel")
def cancel_trip_endpoint(trip_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    return _transition(cancel_trip, db, trip_id)

@router.post("/trips/{trip_id}/delay")
def delay_trip_endpoint(trip_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    return _transition(mark_trip_delayed, db, trip_id)

@router.put("/trips/{trip_id}/charges")
def trip_charges_endpoint(trip_id: str, request: ChargesRequest, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Save fuel, toll and miscellaneous charges for a trip."""
    try:
        charges = save_trip_charges(db, trip_id, request.misc, request.fuel_log, request.toll_fees)
    except TripNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (StorageError, SQLAlchemyError) as e:
        raise _storage_failure(e)
    return {
        "trip_id": charges.trip_id,
        "misc": charges.misc,
        "fuel_log": charges.fuel_log,
        "toll_fees": charges.toll_fees,
        "incidental": charges.incidental
    }

def _deviation_to_dict(deviation) -> Dict[str, Any]:
    return {
        "id": deviation.id,
        "trip_id": deviation.trip_id,
        "vehicle_id": deviation.vehicle_id,
        "driver_id": deviation.driver_id,
        "distance_m": deviation.distance_m,
        "lat": deviation.lat,
        "lon": deviation.lon,
        "timestamp": deviation.timestamp.isoformat() if deviation.timestamp else None
    }

@router.post("/trips/{trip_id}/deviations")
def trip_deviation_endpoint(
    trip_id: str,
    request: DeviationRequest,
    db: Session = Depends(get_db),
    clock: SystemClock = Depends(get_clock)
) -> Dict[str, Any]:
    """Log a route deviation reported by the driver's device."""
    try:
        deviation = log_route_deviation(
            db,
            trip_id=trip_id,
            vehicle_id=request.vehicle_id,
            driver_id=request.driver_id,
            distance_m=request.distance_m,
            lat=request.lat,
            lon=request.lon,
            timestamp=request.timestamp or clock.now()
        )
    except TripNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (StorageError, SQLAlchemyError) as e:
        raise _storage_failure(e)
    return _deviation_to_dict(deviation)

@router.get("/trips/{trip_id}/deviations")
def trip_deviations(trip_id: str, db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    """Get the deviations logged for a trip, oldest first."""
    try:
        deviations = get_trip_deviations(db, trip_id)
    except TripNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SQLAlchemyError as e:
        raise _storage_failure(e)
    return [_deviation_to_dict(deviation) for deviation in deviations]

@router.post("/corridor")
def corridor_endpoint(request: CorridorRequest) -> Dict[str, Any]:
    """Build the deviation corridor polygon for a route path."""
    path = [GeoPoint(lat=p.lat, lon=p.lon) for p in request.path]
    corridor = build_corridor(
        path,
        tolerance_m=request.tolerance_m,
        close_final_point=request.close_final_point
    )
    return {
        "points": [{"lat": p.lat, "lon": p.lon} for p in corridor.points],
        "geojson": corridor.to_geojson()
    }

@router.get("/settings")
def service_settings() -> Dict[str, Any]:
    """Effective attendance, corridor and paging settings."""
    return {
        "attendance": config.get_attendance_config(),
        "corridor": config.get_corridor_config(),
        "trips": {"default_limit": config.api_default_limit, "max_limit": config.api_max_limit}
    }
