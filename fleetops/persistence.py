from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from .clock import ensure_utc
from .errors import StorageError, TripNotFound
from .models import Driver, Trip, TripCharges, RouteDeviation
from .trips import TripStatus, decode_trip, document_to_columns

def create_driver(db: Session, external_id: str, name: Optional[str] = None) -> Driver:
    """Register a driver, or return the existing one with this external id."""
    driver = db.query(Driver).filter(Driver.external_id == external_id).first()
    if driver:
        return driver

    driver = Driver(external_id=external_id, name=name)
    db.add(driver)
    db.commit()
    db.refresh(driver)
    return driver

def list_drivers(db: Session) -> List[Driver]:
    return db.query(Driver).order_by(Driver.external_id).all()

def create_trip(db: Session, document: Mapping[str, Any]) -> Trip:
    """Store a trip handed over by dispatch. The document must decode cleanly."""
    result = decode_trip(document)
    if not result.ok:
        raise result.error

    trip = Trip(**document_to_columns(document))
    try:
        db.merge(trip)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"Failed to store trip {trip.id}", e) from e
    return db.get(Trip, trip.id)

def get_trip(db: Session, trip_id: str) -> Trip:
    trip = db.get(Trip, trip_id)
    if trip is None:
        raise TripNotFound(trip_id)
    return trip

def get_driver_trips(
    db: Session,
    driver_id: str,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0
) -> List[Trip]:
    """Get trips for a driver, optionally restricted to one status."""
    query = db.query(Trip).filter(Trip.driver_id == driver_id)

    if status:
        query = query.filter(Trip.status == status)

    return query.order_by(
        Trip.start_time.asc()
    ).offset(offset).limit(limit).all()

def query_trips(db: Session, driver_id: str, status: str) -> List[Trip]:
    """The live-query predicate: ``driverId == X AND status == Y``."""
    return db.query(Trip).filter(
        Trip.driver_id == driver_id,
        Trip.status == status
    ).order_by(Trip.id).all()

def _update_trip(db: Session, trip_id: str, **values) -> Trip:
    trip = get_trip(db, trip_id)
    for key, value in values.items():
        setattr(trip, key, value)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"Failed to update trip {trip_id}", e) from e
    db.refresh(trip)
    return trip

def start_trip(db: Session, trip_id: str, at: datetime) -> Trip:
    """Driver pressed Go: the trip is in progress."""
    return _update_trip(
        db, trip_id,
        status=TripStatus.IN_PROGRESS.value,
        go_clicked=ensure_utc(at).isoformat()
    )

def complete_trip(db: Session, trip_id: str, at: datetime) -> Trip:
    """Post-trip inspection done: the trip is completed."""
    at = ensure_utc(at)
    return _update_trip(
        db, trip_id,
        status=TripStatus.COMPLETED.value,
        end_time=at,
        end_clicked=at.isoformat()
    )

def cancel_trip(db: Session, trip_id: str) -> Trip:
    return _update_trip(db, trip_id, status=TripStatus.CANCELLED.value)

def mark_trip_delayed(db: Session, trip_id: str) -> Trip:
    return _update_trip(db, trip_id, status=TripStatus.DELAYED.value)

def save_trip_charges(
    db: Session,
    trip_id: str,
    misc: float,
    fuel_log: float,
    toll_fees: float
) -> TripCharges:
    """Upsert the incidental charges for a trip."""
    get_trip(db, trip_id)

    charges = db.query(TripCharges).filter(TripCharges.trip_id == trip_id).first()
    if not charges:
        charges = TripCharges(trip_id=trip_id)
        db.add(charges)

    charges.misc = misc
    charges.fuel_log = fuel_log
    charges.toll_fees = toll_fees
    charges.incidental = misc + fuel_log + toll_fees
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"Failed to save charges for trip {trip_id}", e) from e
    db.refresh(charges)
    return charges

def log_route_deviation(
    db: Session,
    trip_id: str,
    vehicle_id: str,
    driver_id: str,
    distance_m: float,
    lat: float,
    lon: float,
    timestamp: datetime,
    meta: Dict = None
) -> RouteDeviation:
    """Persist a route deviation reported by the driver's device."""
    get_trip(db, trip_id)

    deviation = RouteDeviation(
        trip_id=trip_id,
        vehicle_id=vehicle_id,
        driver_id=driver_id,
        distance_m=distance_m,
        lat=lat,
        lon=lon,
        timestamp=ensure_utc(timestamp),
        meta=meta or {}
    )
    try:
        db.add(deviation)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"Failed to log deviation for trip {trip_id}", e) from e
    db.refresh(deviation)
    return deviation

def get_trip_deviations(db: Session, trip_id: str) -> List[RouteDeviation]:
    get_trip(db, trip_id)
    return db.query(RouteDeviation).filter(
        RouteDeviation.trip_id == trip_id
    ).order_by(RouteDeviation.timestamp.asc()).all()

