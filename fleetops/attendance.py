"""
Attendance ledger - converts clock-in/clock-out toggles into a per-day
worked-seconds total.

Every write is a single read-append-recompute-write cycle against the
(driver, date) row. The row carries a version column, so a writer that read a
stale copy fails on flush instead of overwriting a concurrent update; the
whole cycle is then rerun against the fresh row.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

import pandas as pd
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .clock import SystemClock, ensure_utc
from .config import config
from .errors import StorageError
from .models import AttendanceRecord as AttendanceRow, Driver

logger = logging.getLogger(__name__)


class ClockEventType(str, Enum):
    CLOCK_IN = "clockIn"
    CLOCK_OUT = "clockOut"


class ClockEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ClockEventType
    timestamp: datetime
    event_id: Optional[str] = None


class AttendanceRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    driver_id: str
    date: str
    first_clock_in_time: datetime
    events: List[ClockEvent]
    total_worked_seconds: int = 0
    last_updated: datetime

    @property
    def is_clocked_in(self) -> bool:
        """Toggle state as the client derives it: the last event is a clock-in."""
        return bool(self.events) and self.events[-1].type == ClockEventType.CLOCK_IN


def apply_clock_event(
    record: Optional[AttendanceRecord],
    driver_id: str,
    date_key: str,
    event: ClockEvent
) -> AttendanceRecord:
    """Append ``event`` to ``record`` (or to a fresh record) and update the total.

    A clock-out adds the seconds elapsed since the most recent clock-in in the
    appended sequence. A clock-out with no clock-in before it adds nothing.
    """
    if record is None:
        events = [event]
        total = 0
        first_clock_in_time = event.timestamp
    else:
        events = list(record.events) + [event]
        total = record.total_worked_seconds
        first_clock_in_time = record.first_clock_in_time

    if event.type == ClockEventType.CLOCK_OUT:
        last_clock_in = next(
            (e for e in reversed(events) if e.type == ClockEventType.CLOCK_IN),
            None
        )
        if last_clock_in is not None:
            elapsed = (event.timestamp - last_clock_in.timestamp).total_seconds()
            total += max(0, int(elapsed))

    return AttendanceRecord(
        driver_id=driver_id,
        date=date_key,
        first_clock_in_time=first_clock_in_time,
        events=events,
        total_worked_seconds=total,
        last_updated=event.timestamp
    )


def _event_to_json(event: ClockEvent) -> dict:
    return event.model_dump(mode="json")


def _row_to_record(row: AttendanceRow) -> AttendanceRecord:
    return AttendanceRecord(
        driver_id=row.driver_id,
        date=row.date,
        first_clock_in_time=ensure_utc(row.first_clock_in_time),
        events=[ClockEvent.model_validate(e) for e in (row.events or [])],
        total_worked_seconds=row.total_worked_seconds or 0,
        last_updated=ensure_utc(row.last_updated)
    )


class AttendanceLedger:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Optional[SystemClock] = None,
        conflict_retries: Optional[int] = None
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.conflict_retries = (
            config.ledger_conflict_retries if conflict_retries is None else conflict_retries
        )

    def record_clock_event(
        self,
        driver_id: str,
        event_type,
        timestamp: Optional[datetime] = None,
        event_id: Optional[str] = None
    ) -> int:
        """
        Record a clock-in or clock-out and return the day's worked seconds.

        Args:
            driver_id: Driver identifier
            event_type: ``ClockEventType`` or its wire value
            timestamp: Event instant (default: the clock's current instant)
            event_id: Optional client-generated key; a repeated key is ignored

        Returns:
            int: ``total_worked_seconds`` after the event

        Raises:
            StorageError: If the store fails or write conflicts persist
        """
        return self.submit_clock_event(driver_id, event_type, timestamp, event_id).total_worked_seconds

    def submit_clock_event(
        self,
        driver_id: str,
        event_type,
        timestamp: Optional[datetime] = None,
        event_id: Optional[str] = None
    ) -> AttendanceRecord:
        """Like ``record_clock_event`` but return the record as committed."""
        event = ClockEvent(
            type=ClockEventType(event_type),
            timestamp=ensure_utc(timestamp) if timestamp is not None else self.clock.now(),
            event_id=event_id
        )
        date_key = self.clock.date_key()

        last_conflict = None
        for attempt in range(self.conflict_retries + 1):
            db = self.session_factory()
            try:
                record = self._record_in_transaction(db, driver_id, date_key, event)
                logger.info(
                    "Recorded %s for driver %s on %s (total %ss)",
                    event.type.value, driver_id, date_key, record.total_worked_seconds
                )
                return record
            except (StaleDataError, IntegrityError) as e:
                # Another writer committed between our read and our write.
                db.rollback()
                last_conflict = e
                logger.warning(
                    "Attendance write conflict for driver %s on %s (attempt %d): %s",
                    driver_id, date_key, attempt + 1, e
                )
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to record clock event for driver {driver_id}", e) from e
            finally:
                db.close()

        raise StorageError(
            f"Attendance record for driver {driver_id} on {date_key} kept changing concurrently",
            last_conflict
        )

    def _record_in_transaction(self, db: Session, driver_id: str, date_key: str, event: ClockEvent) -> AttendanceRecord:
        with db.begin():
            row = db.query(AttendanceRow).filter(
                AttendanceRow.driver_id == driver_id,
                AttendanceRow.date == date_key
            ).with_for_update().one_or_none()

            current = _row_to_record(row) if row is not None else None

            if event.event_id is not None and current is not None:
                if any(e.event_id == event.event_id for e in current.events):
                    logger.info("Ignoring duplicate clock event %s for driver %s", event.event_id, driver_id)
                    return current

            updated = apply_clock_event(current, driver_id, date_key, event)

            if row is None:
                row = AttendanceRow(
                    driver_id=driver_id,
                    date=date_key,
                    first_clock_in_time=updated.first_clock_in_time
                )
                db.add(row)
            row.events = [_event_to_json(e) for e in updated.events]
            row.total_worked_seconds = updated.total_worked_seconds
            row.last_updated = updated.last_updated

        return updated

    def fetch_attendance_record(self, driver_id: str, date_key: str) -> Optional[AttendanceRecord]:
        """Return the record for ``date_key`` or None when the driver has none."""
        db = self.session_factory()
        try:
            row = db.query(AttendanceRow).filter(
                AttendanceRow.driver_id == driver_id,
                AttendanceRow.date == date_key
            ).one_or_none()
            return _row_to_record(row) if row is not None else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read attendance for driver {driver_id}", e) from e
        finally:
            db.close()

    def fetch_today_worked_time(self, driver_id: str) -> int:
        record = self.fetch_attendance_record(driver_id, self.clock.date_key())
        return record.total_worked_seconds if record is not None else 0

    def clock_state(self, driver_id: str) -> bool:
        """True when today's last event is a clock-in."""
        record = self.fetch_attendance_record(driver_id, self.clock.date_key())
        return record is not None and record.is_clocked_in


LOGBOOK_COLUMNS = [
    "driver_id",
    "name",
    "clock_in",
    "clock_out",
    "was_present",
    "total_worked_minutes",
]


def daily_logbook(db: Session, date_key: str, clock: Optional[SystemClock] = None) -> pd.DataFrame:
    """
    Build the fleet manager's logbook for one day.

    One row per registered driver with the earliest clock-in and latest
    clock-out (HH:MM, local time), presence and worked minutes. Present drivers
    come first; each group is ordered by name, case-insensitively.
    """
    clock = clock or SystemClock()
    try:
        drivers = db.query(Driver).all()
        rows = db.query(AttendanceRow).filter(AttendanceRow.date == date_key).all()
    except SQLAlchemyError as e:
        raise StorageError(f"Failed to build logbook for {date_key}", e) from e

    records = {row.driver_id: _row_to_record(row) for row in rows}

    entries = []
    for driver in drivers:
        record = records.get(driver.external_id)
        clock_in = clock_out = None
        total_seconds = 0
        if record is not None:
            total_seconds = record.total_worked_seconds
            ins = [e.timestamp for e in record.events if e.type == ClockEventType.CLOCK_IN]
            outs = [e.timestamp for e in record.events if e.type == ClockEventType.CLOCK_OUT]
            if ins:
                clock_in = clock.local_time(min(ins)).strftime("%H:%M")
            if outs:
                clock_out = clock.local_time(max(outs)).strftime("%H:%M")
        entries.append({
            "driver_id": driver.external_id,
            "name": driver.name or driver.external_id,
            "clock_in": clock_in,
            "clock_out": clock_out,
            "was_present": total_seconds > 0,
            "total_worked_minutes": total_seconds // 60,
        })

    df = pd.DataFrame(entries, columns=LOGBOOK_COLUMNS)
    if df.empty:
        return df

    df["_name_key"] = df["name"].str.lower()
    df = df.sort_values(["was_present", "_name_key"], ascending=[False, True])
    return df.drop(columns="_name_key").reset_index(drop=True)


def logbook_records(df: pd.DataFrame) -> List[dict]:
    """Plain-Python rows for JSON responses."""
    result = []
    for row in df.itertuples(index=False):
        result.append({
            "driver_id": row.driver_id,
            "name": row.name,
            "clock_in": row.clock_in if isinstance(row.clock_in, str) else None,
            "clock_out": row.clock_out if isinstance(row.clock_out, str) else None,
            "was_present": bool(row.was_present),
            "total_worked_minutes": int(row.total_worked_minutes),
        })
    return result
