"""Slot generation, availability resolution and delivery-date arithmetic."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta
from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.core.errors import ConflictError, NotFoundError, ValidationError
from marketplace.models import (
    ACTIVE_STATUSES,
    Booking,
    BookingStatus,
    DeliveryTimeUnit,
    Service,
    ServiceType,
)

logger = logging.getLogger(__name__)

_RELATIVEDELTA_FIELDS = {
    DeliveryTimeUnit.MINUTES: "minutes",
    DeliveryTimeUnit.HOURS: "hours",
    DeliveryTimeUnit.DAYS: "days",
    DeliveryTimeUnit.WEEKS: "weeks",
    DeliveryTimeUnit.MONTHS: "months",
}
_SESSION_UNITS = {
    DeliveryTimeUnit.MINUTES: timedelta(minutes=1),
    DeliveryTimeUnit.HOURS: timedelta(hours=1),
}


@dataclass(frozen=True)
class TimeSlot:
    """Candidate booking interval ``[start, end)`` for one calendar day."""

    start: datetime
    end: datetime
    available: bool = True

    def as_dict(self) -> dict[str, str | bool]:
        """Convert the slot into JSON-friendly values."""

        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "available": self.available,
        }


class DaySlots:
    """Contiguous slots covering the working window of ``day``.

    Iterating is lazy and can be repeated; each pass yields fresh slots.
    """

    def __init__(
        self,
        day: date,
        work_start_hour: int = 9,
        work_end_hour: int = 17,
        slot_length_minutes: int = 60,
    ) -> None:
        violations: dict[str, str] = {}
        if not 0 <= work_start_hour <= 24:
            violations["work_start_hour"] = "must be between 0 and 24"
        if not 0 <= work_end_hour <= 24:
            violations["work_end_hour"] = "must be between 0 and 24"
        if slot_length_minutes < 1:
            violations["slot_length_minutes"] = "must be at least 1"
        if violations:
            raise ValidationError(violations)

        self.day = day
        self.work_start_hour = work_start_hour
        self.work_end_hour = work_end_hour
        self.slot_length = timedelta(minutes=slot_length_minutes)

    def __iter__(self) -> Iterator[TimeSlot]:
        if self.work_start_hour >= self.work_end_hour:
            return
        midnight = datetime.combine(self.day, time.min)
        current = midnight + timedelta(hours=self.work_start_hour)
        window_end = midnight + timedelta(hours=self.work_end_hour)
        while current + self.slot_length <= window_end:
            yield TimeSlot(start=current, end=current + self.slot_length)
            current += self.slot_length

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return (
            f"DaySlots({self.day.isoformat()}, {self.work_start_hour}-"
            f"{self.work_end_hour}, {self.slot_length})"
        )


def server_timezone() -> ZoneInfo:
    """Return the configured business timezone, falling back to UTC."""

    try:
        return ZoneInfo(settings.timezone)
    except ZoneInfoNotFoundError:  # pragma: no cover - misconfiguration
        logger.warning("Unknown timezone %s, using UTC", settings.timezone)
        return ZoneInfo("UTC")


def to_local_naive(value: datetime) -> datetime:
    """Express ``value`` as naive wall-clock time in the server timezone."""

    if value.tzinfo is None:
        return value
    return value.astimezone(server_timezone()).replace(tzinfo=None)


def local_now() -> datetime:
    return datetime.now(server_timezone()).replace(tzinfo=None)


def compute_delivery_date(
    now: datetime, value: int, unit: DeliveryTimeUnit | str
) -> datetime:
    """Add ``value`` calendar units to ``now``.

    Months follow ``relativedelta`` semantics: the day is clamped to the end
    of the target month, so 2024-01-31 plus one month is 2024-02-29.
    """

    unit = DeliveryTimeUnit(unit)
    return now + relativedelta(**{_RELATIVEDELTA_FIELDS[unit]: value})


def generate_day_slots(
    day: date,
    work_start_hour: int = 9,
    work_end_hour: int = 17,
    slot_length_minutes: int = 60,
) -> DaySlots:
    """Return candidate slots for ``day``, all initially available."""

    return DaySlots(day, work_start_hour, work_end_hour, slot_length_minutes)


def session_duration(service: Service, slot_length_minutes: int | None = None) -> timedelta:
    """Length of a live session booked on a time-based service."""

    step = _SESSION_UNITS.get(DeliveryTimeUnit(service.delivery_time_unit))
    if step is None:
        return timedelta(minutes=slot_length_minutes or settings.slot_length_minutes)
    return step * service.delivery_time_value


def working_window(day: date) -> tuple[datetime, datetime]:
    midnight = datetime.combine(day, time.min)
    return (
        midnight + timedelta(hours=settings.work_start_hour),
        midnight + timedelta(hours=settings.work_end_hour),
    )


def session_slots(
    candidates: Iterable[TimeSlot], duration: timedelta, window_end: datetime
) -> list[TimeSlot]:
    """Stretch each candidate to the session that booking it would occupy.

    A session running past ``window_end`` is never available.
    """

    return [
        TimeSlot(
            start=slot.start,
            end=slot.start + duration,
            available=slot.available and slot.start + duration <= window_end,
        )
        for slot in candidates
    ]


def ensure_slot_start(service: Service, start: datetime) -> None:
    """Reject session starts off the day's slot grid or past closing time."""

    day = start.date()
    grid = generate_day_slots(
        day,
        settings.work_start_hour,
        settings.work_end_hour,
        settings.slot_length_minutes,
    )
    if all(slot.start != start for slot in grid):
        raise ValidationError(
            {"booking_date_time": "must be one of the day's slot start times"}
        )
    _, window_end = working_window(day)
    if start + session_duration(service) > window_end:
        raise ValidationError(
            {"booking_date_time": "the session would run past the end of the working day"}
        )


def intervals_overlap(
    start: datetime,
    end: datetime,
    other_start: datetime,
    other_end: datetime | None,
) -> bool:
    """Half-open overlap test; a missing ``other_end`` is a zero-length instant."""

    if other_end is None:
        other_end = other_start
    return start < other_end and end > other_start


def conflicting_bookings(
    start: datetime, end: datetime, bookings: Iterable[Booking]
) -> list[Booking]:
    """Active bookings from ``bookings`` overlapping ``[start, end)``."""

    return [
        booking
        for booking in bookings
        if BookingStatus(booking.status) in ACTIVE_STATUSES
        and intervals_overlap(
            start, end, booking.booking_start_time, booking.booking_end_time
        )
    ]


def resolve_availability(
    candidate_slots: Iterable[TimeSlot], existing_bookings: Iterable[Booking]
) -> list[TimeSlot]:
    """Mark candidate slots taken by active bookings as unavailable.

    Returns new slots in input order; neither argument is mutated.
    """

    bookings = list(existing_bookings)
    resolved: list[TimeSlot] = []
    for slot in candidate_slots:
        taken = bool(conflicting_bookings(slot.start, slot.end, bookings))
        resolved.append(replace(slot, available=slot.available and not taken))
    return resolved


def bookings_for_professional(
    db: Session,
    professional_id: UUID,
    start: datetime,
    end: datetime,
    statuses: Iterable[BookingStatus] = ACTIVE_STATUSES,
) -> list[Booking]:
    """Bookings of a professional whose interval intersects ``[start, end)``."""

    stmt = (
        select(Booking)
        .where(
            Booking.professional_profile_id == professional_id,
            Booking.status.in_(list(statuses)),
            Booking.booking_start_time < end,
            or_(
                Booking.booking_end_time > start,
                and_(
                    Booking.booking_end_time.is_(None),
                    Booking.booking_start_time >= start,
                ),
            ),
        )
        .order_by(Booking.booking_start_time)
    )
    return list(db.execute(stmt).scalars().all())


def has_active_bookings(db: Session, service_id: UUID) -> bool:
    """Whether pending or confirmed bookings still reference the service."""

    stmt = (
        select(Booking.id)
        .where(
            Booking.service_id == service_id,
            Booking.status.in_(list(ACTIVE_STATUSES)),
        )
        .limit(1)
    )
    return db.execute(stmt).first() is not None


def has_active_bookings_for_profile(db: Session, profile_id: UUID) -> bool:
    """Whether the account is party to any pending or confirmed booking."""

    stmt = (
        select(Booking.id)
        .where(
            or_(
                Booking.client_id == profile_id,
                Booking.professional_profile_id == profile_id,
            ),
            Booking.status.in_(list(ACTIVE_STATUSES)),
        )
        .limit(1)
    )
    return db.execute(stmt).first() is not None


def load_service(db: Session, service_id: UUID) -> Service:
    service = db.get(Service, service_id)
    if service is None:
        raise NotFoundError("Service", service_id)
    return service


def ensure_bookable(service: Service) -> None:
    """Reject bookings on services the professional has switched off."""

    if not service.is_active:
        raise ConflictError(f"Service {service.id} is not active")


def get_available_slots(
    db: Session,
    professional_id: UUID,
    service_id: UUID,
    day: date,
) -> list[TimeSlot]:
    """Slots of ``day`` for a time-based service, resolved against live bookings.

    Each slot spans the service's session length from a grid start, so a
    slot reported available is exactly what ``create_booking`` accepts.
    """

    service = load_service(db, service_id)
    if service.profile_id != professional_id:
        raise ValidationError(
            {"service_id": "service is not offered by this professional"}
        )
    if ServiceType(service.service_type) is not ServiceType.TIME_BASED:
        raise ValidationError({"service_id": "slots exist only for time-based services"})
    ensure_bookable(service)

    candidates = generate_day_slots(
        day,
        settings.work_start_hour,
        settings.work_end_hour,
        settings.slot_length_minutes,
    )
    window_start, window_end = working_window(day)
    sessions = session_slots(candidates, session_duration(service), window_end)
    existing = bookings_for_professional(db, professional_id, window_start, window_end)
    slots = resolve_availability(sessions, existing)
    logger.debug(
        "resolved slots",
        extra={
            "professional_id": str(professional_id),
            "day": day.isoformat(),
            "slots": len(slots),
            "taken": sum(1 for slot in slots if not slot.available),
        },
    )
    return slots


def compute_delivery_estimate(
    db: Session, service_id: UUID, from_date: datetime | None = None
) -> datetime:
    """Expected delivery date when the service is booked at ``from_date``."""

    service = load_service(db, service_id)
    start = to_local_naive(from_date) if from_date else local_now()
    return compute_delivery_date(
        start, service.delivery_time_value, service.delivery_time_unit
    )
