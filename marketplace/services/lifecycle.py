"""Booking creation and role-gated status transitions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.core.errors import (
    AuthorizationError,
    BookingFinalizedError,
    ConflictError,
    NotFoundError,
    PaymentDeclinedError,
    SlotUnavailableError,
    ValidationError,
)
from marketplace.logging_utils import booking_log_context
from marketplace.models import (
    TERMINAL_STATUSES,
    Booking,
    BookingStatus,
    Profile,
    ProfileRole,
    Service,
    ServiceType,
)
from marketplace.services.payments import PaymentGateway
from marketplace.services.scheduling import (
    bookings_for_professional,
    conflicting_bookings,
    ensure_bookable,
    ensure_slot_start,
    load_service,
    local_now,
    session_duration,
    to_local_naive,
)

logger = logging.getLogger(__name__)

PROJECT_REQUIREMENTS_MIN_CHARS = 20

# (from, acting party, to)
ALLOWED_TRANSITIONS: frozenset[tuple[BookingStatus, ProfileRole, BookingStatus]] = frozenset(
    {
        (BookingStatus.PENDING_CONFIRMATION, ProfileRole.PROFESSIONAL, BookingStatus.CONFIRMED),
        (BookingStatus.PENDING_CONFIRMATION, ProfileRole.PROFESSIONAL, BookingStatus.DECLINED),
        (BookingStatus.PENDING_CONFIRMATION, ProfileRole.CLIENT, BookingStatus.CANCELLED),
        (BookingStatus.CONFIRMED, ProfileRole.PROFESSIONAL, BookingStatus.COMPLETED),
        (BookingStatus.CONFIRMED, ProfileRole.CLIENT, BookingStatus.CANCELLED),
    }
)


def _check_transition_table() -> None:
    for source, _, target in ALLOWED_TRANSITIONS:
        if source in TERMINAL_STATUSES or target is BookingStatus.PENDING_CONFIRMATION:
            raise RuntimeError(f"Illegal lifecycle edge {source.value} -> {target.value}")


_check_transition_table()


@dataclass(frozen=True)
class Actor:
    """Caller identity as supplied by the identity provider."""

    id: UUID
    role: ProfileRole

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", ProfileRole(self.role))


@dataclass(frozen=True)
class BookingDetails:
    """What the client entered on the details step."""

    booking_date_time: datetime | None = None
    project_requirements: str | None = None
    special_requests: str | None = None
    client_notes: str | None = None

    def compose_notes(self) -> str:
        parts = (self.project_requirements, self.special_requests, self.client_notes)
        return "\n\n".join(part for part in parts if part)


def serialize_booking(booking: Booking) -> dict[str, str | int | None]:
    """Return a JSON-friendly representation of a booking."""

    return {
        "id": str(booking.id),
        "status": BookingStatus(booking.status).value,
        "client_id": str(booking.client_id),
        "professional_profile_id": str(booking.professional_profile_id),
        "service_id": str(booking.service_id),
        "booking_start_time": booking.booking_start_time.isoformat(),
        "booking_end_time": booking.booking_end_time.isoformat()
        if booking.booking_end_time
        else None,
        "amount_paid_in_cents": booking.amount_paid_in_cents,
        "notes": booking.notes,
        "payment_reference": booking.payment_reference,
    }


def party_role(booking: Booking, actor: Actor) -> ProfileRole | None:
    """Role the actor plays on this booking, or ``None`` for outsiders."""

    if actor.role is ProfileRole.PROFESSIONAL and actor.id == booking.professional_profile_id:
        return ProfileRole.PROFESSIONAL
    if actor.id == booking.client_id:
        return ProfileRole.CLIENT
    return None


def check_transition(booking: Booking, actor: Actor, target: BookingStatus) -> None:
    """Raise unless ``actor`` may move ``booking`` to ``target``."""

    current = BookingStatus(booking.status)
    if current in TERMINAL_STATUSES:
        raise BookingFinalizedError(booking.id, current.value)

    action = f"move booking {booking.id} from {current.value} to {target.value}"
    party = party_role(booking, actor)
    if party is None:
        raise AuthorizationError(
            actor_id=actor.id,
            role=actor.role.value,
            action=f"{action} (not a party to the booking)",
        )
    if (current, party, target) not in ALLOWED_TRANSITIONS:
        raise AuthorizationError(actor_id=actor.id, role=party.value, action=action)


def transition_booking(
    db: Session, booking_id: UUID, actor: Actor, target_status: BookingStatus | str
) -> Booking:
    """Apply a status change after locking the booking row."""

    try:
        target = BookingStatus(target_status)
    except ValueError as exc:
        raise ValidationError({"status": f"unknown status {target_status!r}"}) from exc

    with booking_log_context(booking_id=booking_id):
        stmt = select(Booking).where(Booking.id == booking_id).with_for_update()
        booking = db.execute(stmt).scalars().first()
        if booking is None:
            raise NotFoundError("Booking", booking_id)

        check_transition(booking, actor, target)

        previous = booking.status
        booking.status = target
        db.flush()
        logger.info(
            "booking status changed",
            extra={
                "from_status": BookingStatus(previous).value,
                "to_status": target.value,
                "actor_id": str(actor.id),
            },
        )
    return booking


def validate_booking_details(service: Service, details: BookingDetails) -> None:
    """Input checks that hold for both booking flows."""

    if ServiceType(service.service_type) is ServiceType.TIME_BASED:
        if details.booking_date_time is None:
            raise ValidationError(
                {"booking_date_time": "a time slot is required for time-based services"}
            )
        ensure_slot_start(service, to_local_naive(details.booking_date_time))
        return

    requirements = (details.project_requirements or "").strip()
    if len(requirements) < PROJECT_REQUIREMENTS_MIN_CHARS:
        raise ValidationError(
            {
                "project_requirements": (
                    f"must be at least {PROJECT_REQUIREMENTS_MIN_CHARS} characters"
                )
            }
        )


def ensure_client(db: Session, service: Service, client_id: UUID) -> None:
    if client_id == service.profile_id:
        raise AuthorizationError(
            actor_id=client_id,
            role=ProfileRole.PROFESSIONAL.value,
            action=f"book own service {service.id}",
        )
    if db.get(Profile, client_id) is None:
        raise NotFoundError("Profile", client_id)


def booking_interval(
    service: Service, details: BookingDetails
) -> tuple[datetime, datetime | None]:
    if ServiceType(service.service_type) is ServiceType.TIME_BASED:
        start = to_local_naive(details.booking_date_time)
        return start, start + session_duration(service)
    return local_now(), None


def ensure_interval_free(
    db: Session, professional_id: UUID, start: datetime, end: datetime
) -> None:
    existing = bookings_for_professional(db, professional_id, start, end)
    clashes = conflicting_bookings(start, end, existing)
    if clashes:
        raise SlotUnavailableError(
            f"Professional {professional_id} already has a booking overlapping "
            f"{start.isoformat()} - {end.isoformat()}"
        )


def open_booking(
    db: Session,
    service: Service,
    client_id: UUID,
    details: BookingDetails,
    *,
    amount_in_cents: int | None = None,
    payment_reference: str | None = None,
) -> Booking:
    """Insert a PENDING_CONFIRMATION booking iff its interval is still free.

    The professional's row is locked first so concurrent creations for the
    same calendar run one after the other and the second one sees the first.
    """

    ensure_bookable(service)
    validate_booking_details(service, details)
    ensure_client(db, service, client_id)

    start, end = booking_interval(service, details)
    if end is not None:
        db.execute(
            select(Profile.id).where(Profile.id == service.profile_id).with_for_update()
        )
        ensure_interval_free(db, service.profile_id, start, end)

    booking = Booking(
        client_id=client_id,
        professional_profile_id=service.profile_id,
        service_id=service.id,
        booking_start_time=start,
        booking_end_time=end,
        status=BookingStatus.PENDING_CONFIRMATION,
        amount_paid_in_cents=(
            service.price_in_cents if amount_in_cents is None else amount_in_cents
        ),
        notes=details.compose_notes() or None,
        payment_reference=payment_reference,
    )
    db.add(booking)
    try:
        db.flush()
    except IntegrityError as exc:
        raise SlotUnavailableError(
            f"Professional {service.profile_id} already has a booking overlapping "
            f"{start.isoformat()}"
        ) from exc

    logger.info(
        "booking created",
        extra={
            "booking_id": str(booking.id),
            "service_id": str(service.id),
            "professional_id": str(service.profile_id),
            "start": start.isoformat(),
        },
    )
    return booking


def create_booking(
    db: Session,
    gateway: PaymentGateway,
    service_id: UUID,
    client_id: UUID,
    details: BookingDetails,
    payment_method_token: str,
) -> Booking:
    """Authorize the current price and persist the booking.

    Availability is checked before charging so a stale slot fails without an
    authorization; it is checked again, under lock, when the row is written.
    """

    service = load_service(db, service_id)
    ensure_bookable(service)
    validate_booking_details(service, details)
    ensure_client(db, service, client_id)
    start, end = booking_interval(service, details)
    if end is not None:
        ensure_interval_free(db, service.profile_id, start, end)

    amount = service.price_in_cents
    authorization = gateway.authorize(amount, payment_method_token)
    if not authorization.success:
        logger.info(
            "payment declined",
            extra={"service_id": str(service.id), "reason": authorization.reason},
        )
        raise PaymentDeclinedError(authorization.reason or "declined")

    try:
        return open_booking(
            db,
            service,
            client_id,
            details,
            amount_in_cents=amount,
            payment_reference=authorization.reference,
        )
    except ConflictError:
        logger.warning(
            "authorized payment left without booking",
            extra={"payment_reference": authorization.reference, "service_id": str(service.id)},
        )
        raise
