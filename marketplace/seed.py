from __future__ import annotations

import logging
from datetime import datetime, time, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from marketplace.db.session import SessionLocal, session_scope
from marketplace.logging_utils import configure_logging, set_actor_context
from marketplace.models import (
    Booking,
    BookingStatus,
    DeliveryTimeUnit,
    PricingType,
    Profile,
    ProfileRole,
    Service,
    ServiceType,
)
from marketplace.services.catalog import validate_service_fields
from marketplace.services.scheduling import local_now, session_duration

logger = logging.getLogger(__name__)

PROFESSIONALS: list[tuple[str, str]] = [
    ("ana_designs", "Ana Costa"),
    ("bruno_dev", "Bruno Lima"),
]

CLIENTS: list[tuple[str, str]] = [
    ("maria_s", "Maria Silva"),
    ("joao_p", "João Pereira"),
]

# (owner username, title, description, type, pricing, value, unit, price)
SERVICE_CATALOG: list[tuple[str, str, str, ServiceType, PricingType, int, DeliveryTimeUnit, int]] = [
    (
        "ana_designs",
        "Brand identity review",
        "One hour video call reviewing your logo, palette and typography.",
        ServiceType.TIME_BASED,
        PricingType.HOURLY,
        1,
        DeliveryTimeUnit.HOURS,
        9000,
    ),
    (
        "ana_designs",
        "Landing page design",
        "High fidelity landing page mockups delivered as Figma files.",
        ServiceType.PROJECT_BASED,
        PricingType.FIXED,
        2,
        DeliveryTimeUnit.WEEKS,
        120000,
    ),
    (
        "bruno_dev",
        "Code review session",
        "Pair review of a pull request of your choice over a shared screen.",
        ServiceType.TIME_BASED,
        PricingType.HOURLY,
        60,
        DeliveryTimeUnit.MINUTES,
        7500,
    ),
    (
        "bruno_dev",
        "API integration",
        "Integrate a third-party REST API into an existing Python backend.",
        ServiceType.PROJECT_BASED,
        PricingType.FIXED,
        1,
        DeliveryTimeUnit.MONTHS,
        250000,
    ),
]


def ensure_profiles(
    session: Session, entries: list[tuple[str, str]], role: ProfileRole
) -> dict[str, Profile]:
    created = 0
    profiles: dict[str, Profile] = {}
    for username, full_name in entries:
        profile = session.execute(
            select(Profile).where(Profile.username == username)
        ).scalar_one_or_none()
        if not profile:
            profile = Profile(username=username, full_name=full_name, role=role)
            session.add(profile)
            session.flush()
            created += 1
        profiles[username] = profile

    logger.info(
        "ensured profiles",
        extra={"role": role.value, "created": created, "total": len(profiles)},
    )
    return profiles


def ensure_services(session: Session, owners: dict[str, Profile]) -> list[Service]:
    created = 0
    services: list[Service] = []
    for owner, title, description, kind, pricing, value, unit, price in SERVICE_CATALOG:
        profile = owners[owner]
        service = session.execute(
            select(Service).where(Service.profile_id == profile.id, Service.title == title)
        ).scalar_one_or_none()
        if not service:
            fields = validate_service_fields(
                {
                    "title": title,
                    "description": description,
                    "service_type": kind,
                    "pricing_type": pricing,
                    "delivery_time_value": value,
                    "delivery_time_unit": unit,
                    "price_in_cents": price,
                }
            )
            service = Service(profile_id=profile.id, **fields.model_dump())
            session.add(service)
            session.flush()
            created += 1
        services.append(service)

    logger.info("ensured services", extra={"created": created, "total": len(services)})
    return services


def ensure_sample_booking(
    session: Session, services: list[Service], client: Profile
) -> Booking | None:
    """Confirmed booking tomorrow at the start of the day for the first live session."""

    service = next(
        (item for item in services if item.service_type is ServiceType.TIME_BASED), None
    )
    if service is None:
        return None

    existing = session.execute(
        select(Booking).where(Booking.service_id == service.id, Booking.client_id == client.id)
    ).scalars().first()
    if existing:
        return existing

    start = datetime.combine(local_now().date() + timedelta(days=1), time(hour=9))
    booking = Booking(
        client_id=client.id,
        professional_profile_id=service.profile_id,
        service_id=service.id,
        booking_start_time=start,
        booking_end_time=start + session_duration(service),
        status=BookingStatus.CONFIRMED,
        amount_paid_in_cents=service.price_in_cents,
        notes="Seeded demo booking",
    )
    session.add(booking)
    session.flush()
    logger.info("created sample booking", extra={"booking_id": str(booking.id)})
    return booking


def seed(factory: sessionmaker = SessionLocal) -> None:
    configure_logging()
    logger.info("starting seed process")

    with session_scope(factory) as session:
        professionals = ensure_profiles(session, PROFESSIONALS, ProfileRole.PROFESSIONAL)
        clients = ensure_profiles(session, CLIENTS, ProfileRole.CLIENT)
        services = ensure_services(session, professionals)
        first_client = clients[CLIENTS[0][0]]
        set_actor_context(first_client.id)
        ensure_sample_booking(session, services, first_client)

    logger.info("seed complete")


if __name__ == "__main__":  # pragma: no cover - script entrypoint
    seed()
