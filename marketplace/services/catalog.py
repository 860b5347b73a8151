"""Service descriptor validation and the destructive operations it guards."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any
from uuid import UUID

import pydantic
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from marketplace.core.errors import (
    ActiveBookingsError,
    AuthorizationError,
    NotFoundError,
    ValidationError,
)
from marketplace.models import (
    DeliveryTimeUnit,
    PricingType,
    Profile,
    ProfileRole,
    Service,
    ServiceType,
)
from marketplace.services.lifecycle import Actor
from marketplace.services.scheduling import (
    has_active_bookings,
    has_active_bookings_for_profile,
    load_service,
)

logger = logging.getLogger(__name__)

MIN_PRICE_IN_CENTS = 500


class ServiceFields(BaseModel):
    """Constraints on a service descriptor."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=3, max_length=100)
    description: str = Field(min_length=20, max_length=1000)
    service_type: ServiceType
    pricing_type: PricingType = PricingType.FIXED
    delivery_time_value: int = Field(ge=1)
    delivery_time_unit: DeliveryTimeUnit
    price_in_cents: int = Field(ge=MIN_PRICE_IN_CENTS)
    is_active: bool = True


EDITABLE_FIELDS = tuple(ServiceFields.model_fields)


def validate_service_fields(data: Mapping[str, Any]) -> ServiceFields:
    """Validate a full descriptor, reporting every failing field at once."""

    try:
        return ServiceFields.model_validate(dict(data))
    except pydantic.ValidationError as exc:
        violations: dict[str, str] = {}
        for error in exc.errors():
            name = ".".join(str(part) for part in error["loc"]) or "__root__"
            violations.setdefault(name, error["msg"])
        raise ValidationError(violations) from exc


def _owned_service(db: Session, actor: Actor, service_id: UUID, action: str) -> Service:
    service = load_service(db, service_id)
    if service.profile_id != actor.id:
        raise AuthorizationError(
            actor_id=actor.id,
            role=actor.role.value,
            action=f"{action} service {service_id} owned by another professional",
        )
    return service


def create_service(db: Session, actor: Actor, data: Mapping[str, Any]) -> Service:
    if actor.role is not ProfileRole.PROFESSIONAL:
        raise AuthorizationError(
            actor_id=actor.id, role=actor.role.value, action="create services"
        )
    if db.get(Profile, actor.id) is None:
        raise NotFoundError("Profile", actor.id)

    fields = validate_service_fields(data)
    service = Service(profile_id=actor.id, **fields.model_dump())
    db.add(service)
    db.flush()
    logger.info(
        "service created",
        extra={"service_id": str(service.id), "professional_id": str(actor.id)},
    )
    return service


def update_service(
    db: Session, actor: Actor, service_id: UUID, changes: Mapping[str, Any]
) -> Service:
    """Apply ``changes`` after validating the merged descriptor.

    Existing bookings keep the amount they were charged.
    """

    service = _owned_service(db, actor, service_id, "update")
    current = {name: getattr(service, name) for name in EDITABLE_FIELDS}
    fields = validate_service_fields({**current, **changes})
    for name, value in fields.model_dump().items():
        setattr(service, name, value)
    db.flush()
    return service


def set_service_active(
    db: Session, actor: Actor, service_id: UUID, is_active: bool
) -> Service:
    return update_service(db, actor, service_id, {"is_active": is_active})


def delete_service(db: Session, actor: Actor, service_id: UUID) -> None:
    service = _owned_service(db, actor, service_id, "delete")
    if has_active_bookings(db, service.id):
        raise ActiveBookingsError(
            "Cannot delete service with active bookings. "
            "Cancel or complete them first."
        )
    db.delete(service)
    db.flush()
    logger.info("service deleted", extra={"service_id": str(service_id)})


def delete_profile(db: Session, actor: Actor, profile_id: UUID) -> None:
    if actor.id != profile_id:
        raise AuthorizationError(
            actor_id=actor.id, role=actor.role.value, action=f"delete account {profile_id}"
        )
    profile = db.get(Profile, profile_id)
    if profile is None:
        raise NotFoundError("Profile", profile_id)
    if has_active_bookings_for_profile(db, profile_id):
        raise ActiveBookingsError(
            "Cannot delete account with active bookings. "
            "Complete or cancel all bookings first."
        )
    db.delete(profile)
    db.flush()
    logger.info("profile deleted", extra={"profile_id": str(profile_id)})
