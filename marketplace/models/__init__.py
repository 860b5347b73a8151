"""SQLAlchemy models for the marketplace booking API."""

from marketplace.models.booking import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Booking,
    BookingStatus,
)
from marketplace.models.profile import Profile, ProfileRole
from marketplace.models.service import (
    DeliveryTimeUnit,
    PricingType,
    Service,
    ServiceType,
)

__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "Booking",
    "BookingStatus",
    "DeliveryTimeUnit",
    "PricingType",
    "Profile",
    "ProfileRole",
    "Service",
    "ServiceType",
]
