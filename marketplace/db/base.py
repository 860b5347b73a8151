"""Import SQLAlchemy models for Alembic's autogenerate feature."""

from marketplace.models.base import Base
from marketplace.models import (  # noqa: F401
    Booking,
    Profile,
    Service,
)

__all__ = [
    "Base",
    "Booking",
    "Profile",
    "Service",
]
