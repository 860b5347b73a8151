from __future__ import annotations

import enum
import uuid

from sqlalchemy import Boolean, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.models.base import Base, TimestampMixin


class ServiceType(str, enum.Enum):
    """Which booking flow a service goes through."""

    TIME_BASED = "TIME_BASED"
    PROJECT_BASED = "PROJECT_BASED"


class PricingType(str, enum.Enum):
    FIXED = "FIXED"
    HOURLY = "HOURLY"


class DeliveryTimeUnit(str, enum.Enum):
    MINUTES = "MINUTES"
    HOURS = "HOURS"
    DAYS = "DAYS"
    WEEKS = "WEEKS"
    MONTHS = "MONTHS"


class Service(Base, TimestampMixin):
    """Bookable offering published by a professional."""

    __tablename__ = "services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    profile_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id", ondelete="CASCADE"), index=True
    )
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    service_type: Mapped[ServiceType] = mapped_column(
        Enum(ServiceType, name="service_type"), nullable=False
    )
    pricing_type: Mapped[PricingType] = mapped_column(
        Enum(PricingType, name="pricing_type"),
        default=PricingType.FIXED,
        nullable=False,
    )
    delivery_time_value: Mapped[int] = mapped_column(Integer, nullable=False)
    delivery_time_unit: Mapped[DeliveryTimeUnit] = mapped_column(
        Enum(DeliveryTimeUnit, name="delivery_time_unit"), nullable=False
    )
    price_in_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
