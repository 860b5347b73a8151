from __future__ import annotations

import enum
import uuid

from sqlalchemy import Enum, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.models.base import Base, TimestampMixin


class ProfileRole(str, enum.Enum):
    """Account roles issued by the identity provider."""

    CLIENT = "CLIENT"
    PROFESSIONAL = "PROFESSIONAL"


class Profile(Base, TimestampMixin):
    """Marketplace account, either a client or a professional."""

    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    username: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    role: Mapped[ProfileRole] = mapped_column(
        Enum(ProfileRole, name="profile_role"),
        default=ProfileRole.CLIENT,
        nullable=False,
    )
