"""Initial marketplace booking schema."""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20240601001"
down_revision = None
branch_labels = None
depends_on = None


profile_role_enum = postgresql.ENUM("CLIENT", "PROFESSIONAL", name="profile_role")
service_type_enum = postgresql.ENUM("TIME_BASED", "PROJECT_BASED", name="service_type")
pricing_type_enum = postgresql.ENUM("FIXED", "HOURLY", name="pricing_type")
delivery_time_unit_enum = postgresql.ENUM(
    "MINUTES", "HOURS", "DAYS", "WEEKS", "MONTHS", name="delivery_time_unit"
)
booking_status_enum = postgresql.ENUM(
    "PENDING_CONFIRMATION",
    "CONFIRMED",
    "COMPLETED",
    "CANCELLED",
    "DECLINED",
    name="booking_status",
)


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")

    op.create_table(
        "profiles",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.Column("username", sa.String(length=30), nullable=False),
        sa.Column("full_name", sa.String(length=100), nullable=True),
        sa.Column("role", profile_role_enum, nullable=False, server_default="CLIENT"),
        sa.UniqueConstraint("username", name="uq_profiles_username"),
    )

    op.create_table(
        "services",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.Column("profile_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("title", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("service_type", service_type_enum, nullable=False),
        sa.Column("pricing_type", pricing_type_enum, nullable=False, server_default="FIXED"),
        sa.Column("delivery_time_value", sa.Integer(), nullable=False),
        sa.Column("delivery_time_unit", delivery_time_unit_enum, nullable=False),
        sa.Column("price_in_cents", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.ForeignKeyConstraint(["profile_id"], ["profiles.id"], ondelete="CASCADE"),
        sa.CheckConstraint("price_in_cents >= 500", name="price_minimum"),
        sa.CheckConstraint("delivery_time_value >= 1", name="delivery_time_positive"),
    )
    op.create_index("ix_services_profile_id", "services", ["profile_id"], unique=False)

    op.create_table(
        "bookings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("professional_profile_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("service_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("booking_start_time", sa.DateTime(), nullable=False),
        sa.Column("booking_end_time", sa.DateTime(), nullable=True),
        sa.Column(
            "status",
            booking_status_enum,
            nullable=False,
            server_default="PENDING_CONFIRMATION",
        ),
        sa.Column("amount_paid_in_cents", sa.Integer(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("payment_reference", sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(["client_id"], ["profiles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["professional_profile_id"], ["profiles.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["service_id"], ["services.id"], ondelete="CASCADE"),
        sa.CheckConstraint("amount_paid_in_cents >= 0", name="amount_non_negative"),
        sa.CheckConstraint(
            "booking_end_time IS NULL OR booking_end_time > booking_start_time",
            name="end_after_start",
        ),
    )
    op.create_index("ix_bookings_client_id", "bookings", ["client_id"], unique=False)
    op.create_index(
        "ix_bookings_professional_profile_id",
        "bookings",
        ["professional_profile_id"],
        unique=False,
    )
    op.create_index("ix_bookings_service_id", "bookings", ["service_id"], unique=False)

    # No two active time-based bookings of one professional may overlap.
    op.execute(
        """
        ALTER TABLE bookings
        ADD CONSTRAINT bookings_no_overlap_per_professional
        EXCLUDE USING gist (
            professional_profile_id WITH =,
            tsrange(booking_start_time, booking_end_time, '[)') WITH &&
        )
        WHERE (
            status IN ('PENDING_CONFIRMATION', 'CONFIRMED')
            AND booking_end_time IS NOT NULL
        )
        """
    )


def downgrade() -> None:
    op.drop_table("bookings")
    op.drop_index("ix_services_profile_id", table_name="services")
    op.drop_table("services")
    op.drop_table("profiles")

    bind = op.get_bind()
    for enum_type in (
        booking_status_enum,
        delivery_time_unit_enum,
        pricing_type_enum,
        service_type_enum,
        profile_role_enum,
    ):
        enum_type.drop(bind, checkfirst=True)
