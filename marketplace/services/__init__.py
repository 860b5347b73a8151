"""Booking engine: scheduling, lifecycle, catalog guards and the booking flow."""

from marketplace.services.booking_flow import (
    BookingFlowState,
    FlowStep,
    begin_request,
    can_proceed,
    next_step,
    prev_step,
    requirements_guidance,
    start_flow,
    submit_payment,
    update_form,
)
from marketplace.services.lifecycle import (
    ALLOWED_TRANSITIONS,
    Actor,
    BookingDetails,
    create_booking,
    open_booking,
    transition_booking,
)
from marketplace.services.payments import (
    PaymentAuthorization,
    PaymentGateway,
    get_payment_gateway,
)
from marketplace.services.scheduling import (
    TimeSlot,
    compute_delivery_date,
    compute_delivery_estimate,
    generate_day_slots,
    get_available_slots,
    has_active_bookings,
    resolve_availability,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "Actor",
    "BookingDetails",
    "BookingFlowState",
    "FlowStep",
    "PaymentAuthorization",
    "PaymentGateway",
    "TimeSlot",
    "begin_request",
    "can_proceed",
    "compute_delivery_date",
    "compute_delivery_estimate",
    "create_booking",
    "generate_day_slots",
    "get_available_slots",
    "get_payment_gateway",
    "has_active_bookings",
    "next_step",
    "open_booking",
    "prev_step",
    "requirements_guidance",
    "resolve_availability",
    "start_flow",
    "submit_payment",
    "transition_booking",
    "update_form",
]
