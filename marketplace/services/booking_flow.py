"""Multi-step booking flow: service, details, payment, confirmation.

Every operation takes a ``BookingFlowState`` and returns a new one; nothing
here keeps session state of its own. ``FlowStore`` persists the state between
HTTP requests.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from marketplace.core.errors import (
    AuthorizationError,
    ConflictError,
    FlowBusyError,
    StepBlockedError,
    UpstreamFailure,
    ValidationError,
)
from marketplace.models import ProfileRole, Service, ServiceType
from marketplace.services.lifecycle import (
    PROJECT_REQUIREMENTS_MIN_CHARS,
    BookingDetails,
    create_booking,
)
from marketplace.services.payments import PaymentGateway
from marketplace.services.scheduling import ensure_bookable

logger = logging.getLogger(__name__)

GOOD_DETAIL_MIN_WORDS = 50
_FORM_FIELDS = frozenset(BookingDetails.__dataclass_fields__)


class FlowStep(str, enum.Enum):
    SERVICE = "service"
    DETAILS = "details"
    PAYMENT = "payment"
    CONFIRMATION = "confirmation"


STEP_ORDER: tuple[FlowStep, ...] = (
    FlowStep.SERVICE,
    FlowStep.DETAILS,
    FlowStep.PAYMENT,
    FlowStep.CONFIRMATION,
)


@dataclass(frozen=True)
class RequirementsGuidance:
    word_count: int
    meets_minimum: bool
    good_detail: bool


@dataclass(frozen=True)
class BookingFlowState:
    service_id: UUID
    professional_id: UUID
    service_type: ServiceType
    total_amount: int
    client_id: UUID
    current_step: FlowStep = FlowStep.SERVICE
    completed_steps: tuple[FlowStep, ...] = ()
    details: BookingDetails = field(default_factory=BookingDetails)
    is_loading: bool = False
    error: str | None = None
    booking_id: UUID | None = None

    def as_dict(self) -> dict[str, Any]:
        """Convert the flow state into JSON-friendly values."""

        booking_time = self.details.booking_date_time
        return {
            "service_id": str(self.service_id),
            "professional_id": str(self.professional_id),
            "service_type": self.service_type.value,
            "total_amount": self.total_amount,
            "client_id": str(self.client_id),
            "current_step": self.current_step.value,
            "completed_steps": [step.value for step in self.completed_steps],
            "details": {
                "booking_date_time": booking_time.isoformat() if booking_time else None,
                "project_requirements": self.details.project_requirements,
                "special_requests": self.details.special_requests,
                "client_notes": self.details.client_notes,
            },
            "is_loading": self.is_loading,
            "error": self.error,
            "booking_id": str(self.booking_id) if self.booking_id else None,
            "can_proceed": can_proceed(self),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BookingFlowState:
        raw_details = data.get("details") or {}
        raw_time = raw_details.get("booking_date_time")
        details = BookingDetails(
            booking_date_time=datetime.fromisoformat(raw_time) if raw_time else None,
            project_requirements=raw_details.get("project_requirements"),
            special_requests=raw_details.get("special_requests"),
            client_notes=raw_details.get("client_notes"),
        )
        booking_id = data.get("booking_id")
        return cls(
            service_id=UUID(data["service_id"]),
            professional_id=UUID(data["professional_id"]),
            service_type=ServiceType(data["service_type"]),
            total_amount=int(data["total_amount"]),
            client_id=UUID(data["client_id"]),
            current_step=FlowStep(data["current_step"]),
            completed_steps=tuple(FlowStep(step) for step in data.get("completed_steps", [])),
            details=details,
            is_loading=bool(data.get("is_loading", False)),
            error=data.get("error"),
            booking_id=UUID(booking_id) if booking_id else None,
        )


def _ensure_idle(state: BookingFlowState) -> None:
    if state.is_loading:
        raise FlowBusyError("A request for this booking is still in progress")


def _step_index(step: FlowStep) -> int:
    return STEP_ORDER.index(step)


def ensure_flow_owner(
    state: BookingFlowState, actor_id: UUID, role: str | None = None
) -> None:
    """Only the client who started a flow may read or drive it."""

    if state.client_id != actor_id:
        raise AuthorizationError(
            actor_id=actor_id,
            role=role,
            action=f"use another client's booking flow for service {state.service_id}",
        )


def start_flow(service: Service, client_id: UUID) -> BookingFlowState:
    """Open a flow on the service step for a bookable service."""

    ensure_bookable(service)
    if client_id == service.profile_id:
        raise AuthorizationError(
            actor_id=client_id,
            role=ProfileRole.PROFESSIONAL.value,
            action=f"book own service {service.id}",
        )
    return BookingFlowState(
        service_id=service.id,
        professional_id=service.profile_id,
        service_type=ServiceType(service.service_type),
        total_amount=service.price_in_cents,
        client_id=client_id,
    )


def update_form(state: BookingFlowState, **fields: Any) -> BookingFlowState:
    """Merge entered values into the details form.

    The form is editable on the service and details steps only; from payment
    the client has to go back to details first.
    """

    _ensure_idle(state)
    if state.current_step is FlowStep.CONFIRMATION:
        raise ConflictError("Booking already placed; the form is closed")
    if state.current_step is FlowStep.PAYMENT:
        raise StepBlockedError(
            {"current_step": "go back to the details step to change the form"}
        )
    unknown = sorted(set(fields) - _FORM_FIELDS)
    if unknown:
        raise ValidationError({name: "unknown form field" for name in unknown})
    return replace(state, details=replace(state.details, **fields), error=None)


def requirements_guidance(text: str | None) -> RequirementsGuidance:
    """Soft guidance shown next to the requirements box.

    Only ``meets_minimum`` gates the flow; ``good_detail`` is advice.
    """

    stripped = (text or "").strip()
    word_count = len(stripped.split())
    return RequirementsGuidance(
        word_count=word_count,
        meets_minimum=len(stripped) >= PROJECT_REQUIREMENTS_MIN_CHARS,
        good_detail=word_count >= GOOD_DETAIL_MIN_WORDS,
    )


def _details_violations(state: BookingFlowState) -> dict[str, str]:
    if state.service_type is ServiceType.TIME_BASED:
        if state.details.booking_date_time is None:
            return {"booking_date_time": "select a time slot to continue"}
        return {}
    if not requirements_guidance(state.details.project_requirements).meets_minimum:
        return {
            "project_requirements": (
                f"describe the project in at least {PROJECT_REQUIREMENTS_MIN_CHARS} characters"
            )
        }
    return {}


def _blocking_violations(state: BookingFlowState) -> dict[str, str]:
    if state.current_step is FlowStep.SERVICE:
        return {}
    if state.current_step is FlowStep.DETAILS:
        return _details_violations(state)
    if state.current_step is FlowStep.PAYMENT:
        return {"payment": "submit the payment to continue"}
    return {"current_step": "the flow is complete"}


def can_proceed(state: BookingFlowState) -> bool:
    """Whether ``next_step`` would advance from the current step."""

    return not state.is_loading and not _blocking_violations(state)


def next_step(state: BookingFlowState) -> BookingFlowState:
    _ensure_idle(state)
    violations = _blocking_violations(state)
    if violations:
        raise StepBlockedError(violations)
    index = _step_index(state.current_step)
    return replace(
        state,
        current_step=STEP_ORDER[index + 1],
        completed_steps=tuple(STEP_ORDER[: index + 1]),
        error=None,
    )


def prev_step(state: BookingFlowState) -> BookingFlowState | None:
    """Go back one step; ``None`` means the caller left the flow."""

    _ensure_idle(state)
    if state.current_step is FlowStep.CONFIRMATION:
        raise ConflictError("Booking already placed; cancel it instead of going back")
    index = _step_index(state.current_step)
    if index == 0:
        return None
    return replace(state, current_step=STEP_ORDER[index - 1], error=None)


def begin_request(state: BookingFlowState) -> BookingFlowState:
    """Mark a long-running call as in flight."""

    _ensure_idle(state)
    return replace(state, is_loading=True)


def submit_payment(
    state: BookingFlowState,
    db: Session,
    gateway: PaymentGateway,
    *,
    client_id: UUID,
    payment_method_token: str,
) -> BookingFlowState:
    """Authorize payment and place the booking.

    Declined payments, upstream failures and slot conflicts keep the flow on
    the payment step with ``error`` set and nothing persisted.
    """

    _ensure_idle(state)
    ensure_flow_owner(state, client_id)
    if state.current_step is not FlowStep.PAYMENT:
        raise StepBlockedError(
            {"current_step": f"payment cannot be submitted from {state.current_step.value}"}
        )
    violations = _details_violations(state)
    if violations:
        raise StepBlockedError(violations)

    try:
        booking = create_booking(
            db,
            gateway,
            state.service_id,
            client_id,
            state.details,
            payment_method_token,
        )
    except (ConflictError, UpstreamFailure) as exc:
        db.rollback()
        logger.info(
            "booking attempt failed",
            extra={"service_id": str(state.service_id), "reason": exc.message},
        )
        return replace(state, is_loading=False, error=exc.message)

    return replace(
        state,
        current_step=FlowStep.CONFIRMATION,
        completed_steps=STEP_ORDER[:-1],
        is_loading=False,
        error=None,
        booking_id=booking.id,
    )
