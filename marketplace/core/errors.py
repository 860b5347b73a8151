"""Error taxonomy shared by the booking engine and the HTTP layer."""

from __future__ import annotations

from typing import Any


class MarketplaceError(Exception):
    """Base class for every rule violation surfaced to callers."""

    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def as_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "detail": self.message}


class ValidationError(MarketplaceError):
    """Malformed input; carries every violation, not just the first."""

    def __init__(self, violations: dict[str, str]) -> None:
        self.violations = dict(violations)
        summary = "; ".join(f"{field}: {reason}" for field, reason in self.violations.items())
        super().__init__(f"Validation failed: {summary}")

    def as_dict(self) -> dict[str, Any]:
        payload = super().as_dict()
        payload["violations"] = self.violations
        return payload


class StepBlockedError(ValidationError):
    """The booking flow cannot leave the current step yet."""


class AuthorizationError(MarketplaceError):
    """Actor is not allowed to perform the action on the target entity."""

    def __init__(self, *, actor_id: Any, role: str | None, action: str) -> None:
        self.actor_id = actor_id
        self.role = role
        self.action = action
        super().__init__(
            f"Actor {actor_id} (role {role or 'none'}) is not allowed to {action}"
        )

    def as_dict(self) -> dict[str, Any]:
        payload = super().as_dict()
        payload.update({"actor_id": str(self.actor_id), "role": self.role, "action": self.action})
        return payload


class NotFoundError(MarketplaceError):
    """Referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: Any) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ConflictError(MarketplaceError):
    """Request collides with the current persisted state."""


class SlotUnavailableError(ConflictError):
    """Requested interval overlaps an active booking of the professional."""


class BookingFinalizedError(ConflictError):
    """Booking already reached a terminal status."""

    def __init__(self, booking_id: Any, status: str) -> None:
        self.booking_id = booking_id
        self.status = status
        super().__init__(f"Booking {booking_id} already finalized with status {status}")


class ActiveBookingsError(ConflictError):
    """Destructive operation vetoed by pending or confirmed bookings."""


class FlowBusyError(ConflictError):
    """A slot fetch, payment or booking call is still in flight for the flow."""


class PaymentDeclinedError(ConflictError):
    """The payment processor refused the authorization."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Payment authorization declined: {reason}")


class UpstreamFailure(MarketplaceError):
    """Payment processor or persistence call failed; safe to retry."""

    retryable = True

    def __init__(self, service: str, message: str) -> None:
        self.service = service
        super().__init__(f"{service} unavailable: {message}")


__all__ = [
    "ActiveBookingsError",
    "AuthorizationError",
    "BookingFinalizedError",
    "ConflictError",
    "FlowBusyError",
    "MarketplaceError",
    "NotFoundError",
    "PaymentDeclinedError",
    "SlotUnavailableError",
    "StepBlockedError",
    "UpstreamFailure",
    "ValidationError",
]
