from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import date, datetime
from functools import lru_cache
from typing import Any
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from pydantic import BaseModel
from sqlalchemy import or_, select
from sqlalchemy.orm import Session
from starlette.middleware.base import BaseHTTPMiddleware

from marketplace.core.config import settings
from marketplace.core.errors import (
    AuthorizationError,
    ConflictError,
    MarketplaceError,
    NotFoundError,
    UpstreamFailure,
    ValidationError,
)
from marketplace.db.session import commit, get_db
from marketplace.logging_utils import (
    _actor_id_ctx_var,
    _request_id_ctx_var,
    booking_log_context,
    configure_logging,
    get_current_actor,
    get_request_id,
    set_actor_context,
)
from marketplace.models import Booking, BookingStatus, ProfileRole, ServiceType
from marketplace.services import booking_flow
from marketplace.services.catalog import (
    create_service,
    delete_profile,
    delete_service,
    update_service,
)
from marketplace.services.flow_store import FlowStore
from marketplace.services.lifecycle import (
    Actor,
    BookingDetails,
    create_booking,
    serialize_booking,
    transition_booking,
)
from marketplace.services.payments import PaymentGateway, get_payment_gateway
from marketplace.services.scheduling import (
    compute_delivery_estimate,
    ensure_slot_start,
    get_available_slots,
    load_service,
    server_timezone,
    to_local_naive,
)

configure_logging()

app = FastAPI(title=settings.app_name, version="0.1.0")

logger = logging.getLogger(__name__)

REQUEST_COUNTER = Counter(
    "marketplace_api_requests_total",
    "Total number of processed HTTP requests.",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "marketplace_api_request_duration_seconds",
    "HTTP request latency in seconds.",
    ["method", "path"],
)
BOOKINGS_CREATED = Counter(
    "marketplace_bookings_created_total",
    "Bookings persisted after a successful payment authorization.",
    ["service_type"],
)
BOOKING_TRANSITIONS = Counter(
    "marketplace_booking_transitions_total",
    "Accepted booking status transitions.",
    ["to_status"],
)
REJECTED_OPERATIONS = Counter(
    "marketplace_rejected_operations_total",
    "Booking engine errors returned to callers.",
    ["error"],
)

_ERROR_STATUS: tuple[tuple[type[MarketplaceError], int], ...] = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (UpstreamFailure, status.HTTP_502_BAD_GATEWAY),
)


class SimpleRateLimiter:
    """In-memory rate limiter keyed by IP and actor."""

    def __init__(self, limit: int, window_seconds: int) -> None:
        self.limit = max(1, limit)
        self.window_seconds = max(1, window_seconds)
        self._entries: dict[str, tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    async def allow(self, key: str) -> bool:
        now = time.monotonic()
        async with self._lock:
            count, window_start = self._entries.get(key, (0, now))
            if now - window_start >= self.window_seconds:
                self._entries[key] = (1, now)
                return True
            if count >= self.limit:
                return False
            self._entries[key] = (count + 1, window_start)
            return True


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Populate request and actor context for logging."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        actor_hint = request.headers.get("X-Actor-ID")

        request.state.request_id = request_id
        request_id_token = _request_id_ctx_var.set(request_id)
        actor_token = _actor_id_ctx_var.set(actor_hint)

        try:
            response = await call_next(request)
        finally:
            _request_id_ctx_var.reset(request_id_token)
            _actor_id_ctx_var.reset(actor_token)

        response.headers["X-Request-ID"] = request_id
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Apply a coarse rate limit per IP and actor."""

    def __init__(self, app: FastAPI, limiter: SimpleRateLimiter) -> None:  # type: ignore[override]
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        if request.method == "OPTIONS":
            return await call_next(request)

        client_host = request.client.host if request.client else "unknown"
        actor_value = request.headers.get("X-Actor-ID") or "anonymous"
        rate_key = f"{client_host}:{actor_value}"

        allowed = await self.limiter.allow(rate_key)
        if not allowed:
            logger.warning(
                "rate limit exceeded",
                extra={"client_ip": client_host, "actor": actor_value},
            )
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": "Rate limit exceeded"},
            )

        return await call_next(request)


def _route_path(request: Request) -> str:
    """Route template, so ids do not explode metric label cardinality."""

    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Emit structured access logs and feed metrics."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        start_time = time.perf_counter()
        method = request.method

        try:
            response = await call_next(request)
        except Exception:
            elapsed = time.perf_counter() - start_time
            path = _route_path(request)
            REQUEST_COUNTER.labels(method=method, path=path, status="500").inc()
            REQUEST_LATENCY.labels(method=method, path=path).observe(elapsed)
            logger.exception(
                "request failed",
                extra={
                    "method": method,
                    "path": path,
                    "duration_ms": round(elapsed * 1000, 2),
                    "request_id": get_request_id(),
                },
            )
            raise

        elapsed = time.perf_counter() - start_time
        path = _route_path(request)
        REQUEST_COUNTER.labels(
            method=method, path=path, status=str(response.status_code)
        ).inc()
        REQUEST_LATENCY.labels(method=method, path=path).observe(elapsed)

        logger.info(
            "request completed",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": round(elapsed * 1000, 2),
                "request_id": get_request_id(),
                "actor": get_current_actor(),
            },
        )

        return response


rate_limiter = SimpleRateLimiter(
    settings.rate_limit_requests, settings.rate_limit_window_seconds
)


# Last added runs outermost: the request context wraps everything else.
app.add_middleware(RateLimitMiddleware, limiter=rate_limiter)
app.add_middleware(AccessLogMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestContextMiddleware)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in _ERROR_STATUS if isinstance(exc, error_type)),
        status.HTTP_400_BAD_REQUEST,
    )
    REJECTED_OPERATIONS.labels(error=type(exc).__name__).inc()
    log = logger.warning if isinstance(exc, UpstreamFailure) else logger.info
    log(
        "operation rejected",
        extra={"error": type(exc).__name__, "detail": exc.message, "path": request.url.path},
    )
    headers = {"Retry-After": "5"} if exc.retryable else None
    return JSONResponse(status_code=status_code, content=exc.as_dict(), headers=headers)


class BookingCreate(BaseModel):
    service_id: UUID
    payment_method_token: str
    booking_date_time: datetime | None = None
    project_requirements: str | None = None
    special_requests: str | None = None
    client_notes: str | None = None


class BookingStatusUpdate(BaseModel):
    status: BookingStatus


class FlowStart(BaseModel):
    service_id: UUID


class FlowFormUpdate(BaseModel):
    booking_date_time: datetime | None = None
    project_requirements: str | None = None
    special_requests: str | None = None
    client_notes: str | None = None


class PaymentSubmit(BaseModel):
    payment_method_token: str


def current_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
) -> Actor:
    """Resolve the caller forwarded by the identity provider."""

    if not x_actor_id or not x_actor_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing actor identity",
        )
    try:
        actor = Actor(id=UUID(x_actor_id), role=ProfileRole(x_actor_role.upper()))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Malformed actor identity",
        ) from exc
    set_actor_context(actor.id)
    return actor


@lru_cache(maxsize=1)
def get_flow_store() -> FlowStore:
    return FlowStore()


def get_gateway() -> PaymentGateway:
    return get_payment_gateway()


def parse_date_choice(user_input: str) -> date | None:
    """Parse a YYYY-MM-DD formatted date."""

    try:
        return datetime.strptime(user_input.strip(), "%Y-%m-%d").date()
    except ValueError:
        return None


def flow_payload(flow_id: str, state: booking_flow.BookingFlowState) -> dict[str, Any]:
    guidance = booking_flow.requirements_guidance(state.details.project_requirements)
    return {
        "flow_id": flow_id,
        "flow": state.as_dict(),
        "requirements_guidance": {
            "word_count": guidance.word_count,
            "meets_minimum": guidance.meets_minimum,
            "good_detail": guidance.good_detail,
        },
    }


@app.get("/metrics")
def metrics() -> Response:
    """Expose Prometheus metrics for scraping."""

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health() -> dict[str, str]:
    """Health check endpoint used by infrastructure probes."""

    return {"status": "ok"}


@app.get("/api/v1/professionals/{professional_id}/slots")
def search_slots(
    professional_id: UUID,
    service_id: UUID,
    date: str,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Return the day's slots for a time-based service with live availability."""

    target_date = parse_date_choice(date)
    if not target_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid date format. Use YYYY-MM-DD.",
        )

    slots = get_available_slots(db, professional_id, service_id, target_date)
    tz = server_timezone()
    return {
        "professional_id": str(professional_id),
        "service_id": str(service_id),
        "date": target_date.isoformat(),
        "timezone": getattr(tz, "key", str(tz)),
        "results": [slot.as_dict() for slot in slots],
    }


@app.get("/api/v1/services/{service_id}/delivery-estimate")
def delivery_estimate(
    service_id: UUID,
    from_date: datetime | None = None,
    db: Session = Depends(get_db),
) -> dict[str, str]:
    """Expected delivery date of a service booked at ``from_date`` (default now)."""

    delivery = compute_delivery_estimate(db, service_id, from_date)
    return {"service_id": str(service_id), "delivery_date": delivery.isoformat()}


@app.get("/api/v1/bookings")
def list_bookings(
    status_filter: BookingStatus | None = None,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """List bookings the actor is party to."""

    stmt = select(Booking).where(
        or_(Booking.client_id == actor.id, Booking.professional_profile_id == actor.id)
    )
    if status_filter is not None:
        stmt = stmt.where(Booking.status == status_filter)
    bookings = db.execute(stmt.order_by(Booking.booking_start_time)).scalars().all()
    return {"bookings": [serialize_booking(booking) for booking in bookings]}


@app.post("/api/v1/bookings", status_code=status.HTTP_201_CREATED)
def create_booking_endpoint(
    payload: BookingCreate,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> dict[str, Any]:
    """Authorize payment and create a booking for the calling client."""

    details = BookingDetails(
        booking_date_time=payload.booking_date_time,
        project_requirements=payload.project_requirements,
        special_requests=payload.special_requests,
        client_notes=payload.client_notes,
    )
    booking = create_booking(
        db, gateway, payload.service_id, actor.id, details, payload.payment_method_token
    )
    service = load_service(db, booking.service_id)
    BOOKINGS_CREATED.labels(service_type=service.service_type.value).inc()
    return {"booking": serialize_booking(booking)}


@app.patch("/api/v1/bookings/{booking_id}/status")
def update_booking_status(
    booking_id: UUID,
    payload: BookingStatusUpdate,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Move a booking along its lifecycle on behalf of the actor."""

    booking = transition_booking(db, booking_id, actor, payload.status)
    BOOKING_TRANSITIONS.labels(to_status=payload.status.value).inc()
    return {"booking": serialize_booking(booking)}


def _serialize_service(service) -> dict[str, Any]:
    return {
        "id": str(service.id),
        "profile_id": str(service.profile_id),
        "title": service.title,
        "description": service.description,
        "service_type": service.service_type.value,
        "pricing_type": service.pricing_type.value,
        "delivery_time_value": service.delivery_time_value,
        "delivery_time_unit": service.delivery_time_unit.value,
        "price_in_cents": service.price_in_cents,
        "is_active": service.is_active,
    }


@app.post("/api/v1/services", status_code=status.HTTP_201_CREATED)
def create_service_endpoint(
    payload: dict[str, Any],
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    service = create_service(db, actor, payload)
    return {"service": _serialize_service(service)}


@app.patch("/api/v1/services/{service_id}")
def update_service_endpoint(
    service_id: UUID,
    payload: dict[str, Any],
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    service = update_service(db, actor, service_id, payload)
    return {"service": _serialize_service(service)}


@app.delete("/api/v1/services/{service_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_service_endpoint(
    service_id: UUID,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
) -> Response:
    delete_service(db, actor, service_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.delete("/api/v1/profiles/{profile_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_profile_endpoint(
    profile_id: UUID,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
) -> Response:
    delete_profile(db, actor, profile_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _owned_flow(store: FlowStore, flow_id: str, actor: Actor) -> booking_flow.BookingFlowState:
    state = store.load(flow_id)
    booking_flow.ensure_flow_owner(state, actor.id, actor.role.value)
    return state


@app.post("/api/v1/booking-flows", status_code=status.HTTP_201_CREATED)
def start_booking_flow(
    payload: FlowStart,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
    store: FlowStore = Depends(get_flow_store),
) -> dict[str, Any]:
    """Open a booking flow on the service step, owned by the calling client."""

    state = booking_flow.start_flow(load_service(db, payload.service_id), actor.id)
    flow_id = store.create(state)
    with booking_log_context(flow_id=flow_id):
        logger.info("booking flow started", extra={"service_id": str(payload.service_id)})
    return flow_payload(flow_id, state)


@app.get("/api/v1/booking-flows/{flow_id}")
def get_booking_flow(
    flow_id: str,
    actor: Actor = Depends(current_actor),
    store: FlowStore = Depends(get_flow_store),
) -> dict[str, Any]:
    return flow_payload(flow_id, _owned_flow(store, flow_id, actor))


@app.patch("/api/v1/booking-flows/{flow_id}")
def update_booking_flow(
    flow_id: str,
    payload: FlowFormUpdate,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
    store: FlowStore = Depends(get_flow_store),
) -> dict[str, Any]:
    """Merge form values; a chosen time must be a bookable slot start."""

    with booking_log_context(flow_id=flow_id), store.in_flight(flow_id):
        state = booking_flow.update_form(
            _owned_flow(store, flow_id, actor), **payload.model_dump(exclude_unset=True)
        )
        timed = state.service_type is ServiceType.TIME_BASED
        if timed and payload.booking_date_time is not None:
            service = load_service(db, state.service_id)
            ensure_slot_start(service, to_local_naive(payload.booking_date_time))
        store.save(flow_id, state)
    return flow_payload(flow_id, state)


@app.post("/api/v1/booking-flows/{flow_id}/next")
def advance_booking_flow(
    flow_id: str,
    actor: Actor = Depends(current_actor),
    store: FlowStore = Depends(get_flow_store),
) -> dict[str, Any]:
    with booking_log_context(flow_id=flow_id), store.in_flight(flow_id):
        state = booking_flow.next_step(_owned_flow(store, flow_id, actor))
        store.save(flow_id, state)
    return flow_payload(flow_id, state)


@app.post("/api/v1/booking-flows/{flow_id}/prev")
def rewind_booking_flow(
    flow_id: str,
    actor: Actor = Depends(current_actor),
    store: FlowStore = Depends(get_flow_store),
) -> dict[str, Any]:
    with booking_log_context(flow_id=flow_id), store.in_flight(flow_id):
        state = booking_flow.prev_step(_owned_flow(store, flow_id, actor))
        if state is None:
            store.discard(flow_id)
            logger.info("booking flow exited")
            return {"flow_id": flow_id, "exited": True}
        store.save(flow_id, state)
    return flow_payload(flow_id, state)


@app.delete("/api/v1/booking-flows/{flow_id}", status_code=status.HTTP_204_NO_CONTENT)
def abandon_booking_flow(
    flow_id: str,
    actor: Actor = Depends(current_actor),
    store: FlowStore = Depends(get_flow_store),
) -> Response:
    with booking_log_context(flow_id=flow_id), store.in_flight(flow_id):
        _owned_flow(store, flow_id, actor)
        store.discard(flow_id)
        logger.info("booking flow abandoned")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/api/v1/booking-flows/{flow_id}/payment")
def submit_booking_flow_payment(
    flow_id: str,
    payload: PaymentSubmit,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
    store: FlowStore = Depends(get_flow_store),
    gateway: PaymentGateway = Depends(get_gateway),
) -> dict[str, Any]:
    """Authorize payment and place the booking; failures stay on the payment step.

    The booking is committed before the flow is stored as confirmed, so a
    failed commit leaves the flow on the payment step.
    """

    with booking_log_context(flow_id=flow_id), store.in_flight(flow_id):
        state = _owned_flow(store, flow_id, actor)
        store.save(flow_id, booking_flow.begin_request(state))
        try:
            result = booking_flow.submit_payment(
                state,
                db,
                gateway,
                client_id=actor.id,
                payment_method_token=payload.payment_method_token,
            )
            if result.booking_id is not None:
                commit(db)
        except Exception:
            store.save(flow_id, state)
            raise
        store.save(flow_id, result)

        if result.booking_id is not None:
            BOOKINGS_CREATED.labels(service_type=result.service_type.value).inc()
            with booking_log_context(booking_id=result.booking_id):
                logger.info("booking flow confirmed")
    return flow_payload(flow_id, result)
