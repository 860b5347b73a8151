from dataclasses import replace
from datetime import datetime

import pytest
from sqlalchemy import func, select

from marketplace.core.errors import (
    AuthorizationError,
    ConflictError,
    FlowBusyError,
    NotFoundError,
    StepBlockedError,
    ValidationError,
)
from marketplace.models import Booking, BookingStatus, ProfileRole
from marketplace.services.booking_flow import (
    GOOD_DETAIL_MIN_WORDS,
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
from marketplace.services.flow_store import FlowStore
from marketplace.services.lifecycle import BookingDetails, open_booking

from conftest import FakeRedis, RecordingGateway

SLOT = datetime(2030, 5, 6, 10)
REQUIREMENTS = "Three logo concepts for a neighbourhood bakery."


def count_bookings(db) -> int:
    return db.execute(select(func.count()).select_from(Booking)).scalar_one()


def at_payment(state: BookingFlowState, **fields) -> BookingFlowState:
    state = next_step(state)
    state = update_form(state, **fields)
    return next_step(state)


@pytest.fixture
def open_flow(client_profile):
    def _open(service) -> BookingFlowState:
        return start_flow(service, client_profile.id)

    return _open


def test_flow_starts_on_service_step(open_flow, session_service, professional, client_profile):
    state = open_flow(session_service)

    assert state.current_step is FlowStep.SERVICE
    assert state.professional_id == professional.id
    assert state.client_id == client_profile.id
    assert state.total_amount == 5000
    assert can_proceed(state) is True


def test_inactive_service_cannot_start_flow(open_flow, make_service, professional):
    with pytest.raises(ConflictError):
        open_flow(make_service(professional, is_active=False))


def test_professional_cannot_start_flow_on_own_service(session_service, professional):
    with pytest.raises(AuthorizationError):
        start_flow(session_service, professional.id)


def test_time_based_details_require_slot(open_flow, session_service):
    state = next_step(open_flow(session_service))
    assert state.current_step is FlowStep.DETAILS
    assert state.completed_steps == (FlowStep.SERVICE,)
    assert can_proceed(state) is False

    with pytest.raises(StepBlockedError) as excinfo:
        next_step(state)
    assert "booking_date_time" in excinfo.value.violations

    state = update_form(state, booking_date_time=SLOT)
    assert can_proceed(state) is True
    assert next_step(state).current_step is FlowStep.PAYMENT


def test_project_details_gate_on_trimmed_length(open_flow, project_service):
    state = next_step(open_flow(project_service))

    short = update_form(state, project_requirements="   " + "a" * 19 + "   ")
    assert can_proceed(short) is False
    with pytest.raises(StepBlockedError):
        next_step(short)

    exact = update_form(state, project_requirements="a" * 20)
    assert can_proceed(exact) is True
    assert next_step(exact).current_step is FlowStep.PAYMENT


def test_requirements_guidance_is_soft():
    brief = requirements_guidance("Need a logo for my bakery please")
    detailed = requirements_guidance(" ".join(["word"] * GOOD_DETAIL_MIN_WORDS))

    assert brief.meets_minimum is True
    assert brief.good_detail is False
    assert brief.word_count == 7
    assert detailed.good_detail is True
    assert requirements_guidance(None).word_count == 0


def test_payment_step_only_advances_through_submission(open_flow, session_service):
    state = at_payment(open_flow(session_service), booking_date_time=SLOT)

    assert can_proceed(state) is False
    with pytest.raises(StepBlockedError):
        next_step(state)


@pytest.mark.parametrize(
    "service_fixture,fields,cleared",
    [
        ("session_service", {"booking_date_time": SLOT}, {"booking_date_time": None}),
        (
            "project_service",
            {"project_requirements": REQUIREMENTS},
            {"project_requirements": "too short"},
        ),
    ],
)
def test_form_is_closed_once_on_payment_step(
    request, open_flow, service_fixture, fields, cleared
):
    state = at_payment(open_flow(request.getfixturevalue(service_fixture)), **fields)

    with pytest.raises(StepBlockedError) as excinfo:
        update_form(state, **cleared)
    assert "current_step" in excinfo.value.violations

    back = update_form(prev_step(state), **cleared)
    assert back.current_step is FlowStep.DETAILS
    with pytest.raises(StepBlockedError):
        next_step(back)


@pytest.mark.parametrize(
    "service_fixture,fields,cleared,field",
    [
        (
            "session_service",
            {"booking_date_time": SLOT},
            {"booking_date_time": None},
            "booking_date_time",
        ),
        (
            "project_service",
            {"project_requirements": REQUIREMENTS},
            {"project_requirements": "  too short  "},
            "project_requirements",
        ),
    ],
)
def test_payment_rechecks_details_gate(
    request, db, open_flow, client_profile, service_fixture, fields, cleared, field
):
    state = at_payment(open_flow(request.getfixturevalue(service_fixture)), **fields)
    emptied = replace(state, details=replace(state.details, **cleared))
    gateway = RecordingGateway()

    with pytest.raises(StepBlockedError) as excinfo:
        submit_payment(
            emptied, db, gateway, client_id=client_profile.id, payment_method_token="pm_card_visa"
        )

    assert field in excinfo.value.violations
    assert gateway.calls == []
    assert count_bookings(db) == 0


def test_prev_from_first_step_exits(open_flow, session_service):
    assert prev_step(open_flow(session_service)) is None


def test_prev_moves_back_and_keeps_form(open_flow, session_service):
    state = at_payment(open_flow(session_service), booking_date_time=SLOT)

    back = prev_step(state)

    assert back.current_step is FlowStep.DETAILS
    assert back.details.booking_date_time == SLOT


def test_unknown_form_field(open_flow, session_service):
    with pytest.raises(ValidationError) as excinfo:
        update_form(open_flow(session_service), coupon="FREE")

    assert "coupon" in excinfo.value.violations


def test_busy_flow_rejects_actions(open_flow, session_service, db, gateway, client_profile):
    state = begin_request(at_payment(open_flow(session_service), booking_date_time=SLOT))

    assert can_proceed(state) is False
    for action in (next_step, prev_step, begin_request):
        with pytest.raises(FlowBusyError):
            action(state)
    with pytest.raises(FlowBusyError):
        update_form(state, client_notes="hi")
    with pytest.raises(FlowBusyError):
        submit_payment(
            state, db, gateway, client_id=client_profile.id, payment_method_token="pm_card_visa"
        )


def test_successful_payment_reaches_confirmation(
    db, gateway, open_flow, session_service, client_profile
):
    state = at_payment(open_flow(session_service), booking_date_time=SLOT)

    result = submit_payment(
        state, db, gateway, client_id=client_profile.id, payment_method_token="pm_card_visa"
    )

    assert result.current_step is FlowStep.CONFIRMATION
    assert result.completed_steps == (FlowStep.SERVICE, FlowStep.DETAILS, FlowStep.PAYMENT)
    assert result.error is None
    booking = db.get(Booking, result.booking_id)
    assert booking.status is BookingStatus.PENDING_CONFIRMATION
    assert booking.client_id == client_profile.id
    assert booking.payment_reference.startswith("mocked-")


def test_payment_by_another_client_is_refused(
    db, open_flow, session_service, make_profile
):
    state = at_payment(open_flow(session_service), booking_date_time=SLOT)
    intruder = make_profile(ProfileRole.CLIENT)
    gateway = RecordingGateway()

    with pytest.raises(AuthorizationError):
        submit_payment(
            state, db, gateway, client_id=intruder.id, payment_method_token="pm_card_visa"
        )

    assert gateway.calls == []
    assert count_bookings(db) == 0


def test_confirmation_is_final(db, gateway, open_flow, session_service, client_profile):
    state = at_payment(open_flow(session_service), booking_date_time=SLOT)
    done = submit_payment(
        state, db, gateway, client_id=client_profile.id, payment_method_token="pm_card_visa"
    )

    with pytest.raises(ConflictError):
        prev_step(done)
    with pytest.raises(ConflictError):
        update_form(done, client_notes="changed my mind")
    with pytest.raises(StepBlockedError):
        next_step(done)


def test_declined_payment_stays_on_payment(
    db, gateway, open_flow, session_service, client_profile
):
    state = at_payment(open_flow(session_service), booking_date_time=SLOT)

    result = submit_payment(
        state,
        db,
        gateway,
        client_id=client_profile.id,
        payment_method_token="pm_card_declined_insufficient_funds",
    )

    assert result.current_step is FlowStep.PAYMENT
    assert "declined" in result.error
    assert result.booking_id is None
    assert result.is_loading is False
    assert count_bookings(db) == 0


def test_upstream_failure_stays_on_payment(
    db, failing_gateway, open_flow, session_service, client_profile
):
    state = at_payment(open_flow(session_service), booking_date_time=SLOT)

    result = submit_payment(
        state, db, failing_gateway, client_id=client_profile.id, payment_method_token="pm_x"
    )

    assert result.current_step is FlowStep.PAYMENT
    assert "payments unavailable" in result.error
    assert count_bookings(db) == 0


def test_slot_taken_meanwhile_stays_on_payment(
    db, open_flow, session_service, client_profile, make_profile
):
    state = at_payment(open_flow(session_service), booking_date_time=SLOT)
    rival = make_profile(ProfileRole.CLIENT)
    open_booking(db, session_service, rival.id, BookingDetails(booking_date_time=SLOT))
    db.commit()
    gateway = RecordingGateway()

    result = submit_payment(
        state, db, gateway, client_id=client_profile.id, payment_method_token="pm_card_visa"
    )

    assert result.current_step is FlowStep.PAYMENT
    assert result.error
    assert gateway.calls == []
    assert count_bookings(db) == 1


def test_payment_only_from_payment_step(db, gateway, open_flow, session_service, client_profile):
    state = next_step(open_flow(session_service))

    with pytest.raises(StepBlockedError):
        submit_payment(
            state, db, gateway, client_id=client_profile.id, payment_method_token="pm_card_visa"
        )


def test_flow_store_round_trip(flow_store, open_flow, session_service):
    state = update_form(
        next_step(open_flow(session_service)),
        booking_date_time=SLOT,
        special_requests="Please use Zoom",
    )

    flow_id = flow_store.create(state)

    assert flow_store.load(flow_id) == state


def test_flow_store_discards_unreadable_state(open_flow, session_service):
    redis_client = FakeRedis()
    store = FlowStore(client=redis_client, ttl_seconds=60)
    flow_id = store.create(open_flow(session_service))
    key = next(iter(redis_client.values))
    redis_client.values[key] = "{not json"

    with pytest.raises(NotFoundError):
        store.load(flow_id)
    assert redis_client.values == {}


def test_flow_store_missing_and_discarded(flow_store, open_flow, session_service):
    flow_id = flow_store.create(open_flow(session_service))
    flow_store.discard(flow_id)

    with pytest.raises(NotFoundError):
        flow_store.load(flow_id)


def test_saved_state_expires_after_ttl(open_flow, session_service):
    redis_client = FakeRedis()
    store = FlowStore(client=redis_client, ttl_seconds=90)
    store.create(open_flow(session_service))

    assert list(redis_client.ttls.values()) == [90]


def test_in_flight_lock_admits_one_holder(open_flow, session_service):
    redis_client = FakeRedis()
    store = FlowStore(client=redis_client, ttl_seconds=90, lock_seconds=30)
    flow_id = store.create(open_flow(session_service))

    with store.in_flight(flow_id):
        assert redis_client.ttls[f"marketplace:booking_flow:{flow_id}:lock"] == 30
        with pytest.raises(FlowBusyError):
            with store.in_flight(flow_id):
                pass

    with store.in_flight(flow_id):
        pass
    assert list(redis_client.values) == [f"marketplace:booking_flow:{flow_id}"]


def test_in_flight_lock_released_on_error(flow_store, open_flow, session_service):
    flow_id = flow_store.create(open_flow(session_service))

    with pytest.raises(ConflictError):
        with flow_store.in_flight(flow_id):
            raise ConflictError("gateway said no")

    with flow_store.in_flight(flow_id):
        assert flow_store.load(flow_id).current_step is FlowStep.SERVICE
