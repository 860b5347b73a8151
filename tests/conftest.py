import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("PAYMENT_MOCK_MODE", "true")
os.environ.setdefault("TIMEZONE", "UTC")

from collections.abc import Iterator  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from marketplace.core.errors import UpstreamFailure  # noqa: E402
from marketplace.db.base import Base  # noqa: E402
from marketplace.db.session import get_db, session_scope  # noqa: E402
from marketplace.main import app, get_flow_store, get_gateway, rate_limiter  # noqa: E402
from marketplace.models import (  # noqa: E402
    DeliveryTimeUnit,
    PricingType,
    Profile,
    ProfileRole,
    Service,
    ServiceType,
)
from marketplace.services.flow_store import FlowStore  # noqa: E402
from marketplace.services.payments import PaymentAuthorization, PaymentGateway  # noqa: E402


class FakeRedis:
    """Dictionary-backed stand-in for the few Redis calls the flow store makes."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def get(self, key: str) -> str | None:
        return self.values.get(key)

    def setex(self, key: str, ttl: int, value: str) -> None:
        self.values[key] = value
        self.ttls[key] = ttl

    def set(
        self, key: str, value: str, nx: bool = False, ex: int | None = None
    ) -> bool | None:
        if nx and key in self.values:
            return None
        self.values[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    def delete(self, key: str) -> None:
        self.values.pop(key, None)
        self.ttls.pop(key, None)


class RecordingGateway:
    """Gateway double that records authorizations and answers with a fixed outcome."""

    def __init__(self, outcome: PaymentAuthorization | Exception | None = None) -> None:
        self.outcome = outcome or PaymentAuthorization(success=True, reference="pi_test")
        self.calls: list[tuple[int, str]] = []

    def authorize(self, amount_in_cents: int, payment_method_token: str) -> PaymentAuthorization:
        self.calls.append((amount_in_cents, payment_method_token))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, future=True)


@pytest.fixture
def db(session_factory) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def gateway() -> PaymentGateway:
    return PaymentGateway("http://payments.test", "", mock_mode=True)


@pytest.fixture
def recording_gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def failing_gateway() -> RecordingGateway:
    return RecordingGateway(UpstreamFailure("payments", "read timeout"))


@pytest.fixture
def flow_store() -> FlowStore:
    return FlowStore(client=FakeRedis(), ttl_seconds=600)


@pytest.fixture
def make_profile(db):
    counter = {"value": 0}

    def _make(role: ProfileRole = ProfileRole.CLIENT, username: str | None = None) -> Profile:
        counter["value"] += 1
        profile = Profile(
            username=username or f"{role.value.lower()}_{counter['value']}",
            full_name=f"Test {role.value.title()} {counter['value']}",
            role=role,
        )
        db.add(profile)
        db.flush()
        return profile

    return _make


@pytest.fixture
def make_service(db):
    def _make(owner: Profile, **overrides) -> Service:
        values = {
            "title": "Portfolio review",
            "description": "A one hour live session reviewing your portfolio.",
            "service_type": ServiceType.TIME_BASED,
            "pricing_type": PricingType.HOURLY,
            "delivery_time_value": 1,
            "delivery_time_unit": DeliveryTimeUnit.HOURS,
            "price_in_cents": 5000,
            "is_active": True,
        }
        values.update(overrides)
        service = Service(profile_id=owner.id, **values)
        db.add(service)
        db.flush()
        return service

    return _make


@pytest.fixture
def professional(make_profile) -> Profile:
    return make_profile(ProfileRole.PROFESSIONAL)


@pytest.fixture
def client_profile(make_profile) -> Profile:
    return make_profile(ProfileRole.CLIENT)


@pytest.fixture
def session_service(make_service, professional) -> Service:
    return make_service(professional)


@pytest.fixture
def project_service(make_service, professional) -> Service:
    return make_service(
        professional,
        title="Logo design",
        description="Three logo concepts with two rounds of revisions.",
        service_type=ServiceType.PROJECT_BASED,
        pricing_type=PricingType.FIXED,
        delivery_time_value=2,
        delivery_time_unit=DeliveryTimeUnit.WEEKS,
        price_in_cents=40000,
    )


@pytest.fixture
def api_client(session_factory, flow_store, gateway) -> Iterator[TestClient]:
    def override_get_db():
        with session_scope(session_factory) as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_flow_store] = lambda: flow_store
    app.dependency_overrides[get_gateway] = lambda: gateway
    rate_limiter._entries.clear()
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.dependency_overrides.clear()
