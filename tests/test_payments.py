import json
from urllib.parse import parse_qs

import httpx
import pytest

from marketplace.core.errors import UpstreamFailure, ValidationError
from marketplace.services.payments import PaymentGateway


def remote_gateway(handler) -> PaymentGateway:
    return PaymentGateway(
        "https://payments.test/",
        "sk_test_123",
        transport=httpx.MockTransport(handler),
    )


def test_mock_mode_authorizes():
    gateway = PaymentGateway("https://payments.test", "", mock_mode=True)

    result = gateway.authorize(5000, "pm_card_visa")

    assert result.success is True
    assert result.reference.startswith("mocked-")


def test_mock_mode_declines_declined_card():
    gateway = PaymentGateway("https://payments.test", "", mock_mode=True)

    result = gateway.authorize(5000, "pm_card_declined")

    assert result.success is False
    assert result.reason == "card_declined"


def test_invalid_requests_are_rejected_before_any_call():
    gateway = remote_gateway(lambda request: pytest.fail("no request expected"))

    with pytest.raises(ValidationError) as excinfo:
        gateway.authorize(0, "")

    assert set(excinfo.value.violations) == {"amount_in_cents", "payment_method_token"}


def test_remote_authorization_posts_manual_capture_intent():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"id": "pi_123", "status": "requires_capture"})

    result = remote_gateway(handler).authorize(7500, "pm_card_visa")

    assert result.success is True
    assert result.reference == "pi_123"
    assert seen["url"] == "https://payments.test/v1/payment_intents"
    assert seen["auth"] == "Bearer sk_test_123"
    assert seen["form"]["amount"] == ["7500"]
    assert seen["form"]["capture_method"] == ["manual"]


def test_remote_decline_returns_reason():
    def handler(request: httpx.Request) -> httpx.Response:
        body = {"error": {"code": "card_declined", "decline_code": "insufficient_funds"}}
        return httpx.Response(402, content=json.dumps(body))

    result = remote_gateway(handler).authorize(7500, "pm_card_visa")

    assert result.success is False
    assert result.reason == "insufficient_funds"


def test_unexpected_intent_status_is_not_an_authorization():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "pi_9", "status": "requires_action"})

    result = remote_gateway(handler).authorize(7500, "pm_card_visa")

    assert result.success is False
    assert result.reason == "requires_action"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, json={"error": {"message": "maintenance"}}),
        httpx.Response(401, json={"error": {"message": "bad key"}}),
        httpx.Response(200, content=b"<html>oops</html>"),
        httpx.Response(200, json={"status": "succeeded"}),
    ],
)
def test_processor_failures_are_retryable(response):
    with pytest.raises(UpstreamFailure) as excinfo:
        remote_gateway(lambda request: response).authorize(7500, "pm_card_visa")

    assert excinfo.value.retryable is True


def test_transport_errors_are_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(UpstreamFailure):
        remote_gateway(handler).authorize(7500, "pm_card_visa")


def test_missing_api_key_is_an_upstream_failure():
    gateway = PaymentGateway("https://payments.test", "")

    with pytest.raises(UpstreamFailure):
        gateway.authorize(7500, "pm_card_visa")
