"""Thin wrapper around the payment processor's authorization endpoint."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from functools import lru_cache

import httpx
from prometheus_client import Counter

from marketplace.core.config import settings
from marketplace.core.errors import UpstreamFailure, ValidationError

logger = logging.getLogger(__name__)

_TIMEOUT = httpx.Timeout(connect=5.0, read=15.0, write=15.0, pool=5.0)
_MOCK_DECLINE_PREFIX = "pm_card_declined"

AUTHORIZATIONS = Counter(
    "marketplace_payment_authorizations_total",
    "Payment authorization attempts by outcome.",
    ["outcome"],
)


@dataclass(frozen=True)
class PaymentAuthorization:
    """Outcome of an authorization: a reference on success, a reason otherwise."""

    success: bool
    reference: str | None = None
    reason: str | None = None


class PaymentGateway:
    """Authorizes (but never captures) a charge on the client's payment method."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        mock_mode: bool = False,
        currency: str = "usd",
        timeout: httpx.Timeout = _TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.mock_mode = mock_mode
        self.currency = currency
        self.timeout = timeout
        self.transport = transport

    def authorize(self, amount_in_cents: int, payment_method_token: str) -> PaymentAuthorization:
        violations: dict[str, str] = {}
        if amount_in_cents <= 0:
            violations["amount_in_cents"] = "must be positive"
        if not payment_method_token:
            violations["payment_method_token"] = "is required"
        if violations:
            raise ValidationError(violations)

        try:
            if self.mock_mode:
                result = self._mock_authorize(amount_in_cents, payment_method_token)
            else:
                result = self._remote_authorize(amount_in_cents, payment_method_token)
        except UpstreamFailure:
            AUTHORIZATIONS.labels(outcome="error").inc()
            raise
        AUTHORIZATIONS.labels(outcome="authorized" if result.success else "declined").inc()
        return result

    def _mock_authorize(self, amount_in_cents: int, token: str) -> PaymentAuthorization:
        logger.debug("Mocking payment authorization of %s cents", amount_in_cents)
        if token.startswith(_MOCK_DECLINE_PREFIX):
            return PaymentAuthorization(success=False, reason="card_declined")
        return PaymentAuthorization(success=True, reference=f"mocked-{uuid.uuid4()}")

    def _remote_authorize(self, amount_in_cents: int, token: str) -> PaymentAuthorization:
        if not self.api_key:
            raise UpstreamFailure("payments", "PAYMENT_API_KEY is not configured")

        payload = {
            "amount": str(amount_in_cents),
            "currency": self.currency,
            "payment_method": token,
            "capture_method": "manual",
            "confirm": "true",
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(
                    f"{self.base_url}/v1/payment_intents",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    data=payload,
                )
        except httpx.HTTPError as exc:
            raise UpstreamFailure("payments", str(exc)) from exc

        if response.status_code >= 500:
            raise UpstreamFailure("payments", f"processor returned {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamFailure("payments", "processor returned a non-JSON body") from exc
        if response.status_code in (400, 402):
            error = data.get("error", {})
            reason = error.get("decline_code") or error.get("code") or error.get("message")
            return PaymentAuthorization(success=False, reason=reason or "declined")
        if response.status_code >= 400:
            raise UpstreamFailure("payments", f"processor returned {response.status_code}")

        if data.get("status") not in ("requires_capture", "succeeded"):
            return PaymentAuthorization(success=False, reason=data.get("status") or "unknown")

        reference = data.get("id")
        if not reference:
            raise UpstreamFailure("payments", "response did not include an authorization id")
        logger.debug("Payment processor authorized %s", reference)
        return PaymentAuthorization(success=True, reference=reference)


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGateway:
    """Gateway configured from application settings."""

    return PaymentGateway(
        settings.payment_api_base_url,
        settings.payment_api_key,
        mock_mode=settings.payment_mock_mode,
    )
