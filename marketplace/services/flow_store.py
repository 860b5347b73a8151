"""Booking flow state persisted per session in Redis."""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Final

import redis

from marketplace.core.config import settings
from marketplace.core.errors import FlowBusyError, NotFoundError
from marketplace.services.booking_flow import BookingFlowState

_FLOW_KEY_TEMPLATE: Final[str] = "marketplace:booking_flow:{flow_id}"
_LOCK_KEY_TEMPLATE: Final[str] = "marketplace:booking_flow:{flow_id}:lock"


def _get_client() -> redis.Redis:
    """Return a Redis client configured via application settings."""

    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


class FlowStore:
    """Load and save ``BookingFlowState`` snapshots keyed by flow id."""

    def __init__(
        self,
        client: redis.Redis | None = None,
        ttl_seconds: int | None = None,
        lock_seconds: int | None = None,
    ) -> None:
        self._client = client if client is not None else _get_client()
        self._ttl = ttl_seconds or settings.booking_flow_ttl_seconds
        self._lock_ttl = lock_seconds or settings.booking_flow_lock_seconds

    @staticmethod
    def _key(flow_id: str) -> str:
        return _FLOW_KEY_TEMPLATE.format(flow_id=flow_id)

    @staticmethod
    def _lock_key(flow_id: str) -> str:
        return _LOCK_KEY_TEMPLATE.format(flow_id=flow_id)

    def create(self, state: BookingFlowState) -> str:
        flow_id = str(uuid.uuid4())
        self.save(flow_id, state)
        return flow_id

    def load(self, flow_id: str) -> BookingFlowState:
        raw_value = self._client.get(self._key(flow_id))
        if not raw_value:
            raise NotFoundError("Booking flow", flow_id)
        try:
            return BookingFlowState.from_dict(json.loads(raw_value))
        except (json.JSONDecodeError, KeyError, ValueError) as exc:
            self.discard(flow_id)
            raise NotFoundError("Booking flow", flow_id) from exc

    def save(self, flow_id: str, state: BookingFlowState) -> None:
        self._client.setex(
            self._key(flow_id),
            self._ttl,
            json.dumps(state.as_dict(), ensure_ascii=False),
        )

    def discard(self, flow_id: str) -> None:
        self._client.delete(self._key(flow_id))

    @contextmanager
    def in_flight(self, flow_id: str) -> Iterator[None]:
        """Hold the flow's lock for the block; a held lock raises ``FlowBusyError``.

        ``SET NX`` makes taking the lock a single atomic step, and the expiry
        frees it if the holder dies before releasing.
        """

        lock_key = self._lock_key(flow_id)
        if not self._client.set(lock_key, "1", nx=True, ex=self._lock_ttl):
            raise FlowBusyError("A request for this booking is still in progress")
        try:
            yield
        finally:
            self._client.delete(lock_key)
