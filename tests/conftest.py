"""Pytest configuration and fixtures."""

import hashlib
import hmac
import json
import time
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from billsync.errors import CustomerDeleted, CustomerNotFound, ProviderUnavailable
from billsync.models import (
    Plan,
    ProviderEvent,
    RemoteCustomer,
    RemoteSubscription,
    SubscriptionItem,
)
from billsync.services.provider import BaseProviderGateway, StripeGateway
from billsync.services.record_store import RecordStore

WEBHOOK_SECRET = "whsec_test_secret"


def _b(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode()


class FakePipeline:
    """Buffers commands and applies them on execute, like MULTI/EXEC."""

    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._ops: list[tuple[str, tuple, dict]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self._ops.clear()

    def hset(self, key, mapping=None):
        self._ops.append(("hset", (key,), {"mapping": mapping}))
        return self

    def sadd(self, key, *values):
        self._ops.append(("sadd", (key, *values), {}))
        return self

    def set(self, key, value):
        self._ops.append(("set", (key, value), {}))
        return self

    async def execute(self) -> list:
        if self._redis.fail_writes:
            raise RedisConnectionError("connection refused")
        results = []
        for name, args, kwargs in self._ops:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._ops.clear()
        return results


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis with bytes responses."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[bytes, bytes]] = {}
        self.sets: dict[str, set[bytes]] = {}
        self.strings: dict[str, bytes] = {}
        self.fail_writes = False
        self.fail_reads = False
        self.writes = 0

    def _check_read(self) -> None:
        if self.fail_reads:
            raise RedisConnectionError("connection refused")

    async def hgetall(self, key):
        self._check_read()
        return dict(self.hashes.get(key, {}))

    async def hset(self, key, mapping=None):
        self.writes += 1
        stored = self.hashes.setdefault(key, {})
        for k, v in (mapping or {}).items():
            stored[_b(k)] = _b(v)
        return len(mapping or {})

    async def smembers(self, key):
        self._check_read()
        return set(self.sets.get(key, set()))

    async def sadd(self, key, *values):
        members = self.sets.setdefault(key, set())
        members.update(_b(v) for v in values)
        return len(values)

    async def get(self, key):
        self._check_read()
        return self.strings.get(key)

    async def set(self, key, value):
        self.strings[key] = _b(value)
        return True

    async def ping(self):
        self._check_read()
        return True

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self):
        return


class FakeGateway(BaseProviderGateway):
    """Provider gateway over in-memory customers and subscriptions."""

    def __init__(self) -> None:
        self.customers: dict[str, RemoteCustomer] = {}
        self.subscriptions: dict[str, list[RemoteSubscription]] = {}
        self.prices: dict[Plan, str] = {}
        self.unavailable = False
        self.failing_customers: set[str] = set()
        self.checkout_calls: list[dict] = []
        self.calls: list[tuple[str, str]] = []
        # Real signature verification, no API client needed
        self._verifier = StripeGateway(client=None)

    def add_customer(self, customer_id: str, email: str | None = None, deleted: bool = False) -> None:
        self.customers[customer_id] = RemoteCustomer(id=customer_id, email=email, deleted=deleted)

    def add_subscription(
        self,
        customer_id: str,
        subscription_id: str,
        status: str = "active",
        plan: str | None = "starter",
        created: int = 1_700_000_000,
    ) -> RemoteSubscription:
        metadata = {"plan": plan} if plan else {}
        subscription = RemoteSubscription(
            id=subscription_id,
            customer_id=customer_id,
            status=status,
            created=created,
            items=[SubscriptionItem(price_id=f"price_{subscription_id}", price_metadata=metadata)],
        )
        self.subscriptions.setdefault(customer_id, []).append(subscription)
        return subscription

    def _check(self, operation: str, key: str) -> None:
        self.calls.append((operation, key))
        if self.unavailable or key in self.failing_customers:
            raise ProviderUnavailable(f"{operation} failed for {key}")

    async def find_customer(self, customer_id: str) -> RemoteCustomer:
        self._check("find_customer", customer_id)
        customer = self.customers.get(customer_id)
        if customer is None:
            raise CustomerNotFound(customer_id)
        if customer.deleted:
            raise CustomerDeleted(customer_id)
        return customer

    async def find_customer_by_email(self, email: str) -> RemoteCustomer | None:
        self._check("find_customer_by_email", email)
        for customer in self.customers.values():
            if customer.email == email and not customer.deleted:
                return customer
        return None

    async def list_subscriptions(self, customer_id: str) -> list[RemoteSubscription]:
        self._check("list_subscriptions", customer_id)
        return list(self.subscriptions.get(customer_id, []))

    def verify_webhook_signature(self, payload, signature_header, secret) -> ProviderEvent:
        return self._verifier.verify_webhook_signature(payload, signature_header, secret)

    async def find_price_for_plan(self, plan: Plan) -> str | None:
        self._check("find_price_for_plan", plan.value)
        return self.prices.get(plan)

    async def create_checkout_session(self, **kwargs) -> tuple[str, str | None]:
        self._check("create_checkout_session", kwargs["user_id"])
        self.checkout_calls.append(kwargs)
        return "cs_test_123", "https://checkout.stripe.test/cs_test_123"


class FixedClock:
    """Clock returning a settable instant."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header for a payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, obj: dict, event_id: str = "evt_1") -> bytes:
    return json.dumps(
        {"id": event_id, "type": event_type, "created": 1_700_000_000, "data": {"object": obj}}
    ).encode()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def store(fake_redis: FakeRedis) -> RecordStore:
    return RecordStore(fake_redis)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()
