"""Tests for the Stripe-backed provider gateway."""

import json
import time
from types import SimpleNamespace

import pytest
import stripe

from billsync.errors import (
    CustomerDeleted,
    CustomerNotFound,
    MalformedEvent,
    ProviderUnavailable,
    SignatureInvalid,
)
from billsync.models import Plan
from billsync.services.provider import StripeGateway, as_id, subscription_from_stripe

from conftest import WEBHOOK_SECRET, make_event, sign_payload


class FakeResource:
    """Records calls and returns (or raises) a canned result."""

    def __init__(self, result=None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list = []

    def _respond(self, *args, **kwargs):
        self.calls.append((args, kwargs))
        if self.error is not None:
            raise self.error
        return self.result

    retrieve = _respond
    list = _respond
    create = _respond


def make_client(**resources) -> SimpleNamespace:
    client = SimpleNamespace(
        customers=resources.get("customers", FakeResource()),
        subscriptions=resources.get("subscriptions", FakeResource()),
        prices=resources.get("prices", FakeResource()),
        checkout=SimpleNamespace(sessions=resources.get("sessions", FakeResource())),
    )
    return client


class TestCustomers:
    """Customer lookups and error mapping."""

    @pytest.mark.asyncio
    async def test_find_customer(self) -> None:
        customers = FakeResource({"id": "cus_1", "email": "ana@example.com"})
        gateway = StripeGateway(make_client(customers=customers))

        customer = await gateway.find_customer("cus_1")

        assert customer.id == "cus_1"
        assert customer.email == "ana@example.com"
        assert customers.calls[0][0] == ("cus_1",)

    @pytest.mark.asyncio
    async def test_missing_customer(self) -> None:
        error = stripe.InvalidRequestError("No such customer", "id", code="resource_missing", http_status=404)
        gateway = StripeGateway(make_client(customers=FakeResource(error=error)))

        with pytest.raises(CustomerNotFound) as exc_info:
            await gateway.find_customer("cus_gone")
        assert exc_info.value.customer_id == "cus_gone"

    @pytest.mark.asyncio
    async def test_deleted_customer(self) -> None:
        customers = FakeResource({"id": "cus_1", "deleted": True})
        gateway = StripeGateway(make_client(customers=customers))

        with pytest.raises(CustomerDeleted):
            await gateway.find_customer("cus_1")

    @pytest.mark.asyncio
    async def test_api_error_is_unavailable(self) -> None:
        error = stripe.APIConnectionError("Network down")
        gateway = StripeGateway(make_client(customers=FakeResource(error=error)))

        with pytest.raises(ProviderUnavailable):
            await gateway.find_customer("cus_1")

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self) -> None:
        class SlowCustomers:
            def retrieve(self, customer_id):
                time.sleep(0.2)
                return {"id": customer_id}

        gateway = StripeGateway(make_client(customers=SlowCustomers()), timeout=0.01)

        with pytest.raises(ProviderUnavailable):
            await gateway.find_customer("cus_1")

    @pytest.mark.asyncio
    async def test_find_by_email_skips_deleted(self) -> None:
        page = {"data": [{"id": "cus_old", "deleted": True}, {"id": "cus_1", "email": "ana@example.com"}]}
        customers = FakeResource(page)
        gateway = StripeGateway(make_client(customers=customers))

        customer = await gateway.find_customer_by_email("ana@example.com")

        assert customer.id == "cus_1"
        assert customers.calls[0][1]["params"]["email"] == "ana@example.com"

    @pytest.mark.asyncio
    async def test_find_by_email_no_match(self) -> None:
        gateway = StripeGateway(make_client(customers=FakeResource({"data": []})))
        assert await gateway.find_customer_by_email("nobody@example.com") is None


class TestSubscriptions:
    """Subscription listing and conversion."""

    @pytest.mark.asyncio
    async def test_list_subscriptions_requests_all_statuses(self) -> None:
        page = {
            "data": [
                {
                    "id": "sub_1",
                    "customer": "cus_1",
                    "status": "active",
                    "created": 1700000000,
                    "items": {"data": [{"price": {"id": "price_1", "metadata": {"plan": "professional"}}}]},
                }
            ]
        }
        subscriptions = FakeResource(page)
        gateway = StripeGateway(make_client(subscriptions=subscriptions))

        result = await gateway.list_subscriptions("cus_1")

        params = subscriptions.calls[0][1]["params"]
        assert params["status"] == "all"
        assert params["customer"] == "cus_1"
        assert result[0].plan_tag == "professional"
        assert result[0].created == 1700000000

    def test_expanded_customer_object(self) -> None:
        subscription = subscription_from_stripe(
            {"id": "sub_1", "customer": {"id": "cus_1"}, "status": "trialing", "items": {"data": []}}
        )
        assert subscription.customer_id == "cus_1"
        assert subscription.plan_tag is None

    def test_as_id(self) -> None:
        assert as_id("cus_1") == "cus_1"
        assert as_id({"id": "cus_1"}) == "cus_1"
        assert as_id(None) is None


class TestWebhookSignature:
    """Webhook verification."""

    def test_valid_signature(self) -> None:
        payload = make_event("customer.subscription.deleted", {"id": "sub_1"})
        event = StripeGateway(None).verify_webhook_signature(payload, sign_payload(payload), WEBHOOK_SECRET)

        assert event.type == "customer.subscription.deleted"
        assert event.object["id"] == "sub_1"

    def test_wrong_secret(self) -> None:
        payload = make_event("customer.subscription.deleted", {"id": "sub_1"})
        header = sign_payload(payload, secret="whsec_other")

        with pytest.raises(SignatureInvalid):
            StripeGateway(None).verify_webhook_signature(payload, header, WEBHOOK_SECRET)

    def test_tampered_payload(self) -> None:
        payload = make_event("customer.subscription.deleted", {"id": "sub_1"})
        header = sign_payload(payload)
        tampered = payload.replace(b"sub_1", b"sub_2")

        with pytest.raises(SignatureInvalid):
            StripeGateway(None).verify_webhook_signature(tampered, header, WEBHOOK_SECRET)

    def test_expired_timestamp(self) -> None:
        payload = make_event("customer.subscription.deleted", {"id": "sub_1"})
        header = sign_payload(payload, timestamp=int(time.time()) - 3600)

        with pytest.raises(SignatureInvalid):
            StripeGateway(None, webhook_tolerance=300).verify_webhook_signature(payload, header, WEBHOOK_SECRET)

    def test_missing_header_or_secret(self) -> None:
        payload = make_event("customer.subscription.deleted", {"id": "sub_1"})
        gateway = StripeGateway(None)

        with pytest.raises(SignatureInvalid):
            gateway.verify_webhook_signature(payload, None, WEBHOOK_SECRET)
        with pytest.raises(SignatureInvalid):
            gateway.verify_webhook_signature(payload, sign_payload(payload), None)

    def test_signed_but_not_an_event(self) -> None:
        payload = json.dumps({"hello": "world"}).encode()

        with pytest.raises(MalformedEvent):
            StripeGateway(None).verify_webhook_signature(payload, sign_payload(payload), WEBHOOK_SECRET)


class TestCheckout:
    """Checkout session creation."""

    @pytest.mark.asyncio
    async def test_session_carries_metadata(self) -> None:
        sessions = FakeResource({"id": "cs_1", "url": "https://checkout.stripe.test/cs_1"})
        gateway = StripeGateway(make_client(sessions=sessions))

        session_id, url = await gateway.create_checkout_session(
            price_id="price_1",
            user_id="u1",
            plan=Plan.PROFESSIONAL,
            email="ana@example.com",
            success_url="https://app.test/ok",
            cancel_url="https://app.test/cancel",
        )

        assert (session_id, url) == ("cs_1", "https://checkout.stripe.test/cs_1")
        params = sessions.calls[0][1]["params"]
        assert params["mode"] == "subscription"
        assert params["metadata"] == {"userId": "u1", "plan": "professional"}
        assert params["customer_email"] == "ana@example.com"
        assert params["line_items"] == [{"price": "price_1", "quantity": 1}]

    @pytest.mark.asyncio
    async def test_find_price_for_plan(self) -> None:
        page = {"data": [{"id": "price_s", "metadata": {"plan": "starter"}}, {"id": "price_p", "metadata": {"plan": "professional"}}]}
        gateway = StripeGateway(make_client(prices=FakeResource(page)))

        assert await gateway.find_price_for_plan(Plan.PROFESSIONAL) == "price_p"
