"""Payment provider gateway.

The gateway is constructed explicitly and injected wherever it is needed,
so tests can substitute a fake implementation of ``BaseProviderGateway``.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, TypeVar

import stripe
import structlog

from billsync.config import Settings
from billsync.errors import (
    CustomerDeleted,
    CustomerNotFound,
    MalformedEvent,
    ProviderUnavailable,
    SignatureInvalid,
)
from billsync.models import Plan, ProviderEvent, RemoteCustomer, RemoteSubscription, SubscriptionItem

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SUBSCRIPTION_PAGE_LIMIT = 100


def _field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a Stripe object or plain dict."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def as_id(value: Any) -> str | None:
    """Stripe fields may hold either an id or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return _field(value, "id")


def customer_from_stripe(obj: Any) -> RemoteCustomer:
    return RemoteCustomer(
        id=_field(obj, "id"),
        email=_field(obj, "email"),
        deleted=bool(_field(obj, "deleted", False)),
    )


def subscription_from_stripe(obj: Any) -> RemoteSubscription:
    items = []
    for item in _field(_field(obj, "items"), "data", []):
        price = _field(item, "price")
        metadata = _field(price, "metadata", {})
        items.append(
            SubscriptionItem(
                price_id=_field(price, "id"),
                price_metadata={k: str(v) for k, v in dict(metadata).items()},
            )
        )

    return RemoteSubscription(
        id=_field(obj, "id"),
        customer_id=as_id(_field(obj, "customer")) or "",
        status=_field(obj, "status", ""),
        created=int(_field(obj, "created", 0)),
        items=items,
    )


class BaseProviderGateway(ABC):
    """Read access to the provider's customer and subscription ledger."""

    @abstractmethod
    async def find_customer(self, customer_id: str) -> RemoteCustomer:
        """
        Fetch a customer by id.

        Raises:
            CustomerNotFound: no such customer
            CustomerDeleted: the customer was deleted on the provider
            ProviderUnavailable: network or API failure
        """

    @abstractmethod
    async def find_customer_by_email(self, email: str) -> RemoteCustomer | None:
        """First live customer registered with the email, if any."""

    @abstractmethod
    async def list_subscriptions(self, customer_id: str) -> list[RemoteSubscription]:
        """All subscriptions of a customer, in any status."""

    @abstractmethod
    def verify_webhook_signature(
        self, payload: bytes, signature_header: str | None, secret: str | None
    ) -> ProviderEvent:
        """
        Verify a signed webhook payload and decode the event.

        Raises:
            SignatureInvalid: missing secret, missing header or bad signature
            MalformedEvent: signature is valid but the body is not an event
        """

    @abstractmethod
    async def find_price_for_plan(self, plan: Plan) -> str | None:
        """Active price whose metadata tags it with the plan."""

    @abstractmethod
    async def create_checkout_session(
        self,
        *,
        price_id: str,
        user_id: str,
        plan: Plan,
        email: str | None,
        success_url: str,
        cancel_url: str,
    ) -> tuple[str, str | None]:
        """Create a subscription checkout; returns (session id, url)."""


class StripeGateway(BaseProviderGateway):
    """Provider gateway backed by ``stripe.StripeClient``."""

    def __init__(
        self,
        client: Any,
        timeout: float = 20.0,
        webhook_tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._webhook_tolerance = webhook_tolerance

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        """Build a gateway from settings. Network retries are left to the sync client."""
        if settings.stripe_secret_key is None:
            raise RuntimeError("STRIPE_SECRET_KEY is not configured")

        client = stripe.StripeClient(
            settings.stripe_secret_key.get_secret_value(),
            max_network_retries=0,
        )
        return cls(
            client,
            timeout=settings.provider_timeout_seconds,
            webhook_tolerance=settings.webhook_tolerance_seconds,
        )

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """Run a blocking SDK call off the event loop with a timeout."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(func), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.warning("provider_call_timeout", operation=operation, timeout=self._timeout)
            raise ProviderUnavailable(f"{operation} timed out after {self._timeout}s") from e

    async def find_customer(self, customer_id: str) -> RemoteCustomer:
        try:
            obj = await self._call(
                "customers.retrieve",
                lambda: self._client.customers.retrieve(customer_id),
            )
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing" or e.http_status == 404:
                raise CustomerNotFound(customer_id) from e
            raise ProviderUnavailable(str(e)) from e
        except stripe.StripeError as e:
            logger.warning("provider_call_failed", operation="customers.retrieve", error=str(e))
            raise ProviderUnavailable(str(e)) from e

        customer = customer_from_stripe(obj)
        if customer.deleted:
            raise CustomerDeleted(customer_id)
        return customer

    async def find_customer_by_email(self, email: str) -> RemoteCustomer | None:
        if not email:
            return None

        try:
            page = await self._call(
                "customers.list",
                lambda: self._client.customers.list(params={"email": email, "limit": 1}),
            )
        except stripe.StripeError as e:
            logger.warning("provider_call_failed", operation="customers.list", error=str(e))
            raise ProviderUnavailable(str(e)) from e

        for obj in _field(page, "data", []):
            customer = customer_from_stripe(obj)
            if not customer.deleted:
                return customer
        return None

    async def list_subscriptions(self, customer_id: str) -> list[RemoteSubscription]:
        params = {"customer": customer_id, "status": "all", "limit": SUBSCRIPTION_PAGE_LIMIT}
        try:
            page = await self._call(
                "subscriptions.list",
                lambda: self._client.subscriptions.list(params=params),
            )
        except stripe.StripeError as e:
            logger.warning("provider_call_failed", operation="subscriptions.list", error=str(e))
            raise ProviderUnavailable(str(e)) from e

        return [subscription_from_stripe(obj) for obj in _field(page, "data", [])]

    def verify_webhook_signature(
        self, payload: bytes, signature_header: str | None, secret: str | None
    ) -> ProviderEvent:
        if not secret:
            raise SignatureInvalid("Webhook signing secret is not configured")
        if not signature_header:
            raise SignatureInvalid("Missing signature header")

        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SignatureInvalid("Payload is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(
                text, signature_header, secret, self._webhook_tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalid(str(e)) from e

        try:
            return ProviderEvent.model_validate(json.loads(text))
        except ValueError as e:
            raise MalformedEvent(f"Undecodable event payload: {e}") from e

    async def find_price_for_plan(self, plan: Plan) -> str | None:
        try:
            page = await self._call(
                "prices.list",
                lambda: self._client.prices.list(params={"active": True, "limit": 100}),
            )
        except stripe.StripeError as e:
            raise ProviderUnavailable(str(e)) from e

        for price in _field(page, "data", []):
            if _field(_field(price, "metadata", {}), "plan") == plan.value:
                return _field(price, "id")
        return None

    async def create_checkout_session(
        self,
        *,
        price_id: str,
        user_id: str,
        plan: Plan,
        email: str | None,
        success_url: str,
        cancel_url: str,
    ) -> tuple[str, str | None]:
        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user_id,
            "metadata": {"userId": user_id, "plan": plan.value},
        }
        if email:
            params["customer_email"] = email

        try:
            session = await self._call(
                "checkout.sessions.create",
                lambda: self._client.checkout.sessions.create(params=params),
            )
        except stripe.StripeError as e:
            logger.warning("provider_call_failed", operation="checkout.sessions.create", error=str(e))
            raise ProviderUnavailable(str(e)) from e

        return _field(session, "id"), _field(session, "url")
