"""Webhook event processing.

Events are verified before anything else and then routed by type. Every
handler sets absolute values only, so a re-delivered event leaves the record
exactly as the first delivery did.
"""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum

import structlog

from billsync.errors import MalformedEvent, RecordNotFound
from billsync.models import (
    BillingRecord,
    Plan,
    ProviderEvent,
    SubscriptionStatus,
    UpdateIntent,
)
from billsync.services.provider import BaseProviderGateway, as_id
from billsync.services.record_store import LookupStrategy, RecordStore

logger = structlog.get_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

# Fields that define the billing state; timestamps are excluded
_STATE_FIELDS = (
    "plan",
    "subscription_status",
    "remote_customer_id",
    "remote_subscription_id",
)


class WebhookOutcome(str, Enum):
    """How a verified event was handled."""

    APPLIED = "applied"
    UNCHANGED = "unchanged"
    IGNORED = "ignored"
    MALFORMED = "malformed"
    NO_RECORD = "no_record"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _already_applied(record: BillingRecord, intent: UpdateIntent) -> bool:
    changes = intent.changes()
    return all(
        getattr(record, name) == changes[name] for name in _STATE_FIELDS if name in changes
    )


class WebhookProcessor:
    """Verify and apply provider webhook events to billing records."""

    def __init__(
        self,
        store: RecordStore,
        gateway: BaseProviderGateway,
        webhook_secret: str | None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._secret = webhook_secret
        self._clock = clock
        self._handlers: dict[str, Callable[[ProviderEvent], Awaitable[WebhookOutcome]]] = {
            CHECKOUT_COMPLETED: self._on_checkout_completed,
            SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            SUBSCRIPTION_DELETED: self._on_subscription_deleted,
        }

    def verify(self, payload: bytes, signature_header: str | None) -> ProviderEvent:
        """Raises SignatureInvalid or MalformedEvent."""
        return self._gateway.verify_webhook_signature(payload, signature_header, self._secret)

    async def handle(self, payload: bytes, signature_header: str | None) -> WebhookOutcome:
        """Verify a raw delivery and process it."""
        event = self.verify(payload, signature_header)
        return await self.process(event)

    async def process(self, event: ProviderEvent) -> WebhookOutcome:
        """
        Route a verified event to its handler.

        Unknown event types are acknowledged and ignored. Events that cannot
        be acted on (missing metadata, no matching record) are logged and
        dropped. PersistenceFailure propagates to the caller.
        """
        log = logger.bind(event_id=event.id, event_type=event.type)

        handler = self._handlers.get(event.type)
        if handler is None:
            log.info("webhook_event_ignored")
            return WebhookOutcome.IGNORED

        try:
            outcome = await handler(event)
        except MalformedEvent as e:
            log.warning("webhook_event_dropped", reason="malformed", error=str(e))
            return WebhookOutcome.MALFORMED
        except RecordNotFound as e:
            log.warning("webhook_event_dropped", reason="no_record", error=str(e))
            return WebhookOutcome.NO_RECORD

        log.info("webhook_event_processed", outcome=outcome.value)
        return outcome

    async def _apply(self, record: BillingRecord, intent: UpdateIntent) -> WebhookOutcome:
        if _already_applied(record, intent):
            return WebhookOutcome.UNCHANGED
        await self._store.apply(record.user_id, intent)
        return WebhookOutcome.APPLIED

    async def _on_checkout_completed(self, event: ProviderEvent) -> WebhookOutcome:
        session = event.object
        metadata = session.get("metadata") or {}
        user_id = metadata.get("userId")
        plan_tag = metadata.get("plan")
        if not user_id or not plan_tag:
            raise MalformedEvent("Checkout session is missing userId or plan metadata")

        try:
            plan = Plan(plan_tag)
        except ValueError as e:
            raise MalformedEvent(f"Unknown plan {plan_tag!r} in checkout metadata") from e
        if not plan.is_paid:
            raise MalformedEvent("Checkout session completed for the free plan")

        record = await self._store.get(user_id)
        if record is None:
            raise RecordNotFound(f"No billing record for user {user_id}")

        now = self._clock()
        intent = UpdateIntent(
            plan=plan,
            subscription_status=SubscriptionStatus.ACTIVE,
            remote_customer_id=as_id(session.get("customer")),
            remote_subscription_id=as_id(session.get("subscription")),
            plan_updated_at=now,
            subscription_updated_at=now,
        )
        return await self._apply(record, intent)

    async def _find_subscription_owner(self, event: ProviderEvent) -> tuple[BillingRecord, dict]:
        subscription = event.object
        subscription_id = subscription.get("id")
        customer_id = as_id(subscription.get("customer"))
        if not subscription_id and not customer_id:
            raise MalformedEvent("Subscription event carries neither id nor customer")

        record = await self._store.find(
            [
                (LookupStrategy.REMOTE_CUSTOMER_ID, customer_id),
                (LookupStrategy.REMOTE_SUBSCRIPTION_ID, subscription_id),
            ]
        )
        if record is None:
            raise RecordNotFound(
                f"No billing record for customer {customer_id} / subscription {subscription_id}"
            )
        return record, subscription

    async def _on_subscription_updated(self, event: ProviderEvent) -> WebhookOutcome:
        record, subscription = await self._find_subscription_owner(event)

        try:
            status = SubscriptionStatus(subscription.get("status"))
        except ValueError as e:
            raise MalformedEvent(f"Unknown subscription status {subscription.get('status')!r}") from e

        intent = UpdateIntent(subscription_status=status, subscription_updated_at=self._clock())
        return await self._apply(record, intent)

    async def _on_subscription_deleted(self, event: ProviderEvent) -> WebhookOutcome:
        record, _ = await self._find_subscription_owner(event)

        now = self._clock()
        intent = UpdateIntent(
            plan=Plan.FREE,
            subscription_status=SubscriptionStatus.CANCELED,
            plan_updated_at=now,
            subscription_updated_at=now,
        )
        return await self._apply(record, intent)
