"""Pydantic models for billing records, provider objects and API payloads."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Plan(str, Enum):
    """Application plans. Paid tiers match the provider price metadata tag."""

    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"

    @property
    def is_paid(self) -> bool:
        return self is not Plan.FREE


# Lowest paid tier; used when a subscription carries no plan tag
DEFAULT_PAID_PLAN = Plan.STARTER


class SubscriptionStatus(str, Enum):
    """Local subscription status, a superset of the provider's values."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"
    # Legacy value written by older clients
    INACTIVE = "inactive"


LIVE_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE}
)


class CamelModel(BaseModel):
    """Base for models exchanged as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============ Billing Record ============


class BillingRecord(CamelModel):
    """Per-user billing state persisted in the record store."""

    user_id: str = Field(..., min_length=1)
    email: str = ""
    name: str | None = None
    remote_customer_id: str | None = None
    remote_subscription_id: str | None = None
    plan: Plan = Plan.FREE
    subscription_status: SubscriptionStatus | None = None
    plan_updated_at: datetime | None = None
    subscription_updated_at: datetime | None = None

    @property
    def is_drifted(self) -> bool:
        """Paid plan recorded against a canceled subscription."""
        return self.plan.is_paid and self.subscription_status == SubscriptionStatus.CANCELED

    @property
    def needs_fix(self) -> bool:
        """Paid plan with no usable status recorded."""
        return self.plan.is_paid and self.subscription_status in (
            None,
            SubscriptionStatus.INACTIVE,
        )

    def tracked_fields(self) -> dict[str, Any]:
        """Fields reported before and after reconciliation."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            include={
                "plan",
                "subscription_status",
                "remote_customer_id",
                "remote_subscription_id",
                "email",
            },
        )


class UpdateIntent(CamelModel):
    """Field-level patch for a billing record. ``None`` means untouched."""

    plan: Plan | None = None
    subscription_status: SubscriptionStatus | None = None
    remote_customer_id: str | None = None
    remote_subscription_id: str | None = None
    email: str | None = None
    plan_updated_at: datetime | None = None
    subscription_updated_at: datetime | None = None

    def changes(self) -> dict[str, Any]:
        """Only the fields this patch sets."""
        return self.model_dump(exclude_none=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ============ Provider Models ============


class RemoteCustomer(BaseModel):
    """Customer as held by the payment provider."""

    id: str
    email: str | None = None
    deleted: bool = False


class SubscriptionItem(BaseModel):
    """Subscription line item reduced to its price reference."""

    price_id: str | None = None
    price_metadata: dict[str, str] = Field(default_factory=dict)


class RemoteSubscription(BaseModel):
    """Subscription as held by the payment provider."""

    id: str
    customer_id: str
    status: str
    created: int = 0
    items: list[SubscriptionItem] = Field(default_factory=list)

    @property
    def plan_tag(self) -> str | None:
        """Plan tag from the first line item's price metadata."""
        if not self.items:
            return None
        return self.items[0].price_metadata.get("plan") or None


class EventData(BaseModel):
    """Envelope around the object an event refers to."""

    object: dict[str, Any] = Field(default_factory=dict)


class ProviderEvent(BaseModel):
    """Verified webhook event."""

    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    created: int | None = None
    data: EventData = Field(default_factory=EventData)

    @property
    def object(self) -> dict[str, Any]:
        return self.data.object


# ============ Reconcile API Models ============


class ProviderCustomerView(CamelModel):
    id: str
    email: str | None = None


class ProviderSubscriptionView(CamelModel):
    id: str
    status: str
    plan: str


class ProviderData(CamelModel):
    """Provider-side view returned alongside a single-user reconcile."""

    customer: ProviderCustomerView | None = None
    subscriptions: list[ProviderSubscriptionView] = Field(default_factory=list)


class ReconcileUserRequest(CamelModel):
    email: str | None = Field(default=None, max_length=320)
    user_id: str | None = Field(default=None, max_length=128)


class ReconcileUserResponse(CamelModel):
    success: bool = True
    message: str
    previous_data: dict[str, Any]
    new_data: dict[str, Any] | None = None
    provider_data: ProviderData


class RecordOutcome(str, Enum):
    """Result of reconciling one record during a sweep."""

    UPDATED = "updated"
    ALREADY_SYNCED = "already_synced"
    ERROR = "error"


class RecordResult(CamelModel):
    """Per-record entry of a sweep report."""

    user_id: str
    name: str | None = None
    email: str = ""
    status: RecordOutcome
    previous_data: dict[str, Any] | None = None
    new_data: dict[str, Any] | None = None
    error: str | None = None


class SweepSummaryCounts(CamelModel):
    total_users: int
    success_count: int
    error_count: int
    updated_count: int
    already_synced_count: int
    skipped_count: int = 0
    partial: bool = False


class ReconcileAllResponse(CamelModel):
    success: bool = True
    message: str
    summary: SweepSummaryCounts
    results: list[RecordResult]


class StatusRequest(CamelModel):
    user_id: str = Field(..., min_length=1, max_length=128)


class StatusResponse(CamelModel):
    success: bool = True
    record: BillingRecord
    needs_fix: bool


# ============ Checkout Models ============


class CheckoutRequest(CamelModel):
    plan: Plan
    user_id: str = Field(..., min_length=1, max_length=128)
    email: str | None = Field(default=None, max_length=320)


class CheckoutResponse(CamelModel):
    session_id: str
    url: str | None = None


# ============ Webhook Models ============


class WebhookAck(BaseModel):
    """Acknowledgement returned for every accepted delivery."""

    received: bool = True


# ============ Error Models ============


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    message: str
    details: dict | None = None


# ============ Health Models ============


class HealthCheck(BaseModel):
    """Health check response."""

    status: str
    version: str
    environment: str
    redis: str
    provider: str
