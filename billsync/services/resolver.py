"""Derive canonical (plan, status) from a customer's provider subscriptions."""

from collections.abc import Sequence
from dataclasses import dataclass

from billsync.models import (
    DEFAULT_PAID_PLAN,
    LIVE_STATUSES,
    Plan,
    RemoteSubscription,
    SubscriptionStatus,
)


@dataclass(frozen=True)
class ResolvedState:
    """Canonical billing state for one customer."""

    plan: Plan
    status: SubscriptionStatus
    subscription_id: str | None = None


FREE_STATE = ResolvedState(plan=Plan.FREE, status=SubscriptionStatus.CANCELED)


def is_live(subscription: RemoteSubscription) -> bool:
    """Whether the subscription currently grants access."""
    return subscription.status in {s.value for s in LIVE_STATUSES}


def plan_from_tag(tag: str | None) -> Plan:
    """Map a price metadata tag to a paid plan, defaulting to the lowest tier."""
    if tag:
        try:
            plan = Plan(tag)
        except ValueError:
            return DEFAULT_PAID_PLAN
        if plan.is_paid:
            return plan
    return DEFAULT_PAID_PLAN


def pick_canonical(
    subscriptions: Sequence[RemoteSubscription],
) -> RemoteSubscription | None:
    """Most recently created live subscription; first in input order on ties."""
    canonical: RemoteSubscription | None = None
    for subscription in subscriptions:
        if not is_live(subscription):
            continue
        if canonical is None or subscription.created > canonical.created:
            canonical = subscription
    return canonical


def resolve(subscriptions: Sequence[RemoteSubscription]) -> ResolvedState:
    """
    Resolve canonical billing state.

    Only live subscriptions (active, trialing, past_due) are candidates.
    Without one the customer is on the free plan with a canceled status.
    The plan comes from the first line item's price metadata and the
    status is passed through unchanged.
    """
    canonical = pick_canonical(subscriptions)
    if canonical is None:
        return FREE_STATE

    return ResolvedState(
        plan=plan_from_tag(canonical.plan_tag),
        status=SubscriptionStatus(canonical.status),
        subscription_id=canonical.id,
    )
