"""Compare a local billing record with resolved provider state."""

from dataclasses import dataclass, field
from datetime import datetime

from billsync.models import BillingRecord, RemoteCustomer, RemoteSubscription, UpdateIntent
from billsync.services.resolver import ResolvedState


@dataclass(frozen=True)
class ProviderSnapshot:
    """Everything read from the provider for one record."""

    state: ResolvedState
    customer: RemoteCustomer | None = None
    subscriptions: tuple[RemoteSubscription, ...] = field(default_factory=tuple)


def _should_backfill_email(local: BillingRecord, customer: RemoteCustomer | None) -> bool:
    return bool(customer and customer.email and not local.email)


def needs_update(local: BillingRecord, remote: ProviderSnapshot) -> bool:
    """Whether any field the reconciler can set differs from the provider."""
    state = remote.state
    if local.plan != state.plan:
        return True
    if local.subscription_status != state.status:
        return True
    if remote.customer is not None and local.remote_customer_id != remote.customer.id:
        return True
    if state.subscription_id is not None and local.remote_subscription_id != state.subscription_id:
        return True
    return _should_backfill_email(local, remote.customer)


def is_stale(local: BillingRecord, observed_at: datetime, now: datetime) -> bool:
    """
    Whether the record was written after the provider snapshot was taken.

    Only writes inside ``(observed_at, now]`` count. A timestamp beyond
    ``now`` comes from clock skew or bad data and does not block.
    """
    updated_at = local.subscription_updated_at
    return updated_at is not None and observed_at < updated_at <= now


def reconcile(
    local: BillingRecord,
    remote: ProviderSnapshot,
    now: datetime,
    observed_at: datetime | None = None,
) -> UpdateIntent | None:
    """
    Produce the patch that removes drift, or ``None`` when already in sync.

    Fields are only ever set, never cleared. The email is backfilled when
    the local one is empty and never overwritten otherwise.

    ``observed_at`` is when the provider snapshot was read. If the record
    was written since (a webhook raced the sweep) the snapshot is stale and
    no patch is produced.
    """
    if observed_at is not None and is_stale(local, observed_at, now):
        return None

    if not needs_update(local, remote):
        return None

    intent = UpdateIntent(
        plan=remote.state.plan,
        subscription_status=remote.state.status,
        plan_updated_at=now,
        subscription_updated_at=now,
    )
    if remote.customer is not None:
        intent.remote_customer_id = remote.customer.id
    if remote.state.subscription_id is not None:
        intent.remote_subscription_id = remote.state.subscription_id
    if _should_backfill_email(local, remote.customer):
        intent.email = remote.customer.email
    return intent


def apply_intent(local: BillingRecord, intent: UpdateIntent) -> BillingRecord:
    """Return a copy of the record with the patch applied."""
    return local.model_copy(update=intent.changes())
