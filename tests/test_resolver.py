"""Tests for canonical subscription resolution."""

from billsync.models import Plan, RemoteSubscription, SubscriptionItem, SubscriptionStatus
from billsync.services.resolver import FREE_STATE, pick_canonical, plan_from_tag, resolve


def sub(sub_id: str, status: str = "active", created: int = 100, plan: str | None = "starter") -> RemoteSubscription:
    metadata = {"plan": plan} if plan else {}
    return RemoteSubscription(
        id=sub_id,
        customer_id="cus_1",
        status=status,
        created=created,
        items=[SubscriptionItem(price_id="price_1", price_metadata=metadata)],
    )


class TestResolve:
    """Tests for resolve()."""

    def test_no_subscriptions_is_free_canceled(self) -> None:
        state = resolve([])
        assert state == FREE_STATE
        assert state.plan == Plan.FREE
        assert state.status == SubscriptionStatus.CANCELED
        assert state.subscription_id is None

    def test_only_dead_subscriptions_is_free(self) -> None:
        state = resolve([sub("sub_a", "canceled"), sub("sub_b", "incomplete_expired")])
        assert state == FREE_STATE

    def test_single_live_subscription(self) -> None:
        state = resolve([sub("sub_a", "trialing", plan="professional")])
        assert state.plan == Plan.PROFESSIONAL
        assert state.status == SubscriptionStatus.TRIALING
        assert state.subscription_id == "sub_a"

    def test_past_due_counts_as_live(self) -> None:
        state = resolve([sub("sub_a", "past_due")])
        assert state.status == SubscriptionStatus.PAST_DUE
        assert state.plan == Plan.STARTER

    def test_most_recent_live_subscription_wins(self) -> None:
        subs = [
            sub("sub_old", "active", created=100, plan="starter"),
            sub("sub_new", "active", created=200, plan="professional"),
            sub("sub_dead", "canceled", created=300, plan="starter"),
        ]
        state = resolve(subs)
        assert state.subscription_id == "sub_new"
        assert state.plan == Plan.PROFESSIONAL

    def test_deterministic_regardless_of_order(self) -> None:
        subs = [sub("sub_a", created=100), sub("sub_b", created=300), sub("sub_c", created=200)]
        assert resolve(subs) == resolve(list(reversed(subs)))

    def test_tie_goes_to_first_in_input(self) -> None:
        subs = [sub("sub_first", created=100), sub("sub_second", created=100)]
        assert pick_canonical(subs).id == "sub_first"

    def test_missing_tag_defaults_to_lowest_paid_plan(self) -> None:
        state = resolve([sub("sub_a", plan=None)])
        assert state.plan == Plan.STARTER

    def test_no_items_defaults_to_lowest_paid_plan(self) -> None:
        subscription = RemoteSubscription(id="sub_a", customer_id="cus_1", status="active")
        assert resolve([subscription]).plan == Plan.STARTER


class TestPlanFromTag:
    """Tests for plan tag mapping."""

    def test_known_tags(self) -> None:
        assert plan_from_tag("starter") == Plan.STARTER
        assert plan_from_tag("professional") == Plan.PROFESSIONAL

    def test_unknown_tag(self) -> None:
        assert plan_from_tag("enterprise") == Plan.STARTER

    def test_free_tag_on_live_subscription(self) -> None:
        assert plan_from_tag("free") == Plan.STARTER
