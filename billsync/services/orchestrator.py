"""Reconciliation of local billing records against the provider.

Used for single-user reconciliation and for full sweeps. In a sweep each
record is handled in isolation: a failing record is reported and the
remaining records are still reconciled.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from billsync.errors import CustomerDeleted, CustomerNotFound, RecordNotFound, StaleSnapshot
from billsync.models import BillingRecord, RecordOutcome, RecordResult, UpdateIntent
from billsync.services.provider import BaseProviderGateway
from billsync.services.reconciler import ProviderSnapshot, is_stale, reconcile
from billsync.services.record_store import LookupStrategy, RecordStore
from billsync.services.resolver import resolve

logger = structlog.get_logger(__name__)

# Provider reads per record before giving up on a record that keeps changing
SNAPSHOT_ATTEMPTS = 2


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class RecordReconciliation:
    """Outcome of reconciling a single record."""

    before: BillingRecord
    after: BillingRecord
    intent: UpdateIntent | None
    snapshot: ProviderSnapshot

    @property
    def updated(self) -> bool:
        return self.intent is not None


@dataclass
class SweepReport:
    """Aggregated result of one sweep."""

    results: list[RecordResult] = field(default_factory=list)
    skipped: int = 0

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == RecordOutcome.ERROR)

    @property
    def succeeded(self) -> int:
        return self.total - self.failed

    @property
    def updated(self) -> int:
        return sum(1 for r in self.results if r.status == RecordOutcome.UPDATED)

    @property
    def already_synced(self) -> int:
        return sum(1 for r in self.results if r.status == RecordOutcome.ALREADY_SYNCED)

    @property
    def partial(self) -> bool:
        return self.skipped > 0


class ReconciliationOrchestrator:
    """Fetch provider state, resolve, reconcile and persist."""

    def __init__(
        self,
        store: RecordStore,
        gateway: BaseProviderGateway,
        concurrency: int = 1,
        deadline_seconds: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._concurrency = max(1, concurrency)
        self._deadline_seconds = deadline_seconds
        self._clock = clock
        self._monotonic = monotonic

    async def fetch_snapshot(
        self, record: BillingRecord, fallback_email: str | None = None
    ) -> ProviderSnapshot:
        """
        Read the provider state for a record.

        The stored customer id is tried first; when it is absent, unknown or
        deleted the customer is looked up by email. ProviderUnavailable
        propagates.
        """
        customer = None
        if record.remote_customer_id:
            try:
                customer = await self._gateway.find_customer(record.remote_customer_id)
            except (CustomerNotFound, CustomerDeleted) as e:
                logger.info(
                    "stored_customer_unusable",
                    user_id=record.user_id,
                    customer_id=record.remote_customer_id,
                    reason=str(e),
                )

        email = record.email or fallback_email
        if customer is None and email:
            customer = await self._gateway.find_customer_by_email(email)

        subscriptions = []
        if customer is not None:
            subscriptions = await self._gateway.list_subscriptions(customer.id)

        return ProviderSnapshot(
            state=resolve(subscriptions),
            customer=customer,
            subscriptions=tuple(subscriptions),
        )

    async def locate(self, user_id: str | None, email: str | None) -> BillingRecord | None:
        """
        Find the local record for an operator request.

        Tries the user id, then the local email. When the local record has
        no email yet, the provider customer with that email is looked up and
        the record is matched by its stored customer id. ProviderUnavailable
        propagates.
        """
        record = await self._store.find(
            [
                (LookupStrategy.USER_ID, user_id),
                (LookupStrategy.EMAIL, email),
            ]
        )
        if record is not None or not email:
            return record

        customer = await self._gateway.find_customer_by_email(email)
        if customer is None:
            return None

        record = await self._store.find([(LookupStrategy.REMOTE_CUSTOMER_ID, customer.id)])
        if record is not None:
            logger.info(
                "record_located_by_provider_email",
                user_id=record.user_id,
                customer_id=customer.id,
            )
        return record

    async def reconcile_user(
        self, record: BillingRecord, fallback_email: str | None = None
    ) -> RecordReconciliation:
        """
        Reconcile one record and persist the patch, if any.

        The record is re-read after the provider calls. If a webhook wrote it
        in the meantime the snapshot is stale, so the provider is read again.
        A record that is still changing after ``SNAPSHOT_ATTEMPTS`` reads
        raises StaleSnapshot.
        """
        for attempt in range(1, SNAPSHOT_ATTEMPTS + 1):
            observed_at = self._clock()
            snapshot = await self.fetch_snapshot(record, fallback_email)

            current = await self._store.get(record.user_id)
            if current is None:
                raise RecordNotFound(f"Record {record.user_id} disappeared during reconciliation")

            now = self._clock()
            if not is_stale(current, observed_at, now):
                break

            logger.info("stale_snapshot_discarded", user_id=record.user_id, attempt=attempt)
            record = current
        else:
            raise StaleSnapshot(f"Record {record.user_id} changed during reconciliation")

        intent = reconcile(current, snapshot, now=now, observed_at=observed_at)
        if intent is None:
            return RecordReconciliation(
                before=current, after=current, intent=None, snapshot=snapshot
            )

        updated = await self._store.apply(current.user_id, intent)
        logger.info(
            "billing_record_reconciled",
            user_id=current.user_id,
            plan=updated.plan.value,
            subscription_status=updated.subscription_status,
            drifted=current.is_drifted,
        )
        return RecordReconciliation(
            before=current, after=updated, intent=intent, snapshot=snapshot
        )

    async def _reconcile_user_id(self, user_id: str) -> RecordResult:
        record = None
        try:
            record = await self._store.get(user_id)
            if record is None:
                raise RecordNotFound(f"Record {user_id} not found")

            outcome = await self.reconcile_user(record)
        except Exception as e:
            logger.error("sweep_record_failed", user_id=user_id, error=str(e))
            return RecordResult(
                user_id=user_id,
                name=record.name if record else None,
                email=record.email if record else "",
                status=RecordOutcome.ERROR,
                error=str(e) or type(e).__name__,
            )

        if outcome.updated:
            return RecordResult(
                user_id=user_id,
                name=record.name,
                email=record.email,
                status=RecordOutcome.UPDATED,
                previous_data=outcome.before.tracked_fields(),
                new_data=outcome.intent.to_wire(),
            )
        return RecordResult(
            user_id=user_id,
            name=record.name,
            email=record.email,
            status=RecordOutcome.ALREADY_SYNCED,
            previous_data=outcome.before.tracked_fields(),
        )

    async def reconcile_all(self) -> SweepReport:
        """
        Sweep every local record.

        Records run through a bounded pool of ``concurrency`` workers. Once
        the deadline has passed no new record is started; those left out are
        counted as skipped and the report is marked partial.
        """
        started = self._monotonic()
        user_ids = await self._store.list_user_ids()
        semaphore = asyncio.Semaphore(self._concurrency)

        logger.info("sweep_started", records=len(user_ids), concurrency=self._concurrency)

        async def run(user_id: str) -> RecordResult | None:
            async with semaphore:
                if (
                    self._deadline_seconds is not None
                    and self._monotonic() - started >= self._deadline_seconds
                ):
                    return None
                return await self._reconcile_user_id(user_id)

        outcomes = await asyncio.gather(*(run(user_id) for user_id in user_ids))

        report = SweepReport(
            results=[o for o in outcomes if o is not None],
            skipped=sum(1 for o in outcomes if o is None),
        )
        logger.info(
            "sweep_completed",
            total=report.total,
            succeeded=report.succeeded,
            failed=report.failed,
            updated=report.updated,
            already_synced=report.already_synced,
            skipped=report.skipped,
            duration=round(self._monotonic() - started, 3),
        )
        return report
