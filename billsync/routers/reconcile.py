"""Operator reconciliation endpoints.

Endpoints:
- POST /reconcile/user : reconcile one record found by user id or email
- POST /reconcile/all  : sweep every record
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from billsync.dependencies import Orchestrator, require_operator
from billsync.errors import (
    PersistenceFailure,
    ProviderUnavailable,
    RecordNotFound,
    StaleSnapshot,
)
from billsync.models import (
    ProviderCustomerView,
    ProviderData,
    ProviderSubscriptionView,
    ReconcileAllResponse,
    ReconcileUserRequest,
    ReconcileUserResponse,
    SweepSummaryCounts,
)
from billsync.services.reconciler import ProviderSnapshot
from billsync.services.resolver import plan_from_tag

router = APIRouter(
    prefix="/reconcile",
    tags=["operator"],
    dependencies=[Depends(require_operator)],
)
logger = structlog.get_logger(__name__)


def _provider_data(snapshot: ProviderSnapshot) -> ProviderData:
    customer = None
    if snapshot.customer is not None:
        customer = ProviderCustomerView(
            id=snapshot.customer.id,
            email=snapshot.customer.email,
        )

    return ProviderData(
        customer=customer,
        subscriptions=[
            ProviderSubscriptionView(
                id=s.id,
                status=s.status,
                plan=plan_from_tag(s.plan_tag).value,
            )
            for s in snapshot.subscriptions
        ],
    )


@router.post(
    "/user",
    response_model=ReconcileUserResponse,
    response_model_by_alias=True,
    summary="Reconcile one user",
    description="Bring one billing record in line with the payment provider.",
)
async def reconcile_user(
    body: ReconcileUserRequest,
    orchestrator: Orchestrator,
) -> ReconcileUserResponse:
    if not body.user_id and not body.email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Either userId or email is required",
        )

    try:
        record = await orchestrator.locate(body.user_id, body.email)
        if record is None:
            raise RecordNotFound("No billing record matches the given userId or email")
        outcome = await orchestrator.reconcile_user(record, fallback_email=body.email)
    except RecordNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except StaleSnapshot as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except ProviderUnavailable as e:
        logger.warning("reconcile_provider_unavailable", user_id=body.user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable",
        ) from e
    except PersistenceFailure as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to persist billing update",
        ) from e

    return ReconcileUserResponse(
        message="Billing record updated" if outcome.updated else "Billing record already in sync",
        previous_data=outcome.before.tracked_fields(),
        new_data=outcome.intent.to_wire() if outcome.intent else None,
        provider_data=_provider_data(outcome.snapshot),
    )


@router.post(
    "/all",
    response_model=ReconcileAllResponse,
    response_model_by_alias=True,
    summary="Reconcile every user",
    description="Sweep all billing records. Failures are reported per record.",
)
async def reconcile_all(orchestrator: Orchestrator) -> ReconcileAllResponse:
    report = await orchestrator.reconcile_all()

    message = f"Reconciled {report.total} records: {report.updated} updated, {report.failed} failed"
    if report.partial:
        message = f"{message}, {report.skipped} skipped at deadline"

    return ReconcileAllResponse(
        message=message,
        summary=SweepSummaryCounts(
            total_users=report.total,
            success_count=report.succeeded,
            error_count=report.failed,
            updated_count=report.updated,
            already_synced_count=report.already_synced,
            skipped_count=report.skipped,
            partial=report.partial,
        ),
        results=report.results,
    )
