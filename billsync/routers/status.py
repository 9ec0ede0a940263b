"""Read-only billing record inspection."""

from fastapi import APIRouter, Depends, HTTPException, status

from billsync.dependencies import Store, require_operator
from billsync.models import StatusRequest, StatusResponse

router = APIRouter(
    prefix="/status",
    tags=["operator"],
    dependencies=[Depends(require_operator)],
)


@router.post(
    "/user",
    response_model=StatusResponse,
    response_model_by_alias=True,
    summary="Billing record status",
    description="Return the stored billing record and whether it needs a fix.",
)
async def user_status(body: StatusRequest, store: Store) -> StatusResponse:
    record = await store.get(body.user_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Billing record for user {body.user_id} not found",
        )

    return StatusResponse(record=record, needs_fix=record.needs_fix)
