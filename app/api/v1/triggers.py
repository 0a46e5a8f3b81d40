from fastapi import APIRouter, Depends, status

from app.core.dependencies import require_internal_token

router = APIRouter(
    prefix="/triggers",
    tags=["triggers"],
    dependencies=[Depends(require_internal_token)],
)


@router.post("/scheduled-calls", status_code=status.HTTP_202_ACCEPTED)
async def trigger_scheduled_calls():
    from app.workers.scheduled_calls import process_scheduled_calls

    task = process_scheduled_calls.delay()
    return {"status": "queued", "task_id": task.id}


@router.post("/stuck-screenings", status_code=status.HTTP_202_ACCEPTED)
async def trigger_stuck_screenings():
    from app.workers.reconciliation import reconcile_stuck_screenings

    task = reconcile_stuck_screenings.delay()
    return {"status": "queued", "task_id": task.id}


@router.post("/bulk-supervisor", status_code=status.HTTP_202_ACCEPTED)
async def trigger_bulk_supervisor():
    from app.workers.bulk_dispatch import supervise_bulk_operations

    task = supervise_bulk_operations.delay()
    return {"status": "queued", "task_id": task.id}
