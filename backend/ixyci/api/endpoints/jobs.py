from fastapi import APIRouter, Depends, HTTPException
from ixyci.api.deps import get_scheduler

router = APIRouter()


@router.get("")
async def list_jobs(scheduler=Depends(get_scheduler)):
    return {"jobs": scheduler.jobs()}


@router.get("/{job_id}")
async def get_job_status(job_id: str, scheduler=Depends(get_scheduler)):
    status = scheduler.status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"job {job_id} not found")
    return status
