"""
Processing queue API endpoints
"""
from pathlib import Path
from typing import Callable, List

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
import logging

from headshots.models.enhancement import EnhancementConfig, EnhancementConfigUpdate
from headshots.models.jobs import (
    ClearResult,
    CredentialUpdate,
    EnabledUpdate,
    EnqueueRequest,
    EnqueueResponse,
    FailedItem,
    Job,
    QueueStatus,
    StopResult,
    WatchFolderUpdate,
)
from headshots.services.remote_client import RemoteEnhancementClient
from headshots.services.scheduler import QueueScheduler

logger = logging.getLogger(__name__)

router = APIRouter()


def get_scheduler(request: Request) -> QueueScheduler:
    return request.app.state.scheduler


def get_client_factory() -> Callable[[str], RemoteEnhancementClient]:
    return RemoteEnhancementClient


def _error(status_code: int, code: str, message: str, field=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "code": code,
            "message": message,
            "field": field
        }
    )


@router.post("/queue/jobs", response_model=EnqueueResponse, status_code=status.HTTP_201_CREATED)
async def enqueue_job(body: EnqueueRequest, scheduler: QueueScheduler = Depends(get_scheduler)):
    """
    Add a source image to the processing queue
    """
    if not Path(body.source_path).exists():
        return _error(
            status.HTTP_400_BAD_REQUEST,
            "SOURCE_NOT_FOUND",
            f"Source file {body.source_path} does not exist",
            "source_path"
        )

    job_id = scheduler.enqueue(body.source_path, body.output_folder, body.group_label, body.base_name)
    return EnqueueResponse(job_id=job_id)


@router.get("/queue/jobs", response_model=List[Job])
async def list_jobs(scheduler: QueueScheduler = Depends(get_scheduler)):
    """List every job in queue order"""
    return scheduler.jobs()


@router.get("/queue/status", response_model=QueueStatus)
async def get_queue_status(scheduler: QueueScheduler = Depends(get_scheduler)):
    return scheduler.status()


@router.get("/queue/failed", response_model=List[FailedItem])
async def get_failed_items(scheduler: QueueScheduler = Depends(get_scheduler)):
    return scheduler.failed_items()


@router.post("/queue/jobs/{job_id}/retry")
async def retry_job(job_id: str, scheduler: QueueScheduler = Depends(get_scheduler)):
    """
    Move one failed job back to pending
    """
    job = scheduler.get_job(job_id)
    if job is None:
        return _error(status.HTTP_404_NOT_FOUND, "JOB_NOT_FOUND", f"Job {job_id} not found", "job_id")

    if not scheduler.retry(job_id):
        return _error(
            status.HTTP_400_BAD_REQUEST,
            "JOB_NOT_FAILED",
            f"Job {job_id} is not failed. Current status: {job.status.value}",
            "job_id"
        )

    return {"success": True, "message": f"Job {job_id} queued for retry"}


@router.post("/queue/retry")
async def retry_all_failed(scheduler: QueueScheduler = Depends(get_scheduler)):
    count = scheduler.retry_all()
    return {"success": True, "retried": count}


@router.delete("/queue/completed")
async def clear_completed(scheduler: QueueScheduler = Depends(get_scheduler)):
    count = scheduler.clear_completed()
    return {"success": True, "cleared": count}


@router.delete("/queue", response_model=ClearResult)
async def clear_queue(include_failed: bool = False, scheduler: QueueScheduler = Depends(get_scheduler)):
    """
    Halt processing and remove pending jobs (and failed ones when include_failed)
    """
    return scheduler.clear_queue(include_failed)


@router.post("/queue/stop", response_model=StopResult)
async def stop_processing(scheduler: QueueScheduler = Depends(get_scheduler)):
    return scheduler.stop()


@router.put("/queue/enabled", response_model=QueueStatus)
async def set_processing_enabled(body: EnabledUpdate, scheduler: QueueScheduler = Depends(get_scheduler)):
    scheduler.set_enabled(body.enabled)
    return scheduler.status()


@router.put("/queue/credential", response_model=QueueStatus)
async def set_credential(body: CredentialUpdate, scheduler: QueueScheduler = Depends(get_scheduler)):
    scheduler.set_credential(body.token)
    return scheduler.status()


@router.post("/queue/credential/test")
async def test_credential(
    body: CredentialUpdate,
    scheduler: QueueScheduler = Depends(get_scheduler),
    client_factory: Callable[[str], RemoteEnhancementClient] = Depends(get_client_factory),
):
    """
    Check a credential against the enhancement service.
    Without a token in the body, the configured credential is tested.
    """
    token = body.token or scheduler.api_key
    if not token:
        return _error(status.HTTP_400_BAD_REQUEST, "NO_CREDENTIAL", "No API token configured", "token")

    async with client_factory(token) as client:
        result = await client.test_connection()

    if not result.success:
        logger.warning(f"Credential test failed: {result.error}")
    return {"success": result.success, "error": result.error}


@router.get("/queue/config", response_model=EnhancementConfig)
async def get_config(scheduler: QueueScheduler = Depends(get_scheduler)):
    return scheduler.config


@router.put("/queue/config", response_model=EnhancementConfig)
async def update_config(body: EnhancementConfigUpdate, scheduler: QueueScheduler = Depends(get_scheduler)):
    """
    Merge enhancement options; the job in progress keeps its current options
    """
    try:
        return scheduler.set_config(**body.model_dump(exclude_unset=True))
    except ValidationError as e:
        error = e.errors()[0]
        field = str(error["loc"][0]) if error.get("loc") else None
        return _error(status.HTTP_400_BAD_REQUEST, "INVALID_CONFIG", error["msg"], field)


@router.put("/queue/watch-folder")
async def set_watch_folder(body: WatchFolderUpdate, scheduler: QueueScheduler = Depends(get_scheduler)):
    if body.path and not Path(body.path).is_dir():
        return _error(status.HTTP_400_BAD_REQUEST, "FOLDER_NOT_FOUND", f"{body.path} is not a directory", "path")

    scheduler.set_watch_folder(body.path)
    return {"success": True, "watch_folder": body.path}
