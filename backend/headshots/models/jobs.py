"""
Job and queue status models
"""
import random
import string
import time
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobStatus(str, Enum):
    """Job status enumeration"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class OutputKind(str, Enum):
    """Output files a job can produce"""
    PORTRAIT_JPEG = "portrait_jpeg"
    PORTRAIT_PNG = "portrait_png"
    PORTRAIT_COLOR = "portrait_color"
    SQUARE_JPEG = "square_jpeg"
    SQUARE_PNG = "square_png"
    SQUARE_COLOR = "square_color"


def new_job_id() -> str:
    """Millisecond timestamp plus a random base-36 suffix"""
    alphabet = string.digits + string.ascii_lowercase
    suffix = "".join(random.choices(alphabet, k=9))
    return f"{int(time.time() * 1000)}-{suffix}"


class Job(BaseModel):
    """One source image's trip through the pipeline"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=new_job_id)
    source_path: str
    output_folder: str
    group_label: str
    base_name: str
    status: JobStatus = JobStatus.PENDING
    retries: int = 0
    added_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    outputs: Dict[OutputKind, str] = Field(default_factory=dict)

    def to_record(self) -> dict:
        """Serialize for the persisted queue file"""
        return self.model_dump(mode="json", by_alias=True)


class CurrentItem(BaseModel):
    """Summary of the job being processed"""
    group_label: str
    base_name: str


class QueueStatus(BaseModel):
    """Queue status summary published after every mutation"""
    queue_length: int
    pending: int
    processing: int
    failed: int
    completed: int
    current_item: Optional[CurrentItem] = None
    is_processing: bool
    has_api_key: bool
    processing_enabled: bool


class FailedItem(BaseModel):
    """Failed job as listed for operator inspection"""
    id: str
    group_label: str
    base_name: str
    error: Optional[str] = None
    retries: int


class ClearResult(BaseModel):
    success: bool = True
    cleared_pending: int
    cleared_failed: int


class StopResult(BaseModel):
    success: bool = True
    message: str


class EnqueueRequest(BaseModel):
    """Request to add a source image to the queue"""
    source_path: str = Field(..., min_length=1)
    output_folder: str = Field(..., min_length=1)
    group_label: str = Field(..., min_length=1, description="Shoot identifier, e.g. a session number")
    base_name: str = Field(..., min_length=1, description="Stem used for every output file name")


class EnqueueResponse(BaseModel):
    job_id: str
    status: JobStatus = JobStatus.PENDING


class EnabledUpdate(BaseModel):
    enabled: bool


class CredentialUpdate(BaseModel):
    token: Optional[str] = None


class WatchFolderUpdate(BaseModel):
    path: Optional[str] = None
