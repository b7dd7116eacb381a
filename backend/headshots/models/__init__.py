from .enhancement import (
    EnhancementConfig,
    EnhancementConfigUpdate,
    Intensity,
    UpscaleFactor,
    Variant
)
from .jobs import (
    Job,
    JobStatus,
    OutputKind,
    QueueStatus,
    FailedItem,
    ClearResult,
    StopResult,
    EnqueueRequest,
    EnqueueResponse,
    EnabledUpdate,
    CredentialUpdate,
    WatchFolderUpdate
)
from .remote import RemoteResult

__all__ = [
    "EnhancementConfig",
    "EnhancementConfigUpdate",
    "Intensity",
    "UpscaleFactor",
    "Variant",
    "Job",
    "JobStatus",
    "OutputKind",
    "QueueStatus",
    "FailedItem",
    "ClearResult",
    "StopResult",
    "EnqueueRequest",
    "EnqueueResponse",
    "EnabledUpdate",
    "CredentialUpdate",
    "WatchFolderUpdate",
    "RemoteResult"
]
