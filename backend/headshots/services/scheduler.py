"""
Processing queue scheduler
Durable FIFO queue driven one job at a time through the enhancement pipeline,
with retry/backoff, crash recovery and status publishing.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional, Set

from headshots.core.config import Settings, settings as default_settings
from headshots.core.exceptions import InputError
from headshots.models.enhancement import EnhancementConfig
from headshots.models.jobs import (
    ClearResult,
    CurrentItem,
    FailedItem,
    Job,
    JobStatus,
    QueueStatus,
    StopResult,
)
from headshots.services.events import EventBus
from headshots.services.pipeline import EnhancementPipeline
from headshots.services.queue_store import QueueStore

logger = logging.getLogger(__name__)


class StopToken:
    """Cooperative stop request, checked before the next job is picked"""

    def __init__(self):
        self._requested = False

    @property
    def requested(self) -> bool:
        return self._requested

    def request(self) -> None:
        self._requested = True

    def reset(self) -> None:
        self._requested = False


class QueueScheduler:
    """
    Owns the job list and drives it through the pipeline.

    All mutations happen on the event loop thread; at most one job is
    `processing` at any time.
    """

    def __init__(
        self,
        store: QueueStore,
        pipeline: EnhancementPipeline,
        config: Optional[Settings] = None,
        events: Optional[EventBus] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self._config = config or default_settings
        self._store = store
        self._pipeline = pipeline
        self.events = events or EventBus()
        self._sleep = sleep

        self._max_retries = self._config.MAX_RETRIES
        self._api_key: Optional[str] = self._config.REMOTE_API_TOKEN or None
        self._enabled = self._config.PROCESSING_ENABLED
        self._enhancement = EnhancementConfig()
        self._stop = StopToken()

        self._processing = False
        self._current: Optional[Job] = None
        self._run_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

        self._jobs: List[Job] = store.load()
        if self._config.WATCH_FOLDER:
            self.set_watch_folder(self._config.WATCH_FOLDER)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _log(self, level: str, message: str) -> None:
        getattr(logger, level)(message)
        self.events.log(level, message)

    def _persist_and_notify(self) -> None:
        self._store.save(self._jobs)
        self.events.status(self.status())

    # ------------------------------------------------------------------
    # Gating
    # ------------------------------------------------------------------

    @property
    def config(self) -> EnhancementConfig:
        return self._enhancement

    def set_config(self, **changes) -> EnhancementConfig:
        """Merge enhancement options; the job already running keeps its snapshot"""
        self._enhancement = self._enhancement.merged(**changes)
        logger.info(f"Enhancement options updated: {self._enhancement.model_dump()}")
        return self._enhancement

    def set_credential(self, token: Optional[str]) -> None:
        self._api_key = token or None
        self.events.status(self.status())
        self._kick()

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        if enabled:
            self._stop.reset()
        self.events.status(self.status())
        self._kick()

    def set_watch_folder(self, folder: Optional[str]) -> None:
        """Extra folder searched for camera JPEGs when the source is RAW"""
        self._pipeline.preview_resolver.set_watch_folder(folder or None)

    @property
    def api_key(self) -> Optional[str]:
        return self._api_key

    def _can_start(self) -> bool:
        return (
            not self._processing
            and self._api_key is not None
            and self._enabled
            and not self._stop.requested
        )

    def _kick(self) -> None:
        """Schedule a processing pass on the running loop if one could start"""
        if not self._can_start():
            return
        if not any(job.status == JobStatus.PENDING for job in self._jobs):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; processing will start on the next trigger")
            return
        task = loop.create_task(self._process_next())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def enqueue(self, source_path: str, output_folder: str, group_label: str, base_name: str) -> str:
        """Add a source image to the queue and return the job id"""
        job = Job(
            source_path=source_path,
            output_folder=output_folder,
            group_label=group_label,
            base_name=base_name,
        )
        self._jobs.append(job)
        self._persist_and_notify()
        self._log("info", f"Queued {group_label} {base_name}")
        self._kick()
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        return next((job for job in self._jobs if job.id == job_id), None)

    def jobs(self) -> List[Job]:
        return [job.model_copy(deep=True) for job in self._jobs]

    def status(self) -> QueueStatus:
        counts = {status: 0 for status in JobStatus}
        for job in self._jobs:
            counts[job.status] += 1

        current = None
        if self._current is not None:
            current = CurrentItem(group_label=self._current.group_label, base_name=self._current.base_name)

        return QueueStatus(
            queue_length=len(self._jobs),
            pending=counts[JobStatus.PENDING],
            processing=counts[JobStatus.PROCESSING],
            failed=counts[JobStatus.FAILED],
            completed=counts[JobStatus.COMPLETED],
            current_item=current,
            is_processing=self._processing,
            has_api_key=self._api_key is not None,
            processing_enabled=self._enabled,
        )

    def failed_items(self) -> List[FailedItem]:
        return [
            FailedItem(
                id=job.id,
                group_label=job.group_label,
                base_name=job.base_name,
                error=job.error,
                retries=job.retries,
            )
            for job in self._jobs
            if job.status == JobStatus.FAILED
        ]

    @staticmethod
    def _reset(job: Job) -> None:
        job.status = JobStatus.PENDING
        job.retries = 0
        job.error = None

    def retry(self, job_id: str) -> bool:
        """Move one failed job back to pending"""
        job = self.get_job(job_id)
        if job is None or job.status != JobStatus.FAILED:
            return False
        self._reset(job)
        self._persist_and_notify()
        self._log("info", f"Retrying {job.group_label} {job.base_name}")
        self._kick()
        return True

    def retry_all(self) -> int:
        """Move every failed job back to pending"""
        failed = [job for job in self._jobs if job.status == JobStatus.FAILED]
        for job in failed:
            self._reset(job)
        self._persist_and_notify()
        if failed:
            self._log("info", f"Retrying {len(failed)} failed jobs")
        self._kick()
        return len(failed)

    def clear_completed(self) -> int:
        before = len(self._jobs)
        self._jobs = [job for job in self._jobs if job.status != JobStatus.COMPLETED]
        self._persist_and_notify()
        return before - len(self._jobs)

    def _cancel_in_flight(self) -> None:
        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()

    def clear_queue(self, include_failed: bool = False) -> ClearResult:
        """
        Halt processing and drop pending/processing jobs, plus failed ones when
        asked. Completed jobs are never removed here.
        """
        self._cancel_in_flight()

        active = (JobStatus.PENDING, JobStatus.PROCESSING)
        cleared_pending = sum(1 for job in self._jobs if job.status in active)
        failed_count = sum(1 for job in self._jobs if job.status == JobStatus.FAILED)

        removed = set(active)
        if include_failed:
            removed.add(JobStatus.FAILED)
        self._jobs = [job for job in self._jobs if job.status not in removed]
        self._current = None

        self._persist_and_notify()
        cleared_failed = failed_count if include_failed else 0
        self._log("info", f"Queue cleared: {cleared_pending} pending, {cleared_failed} failed items removed")
        return ClearResult(cleared_pending=cleared_pending, cleared_failed=cleared_failed)

    def stop(self) -> StopResult:
        """
        Stop processing. The in-flight job goes back to pending so no work is
        lost; auto-start stays off until processing is re-enabled.
        """
        self._stop.request()
        self._enabled = False

        if self._current is not None and self._current.status == JobStatus.PROCESSING:
            self._current.status = JobStatus.PENDING
            self._current.retries = 0
            self._log("info", f"Stop requested - {self._current.base_name} returned to pending")
        self._cancel_in_flight()

        self._persist_and_notify()
        self._log("info", "Processing stopped")
        return StopResult(message="Processing stopped")

    def start(self) -> None:
        """Pick up jobs restored from disk; call once the event loop is running"""
        self._kick()

    async def join(self) -> None:
        """Wait until no processing pass is scheduled or running"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Interrupt the current job for process exit, keeping it pending"""
        if self._current is not None and self._current.status == JobStatus.PROCESSING:
            self._current.status = JobStatus.PENDING
        self._stop.request()
        self._cancel_in_flight()
        await self.join()
        self._store.save(self._jobs)

    # ------------------------------------------------------------------
    # Processing loop
    # ------------------------------------------------------------------

    async def _process_next(self) -> None:
        if not self._can_start():
            return
        job = next((j for j in self._jobs if j.status == JobStatus.PENDING), None)
        if job is None:
            return

        # No await between the check above and this point
        self._processing = True
        self._current = job
        self._run_task = asyncio.current_task()
        job.status = JobStatus.PROCESSING
        enhancement = self._enhancement
        api_key = self._api_key
        self._persist_and_notify()
        self._log("info", f"Processing {job.group_label} {job.base_name}")

        completed = False
        try:
            try:
                await self._pipeline.run(job, enhancement, api_key)
            except asyncio.CancelledError:
                self._log("warning", f"Processing of {job.base_name} interrupted")
                raise
            except Exception as e:
                logger.error(f"Processing error for job {job.id}: {e}", exc_info=True)
                await self._handle_failure(job, e)
            else:
                job.status = JobStatus.COMPLETED
                job.completed_at = datetime.now()
                job.error = None
                completed = True
                self._log("info", f"Completed {job.group_label} {job.base_name}")
        finally:
            self._processing = False
            self._current = None
            self._run_task = None
            self._persist_and_notify()
            if completed:
                self.events.job_completed(job)
            if self._stop.requested:
                self._log("info", "Processing stopped by user request")
            else:
                self._kick()

    async def _handle_failure(self, job: Job, error: Exception) -> None:
        job.error = str(error)
        job.retries += 1

        if isinstance(error, InputError) and self._config.FAIL_FAST_ON_INPUT_ERRORS:
            job.retries = self._max_retries

        if job.retries >= self._max_retries:
            job.status = JobStatus.FAILED
            self._log("error", f"{job.base_name} failed after {job.retries} attempts: {job.error}")
            return

        job.status = JobStatus.PENDING
        delay = (2 ** job.retries) * self._config.BACKOFF_BASE_SECONDS
        self._persist_and_notify()
        self._log("warning", f"{job.base_name} failed ({job.error}); retrying in {delay:g}s")
        await self._sleep(delay)


def create_scheduler(config: Optional[Settings] = None, events: Optional[EventBus] = None) -> QueueScheduler:
    """Wire the default store, pipeline and event bus"""
    config = config or default_settings
    events = events or EventBus()
    pipeline = EnhancementPipeline(config=config, log=events.log)
    return QueueScheduler(QueueStore(config.QUEUE_FILE), pipeline, config=config, events=events)
