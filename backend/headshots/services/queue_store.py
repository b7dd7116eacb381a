"""
Queue persistence
The full job list is rewritten as a JSON array after every mutation.
"""
import json
import logging
import os
from pathlib import Path
from typing import List

from pydantic import ValidationError

from headshots.models.jobs import Job, JobStatus

logger = logging.getLogger(__name__)


class QueueStore:
    """Reads and writes the persisted job queue"""

    def __init__(self, queue_file):
        self._queue_file = Path(queue_file)

    @property
    def path(self) -> Path:
        return self._queue_file

    def save(self, jobs: List[Job]) -> None:
        """Write the queue atomically (temp file, then rename)"""
        self._queue_file.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self._queue_file.with_name(self._queue_file.name + ".tmp")
        data = [job.to_record() for job in jobs]
        try:
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(temp_file, self._queue_file)
        except OSError as e:
            logger.error(f"Error saving processing queue to {self._queue_file}: {e}", exc_info=True)

    def load(self) -> List[Job]:
        """
        Restore the queue after a restart.
        Completed jobs and jobs whose source file is gone are dropped; jobs
        interrupted mid-processing go back to pending with their retry count.
        """
        if not self._queue_file.exists():
            return []

        try:
            with open(self._queue_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Error loading processing queue from {self._queue_file}: {e}")
            return []

        if not isinstance(data, list):
            logger.error(f"Processing queue {self._queue_file} is not a list, ignoring it")
            return []

        jobs = []
        for record in data:
            try:
                job = Job.model_validate(record)
            except ValidationError as e:
                logger.warning(f"Skipping unreadable queue record: {e}")
                continue

            if job.status == JobStatus.COMPLETED:
                continue
            if not Path(job.source_path).exists():
                logger.info(f"Dropping job {job.id}: source file missing ({job.source_path})")
                continue
            if job.status == JobStatus.PROCESSING:
                logger.info(f"Job {job.id} was interrupted, returning it to pending")
                job.status = JobStatus.PENDING
            jobs.append(job)

        logger.info(f"Loaded {len(jobs)} queued jobs from {self._queue_file}")
        self.save(jobs)
        return jobs
