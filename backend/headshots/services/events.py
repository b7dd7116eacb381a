"""
Scheduler event publishing
Observers receive status changes, progress log lines and job completions.
"""
import logging
from typing import Callable, List, Optional

from headshots.models.jobs import Job, QueueStatus

logger = logging.getLogger(__name__)


class QueueObserver:
    """Base observer; override the events you care about"""

    def on_status(self, status: QueueStatus) -> None:
        pass

    def on_log(self, level: str, message: str) -> None:
        pass

    def on_job_completed(self, job: Job) -> None:
        pass


class CallbackObserver(QueueObserver):
    """Adapts plain callables to the observer interface"""

    def __init__(
        self,
        on_status: Optional[Callable[[QueueStatus], None]] = None,
        on_log: Optional[Callable[[str, str], None]] = None,
        on_job_completed: Optional[Callable[[Job], None]] = None,
    ):
        self._on_status = on_status
        self._on_log = on_log
        self._on_job_completed = on_job_completed

    def on_status(self, status: QueueStatus) -> None:
        if self._on_status:
            self._on_status(status)

    def on_log(self, level: str, message: str) -> None:
        if self._on_log:
            self._on_log(level, message)

    def on_job_completed(self, job: Job) -> None:
        if self._on_job_completed:
            self._on_job_completed(job)


class EventBus:
    """Fans events out to observers; an observer error never reaches the scheduler"""

    def __init__(self):
        self._observers: List[QueueObserver] = []

    def subscribe(self, observer: QueueObserver) -> QueueObserver:
        self._observers.append(observer)
        return observer

    def unsubscribe(self, observer: QueueObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _dispatch(self, event: str, *args) -> None:
        for observer in list(self._observers):
            try:
                getattr(observer, event)(*args)
            except Exception as e:
                logger.error(f"Observer {observer!r} failed on {event}: {e}", exc_info=True)

    def status(self, status: QueueStatus) -> None:
        self._dispatch("on_status", status)

    def log(self, level: str, message: str) -> None:
        self._dispatch("on_log", level, message)

    def job_completed(self, job: Job) -> None:
        self._dispatch("on_job_completed", job)
