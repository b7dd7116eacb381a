"""
Tests for the processing queue scheduler
Covers gating, FIFO single-job execution, retry/backoff, stop and clear semantics
"""
import asyncio
import shutil
import tempfile
import threading
import time
from pathlib import Path

import pytest
from PIL import Image

from headshots.core.config import Settings
from headshots.core.exceptions import InputError
from headshots.models.jobs import JobStatus, OutputKind
from headshots.services.crop_engine import CropEngine
from headshots.services.events import CallbackObserver, EventBus
from headshots.services.pipeline import EnhancementPipeline
from headshots.services.preview_resolver import PreviewResolver
from headshots.services.queue_store import QueueStore
from headshots.services.scheduler import QueueScheduler

from fakes import FakeClientFactory, FakeDetector, RecordingSleep, make_image


class StubPipeline:
    """Pipeline double that records concurrency and the options it was given"""

    def __init__(self, gate: asyncio.Event = None, fail_with: Exception = None):
        self.preview_resolver = PreviewResolver()
        self.gate = gate
        self.fail_with = fail_with
        self.active = 0
        self.max_active = 0
        self.processed = []
        self.options = []
        self.on_start = None

    async def run(self, job, enhancement, api_key):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.options.append(enhancement)
        try:
            if self.on_start:
                self.on_start(job)
            if self.gate is not None:
                await self.gate.wait()
            for _ in range(3):
                await asyncio.sleep(0)
            if self.fail_with is not None:
                raise self.fail_with
            self.processed.append(job.base_name)
            return {}
        finally:
            self.active -= 1


class BlockingPipeline(EnhancementPipeline):
    """Pipeline whose whole run is one blocking executor step"""

    def __init__(self, config, seconds=0.2):
        super().__init__(config=config)
        self.seconds = seconds
        self.started = threading.Event()
        self.lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.runs = 0

    def _work(self):
        with self.lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.runs += 1
        self.started.set()
        time.sleep(self.seconds)
        with self.lock:
            self.active -= 1

    async def run(self, job, enhancement, api_key):
        await self._in_executor(self._work)
        return {}


class SchedulerTestBase:
    """Temporary workspace plus helpers to build schedulers"""

    def setup_method(self):
        self.test_dir = Path(tempfile.mkdtemp())
        self.output_dir = self.test_dir / "output"
        self.sleep = RecordingSleep()

    def teardown_method(self):
        if self.test_dir.exists():
            shutil.rmtree(self.test_dir)

    def settings(self, token="r8_test_token", **overrides) -> Settings:
        return Settings(QUEUE_FILE=self.test_dir / "queue.json", REMOTE_API_TOKEN=token, **overrides)

    def source(self, name="IMG_0001.jpg", size=(800, 1000)) -> str:
        return make_image(self.test_dir / name, size=size)

    def scheduler(self, pipeline=None, factory=None, config=None, events=None) -> QueueScheduler:
        config = config or self.settings()
        if pipeline is None:
            pipeline = EnhancementPipeline(
                client_factory=factory or FakeClientFactory(),
                crop_engine=CropEngine(config, FakeDetector()),
                config=config,
            )
        return QueueScheduler(QueueStore(config.QUEUE_FILE), pipeline, config=config, events=events, sleep=self.sleep)

    def enqueue(self, scheduler, name="IMG_0001", source=None) -> str:
        source = source or self.source(f"{name}.jpg")
        return scheduler.enqueue(source, str(self.output_dir), "Session 12", name)


class TestSchedulerGating(SchedulerTestBase):
    """Jobs only run when credentialed and enabled"""

    def test_job_without_credential_stays_pending(self):
        """Test that no processing happens without an API token"""
        factory = FakeClientFactory()

        async def scenario():
            scheduler = self.scheduler(factory=factory, config=self.settings(token=""))
            job_id = self.enqueue(scheduler)
            await scheduler.join()
            return scheduler, job_id

        scheduler, job_id = asyncio.run(scenario())

        assert scheduler.get_job(job_id).status == JobStatus.PENDING
        assert factory.calls == []
        status = scheduler.status()
        assert status.pending == 1
        assert status.has_api_key is False
        assert status.is_processing is False

    def test_disabled_queue_does_not_start(self):
        pipeline = StubPipeline()

        async def scenario():
            scheduler = self.scheduler(pipeline=pipeline, config=self.settings(PROCESSING_ENABLED=False))
            self.enqueue(scheduler)
            await scheduler.join()
            return scheduler

        scheduler = asyncio.run(scenario())
        assert pipeline.processed == []
        assert scheduler.status().processing_enabled is False

    def test_setting_credential_starts_pending_work(self):
        """Test that providing a token kicks the loop for queued jobs"""
        pipeline = StubPipeline()

        async def scenario():
            scheduler = self.scheduler(pipeline=pipeline, config=self.settings(token=""))
            job_id = self.enqueue(scheduler)
            await scheduler.join()
            assert pipeline.processed == []

            scheduler.set_credential("r8_new_token")
            await scheduler.join()
            return scheduler, job_id

        scheduler, job_id = asyncio.run(scenario())
        assert pipeline.processed == ["IMG_0001"]
        assert scheduler.get_job(job_id).status == JobStatus.COMPLETED
        assert scheduler.status().has_api_key is True

    def test_enqueue_without_running_loop_defers_processing(self):
        """Test that enqueue outside an event loop only queues the job"""
        pipeline = StubPipeline()
        scheduler = self.scheduler(pipeline=pipeline)
        job_id = self.enqueue(scheduler)

        assert scheduler.get_job(job_id).status == JobStatus.PENDING

        async def scenario():
            scheduler.start()
            await scheduler.join()

        asyncio.run(scenario())
        assert scheduler.get_job(job_id).status == JobStatus.COMPLETED


class TestSchedulerProcessing(SchedulerTestBase):
    """End-to-end processing through the real pipeline with a fake remote service"""

    def test_credentialed_job_completes_with_four_outputs(self):
        """Test default options produce JPEG and transparent PNG for both variants"""
        factory = FakeClientFactory()
        completed = []

        async def scenario():
            events = EventBus()
            events.subscribe(CallbackObserver(on_job_completed=completed.append))
            scheduler = self.scheduler(factory=factory, events=events)
            job_id = self.enqueue(scheduler)
            await scheduler.join()
            return scheduler, job_id

        scheduler, job_id = asyncio.run(scenario())
        job = scheduler.get_job(job_id)

        assert job.status == JobStatus.COMPLETED
        assert job.completed_at is not None
        assert job.error is None
        assert set(job.outputs) == {
            OutputKind.PORTRAIT_JPEG,
            OutputKind.PORTRAIT_PNG,
            OutputKind.SQUARE_JPEG,
            OutputKind.SQUARE_PNG,
        }
        for path in job.outputs.values():
            assert Path(path).exists(), f"Output {path} should exist"

        with Image.open(job.outputs[OutputKind.SQUARE_JPEG]) as img:
            assert img.width == img.height
        with Image.open(job.outputs[OutputKind.PORTRAIT_JPEG]) as img:
            assert abs(img.width / img.height - 0.8) < 0.01
        with Image.open(job.outputs[OutputKind.PORTRAIT_PNG]) as img:
            assert img.mode == "RGBA"

        assert factory.steps() == ["face", "background", "face", "background"]
        assert [j.id for j in completed] == [job_id]

    def test_always_failing_remote_lands_in_failed(self):
        """Test retry count, backoff delays and the recorded error"""
        factory = FakeClientFactory(fail_steps={"face"}, error_message="CUDA out of memory")

        async def scenario():
            scheduler = self.scheduler(factory=factory)
            job_id = self.enqueue(scheduler)
            await scheduler.join()
            return scheduler, job_id

        scheduler, job_id = asyncio.run(scenario())
        job = scheduler.get_job(job_id)

        assert job.status == JobStatus.FAILED
        assert job.retries == 3
        assert "CUDA out of memory" in job.error
        assert "face enhancement" in job.error
        # Three attempts; the wait follows each non-final failure
        assert factory.steps() == ["face", "face", "face"]
        assert self.sleep.delays == [2.0, 4.0]

        failed = scheduler.failed_items()
        assert len(failed) == 1
        assert failed[0].id == job_id
        assert failed[0].retries == 3

    def test_backoff_scales_with_configured_base(self):
        pipeline = StubPipeline(fail_with=RuntimeError("boom"))

        async def scenario():
            scheduler = self.scheduler(pipeline=pipeline, config=self.settings(BACKOFF_BASE_SECONDS=0.5, MAX_RETRIES=4))
            self.enqueue(scheduler)
            await scheduler.join()

        asyncio.run(scenario())
        assert self.sleep.delays == [1.0, 2.0, 4.0]

    def test_failed_job_is_not_retried_automatically(self):
        pipeline = StubPipeline(fail_with=RuntimeError("boom"))

        async def scenario():
            scheduler = self.scheduler(pipeline=pipeline)
            self.enqueue(scheduler)
            await scheduler.join()
            pipeline.fail_with = None
            self.enqueue(scheduler, name="IMG_0002")
            await scheduler.join()
            return scheduler

        scheduler = asyncio.run(scenario())
        assert pipeline.processed == ["IMG_0002"]
        assert scheduler.status().failed == 1

    def test_input_errors_retry_by_default(self):
        pipeline = StubPipeline(fail_with=InputError("Source file not found"))

        async def scenario():
            scheduler = self.scheduler(pipeline=pipeline)
            job_id = self.enqueue(scheduler)
            await scheduler.join()
            return scheduler.get_job(job_id)

        job = asyncio.run(scenario())
        assert job.status == JobStatus.FAILED
        assert len(pipeline.options) == 3

    def test_input_errors_fail_fast_when_configured(self):
        """Test that fail-fast marks input errors failed on the first attempt"""
        pipeline = StubPipeline(fail_with=InputError("Source file not found"))

        async def scenario():
            scheduler = self.scheduler(pipeline=pipeline, config=self.settings(FAIL_FAST_ON_INPUT_ERRORS=True))
            job_id = self.enqueue(scheduler)
            await scheduler.join()
            return scheduler.get_job(job_id)

        job = asyncio.run(scenario())
        assert job.status == JobStatus.FAILED
        assert job.retries == 3
        assert len(pipeline.options) == 1
        assert self.sleep.delays == []

    def test_missing_source_fails_through_pipeline(self):
        factory = FakeClientFactory()

        async def scenario():
            scheduler = self.scheduler(factory=factory)
            job_id = self.enqueue(scheduler, source=str(self.test_dir / "gone.jpg"))
            await scheduler.join()
            return scheduler.get_job(job_id)

        job = asyncio.run(scenario())
        assert job.status == JobStatus.FAILED
        assert job.error == "Source file not found"
        assert factory.calls == []

    def test_single_job_processing_under_concurrent_enqueue(self):
        """Test that rapid enqueues never run two jobs at once and keep FIFO order"""
        pipeline = StubPipeline()
        snapshots = []

        async def scenario():
            events = EventBus()
            events.subscribe(CallbackObserver(on_status=snapshots.append))
            scheduler = self.scheduler(pipeline=pipeline, events=events)
            names = [f"IMG_{i:04d}" for i in range(5)]
            for name in names:
                self.enqueue(scheduler, name=name)
            await scheduler.join()
            return scheduler, names

        scheduler, names = asyncio.run(scenario())
        assert pipeline.max_active == 1
        assert pipeline.processed == names
        assert all(s.processing <= 1 for s in snapshots)
        assert scheduler.status().completed == 5

    def test_running_job_keeps_its_options(self):
        """Test that a config change mid-run only applies to later jobs"""
        pipeline = StubPipeline()

        async def scenario():
            scheduler = self.scheduler(pipeline=pipeline)
            pipeline.on_start = lambda job: scheduler.set_config(output_square=False) if job.base_name == "IMG_0001" else None
            self.enqueue(scheduler, name="IMG_0001")
            self.enqueue(scheduler, name="IMG_0002")
            await scheduler.join()

        asyncio.run(scenario())
        assert pipeline.options[0].output_square is True
        assert pipeline.options[1].output_square is False

    def test_observer_errors_do_not_affect_processing(self):
        pipeline = StubPipeline()

        def broken(*args):
            raise RuntimeError("UI went away")

        async def scenario():
            events = EventBus()
            events.subscribe(CallbackObserver(on_status=broken, on_log=broken, on_job_completed=broken))
            scheduler = self.scheduler(pipeline=pipeline, events=events)
            job_id = self.enqueue(scheduler)
            await scheduler.join()
            return scheduler.get_job(job_id)

        job = asyncio.run(scenario())
        assert job.status == JobStatus.COMPLETED

    def test_progress_lines_reach_observers(self):
        lines = []
        events = EventBus()
        events.subscribe(CallbackObserver(on_log=lambda level, message: lines.append((level, message))))

        async def scenario():
            scheduler = self.scheduler(pipeline=StubPipeline(), events=events)
            self.enqueue(scheduler)
            await scheduler.join()

        asyncio.run(scenario())
        messages = [message for _, message in lines]
        assert "Queued Session 12 IMG_0001" in messages
        assert "Processing Session 12 IMG_0001" in messages
        assert "Completed Session 12 IMG_0001" in messages


class TestSchedulerControl(SchedulerTestBase):
    """Stop, retry and clear operations"""

    def test_stop_returns_in_flight_job_to_pending(self):
        """Test that stop reverts the running job and blocks auto-start"""
        pipeline = StubPipeline()

        async def scenario():
            pipeline.gate = asyncio.Event()
            scheduler = self.scheduler(pipeline=pipeline)
            job_id = self.enqueue(scheduler)
            while scheduler.status().processing == 0:
                await asyncio.sleep(0)

            result = scheduler.stop()
            await scheduler.join()
            stopped = scheduler.get_job(job_id).model_copy()
            stopped_status = scheduler.status()

            pipeline.gate.set()
            scheduler.set_enabled(True)
            await scheduler.join()
            return result, stopped, stopped_status, scheduler.get_job(job_id)

        result, stopped, stopped_status, final = asyncio.run(scenario())
        assert result.success is True
        assert stopped.status == JobStatus.PENDING
        assert stopped.retries == 0
        assert stopped_status.is_processing is False
        assert stopped_status.processing_enabled is False
        assert stopped_status.current_item is None
        assert final.status == JobStatus.COMPLETED

    def test_stop_waits_for_blocking_step_before_restart(self):
        """Test that re-enabling after stop never overlaps the interrupted thread"""
        config = self.settings()
        pipeline = BlockingPipeline(config)

        async def scenario():
            scheduler = self.scheduler(pipeline=pipeline, config=config)
            job_id = self.enqueue(scheduler)
            while not pipeline.started.is_set():
                await asyncio.sleep(0.01)

            scheduler.stop()
            scheduler.set_enabled(True)
            assert scheduler.status().is_processing is True
            await scheduler.join()
            return scheduler.get_job(job_id)

        job = asyncio.run(scenario())
        assert pipeline.max_active == 1
        assert pipeline.runs == 2
        assert job.status == JobStatus.COMPLETED

    def test_retry_moves_failed_job_back_to_pending(self):
        factory = FakeClientFactory(fail_steps={"background"})

        async def scenario():
            scheduler = self.scheduler(factory=factory)
            job_id = self.enqueue(scheduler)
            await scheduler.join()
            assert scheduler.get_job(job_id).status == JobStatus.FAILED

            factory.fail_steps.clear()
            assert scheduler.retry(job_id) is True
            await scheduler.join()
            return scheduler, job_id

        scheduler, job_id = asyncio.run(scenario())
        job = scheduler.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.retries == 0
        assert job.error is None

    def test_retry_ignores_unknown_and_non_failed_jobs(self):
        scheduler = self.scheduler(config=self.settings(token=""))
        job_id = self.enqueue(scheduler)

        assert scheduler.retry("missing") is False
        assert scheduler.retry(job_id) is False

    def test_retry_all_resets_every_failed_job(self):
        scheduler = self.scheduler(config=self.settings(token=""))
        ids = [self.enqueue(scheduler, name=f"IMG_{i}") for i in range(3)]
        for job_id in ids[:2]:
            job = scheduler.get_job(job_id)
            job.status = JobStatus.FAILED
            job.retries = 3
            job.error = "boom"

        assert scheduler.retry_all() == 2
        assert scheduler.status().pending == 3
        assert all(scheduler.get_job(job_id).retries == 0 for job_id in ids)

    def test_clear_queue_keeps_failed_and_completed(self):
        """Test that clear_queue(False) removes only pending jobs"""
        scheduler = self.scheduler(config=self.settings(token=""))
        pending_id = self.enqueue(scheduler, name="IMG_1")
        failed_id = self.enqueue(scheduler, name="IMG_2")
        completed_id = self.enqueue(scheduler, name="IMG_3")
        scheduler.get_job(failed_id).status = JobStatus.FAILED
        scheduler.get_job(completed_id).status = JobStatus.COMPLETED

        result = scheduler.clear_queue(include_failed=False)

        assert result.cleared_pending == 1
        assert result.cleared_failed == 0
        assert scheduler.get_job(pending_id) is None
        assert scheduler.get_job(failed_id) is not None
        assert scheduler.get_job(completed_id) is not None

    def test_clear_queue_with_failed(self):
        scheduler = self.scheduler(config=self.settings(token=""))
        self.enqueue(scheduler, name="IMG_1")
        failed_id = self.enqueue(scheduler, name="IMG_2")
        completed_id = self.enqueue(scheduler, name="IMG_3")
        scheduler.get_job(failed_id).status = JobStatus.FAILED
        scheduler.get_job(completed_id).status = JobStatus.COMPLETED

        result = scheduler.clear_queue(include_failed=True)

        assert result.cleared_pending == 1
        assert result.cleared_failed == 1
        assert [job.id for job in scheduler.jobs()] == [completed_id]

    def test_clear_queue_interrupts_running_job(self):
        pipeline = StubPipeline()

        async def scenario():
            pipeline.gate = asyncio.Event()
            scheduler = self.scheduler(pipeline=pipeline)
            self.enqueue(scheduler)
            while scheduler.status().processing == 0:
                await asyncio.sleep(0)
            result = scheduler.clear_queue()
            await scheduler.join()
            return scheduler, result

        scheduler, result = asyncio.run(scenario())
        assert result.cleared_pending == 1
        assert scheduler.jobs() == []
        assert scheduler.status().is_processing is False

    def test_clear_completed(self):
        scheduler = self.scheduler(config=self.settings(token=""))
        done_id = self.enqueue(scheduler, name="IMG_1")
        self.enqueue(scheduler, name="IMG_2")
        scheduler.get_job(done_id).status = JobStatus.COMPLETED

        assert scheduler.clear_completed() == 1
        assert scheduler.status().queue_length == 1

    def test_mutations_are_persisted(self):
        config = self.settings(token="")
        scheduler = self.scheduler(config=config)
        job_id = self.enqueue(scheduler)

        reloaded = QueueStore(config.QUEUE_FILE).load()
        assert [job.id for job in reloaded] == [job_id]

    def test_set_watch_folder_reaches_preview_resolver(self):
        pipeline = StubPipeline()
        scheduler = self.scheduler(pipeline=pipeline)
        scheduler.set_watch_folder(str(self.test_dir))

        sibling = pipeline.preview_resolver.strategies[0]
        assert sibling.watch_folder == str(self.test_dir)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
