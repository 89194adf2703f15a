import asyncio
from typing import Any, Dict, List

import pytest
import pytest_asyncio
from aioresponses import aioresponses

from job_scheduler.domain.job import Job, JobPriority, JobStatus
from job_scheduler.engine import CANCELLED_ERROR, INTERRUPTED_ERROR, JobEngine, JobRunAck
from job_scheduler.errors import (
    JobConflictError,
    JobNotFoundError,
    JobValidationError,
    SchedulerInternalError,
    StorageError,
)
from job_scheduler.executors.protocol import JobExecutor
from job_scheduler.executors.simulated import SimulatedExecutor
from job_scheduler.notifiers.protocol import DeliveryResult, Notifier
from job_scheduler.notifiers.webhook import WebhookNotifier
from job_scheduler.storages.sqlalchemy import InMemoryStorage


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events: List[Dict[str, Any]] = []
        self.closed = False

    async def deliver(self, payload: Dict[str, Any]) -> DeliveryResult:
        self.events.append(payload)
        return DeliveryResult(delivered=True, status_code=200, attempts=1)

    async def close(self) -> None:
        self.closed = True


class ExplodingNotifier(RecordingNotifier):
    async def deliver(self, payload: Dict[str, Any]) -> DeliveryResult:
        self.events.append(payload)
        raise RuntimeError("notifier bug")


class FailingExecutor(JobExecutor):
    async def async_execute(self, job: Job) -> None:
        raise RuntimeError(f"boom in {job.task_name}")


class GatedExecutor(JobExecutor):
    """Holds every job until the gate opens."""

    def __init__(self):
        self.gate = asyncio.Event()
        self.started: List[int] = []

    async def async_execute(self, job: Job) -> None:
        self.started.append(job.id)
        await self.gate.wait()


@pytest.fixture(scope="function")
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture(scope="function")
async def engine(notifier):
    engine = JobEngine(InMemoryStorage(), SimulatedExecutor(duration=0.05), notifier)
    await engine.start()
    yield engine
    await engine.stop()


@pytest_asyncio.fixture(scope="function")
async def gated_engine(notifier):
    executor = GatedExecutor()
    engine = JobEngine(InMemoryStorage(), executor, notifier)
    await engine.start()
    yield engine, executor
    executor.gate.set()
    await engine.stop()


@pytest.mark.asyncio
async def test_submit_creates_pending_job(engine: JobEngine) -> None:
    job = await engine.submit("sync", {"n": 1}, "high")

    assert job.status == JobStatus.PENDING
    assert job.completed_at is None
    assert job.priority == JobPriority.HIGH
    assert job.payload == {"n": 1}

    assert await engine.get(job.id) == job


@pytest.mark.asyncio
@pytest.mark.parametrize("task_name, payload, priority", [
    (None, {"n": 1}, "high"),
    ("", {"n": 1}, "high"),
    (42, {"n": 1}, "high"),
    ("sync", None, "high"),
    ("sync", [1, 2], "high"),
    ("sync", "text", "high"),
    ("sync", {"n": 1}, "urgent"),
    ("sync", {"n": 1}, None),
])
async def test_submit_rejects_invalid_input(engine: JobEngine, task_name, payload, priority) -> None:
    with pytest.raises(JobValidationError) as exc_info:
        await engine.submit(task_name, payload, priority)

    assert exc_info.value.http_status == 400
    assert exc_info.value.errors
    assert await engine.storage.count_jobs() == 0


@pytest.mark.asyncio
async def test_get_missing_job(engine: JobEngine) -> None:
    with pytest.raises(JobNotFoundError) as exc_info:
        await engine.get(123)
    assert exc_info.value.http_status == 404


@pytest.mark.asyncio
async def test_run_to_completion(engine: JobEngine, notifier: RecordingNotifier) -> None:
    job = await engine.submit("sync", {"n": 1}, "high")

    ack = await engine.run(job.id)
    assert isinstance(ack, JobRunAck)
    assert ack.job_id == job.id
    assert ack.status == JobStatus.RUNNING

    running = await engine.get(job.id)
    assert running.status == JobStatus.RUNNING
    assert running.completed_at is None

    assert await engine.drain(timeout=5)

    completed = await engine.get(job.id)
    assert completed.status == JobStatus.COMPLETED
    assert completed.completed_at is not None
    assert completed.error is None
    assert completed.created_at == job.created_at
    assert completed.updated_at >= running.updated_at

    assert len(notifier.events) == 1
    event = notifier.events[0]
    assert event["jobId"] == job.id
    assert event["taskName"] == "sync"
    assert event["priority"] == "high"
    assert event["payload"] == {"n": 1}
    assert event["status"] == "completed"
    assert event["completedAt"] is not None
    assert engine.in_flight == set()


@pytest.mark.asyncio
async def test_run_returns_before_work_finishes(gated_engine) -> None:
    engine, executor = gated_engine
    job = await engine.submit("slow", {}, "low")

    await engine.run(job.id)
    await asyncio.sleep(0)

    assert engine.in_flight == {job.id}
    assert (await engine.get(job.id)).status == JobStatus.RUNNING

    executor.gate.set()
    assert await engine.drain(timeout=5)
    assert (await engine.get(job.id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_run_missing_job_is_not_found(engine: JobEngine) -> None:
    with pytest.raises(JobNotFoundError):
        await engine.run(999)


@pytest.mark.asyncio
async def test_run_running_job_conflicts(gated_engine) -> None:
    engine, executor = gated_engine
    job = await engine.submit("sync", {"n": 1}, "high")
    await engine.run(job.id)

    with pytest.raises(JobConflictError, match="already running") as exc_info:
        await engine.run(job.id)
    assert exc_info.value.http_status == 409
    assert exc_info.value.status == JobStatus.RUNNING


@pytest.mark.asyncio
async def test_run_completed_job_conflicts(engine: JobEngine) -> None:
    job = await engine.submit("sync", {"n": 1}, "high")
    await engine.run(job.id)
    await engine.drain(timeout=5)

    with pytest.raises(JobConflictError, match="already completed"):
        await engine.run(job.id)


@pytest.mark.asyncio
async def test_concurrent_runs_have_single_winner(gated_engine, notifier: RecordingNotifier) -> None:
    engine, executor = gated_engine
    job = await engine.submit("sync", {"n": 1}, "high")

    results = await asyncio.gather(*(engine.run(job.id) for _ in range(10)), return_exceptions=True)

    acks = [r for r in results if isinstance(r, JobRunAck)]
    conflicts = [r for r in results if isinstance(r, JobConflictError)]
    assert len(acks) == 1
    assert len(conflicts) == 9

    await asyncio.sleep(0)
    assert executor.started == [job.id]

    executor.gate.set()
    assert await engine.drain(timeout=5)

    assert (await engine.get(job.id)).status == JobStatus.COMPLETED
    assert [event["jobId"] for event in notifier.events] == [job.id]


@pytest.mark.asyncio
async def test_distinct_jobs_run_concurrently(gated_engine) -> None:
    engine, executor = gated_engine
    jobs = [await engine.submit(f"task_{i}", {"i": i}, "medium") for i in range(5)]

    await asyncio.gather(*(engine.run(job.id) for job in jobs))
    await asyncio.sleep(0)

    assert engine.in_flight == {job.id for job in jobs}
    assert sorted(executor.started) == sorted(job.id for job in jobs)

    executor.gate.set()
    assert await engine.drain(timeout=5)
    statuses = {job.status for job in await engine.list()}
    assert statuses == {JobStatus.COMPLETED}


@pytest.mark.asyncio
async def test_failing_task_marks_job_failed(notifier: RecordingNotifier) -> None:
    engine = JobEngine(InMemoryStorage(), FailingExecutor(), notifier)
    await engine.start()
    try:
        job = await engine.submit("broken", {}, "low")
        await engine.run(job.id)
        await engine.drain(timeout=5)

        failed = await engine.get(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.completed_at is None
        assert "RuntimeError: boom in broken" in failed.error

        assert len(notifier.events) == 1
        assert notifier.events[0]["status"] == "failed"
        assert notifier.events[0]["completedAt"] is None

        with pytest.raises(JobConflictError, match="already failed"):
            await engine.run(job.id)
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_notifier_errors_do_not_affect_job() -> None:
    notifier = ExplodingNotifier()
    engine = JobEngine(InMemoryStorage(), SimulatedExecutor(duration=0), notifier)
    await engine.start()
    try:
        job = await engine.submit("sync", {}, "medium")
        await engine.run(job.id)
        await engine.drain(timeout=5)

        assert len(notifier.events) == 1
        assert (await engine.get(job.id)).status == JobStatus.COMPLETED
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_job_completes_without_webhook_url() -> None:
    notifier = WebhookNotifier(url=None)
    engine = JobEngine(InMemoryStorage(), SimulatedExecutor(duration=0), notifier)
    await engine.start()
    try:
        job = await engine.submit("sync", {"n": 1}, "high")
        with aioresponses() as m:
            await engine.run(job.id)
            await engine.drain(timeout=5)
            assert not m.requests

        completed = await engine.get(job.id)
        assert completed.status == JobStatus.COMPLETED
        assert completed.completed_at is not None
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_failed_webhook_does_not_affect_job() -> None:
    url = "https://hooks.example.com/jobs"
    notifier = WebhookNotifier(url=url, timeout=1)
    engine = JobEngine(InMemoryStorage(), SimulatedExecutor(duration=0), notifier)
    await engine.start()
    try:
        job = await engine.submit("sync", {"n": 1}, "high")
        with aioresponses() as m:
            m.post(url, exception=asyncio.TimeoutError())
            await engine.run(job.id)
            await engine.drain(timeout=5)

        assert (await engine.get(job.id)).status == JobStatus.COMPLETED
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_stop_cancels_and_marks_failed(notifier: RecordingNotifier) -> None:
    executor = GatedExecutor()
    storage = InMemoryStorage()
    engine = JobEngine(storage, executor, notifier)
    await engine.start()

    job = await engine.submit("forever", {}, "low")
    await engine.run(job.id)
    await asyncio.sleep(0)

    # Keep the in-memory database alive past stop() so the outcome can be read.
    closed: List[bool] = []

    async def keep_open() -> None:
        closed.append(True)

    storage.close = keep_open
    await engine.stop(timeout=0.05)

    assert closed == [True]
    assert notifier.closed is True
    assert engine.in_flight == set()
    stopped = await storage.get_job(job.id)
    assert stopped.status == JobStatus.FAILED
    assert stopped.error == CANCELLED_ERROR
    assert stopped.completed_at is None
    await storage.engine.dispose()


@pytest.mark.asyncio
async def test_start_recovers_interrupted_jobs(notifier: RecordingNotifier) -> None:
    storage = InMemoryStorage()
    await storage.create_tables()
    orphan = await storage.create_job("orphan", {}, JobPriority.MEDIUM)
    await storage.update_job(orphan.id, {"status": JobStatus.RUNNING})
    untouched = await storage.create_job("waiting", {}, JobPriority.MEDIUM)

    engine = JobEngine(storage, SimulatedExecutor(duration=0), notifier)
    await engine.start()
    try:
        recovered = await engine.get(orphan.id)
        assert recovered.status == JobStatus.FAILED
        assert recovered.error == INTERRUPTED_ERROR
        assert (await engine.get(untouched.id)).status == JobStatus.PENDING
    finally:
        await engine.stop()


class BrokenStorage(InMemoryStorage):
    """Refuses to record that a job completed."""

    async def update_job(self, job_id, fields, expected_status=None):
        if fields.get("status") == JobStatus.COMPLETED:
            raise StorageError("disk full")
        return await super().update_job(job_id, fields, expected_status)


@pytest.mark.asyncio
async def test_storage_failure_on_completion_marks_failed(notifier: RecordingNotifier) -> None:
    engine = JobEngine(BrokenStorage(), SimulatedExecutor(duration=0), notifier)
    await engine.start()
    try:
        job = await engine.submit("sync", {}, "high")
        await engine.run(job.id)
        await engine.drain(timeout=5)

        failed = await engine.get(job.id)
        assert failed.status == JobStatus.FAILED
        assert "disk full" in failed.error
        assert failed.completed_at is None
        assert [event["status"] for event in notifier.events] == ["failed"]
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_completed_at_set_iff_completed(engine: JobEngine) -> None:
    jobs = [await engine.submit(f"task_{i}", {}, "low") for i in range(3)]
    await engine.run(jobs[0].id)
    await engine.drain(timeout=5)

    for job in await engine.list():
        assert (job.completed_at is not None) == (job.status == JobStatus.COMPLETED)


class SlowCompletionStorage(InMemoryStorage):
    """Stalls the write that records a completed job."""

    def __init__(self):
        super().__init__()
        self.completion_started = asyncio.Event()

    async def update_job(self, job_id, fields, expected_status=None):
        if fields.get("status") == JobStatus.COMPLETED:
            self.completion_started.set()
            await asyncio.sleep(0.1)
        return await super().update_job(job_id, fields, expected_status)


@pytest.mark.asyncio
async def test_stop_during_completion_write_does_not_leave_job_running(notifier: RecordingNotifier) -> None:
    storage = SlowCompletionStorage()
    engine = JobEngine(storage, SimulatedExecutor(duration=0), notifier)
    await engine.start()

    job = await engine.submit("sync", {}, "high")
    await engine.run(job.id)
    await asyncio.wait_for(storage.completion_started.wait(), timeout=5)

    async def keep_open() -> None:
        pass

    storage.close = keep_open
    await engine.stop(timeout=0)

    finished = await storage.get_job(job.id)
    assert finished.status == JobStatus.COMPLETED
    assert finished.completed_at is not None
    assert [event["status"] for event in notifier.events] == ["completed"]
    await storage.engine.dispose()


@pytest.mark.asyncio
async def test_run_requires_started_engine(notifier: RecordingNotifier) -> None:
    storage = InMemoryStorage()
    engine = JobEngine(storage, SimulatedExecutor(duration=0), notifier)

    with pytest.raises(SchedulerInternalError, match="not running"):
        await engine.run(1)

    await engine.start()
    job = await engine.submit("sync", {}, "low")
    await engine.stop()

    with pytest.raises(SchedulerInternalError, match="not running"):
        await engine.run(job.id)
    assert engine.in_flight == set()
