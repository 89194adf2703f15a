import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field, ValidationError

from job_scheduler.domain.job import Job, JobPriority, JobStatus, JobSubmission, utcnow
from job_scheduler.errors import (
    JobConflictError,
    JobNotFoundError,
    JobValidationError,
    SchedulerInternalError,
)
from job_scheduler.executors.protocol import JobExecutor
from job_scheduler.notifiers.protocol import DeliveryResult, Notifier
from job_scheduler.storages.protocol import Storage

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "interrupted by scheduler restart"
CANCELLED_ERROR = "cancelled"


class JobRunAck(BaseModel):
    """
    Immediate answer to a successful run request; the work itself continues in the background.
    """
    job_id: int = Field(..., description="ID of the job that was started")
    status: JobStatus = Field(JobStatus.RUNNING, description="Status the job moved to")
    message: str = Field("Job started", description="Human readable acknowledgment")


class JobEngine:
    """
    Drives jobs through ``pending -> running -> completed | failed``.

    The ``pending -> running`` step is a compare-and-set in the store, so of
    any number of concurrent ``run`` calls for one job exactly one wins and
    the rest get a conflict. Each won job executes in its own asyncio task,
    owned and tracked by the engine; the terminal state is recorded before the
    notifier is called, and the notifier's outcome never changes it.
    """

    def __init__(self, storage: Storage, executor: JobExecutor, notifier: Notifier):
        self.storage: Storage = storage
        self.executor: JobExecutor = executor
        self.notifier: Notifier = notifier
        self.job_futures: Dict[int, asyncio.Task] = {}
        self.is_running: bool = False

    @property
    def in_flight(self) -> Set[int]:
        """IDs of jobs whose execution has not finished yet."""
        return {job_id for job_id, future in self.job_futures.items() if not future.done()}

    async def start(self) -> None:
        """
        Prepare the store and fail any job a previous process left ``running``.
        """
        if self.is_running:
            return
        await self.storage.create_tables()
        await self._recover_interrupted_jobs()
        self.is_running = True
        logger.info("JobEngine started.")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Wait for in-flight jobs, cancel whatever is left after ``timeout``
        seconds, then release the notifier and the store.
        """
        await self.drain(timeout)
        pending = [future for future in self.job_futures.values() if not future.done()]
        for future in pending:
            future.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self.job_futures.clear()
        await self.notifier.close()
        await self.storage.close()
        self.is_running = False
        logger.info("JobEngine stopped.")

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every in-flight job has finished.

        Returns:
            bool: True if nothing is left running, False if ``timeout`` expired first.
        """
        futures = [future for future in self.job_futures.values() if not future.done()]
        if not futures:
            return True
        _, still_running = await asyncio.wait(futures, timeout=timeout)
        return not still_running

    async def submit(self, task_name: Any, payload: Any, priority: Any) -> Job:
        """
        Validate and persist a new job in ``pending``.

        Raises:
            JobValidationError: If any field is malformed. The store is not touched.
        """
        try:
            submission = JobSubmission(task_name=task_name, payload=payload, priority=priority)
        except ValidationError as e:
            raise validation_error(e) from e

        job = await self.storage.create_job(submission.task_name, submission.payload, submission.priority)
        logger.info("Job %s created (%s, priority=%s)", job.id, job.task_name, job.priority.value)
        return job

    async def get(self, job_id: int) -> Job:
        job = await self.storage.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list(
        self,
        status: Optional[JobStatus] = None,
        priority: Optional[JobPriority] = None,
    ) -> List[Job]:
        return await self.storage.list_jobs(status=status, priority=priority)

    async def run(self, job_id: int) -> JobRunAck:
        """
        Move a pending job to ``running`` and start executing it in the background.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobConflictError: If the job is not ``pending`` anymore.
            SchedulerInternalError: If the engine is not started.
        """
        if not self.is_running:
            raise SchedulerInternalError("JobEngine is not running")
        job = await self._transition(job_id, JobStatus.PENDING, JobStatus.RUNNING)
        logger.info("Job %s is running", job.id)

        future = asyncio.create_task(self._execute_job(job))
        self.job_futures[job.id] = future
        future.add_done_callback(lambda f: self._handle_job_completion(job.id, f))
        return JobRunAck(job_id=job.id)

    async def _transition(
        self,
        job_id: int,
        current: JobStatus,
        target: JobStatus,
        **fields: Any,
    ) -> Job:
        if not current.can_transition_to(target):
            raise ValueError(f"Illegal transition {current.value} -> {target.value}")

        job = await self.storage.update_job(job_id, {"status": target, **fields}, expected_status=current)
        if job is not None:
            return job

        existing = await self.storage.get_job(job_id)
        if existing is None:
            raise JobNotFoundError(job_id)
        raise JobConflictError(job_id, existing.status)

    async def _execute_job(self, job: Job) -> None:
        try:
            await self.executor.async_execute(job)
        except asyncio.CancelledError:
            logger.warning("Job %s was cancelled while running", job.id)
            await self._finish_shielded(job, JobStatus.FAILED, error=CANCELLED_ERROR)
            raise
        except Exception as e:
            logger.exception("Job %s failed", job.id)
            await self._finish_shielded(job, JobStatus.FAILED, error=f"{type(e).__name__}: {e}")
        else:
            await self._finish_shielded(job, JobStatus.COMPLETED)

    async def _finish_shielded(self, job: Job, status: JobStatus, error: Optional[str] = None) -> None:
        # A cancel arriving mid-write must not leave the job running; wait for the write, then re-raise.
        finishing = asyncio.ensure_future(self._finish(job, status, error=error))
        try:
            await asyncio.shield(finishing)
        except asyncio.CancelledError:
            await asyncio.wait({finishing})
            raise

    async def _finish(self, job: Job, status: JobStatus, error: Optional[str] = None) -> None:
        fields: Dict[str, Any] = {"error": error}
        if status == JobStatus.COMPLETED:
            fields["completed_at"] = utcnow()

        try:
            finished = await self._transition(job.id, JobStatus.RUNNING, status, **fields)
        except Exception as e:
            logger.exception("Could not record %s for job %s", status.value, job.id)
            finished = await self._record_failure(job, e) if status == JobStatus.COMPLETED else None
            if finished is None:
                return

        logger.info("Job %s %s", finished.id, finished.status.value)
        await self._notify(finished)

    async def _record_failure(self, job: Job, cause: Exception) -> Optional[Job]:
        try:
            return await self._transition(
                job.id, JobStatus.RUNNING, JobStatus.FAILED,
                error=f"could not record completion: {cause}",
            )
        except Exception:
            logger.exception("Job %s is stuck in running; the store rejected every update", job.id)
            return None

    async def _notify(self, job: Job) -> Optional[DeliveryResult]:
        try:
            result = await self.notifier.deliver(job.completion_event())
        except Exception:
            logger.exception("Notifier raised while delivering job %s", job.id)
            return None
        if result.skipped:
            logger.info("Notification for job %s skipped, no endpoint configured", job.id)
        elif not result.delivered:
            logger.warning("Notification for job %s failed: %s", job.id, result.error)
        return result

    def _handle_job_completion(self, job_id: int, future: asyncio.Future) -> None:
        if self.job_futures.get(job_id) is future:
            del self.job_futures[job_id]
        if not future.cancelled() and future.exception() is not None:
            logger.error("Execution of job %s ended with an unhandled error: %r", job_id, future.exception())

    async def _recover_interrupted_jobs(self) -> None:
        for job in await self.storage.list_jobs(status=JobStatus.RUNNING):
            if job.id in self.job_futures:
                continue
            recovered = await self.storage.update_job(
                job.id,
                {"status": JobStatus.FAILED, "error": INTERRUPTED_ERROR},
                expected_status=JobStatus.RUNNING,
            )
            if recovered is not None:
                logger.warning("Job %s was left running by a previous process; marked failed", job.id)


def validation_error(error: ValidationError) -> JobValidationError:
    """
    Turn a pydantic ValidationError into the scheduler's JobValidationError.
    """
    details: List[Dict[str, Any]] = []
    for item in error.errors():
        field = ".".join(str(part) for part in item.get("loc", ()))
        details.append({"field": field, "message": item.get("msg", "")})
    summary = "; ".join(f"{d['field']}: {d['message']}" if d["field"] else d["message"] for d in details)
    return JobValidationError(f"Invalid job: {summary}", errors=details)
