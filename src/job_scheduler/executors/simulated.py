import asyncio
import logging

from job_scheduler.domain.job import Job
from job_scheduler.executors.protocol import JobExecutor

logger = logging.getLogger(__name__)


class SimulatedExecutor(JobExecutor):
    """
    Stand-in for real task dispatch: every job takes a fixed amount of time.
    """

    def __init__(self, duration: float = 3.0):
        if duration < 0:
            raise ValueError("duration must not be negative")
        self.duration = duration

    async def async_execute(self, job: Job) -> None:
        logger.debug("Simulating %.2fs of work for job %s (%s)", self.duration, job.id, job.task_name)
        await asyncio.sleep(self.duration)
