from typing import Protocol

from job_scheduler.domain.job import Job


class JobExecutor(Protocol):
    """
    Protocol class for job executors.

    An executor carries out the body of a job that has already been moved to
    ``running``. It must not touch the job's status: the engine records the
    terminal state from the outcome. Raising marks the job as failed.
    """

    async def async_execute(self, job: Job) -> None:
        """
        Asynchronously execute the given job.

        Args:
            job (Job): The running job to execute.
        """
        ...
