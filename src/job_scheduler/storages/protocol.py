from typing import Any, Dict, List, Mapping, Optional, Protocol

from job_scheduler.domain.job import Job, JobPriority, JobStatus


class Storage(Protocol):
    async def create_tables(self) -> None:
        """Prepare the underlying schema. Safe to call more than once."""
        ...

    async def close(self) -> None:
        """Release connections held by the store."""
        ...

    async def create_job(self, task_name: str, payload: Dict[str, Any], priority: JobPriority) -> Job:
        """Persist a new pending job and return it with its assigned ID."""
        ...

    async def get_job(self, job_id: int) -> Optional[Job]:
        """Retrieve a job by its ID."""
        ...

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        priority: Optional[JobPriority] = None,
    ) -> List[Job]:
        """List jobs matching every given filter, newest first."""
        ...

    async def count_jobs(
        self,
        status: Optional[JobStatus] = None,
        priority: Optional[JobPriority] = None,
    ) -> int:
        """Count jobs matching every given filter."""
        ...

    async def update_job(
        self,
        job_id: int,
        fields: Mapping[str, Any],
        expected_status: Optional[JobStatus] = None,
    ) -> Optional[Job]:
        """
        Update a job and return its new state.

        When ``expected_status`` is given the update only applies if the job
        currently has that status, atomically. Returns None if the job does
        not exist or the status did not match.
        """
        ...
