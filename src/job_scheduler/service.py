import re
from typing import Any, List, Mapping, Optional

from job_scheduler.domain.job import Job, parse_priority, parse_status
from job_scheduler.engine import JobEngine, JobRunAck
from job_scheduler.errors import JobValidationError

_JOB_ID_PATTERN = re.compile(r"^[+-]?\d+$")


class JobService:
    """
    Request-facing surface of the scheduler.

    Takes loosely typed, request-shaped input (JSON bodies, query strings,
    path segments), checks its shape and hands it to the engine. Errors are
    SchedulerError subclasses carrying the HTTP status to answer with.
    """

    def __init__(self, engine: JobEngine):
        self.engine = engine

    async def create_job(self, body: Any) -> Job:
        if not isinstance(body, Mapping):
            raise JobValidationError("Request body must be a JSON object")
        return await self.engine.submit(
            task_name=body.get("taskName"),
            payload=body.get("payload"),
            priority=body.get("priority"),
        )

    async def list_jobs(self, status: Optional[str] = None, priority: Optional[str] = None) -> List[Job]:
        try:
            status_filter = parse_status(status)
        except ValueError:
            raise JobValidationError(f"Unknown status filter: {status!r}") from None
        try:
            priority_filter = parse_priority(priority)
        except ValueError:
            raise JobValidationError(f"Unknown priority filter: {priority!r}") from None
        return await self.engine.list(status=status_filter, priority=priority_filter)

    async def get_job(self, raw_id: Any) -> Job:
        return await self.engine.get(parse_job_id(raw_id))

    async def run_job(self, raw_id: Any) -> JobRunAck:
        return await self.engine.run(parse_job_id(raw_id))


def parse_job_id(raw_id: Any) -> int:
    """
    Accept an int or an integer string, as it would arrive in a URL path.
    """
    if isinstance(raw_id, bool):
        raise JobValidationError("Invalid job id")
    if isinstance(raw_id, int):
        return raw_id
    if isinstance(raw_id, str) and _JOB_ID_PATTERN.match(raw_id.strip()):
        return int(raw_id.strip())
    raise JobValidationError("Invalid job id")
