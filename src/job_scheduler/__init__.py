"""
Background Job Scheduler

Core Concepts:

Job:
    A named unit of work with an opaque payload and an informational priority.
    A Job is created ``pending``, moves to ``running`` when someone asks to run
    it, and ends ``completed`` (or ``failed`` if its body raised).

JobEngine:
    Owns the lifecycle. Guarantees that a pending job is started at most once,
    runs it in the background and reports the outcome to the Notifier.

Notifier:
    Best-effort delivery of terminal-state events to a webhook endpoint.
    Its outcome is logged and never changes a job.

JobService:
    The thin request-facing layer that validates raw input and delegates to
    the engine.
"""

from .config import SchedulerConfig
from .domain.job import Job, JobPriority, JobStatus
from .engine import JobEngine, JobRunAck
from .errors import (
    JobConflictError,
    JobNotFoundError,
    JobValidationError,
    SchedulerError,
    SchedulerInternalError,
    StorageError,
)
from .executors.simulated import SimulatedExecutor
from .notifiers.webhook import WebhookNotifier
from .service import JobService
from .storages.sqlalchemy import SqlAlchemyStorage


def create_service(config: SchedulerConfig) -> JobService:
    """
    Wire a JobService from configuration. Call ``service.engine.start()``
    before use and ``service.engine.stop()`` on shutdown.
    """
    engine = JobEngine(
        storage=SqlAlchemyStorage(config.database_url),
        executor=SimulatedExecutor(config.job_duration),
        notifier=WebhookNotifier.from_config(config),
    )
    return JobService(engine)


__all__ = [
    "Job",
    "JobConflictError",
    "JobEngine",
    "JobNotFoundError",
    "JobPriority",
    "JobRunAck",
    "JobService",
    "JobStatus",
    "JobValidationError",
    "SchedulerConfig",
    "SchedulerError",
    "SchedulerInternalError",
    "SimulatedExecutor",
    "SqlAlchemyStorage",
    "StorageError",
    "WebhookNotifier",
    "create_service",
]
