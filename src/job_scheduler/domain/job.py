from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator
from pydantic.alias_generators import to_camel


class JobPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def can_transition_to(self, target: "JobStatus") -> bool:
        """
        Check whether a job in this status may move to ``target``.
        """
        return target in _TRANSITIONS[self]


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobSubmission(BaseModel):
    """
    A request to create a new job, validated before anything reaches the store.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    task_name: StrictStr = Field(..., min_length=1, description="Label of the task to run")
    payload: Dict[str, Any] = Field(..., description="Opaque document handed to the task as-is")
    priority: JobPriority = Field(..., description="Informational priority of the job")


class Job(BaseModel):
    """
    Represents a submitted unit of work and its lifecycle state.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int = Field(..., description="Store-assigned, monotonically increasing identifier")
    task_name: str = Field(..., description="Label of the task to run")
    payload: Dict[str, Any] = Field(..., description="Opaque document handed to the task as-is")
    priority: JobPriority = Field(..., description="Informational priority of the job")
    status: JobStatus = JobStatus.PENDING
    error: Optional[str] = Field(None, description="Failure detail, set only for failed jobs")
    created_at: datetime = Field(default_factory=utcnow, description="Creation timestamp, never changes")
    updated_at: datetime = Field(default_factory=utcnow, description="Timestamp of the latest mutation")
    completed_at: Optional[datetime] = Field(None, description="Set exactly once, on completion")

    @field_validator("created_at", "updated_at", "completed_at")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        # SQLite hands datetimes back without tzinfo; everything is stored as UTC.
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_record(self) -> Dict[str, Any]:
        """
        Return the persisted record shape (camelCase keys, JSON-compatible values).
        """
        return self.model_dump(mode="json", by_alias=True)

    def completion_event(self) -> Dict[str, Any]:
        """
        Build the snapshot sent to the notifier once the job is terminal.
        """
        return {
            "jobId": self.id,
            "taskName": self.task_name,
            "priority": self.priority.value,
            "payload": self.payload,
            "status": self.status.value,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }


def parse_status(value: Optional[str]) -> Optional[JobStatus]:
    if value is None or value == "":
        return None
    return JobStatus(value)


def parse_priority(value: Optional[str]) -> Optional[JobPriority]:
    if value is None or value == "":
        return None
    return JobPriority(value)
