from .job import Job, JobPriority, JobStatus, JobSubmission, TERMINAL_STATUSES

__all__ = ["Job", "JobPriority", "JobStatus", "JobSubmission", "TERMINAL_STATUSES"]
