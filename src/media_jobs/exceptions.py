"""Custom exceptions for job orchestration.

Command errors are raised synchronously to the caller; job-execution errors
never surface here and are reported through ``job.failed`` instead.
"""


class JobsError(Exception):
    """Base exception for job orchestration errors."""


class InvalidRequestError(JobsError):
    """Raised for an unknown queue name or manual job name.

    The caller must correct the input before retrying.
    """


class ConflictError(JobsError):
    """Raised when a queue command conflicts with the queue's state.

    Attributes:
        queue_name: The queue the command targeted.
    """

    def __init__(self, queue_name: str, message: str = "Job is already running") -> None:
        self.queue_name = queue_name
        super().__init__(message)


class UnknownJobHandlerError(JobsError):
    """Raised when no handler is registered for a job name."""

    def __init__(self, job_name: str) -> None:
        self.job_name = job_name
        super().__init__(f"No handler registered for job {job_name}")
