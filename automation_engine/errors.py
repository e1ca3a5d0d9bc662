"""
Error taxonomy for the automation engine.

Lookup and validation errors surface synchronously to whoever called
enqueue/trigger. ExecutionError is recorded on the job and fed to the
retry policy; it never reaches the original submitter.
"""

from typing import Optional


class AutomationError(Exception):
    """Base class for all engine errors."""


class ValidationError(AutomationError):
    """Malformed enqueue, trigger or configuration input."""


class UnknownTypeError(AutomationError):
    """No handler is registered for the requested automation type."""

    def __init__(self, automation_type):
        self.automation_type = automation_type
        super().__init__(f"Unknown automation type: {automation_type}")


class UnknownTemplateError(AutomationError):
    """The notification template key is not in the catalog."""

    def __init__(self, template_key: str):
        self.template_key = template_key
        super().__init__(f"Unknown notification template: {template_key}")


class DuplicateJobError(AutomationError):
    """A queued or running job already holds the dedup key."""

    def __init__(self, dedup_key: str, existing_job_id: str):
        self.dedup_key = dedup_key
        self.existing_job_id = existing_job_id
        super().__init__(
            f"Dedup key '{dedup_key}' is held by job {existing_job_id}"
        )


class UnknownJobError(AutomationError):
    """No job with the given id is known to the queue."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' not found")


class InvalidStateError(AutomationError):
    """Illegal state transition requested for a job."""

    def __init__(self, job_id: str, current, requested):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Job '{job_id}' cannot move from {current} to {requested}"
        )


class QueueUnavailableError(AutomationError):
    """The queue cannot accept submissions (storage failure)."""


class ExecutionError(AutomationError):
    """
    Handler-level failure.

    Args:
        message: Human readable description
        recoverable: Whether the retry policy may run the job again
        cause: Underlying exception, if any
    """

    def __init__(
        self,
        message: str,
        recoverable: bool = True,
        cause: Optional[BaseException] = None
    ):
        super().__init__(message)
        self.recoverable = recoverable
        self.cause = cause


class JobCancelled(AutomationError):
    """Raised inside a handler when its cancel token fires."""


class UnknownTaskError(AutomationError):
    """No periodic task with the given name is configured."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Periodic task '{name}' not found")
