"""Shared error types.

Centralised here so services, workers and the API layer can raise and
catch the same classes without importing each other.
"""

from __future__ import annotations


class FreightAgentError(Exception):
    """Base class for all domain errors."""


class SessionNotFoundError(FreightAgentError):
    """No checkpoint exists for the requested thread."""

    def __init__(self, thread_id: str) -> None:
        super().__init__(f"Session not found: {thread_id}")
        self.thread_id = thread_id


class SessionConflictError(FreightAgentError):
    """The stored checkpoint changed between read and write."""

    def __init__(
        self,
        thread_id: str,
        expected_version: int | None,
        actual_version: int | None,
    ) -> None:
        super().__init__(
            f"Checkpoint for {thread_id} is at version {actual_version}, "
            f"expected {expected_version}"
        )
        self.thread_id = thread_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class ExternalServiceError(FreightAgentError):
    """A call to the model or embedding service failed in transport."""


class ContentValidationError(FreightAgentError):
    """
    Uploaded content is missing, unreadable or too short to process.

    Retrying cannot fix the input, so the job queue treats this as a
    terminal failure on the first attempt.
    """

    retryable = False


class JobNotFoundError(FreightAgentError):
    """No job record exists for the requested id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class RetryLimitExceededError(FreightAgentError):
    """An attempt was requested for a job that already used its ceiling."""


class BookingError(FreightAgentError):
    """A booking cannot be made from the session's current state."""
