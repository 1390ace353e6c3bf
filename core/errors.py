from __future__ import annotations


class GenerationError(RuntimeError):
    """Base class for every failure surfaced by the generation core."""

    retryable = False


class UploadError(GenerationError):
    """The execution service rejected a staged reference image."""


class SubmissionError(GenerationError):
    """The execution service refused to enqueue a workflow."""


class ExecutionError(GenerationError):
    """A queued workflow finished without producing an image."""


class GenerationTimeoutError(GenerationError, TimeoutError):
    retryable = True


class ServiceConnectionError(GenerationError, ConnectionError):
    """Transport-level failure reaching either backend."""

    retryable = True


class ServiceError(GenerationError):
    """Non-transient failure reported by the prompting service."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ServiceOverloaded(ServiceError):
    """Every prompting candidate was rejected with a capacity signal."""

    retryable = True
