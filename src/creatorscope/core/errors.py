"""
Error taxonomy for the pipeline runtime.

Failures are classified once, close to where they happen:
- transient (network, 5xx, timeouts, truncated payloads) are retried,
- dependency-degraded (open breaker) fail fast and are never retried,
- fatal (4xx, failed actor runs, invalid transitions) propagate immediately.
"""


class CreatorScopeError(Exception):
    """Base class for all CreatorScope errors."""


class ValidationError(CreatorScopeError):
    """Invalid run submission (keywords, handles)."""


class ExternalServiceError(CreatorScopeError):
    """The external job API answered with an error status."""

    def __init__(self, message: str, status_code: int, service: str = "scraper"):
        super().__init__(message)
        self.status_code = status_code
        self.service = service

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500


class PayloadDecodeError(CreatorScopeError):
    """A successful response carried a body that could not be decoded."""


class OperationTimeoutError(CreatorScopeError, TimeoutError):
    """An awaited unit of work did not finish before its deadline."""

    def __init__(self, message: str = "Operation timed out", timeout: float | None = None):
        super().__init__(message)
        self.timeout = timeout


class CircuitBreakerOpenError(CreatorScopeError):
    """Rejected without calling the dependency because its breaker is open."""

    def __init__(self, name: str, retry_after: float = 0.0):
        super().__init__(f"Circuit breaker is open for {name}")
        self.name = name
        self.retry_after = retry_after


class JobRunError(CreatorScopeError):
    """An actor run finished in a non-successful terminal status."""

    def __init__(self, run_id: str, status: str):
        super().__init__(f"Actor run {run_id} finished with status {status}")
        self.run_id = run_id
        self.status = status


class InvalidTransitionError(CreatorScopeError):
    """A pipeline transition is not allowed from its current state."""


class PipelineNotFoundError(CreatorScopeError, KeyError):
    def __init__(self, pipeline_id: str):
        super().__init__(f"Pipeline not found: {pipeline_id}")
        self.pipeline_id = pipeline_id

    def __str__(self) -> str:
        return self.args[0]


class StreamClosedError(CreatorScopeError):
    """An event was emitted after the stream's final event."""
