"""
Core runtime: resilience primitives, pipeline state machines and run drivers.
"""

from .circuit_breaker import CircuitBreaker, CircuitState
from .errors import (
    CircuitBreakerOpenError,
    CreatorScopeError,
    ExternalServiceError,
    InvalidTransitionError,
    JobRunError,
    OperationTimeoutError,
    PayloadDecodeError,
    PipelineNotFoundError,
    StreamClosedError,
    ValidationError,
)
from .pipeline import (
    DiscoveryPipeline,
    DiscoveryStatus,
    MetricsPipeline,
    MetricsStatus,
    Pipeline,
    PipelineRegistry,
    PipelineStep,
    StepStatus,
)
from .retry import RetryOptions, RetryOutcome, is_retryable_error, run_with_retry
from .timeout import retry_with_timeout, with_timeout

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "RetryOptions",
    "RetryOutcome",
    "run_with_retry",
    "is_retryable_error",
    "with_timeout",
    "retry_with_timeout",
    "DiscoveryPipeline",
    "DiscoveryStatus",
    "MetricsPipeline",
    "MetricsStatus",
    "Pipeline",
    "PipelineRegistry",
    "PipelineStep",
    "StepStatus",
    "CreatorScopeError",
    "ValidationError",
    "ExternalServiceError",
    "PayloadDecodeError",
    "OperationTimeoutError",
    "CircuitBreakerOpenError",
    "JobRunError",
    "InvalidTransitionError",
    "PipelineNotFoundError",
    "StreamClosedError",
]
