"""
Dependency injection container.

Holds the process-wide singletons every run shares: the HTTP client, the job
API client, the circuit breaker guarding the job API, the pipeline registry,
the profile sink and the resilient gateway composed from them. Services are
created lazily on first `get` from registered factories.
"""

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, TypeVar

from ..observability.logging import get_logger
from .settings import Settings, get_settings

logger = get_logger(__name__)

T = TypeVar("T")


class Container:
    """Dependency injection container with async lifecycle management."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._services: dict[str, Any] = {}
        self._factories: dict[str, Any] = {}
        self._singletons: dict[str, Any] = {}

    def register_factory(self, name: str, factory: Any) -> None:
        self._factories[name] = factory

    def register_singleton(self, name: str, instance: Any) -> None:
        """Register a ready-made instance; wins over any factory."""
        self._singletons[name] = instance

    def get(self, name: str, default: Any = None) -> Any:
        if name in self._singletons:
            return self._singletons[name]

        if name in self._services:
            return self._services[name]

        if name in self._factories:
            instance = self._factories[name](self)
            self._services[name] = instance
            return instance

        return default

    def require(self, name: str) -> Any:
        service = self.get(name)
        if service is None:
            raise KeyError(f"No service registered under '{name}'")
        return service

    async def cleanup(self) -> None:
        """Close every factory-created service that holds async resources."""
        for name, service in self._services.items():
            if hasattr(service, "aclose"):
                try:
                    await service.aclose()
                except Exception:
                    logger.exception("Error cleaning up service", service=name)

        self._services.clear()

    @asynccontextmanager
    async def lifespan(self):
        try:
            yield self
        finally:
            await self.cleanup()


def setup_container(settings: Settings | None = None) -> Container:
    """Container with the default service factories."""
    container = Container(settings)

    def _http_client_factory(c: Container):
        import httpx

        return httpx.AsyncClient(
            timeout=httpx.Timeout(c.settings.resilience.call_timeout),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
        )

    def _job_client_factory(c: Container):
        from ..jobs.client import HttpJobClient

        scraper = c.settings.scraper
        return HttpJobClient(c.get("http_client"), scraper.base_url, scraper.api_token)

    def _scraper_breaker_factory(c: Container):
        from ..core.circuit_breaker import CircuitBreaker

        resilience = c.settings.resilience
        return CircuitBreaker(
            "scraper",
            failure_threshold=resilience.failure_threshold,
            recovery_timeout=resilience.recovery_timeout,
            monitoring_period=resilience.monitoring_period,
        )

    def _pipeline_registry_factory(c: Container):
        from ..core.pipeline import PipelineRegistry

        return PipelineRegistry()

    def _profile_sink_factory(c: Container):
        from ..jobs.sinks import InMemoryProfileSink

        return InMemoryProfileSink()

    def _job_gateway_factory(c: Container):
        from ..core.retry import RetryOptions
        from ..core.runner import JobGateway

        resilience = c.settings.resilience
        return JobGateway(
            c.get("job_client"),
            c.get("scraper_breaker"),
            RetryOptions(
                max_retries=resilience.max_retries,
                initial_delay=resilience.initial_delay,
                backoff_factor=resilience.backoff_factor,
            ),
            call_timeout=resilience.call_timeout,
            poll_interval=c.settings.scraper.poll_interval,
            run_timeout=c.settings.scraper.run_timeout,
        )

    container.register_factory("http_client", _http_client_factory)
    container.register_factory("job_client", _job_client_factory)
    container.register_factory("scraper_breaker", _scraper_breaker_factory)
    container.register_factory("pipeline_registry", _pipeline_registry_factory)
    container.register_factory("profile_sink", _profile_sink_factory)
    container.register_factory("job_gateway", _job_gateway_factory)

    return container


@lru_cache
def get_container() -> Container:
    """Get cached container instance."""
    return setup_container()
