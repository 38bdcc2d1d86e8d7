"""
Run drivers.

A run driver owns one pipeline run end to end: it calls the external job API
through `JobGateway` (Retry over CircuitBreaker over Timeout), moves the
pipeline state machine, and reports every transition on the run's event
channel. A transition and its events are published together under one lock,
so the registry and the stream never disagree.

Cancellation arrives as `asyncio.CancelledError` in the driver task. The
in-flight pipeline is marked failed with `CANCELLED_MESSAGE` and the error
propagates; no further external calls are made for the run.
"""

import asyncio
import inspect
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from ..config.settings import ScraperConfig
from ..jobs.client import JobClient, JobRun
from ..jobs.sinks import ProfileSink
from ..jobs.transforms import extract_handles, filter_profiles, reduce_metrics
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector, timer
from ..observability.tracing import add_span_event, trace_span
from ..streaming.channel import EventChannel
from ..streaming.events import (
    CompleteData,
    CompleteEvent,
    ErrorEvent,
    OutputEvent,
    ProgressData,
    ProgressEvent,
    StreamEvent,
)
from .circuit_breaker import CircuitBreaker
from .errors import JobRunError, PayloadDecodeError
from .pipeline import (
    DiscoveryPipeline,
    MetricsPipeline,
    MetricsStatus,
    Pipeline,
    PipelineRegistry,
)
from .retry import RetryOptions, is_resubmittable_error, run_with_retry
from .timeout import with_timeout

logger = get_logger(__name__)

T = TypeVar("T")

CANCELLED_MESSAGE = "Run cancelled by client"

RetryObserver = Callable[[str, BaseException, int], None]


@dataclass(frozen=True)
class ActorResult:
    run: JobRun
    items: list[dict[str, Any]]


class JobGateway:
    """Resilient access to the external job API.

    Every single call is `run_with_retry(breaker.execute(with_timeout(call)))`:
    each attempt has its own deadline, each attempt counts against the shared
    breaker, and an open breaker is never retried.
    """

    def __init__(
        self,
        client: JobClient,
        breaker: CircuitBreaker,
        retry_options: RetryOptions | None = None,
        call_timeout: float = 30.0,
        poll_interval: float = 5.0,
        run_timeout: float = 900.0,
    ):
        self.client = client
        self.breaker = breaker
        self.retry_options = retry_options or RetryOptions()
        self.call_timeout = call_timeout
        self.poll_interval = poll_interval
        self.run_timeout = run_timeout

    async def call(
        self,
        operation: str,
        work: Callable[[], Awaitable[T]],
        on_retry: RetryObserver | None = None,
        retry_condition: Callable[[BaseException], bool] | None = None,
    ) -> T:
        options = self.retry_options
        if retry_condition is not None:
            options = replace(options, retry_condition=retry_condition)
        if on_retry is not None:
            options = replace(options, on_retry=lambda error, n: on_retry(operation, error, n))

        message = f"{operation} timed out after {self.call_timeout:g}s"
        outcome = await run_with_retry(
            lambda: self.breaker.execute(lambda: with_timeout(work, self.call_timeout, message)),
            options,
        )
        return outcome.unwrap()

    async def run_actor(
        self,
        actor_id: str,
        actor_input: dict[str, Any],
        on_log_line: Callable[[str], None] | None = None,
        on_retry: RetryObserver | None = None,
        limit: int | None = None,
    ) -> ActorResult:
        """Start an actor run, follow it to a terminal status and fetch its dataset."""
        run = await self.call(
            "start_run",
            lambda: self.client.start_run(actor_id, actor_input),
            on_retry,
            retry_condition=is_resubmittable_error,
        )
        with timer("actor_run", {"actor": actor_id}):
            run = await with_timeout(
                self._follow(run, on_log_line, on_retry),
                self.run_timeout,
                f"Actor {actor_id} run {run.id} exceeded {self.run_timeout:g}s",
            )
        if not run.succeeded:
            raise JobRunError(run.id, run.status)
        if not run.dataset_id:
            raise PayloadDecodeError(f"Actor run {run.id} has no dataset")

        dataset_id = run.dataset_id
        items = await self.call(
            "list_items", lambda: self.client.list_items(dataset_id, limit), on_retry
        )
        logger.info("Actor run finished", actor_id=actor_id, run_id=run.id, items=len(items))
        return ActorResult(run=run, items=items)

    async def _follow(
        self,
        run: JobRun,
        on_log_line: Callable[[str], None] | None,
        on_retry: RetryObserver | None,
    ) -> JobRun:
        seen_lines = 0
        while True:
            if on_log_line is not None:
                run_id = run.id
                log_text = await self.call(
                    "get_log", lambda: self.client.get_log(run_id), on_retry
                )
                lines = [line for line in log_text.splitlines() if line.strip()]
                for line in lines[seen_lines:]:
                    on_log_line(line)
                seen_lines = max(seen_lines, len(lines))

            if run.is_terminal:
                return run

            await asyncio.sleep(self.poll_interval)
            run_id = run.id
            run = await self.call("get_run", lambda: self.client.get_run(run_id), on_retry)


def _progress(
    pipeline: Pipeline,
    step: str | None = None,
    status: str | None = None,
    error: str | None = None,
    output_count: int | None = None,
) -> ProgressEvent:
    return ProgressEvent(
        data=ProgressData(
            keyword=pipeline.label,
            status=status or pipeline.status.value,
            pipeline_id=pipeline.id,
            kind=pipeline.kind,
            step=step,
            error=error,
            output_count=output_count,
        )
    )


class _RunDriver:
    """Shared publishing and failure handling of both run kinds."""

    kind = "run"

    def __init__(
        self,
        gateway: JobGateway,
        registry: PipelineRegistry,
        config: ScraperConfig | None = None,
    ):
        self.gateway = gateway
        self.registry = registry
        self.config = config or ScraperConfig()
        self._publish_lock = threading.Lock()
        self._pipeline: Pipeline | None = None

    @property
    def pipeline(self) -> Pipeline | None:
        """Snapshot of the pipeline currently being driven."""
        return self._pipeline

    def _publish(
        self, channel: EventChannel, snapshot: Pipeline, events: list[StreamEvent], new: bool = False
    ) -> None:
        with self._publish_lock:
            if new:
                self.registry.add(snapshot)
            else:
                self.registry.put(snapshot)
            self._pipeline = snapshot
            for event in events:
                channel.emit(event)

    def _register(self, channel: EventChannel, pipeline: Pipeline) -> None:
        self._publish(channel, pipeline, [_progress(pipeline)], new=True)

    def _commit(self, channel: EventChannel, snapshot: Pipeline, step_id: str | None = None) -> None:
        """Publish a transition with the events it implies."""
        events: list[StreamEvent] = []
        if step_id is not None:
            step = snapshot.step(step_id)
            events.append(
                _progress(
                    snapshot,
                    step=step_id,
                    status=step.status.value,
                    error=step.error,
                    output_count=step.output_count,
                )
            )
        if step_id is None or snapshot.is_terminal:
            events.append(_progress(snapshot, error=snapshot.error))

        if snapshot.is_terminal:
            success = snapshot.error is None
            if not success:
                events.append(
                    ErrorEvent(
                        data=f"Pipeline failed for '{snapshot.label}': {snapshot.error}",
                        keyword=snapshot.label,
                    )
                )
            events.append(
                CompleteEvent(
                    data=CompleteData(
                        success=success,
                        keyword=snapshot.label,
                        summary={"pipelineId": snapshot.id, "results": len(snapshot.results)},
                    )
                )
            )
            duration = (datetime.now(UTC) - snapshot.created_at).total_seconds()
            get_metrics_collector().record_pipeline_run(snapshot.kind, snapshot.status.value, duration)
            add_span_event(
                "pipeline.finished",
                {"pipeline_id": snapshot.id, "kind": snapshot.kind, "status": snapshot.status.value},
            )

        self._publish(channel, snapshot, events)

    def _abort(self, channel: EventChannel, error: str) -> None:
        """Fail the in-flight pipeline, if any, outside of any step."""
        if self._pipeline is not None and not self._pipeline.is_terminal:
            self._commit(channel, self._pipeline.fail(error))

    def _on_retry(self, channel: EventChannel, keyword: str) -> RetryObserver:
        def report(operation: str, error: BaseException, attempt: int) -> None:
            channel.emit(
                ErrorEvent(
                    data=f"{operation} failed ({error}); retry {attempt}/{self.gateway.retry_options.max_retries}",
                    keyword=keyword,
                )
            )

        return report

    def _on_log_line(self, channel: EventChannel, keyword: str) -> Callable[[str], None]:
        return lambda line: channel.emit(OutputEvent(data=line, keyword=keyword))


class DiscoveryRunner(_RunDriver):
    """Creator discovery: one pipeline per keyword, keywords run in order."""

    kind = "discovery"

    @trace_span("pipeline.discovery")
    async def run(self, keywords: list[str], channel: EventChannel) -> None:
        started = time.monotonic()
        succeeded: list[str] = []
        failed: list[str] = []
        pipeline_ids: list[str] = []
        profiles_found = 0

        for keyword in keywords:
            pipeline = DiscoveryPipeline.create(keyword)
            pipeline_ids.append(pipeline.id)
            self._register(channel, pipeline)
            try:
                profiles = await self._run_keyword(channel, pipeline)
            except asyncio.CancelledError:
                self._abort(channel, CANCELLED_MESSAGE)
                raise
            except Exception as e:
                # Isolated: recorded on the pipeline, siblings keep going
                logger.warning("Discovery failed for keyword", keyword=keyword, error=str(e))
                self._abort(channel, str(e))
                failed.append(keyword)
            else:
                succeeded.append(keyword)
                profiles_found += len(profiles)

        channel.emit(
            CompleteEvent(
                data=CompleteData(
                    success=not failed,
                    summary={
                        "keywords": len(keywords),
                        "succeeded": succeeded,
                        "failed": failed,
                        "profiles": profiles_found,
                        "pipelineIds": pipeline_ids,
                        "durationSeconds": round(time.monotonic() - started, 3),
                    },
                )
            )
        )

    async def _run_keyword(self, channel: EventChannel, pipeline: DiscoveryPipeline) -> list[dict[str, Any]]:
        keyword = pipeline.keyword
        on_log = self._on_log_line(channel, keyword)
        on_retry = self._on_retry(channel, keyword)
        self._commit(channel, pipeline.start())

        search = await self._step(
            channel,
            "search",
            lambda: self.gateway.run_actor(
                self.config.search_actor, self._search_input(keyword), on_log, on_retry
            ),
        )
        handles = await self._step(
            channel, "extract-handles", lambda: extract_handles(search.items, self.config.platform)
        )
        profiles = await self._step(
            channel, "profile-scrape", lambda: self._scrape_profiles(handles, on_log, on_retry)
        )
        return await self._step(
            channel, "keyword-filter", lambda: filter_profiles(profiles, [keyword]), final=True
        )

    async def _step(
        self,
        channel: EventChannel,
        step_id: str,
        work: Callable[[], Any],
        final: bool = False,
    ) -> Any:
        self._commit(channel, self._pipeline.start_step(step_id), step_id)
        try:
            result = work()
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._commit(channel, self._pipeline.fail_step(step_id, str(e)), step_id)
            raise

        items = result.items if isinstance(result, ActorResult) else result
        self._commit(
            channel,
            self._pipeline.complete_step(step_id, len(items), results=items if final else None),
            step_id,
        )
        return result

    async def _scrape_profiles(
        self, handles: list[str], on_log: Callable[[str], None], on_retry: RetryObserver
    ) -> list[dict[str, Any]]:
        if not handles:
            return []
        result = await self.gateway.run_actor(
            self.config.profile_actor, self._profile_input(handles), on_log, on_retry
        )
        return result.items

    def _search_input(self, keyword: str) -> dict[str, Any]:
        site = "tiktok.com" if self.config.platform == "tiktok" else f"{self.config.platform}.com"
        return {
            "queries": f"site:{site} {keyword}",
            "resultsPerPage": self.config.results_per_query,
            "maxPagesPerQuery": 1,
        }

    def _profile_input(self, handles: list[str]) -> dict[str, Any]:
        if self.config.platform == "tiktok":
            return {"profiles": handles, "resultsPerPage": 1}
        return {
            "directUrls": [f"https://www.instagram.com/{h}/" for h in handles],
            "resultsType": "details",
            "resultsLimit": len(handles),
        }


class MetricsRunner(_RunDriver):
    """30-day metrics: scrape posts, reduce per handle, save profiles."""

    kind = "metrics"

    def __init__(
        self,
        gateway: JobGateway,
        registry: PipelineRegistry,
        sink: ProfileSink,
        config: ScraperConfig | None = None,
    ):
        super().__init__(gateway, registry, config)
        self.sink = sink

    @trace_span("pipeline.metrics")
    async def run(self, handles: list[str], channel: EventChannel) -> None:
        pipeline = MetricsPipeline.create(handles)
        self._register(channel, pipeline)
        try:
            await self._run_pipeline(channel, pipeline)
        except asyncio.CancelledError:
            self._abort(channel, CANCELLED_MESSAGE)
            raise
        except Exception as e:
            logger.warning("Metrics pipeline failed", pipeline_id=pipeline.id, error=str(e))
            self._abort(channel, str(e))

        final = self._pipeline
        channel.emit(
            CompleteEvent(
                data=CompleteData(
                    success=final.status is MetricsStatus.COMPLETED,
                    summary={
                        "pipelineId": final.id,
                        "handles": list(final.handles),
                        "profiles": len(final.results),
                        "error": final.error,
                    },
                )
            )
        )

    async def _run_pipeline(self, channel: EventChannel, pipeline: MetricsPipeline) -> None:
        label = pipeline.label
        handles = list(pipeline.handles)
        since = datetime.now(UTC) - timedelta(days=self.config.metrics_window_days)

        self._commit(channel, pipeline.advance(MetricsStatus.SCRAPING_POSTS))
        scraped = await self.gateway.run_actor(
            self.config.posts_actor,
            {
                "profiles": handles,
                "resultsPerPage": self.config.posts_per_profile,
                "oldestPostDate": since.date().isoformat(),
            },
            self._on_log_line(channel, label),
            self._on_retry(channel, label),
        )
        self._publish(
            channel,
            self._pipeline.record(
                scrape_posts_dataset_id=scraped.run.dataset_id, posts_scraped=len(scraped.items)
            ),
            [],
        )

        self._commit(channel, self._pipeline.advance(MetricsStatus.REDUCING_METRICS))
        rows = reduce_metrics(scraped.items, handles, since)
        self._publish(channel, self._pipeline.record(results=rows, reduced_profiles=len(rows)), [])

        self._commit(channel, self._pipeline.advance(MetricsStatus.SAVING_PROFILES))
        saved = await self.sink.save_profiles(rows)
        self._publish(channel, self._pipeline.record(profiles_saved=saved), [])

        self._commit(channel, self._pipeline.advance(MetricsStatus.COMPLETED))
