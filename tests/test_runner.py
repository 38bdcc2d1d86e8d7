"""
Tests for the run drivers: the resilient job gateway, discovery and metrics
runs, keyword isolation, cancellation and stream/registry agreement.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from creatorscope.core.circuit_breaker import CircuitBreaker, CircuitState
from creatorscope.core.errors import (
    CircuitBreakerOpenError,
    ExternalServiceError,
    JobRunError,
    OperationTimeoutError,
)
from creatorscope.core.pipeline import DiscoveryStatus, MetricsStatus, StepStatus
from creatorscope.core.retry import RetryOptions
from creatorscope.core.runner import CANCELLED_MESSAGE, DiscoveryRunner, JobGateway, MetricsRunner
from creatorscope.jobs.sinks import InMemoryProfileSink
from creatorscope.streaming.events import CompleteEvent, ErrorEvent, OutputEvent, ProgressEvent
from creatorscope.streaming.replay import replay_events

SEARCH = "apify/google-search-scraper"
PROFILES = "apify/instagram-scraper"
POSTS = "clockworks/tiktok-scraper"


def search_results(actor_input):
    if "yoga" in actor_input["queries"]:
        return ExternalServiceError("Bad query", status_code=400)
    return [
        {
            "organicResults": [
                {"url": "https://www.instagram.com/fit.jane/", "title": "Jane"},
                {"url": "https://www.instagram.com/p/abc/", "description": "with @coach_mike"},
            ]
        }
    ]


PROFILE_ITEMS = [
    {"username": "fit.jane", "biography": "Fitness coach"},
    {"username": "coach_mike", "biography": "Chess"},
]


def recent_posts(actor_input):
    posted = (datetime.now(UTC) - timedelta(days=2)).isoformat()
    return [
        {"authorMeta": {"name": h, "fans": 10}, "createTimeISO": posted, "playCount": 100, "diggCount": 5}
        for h in actor_input["profiles"]
    ]


async def wait_for_call(client, name: str) -> None:
    for _ in range(1000):
        if any(call == name for call, _ in client.calls):
            return
        await asyncio.sleep(0)
    raise AssertionError(f"{name} was never called")


def assert_replay_matches(channel, registry):
    replayed = replay_events(channel.history)
    assert set(replayed) == set(registry.list_ids())
    for pipeline_id, pipeline in replayed.items():
        assert pipeline.state_view() == registry.get_status(pipeline_id).state_view()


class TestJobGateway:
    @pytest.mark.asyncio
    async def test_run_actor_follows_run_and_emits_log_lines_once(self, gateway, fake_job_client):
        fake_job_client.outputs["a"] = [{"n": 1}, {"n": 2}]
        fake_job_client.logs["a"] = ["Starting", "", "Done"]
        lines = []

        result = await gateway.run_actor("a", {"x": 1}, on_log_line=lines.append)

        assert result.items == [{"n": 1}, {"n": 2}]
        assert result.run.succeeded
        assert lines == ["Starting", "Done"]
        assert [call for call, _ in fake_job_client.calls] == [
            "start_run",
            "get_log",
            "get_run",
            "get_log",
            "list_items",
        ]

    @pytest.mark.asyncio
    async def test_log_is_not_fetched_without_listener(self, gateway, fake_job_client):
        await gateway.run_actor("a", {})

        assert "get_log" not in [call for call, _ in fake_job_client.calls]

    @pytest.mark.asyncio
    async def test_failed_run_raises(self, gateway, fake_job_client):
        fake_job_client.statuses["a"] = "FAILED"

        with pytest.raises(JobRunError) as exc_info:
            await gateway.run_actor("a", {})

        assert exc_info.value.status == "FAILED"
        assert "list_items" not in [call for call, _ in fake_job_client.calls]

    @pytest.mark.asyncio
    async def test_transient_poll_failure_is_retried_and_reported(self, gateway, fake_job_client):
        fake_job_client.get_run_errors.append(httpx.ConnectError("boom"))
        retries = []

        result = await gateway.run_actor(
            "a", {}, on_retry=lambda op, error, n: retries.append((op, str(error), n))
        )

        assert result.run.succeeded
        assert retries == [("get_run", "boom", 1)]

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, gateway, fake_job_client):
        fake_job_client.outputs["a"] = ExternalServiceError("Forbidden", status_code=403)

        with pytest.raises(ExternalServiceError):
            await gateway.run_actor("a", {})

        assert fake_job_client.calls == [("start_run", "a")]

    @pytest.mark.asyncio
    async def test_open_breaker_stops_retrying(self, fake_job_client):
        breaker = CircuitBreaker("scraper", failure_threshold=1, recovery_timeout=60.0)
        gateway = JobGateway(
            fake_job_client,
            breaker,
            RetryOptions(max_retries=3, initial_delay=0.0),
            call_timeout=1.0,
            poll_interval=0.0,
        )
        fake_job_client.get_run_errors.extend(
            ExternalServiceError("Unavailable", status_code=503) for _ in range(4)
        )

        with pytest.raises(CircuitBreakerOpenError):
            await gateway.run_actor("a", {})

        assert breaker.state is CircuitState.OPEN
        assert fake_job_client.calls == [("start_run", "a"), ("get_run", "run-1")]

    @pytest.mark.asyncio
    async def test_start_run_is_not_resent_after_it_may_have_landed(self, gateway, fake_job_client):
        for error in (
            ExternalServiceError("Unavailable", status_code=503),
            OperationTimeoutError("start_run timed out after 1s"),
            httpx.ReadTimeout("read timed out"),
        ):
            fake_job_client.calls.clear()
            fake_job_client.outputs["a"] = error

            with pytest.raises(type(error)):
                await gateway.run_actor("a", {})

            assert fake_job_client.calls == [("start_run", "a")]

    @pytest.mark.asyncio
    async def test_start_run_retried_when_never_sent(self, gateway, fake_job_client):
        attempts = []

        def refuse_once(actor_input):
            attempts.append(actor_input)
            if len(attempts) == 1:
                return httpx.ConnectError("connection refused")
            return [{"id": 1}]

        fake_job_client.outputs["a"] = refuse_once

        result = await gateway.run_actor("a", {})

        assert result.items == [{"id": 1}]
        assert [name for name, _ in fake_job_client.calls].count("start_run") == 2

    @pytest.mark.asyncio
    async def test_run_deadline(self, fake_job_client, breaker, fast_retry):
        gateway = JobGateway(
            fake_job_client, breaker, fast_retry, call_timeout=1.0, poll_interval=0.0, run_timeout=0.05
        )
        fake_job_client.gate = asyncio.Event()

        with pytest.raises(OperationTimeoutError, match="exceeded"):
            await gateway.run_actor("a", {})


class TestDiscoveryRunner:
    @pytest.fixture
    def runner(self, gateway, registry, fake_job_client):
        fake_job_client.outputs.update({SEARCH: search_results, PROFILES: PROFILE_ITEMS})
        fake_job_client.logs[SEARCH] = ["Searching"]
        return DiscoveryRunner(gateway, registry)

    @pytest.mark.asyncio
    async def test_failing_keyword_does_not_stop_siblings(self, runner, registry, channel):
        await runner.run(["fitness", "yoga"], channel)

        pipelines = {registry.get_status(pid).keyword: registry.get_status(pid) for pid in registry.list_ids()}
        fitness, yoga = pipelines["fitness"], pipelines["yoga"]

        assert fitness.status is DiscoveryStatus.COMPLETED
        assert [s.output_count for s in fitness.steps] == [1, 2, 2, 1]
        assert [p["username"] for p in fitness.results] == ["fit.jane"]

        assert yoga.status is DiscoveryStatus.FAILED
        assert yoga.error == "Bad query"
        assert yoga.step("search").status is StepStatus.FAILED
        assert yoga.step("extract-handles").status is StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_event_stream_shape(self, runner, channel):
        await runner.run(["fitness", "yoga"], channel)
        events = channel.history

        completes = [e for e in events if isinstance(e, CompleteEvent)]
        assert [(c.data.keyword, c.data.success) for c in completes] == [
            ("fitness", True),
            ("yoga", False),
            (None, False),
        ]
        assert events[-1].is_final
        summary = events[-1].data.summary
        assert summary["succeeded"] == ["fitness"]
        assert summary["failed"] == ["yoga"]
        assert summary["profiles"] == 1
        assert len(summary["pipelineIds"]) == 2

        assert OutputEvent(data="Searching", keyword="fitness") in events
        errors = [e for e in events if isinstance(e, ErrorEvent)]
        assert [e.data for e in errors] == ["Pipeline failed for 'yoga': Bad query"]

        first_progress = next(e for e in events if isinstance(e, ProgressEvent))
        assert first_progress.data.status == "pending"
        assert first_progress.data.kind == "discovery"

    @pytest.mark.asyncio
    async def test_keyword_complete_follows_its_last_progress(self, runner, channel):
        await runner.run(["fitness"], channel)
        events = channel.history

        done = next(i for i, e in enumerate(events) if isinstance(e, CompleteEvent))
        tail = events[done - 2 : done]
        assert (tail[0].data.step, tail[0].data.status) == ("keyword-filter", "completed")
        assert (tail[1].data.step, tail[1].data.status) == (None, "completed")

    @pytest.mark.asyncio
    async def test_replay_matches_registry(self, runner, registry, channel):
        await runner.run(["fitness", "yoga"], channel)

        assert_replay_matches(channel, registry)

    @pytest.mark.asyncio
    async def test_search_input(self, runner, fake_job_client, channel):
        await runner.run(["fitness"], channel)

        actor, actor_input = fake_job_client.inputs[0]
        assert actor == SEARCH
        assert actor_input["queries"] == "site:instagram.com fitness"
        profile_actor, profile_input = fake_job_client.inputs[1]
        assert profile_actor == PROFILES
        assert profile_input["directUrls"] == [
            "https://www.instagram.com/fit.jane/",
            "https://www.instagram.com/coach_mike/",
        ]

    @pytest.mark.asyncio
    async def test_no_handles_skips_profile_actor(self, runner, fake_job_client, registry, channel):
        fake_job_client.outputs[SEARCH] = []

        await runner.run(["fitness"], channel)

        assert [actor for actor, _ in fake_job_client.inputs] == [SEARCH]
        pipeline = registry.get_status(registry.list_ids()[0])
        assert pipeline.status is DiscoveryStatus.COMPLETED
        assert pipeline.results == ()

    @pytest.mark.asyncio
    async def test_retry_is_reported_on_the_stream(self, runner, fake_job_client, channel):
        fake_job_client.get_run_errors.append(httpx.ConnectError("reset"))

        await runner.run(["fitness"], channel)

        errors = [e for e in channel.history if isinstance(e, ErrorEvent)]
        assert [e.data for e in errors] == ["get_run failed (reset); retry 1/2"]
        assert errors[0].keyword == "fitness"
        assert channel.history[-1].data.success is True


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_fails_in_flight_pipeline_and_stops_calls(
        self, gateway, registry, channel, fake_job_client
    ):
        fake_job_client.outputs[SEARCH] = search_results
        fake_job_client.gate = asyncio.Event()
        runner = DiscoveryRunner(gateway, registry)

        task = asyncio.create_task(runner.run(["fitness", "yoga"], channel))
        await wait_for_call(fake_job_client, "get_run")
        calls_at_cancel = len(fake_job_client.calls)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(registry) == 1
        pipeline = registry.get_status(registry.list_ids()[0])
        assert pipeline.status is DiscoveryStatus.FAILED
        assert pipeline.error == CANCELLED_MESSAGE
        assert pipeline.step("search").status is StepStatus.FAILED

        fake_job_client.gate.set()
        await asyncio.sleep(0.01)
        assert len(fake_job_client.calls) == calls_at_cancel

        completes = [e for e in channel.history if isinstance(e, CompleteEvent)]
        assert [(c.data.keyword, c.data.success) for c in completes] == [("fitness", False)]
        assert_replay_matches(channel, registry)


class TestMetricsRunner:
    @pytest.fixture
    def sink(self):
        return InMemoryProfileSink()

    @pytest.fixture
    def runner(self, gateway, registry, sink, fake_job_client):
        fake_job_client.outputs[POSTS] = recent_posts
        return MetricsRunner(gateway, registry, sink)

    @pytest.mark.asyncio
    async def test_happy_path(self, runner, registry, sink, channel, fake_job_client):
        await runner.run(["alice", "bob"], channel)

        pipeline = registry.get_status(registry.list_ids()[0])
        assert pipeline.status is MetricsStatus.COMPLETED
        assert pipeline.steps["posts_scraped"] == 2
        assert pipeline.steps["profiles_saved"] == 2
        assert pipeline.steps["scrape_posts_dataset_id"] == "ds-run-1"
        assert [row["viewsTotal"] for row in pipeline.results] == [100, 100]
        assert sink.get_profile("bob")["posts30d"] == 1

        actor, actor_input = fake_job_client.inputs[0]
        assert actor == POSTS
        assert actor_input["profiles"] == ["alice", "bob"]

        statuses = [e.data.status for e in channel.history if isinstance(e, ProgressEvent)]
        assert statuses == ["pending", "scraping_posts", "reducing_metrics", "saving_profiles", "completed"]
        final = channel.history[-1]
        assert final.is_final
        assert final.data.success is True
        assert final.data.summary["profiles"] == 2
        assert_replay_matches(channel, registry)

    @pytest.mark.asyncio
    async def test_failed_scrape(self, runner, registry, sink, channel, fake_job_client):
        fake_job_client.statuses[POSTS] = "FAILED"

        await runner.run(["alice"], channel)

        pipeline = registry.get_status(registry.list_ids()[0])
        assert pipeline.status is MetricsStatus.FAILED
        assert "FAILED" in pipeline.error
        assert len(sink) == 0

        final = channel.history[-1]
        assert final.data.success is False
        assert final.data.summary["error"] == pipeline.error
        assert_replay_matches(channel, registry)
