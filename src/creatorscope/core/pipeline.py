"""
Pipeline state machines.

A pipeline is an immutable snapshot; every transition returns a new snapshot
and leaves the old one untouched. The run driver swaps snapshots into the
`PipelineRegistry`, so pollers always see a complete, self-consistent state.

Two shapes share the registry's `get_status` contract:

DiscoveryPipeline
    pending -> running -> completed | failed, over an ordered list of steps
    that each go pending -> running -> completed | failed. The pipeline is
    completed iff every step completed and failed iff some step failed. The
    first failure leaves the remaining steps pending ("never started").

MetricsPipeline
    pending -> scraping_posts -> reducing_metrics -> saving_profiles -> completed,
    with failed reachable from any non-terminal status. Progress is a fixed
    lookup over the status, never interpolated.

Terminal states are absorbing: transitions out of them raise
`InvalidTransitionError`.
"""

import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar

from .errors import InvalidTransitionError, PipelineNotFoundError


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepType(str, Enum):
    ACTOR = "actor"
    TRANSFORM = "transform"
    FILTER = "filter"


class DiscoveryStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class MetricsStatus(str, Enum):
    PENDING = "pending"
    SCRAPING_POSTS = "scraping_posts"
    REDUCING_METRICS = "reducing_metrics"
    SAVING_PROFILES = "saving_profiles"
    COMPLETED = "completed"
    FAILED = "failed"


METRICS_PROGRESS: dict[MetricsStatus, int] = {
    MetricsStatus.PENDING: 0,
    MetricsStatus.SCRAPING_POSTS: 25,
    MetricsStatus.REDUCING_METRICS: 50,
    MetricsStatus.SAVING_PROFILES: 75,
    MetricsStatus.COMPLETED: 100,
    MetricsStatus.FAILED: 0,
}

_METRICS_ORDER = (
    MetricsStatus.PENDING,
    MetricsStatus.SCRAPING_POSTS,
    MetricsStatus.REDUCING_METRICS,
    MetricsStatus.SAVING_PROFILES,
    MetricsStatus.COMPLETED,
)

# Standard discovery steps: (id, name, type)
DISCOVERY_STEPS: tuple[tuple[str, str, StepType], ...] = (
    ("search", "Search for Creator Profiles", StepType.ACTOR),
    ("extract-handles", "Extract Profile Handles", StepType.TRANSFORM),
    ("profile-scrape", "Scrape Creator Profiles", StepType.ACTOR),
    ("keyword-filter", "Filter by Keywords", StepType.FILTER),
)


def _now() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def new_pipeline_id(kind: str) -> str:
    return f"{kind}-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class PipelineStep:
    """One ordered step of a discovery pipeline."""

    id: str
    name: str
    type: StepType
    status: StepStatus = StepStatus.PENDING
    error: str | None = None
    output_count: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (StepStatus.COMPLETED, StepStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "status": self.status.value,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.output_count is not None:
            data["outputCount"] = self.output_count
        return data


@dataclass(frozen=True)
class DiscoveryPipeline:
    """Profile discovery for one keyword."""

    kind: ClassVar[str] = "discovery"

    id: str
    keyword: str
    steps: tuple[PipelineStep, ...]
    name: str = "Creator Discovery Pipeline"
    status: DiscoveryStatus = DiscoveryStatus.PENDING
    created_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None
    error: str | None = None
    results: tuple[dict[str, Any], ...] = ()

    @classmethod
    def create(cls, keyword: str, pipeline_id: str | None = None) -> "DiscoveryPipeline":
        steps = tuple(
            PipelineStep(id=step_id, name=name, type=step_type)
            for step_id, name, step_type in DISCOVERY_STEPS
        )
        return cls(id=pipeline_id or new_pipeline_id(cls.kind), keyword=keyword, steps=steps)

    @property
    def is_terminal(self) -> bool:
        return self.status in (DiscoveryStatus.COMPLETED, DiscoveryStatus.FAILED)

    @property
    def label(self) -> str:
        return self.keyword

    def step(self, step_id: str) -> PipelineStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise InvalidTransitionError(f"Unknown step '{step_id}' in pipeline {self.id}")

    def progress(self) -> float:
        completed = sum(1 for s in self.steps if s.status is StepStatus.COMPLETED)
        return completed / len(self.steps) * 100 if self.steps else 0.0

    def start(self) -> "DiscoveryPipeline":
        self._require_status(DiscoveryStatus.PENDING, "start")
        return replace(self, status=DiscoveryStatus.RUNNING)

    def start_step(self, step_id: str) -> "DiscoveryPipeline":
        self._require_status(DiscoveryStatus.RUNNING, f"start step '{step_id}'")
        index = self._index(step_id)
        step = self.steps[index]
        if step.status is not StepStatus.PENDING:
            raise InvalidTransitionError(
                f"Step '{step_id}' is {step.status.value}, cannot start it"
            )
        if any(s.status is not StepStatus.COMPLETED for s in self.steps[:index]):
            raise InvalidTransitionError(f"Step '{step_id}' started before its predecessors")
        return self._with_step(index, replace(step, status=StepStatus.RUNNING))

    def complete_step(
        self,
        step_id: str,
        output_count: int | None = None,
        results: list[dict[str, Any]] | None = None,
    ) -> "DiscoveryPipeline":
        index = self._running_index(step_id, "complete")
        updated = self._with_step(
            index,
            replace(self.steps[index], status=StepStatus.COMPLETED, output_count=output_count),
        )
        if results is not None:
            updated = replace(updated, results=tuple(results))
        if all(s.status is StepStatus.COMPLETED for s in updated.steps):
            updated = replace(updated, status=DiscoveryStatus.COMPLETED, completed_at=_now())
        return updated

    def fail_step(self, step_id: str, error: str) -> "DiscoveryPipeline":
        index = self._running_index(step_id, "fail")
        updated = self._with_step(
            index, replace(self.steps[index], status=StepStatus.FAILED, error=error)
        )
        return replace(updated, status=DiscoveryStatus.FAILED, error=error, completed_at=_now())

    def fail(self, error: str) -> "DiscoveryPipeline":
        """Fail the pipeline from outside a step (e.g. cancellation).

        The running step, or the first pending one if none is running, is
        marked failed so that `failed` always has a failed step behind it.
        """
        if self.is_terminal:
            raise InvalidTransitionError(f"Pipeline {self.id} is already {self.status.value}")

        target = next(
            (i for i, s in enumerate(self.steps) if s.status is StepStatus.RUNNING),
            next((i for i, s in enumerate(self.steps) if s.status is StepStatus.PENDING), None),
        )
        updated = self
        if target is not None:
            updated = self._with_step(
                target, replace(self.steps[target], status=StepStatus.FAILED, error=error)
            )
        return replace(updated, status=DiscoveryStatus.FAILED, error=error, completed_at=_now())

    def state_view(self) -> dict[str, Any]:
        """State-machine projection used to compare live and replayed runs."""
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status.value,
            "error": self.error,
            "steps": [s.to_dict() for s in self.steps],
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "name": self.name,
            "keyword": self.keyword,
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
            "createdAt": _iso(self.created_at),
            "completedAt": _iso(self.completed_at),
            "error": self.error,
            "results": list(self.results),
        }

    def _require_status(self, expected: DiscoveryStatus, action: str) -> None:
        if self.status is not expected:
            raise InvalidTransitionError(
                f"Cannot {action}: pipeline {self.id} is {self.status.value}"
            )

    def _index(self, step_id: str) -> int:
        for i, step in enumerate(self.steps):
            if step.id == step_id:
                return i
        raise InvalidTransitionError(f"Unknown step '{step_id}' in pipeline {self.id}")

    def _running_index(self, step_id: str, action: str) -> int:
        self._require_status(DiscoveryStatus.RUNNING, f"{action} step '{step_id}'")
        index = self._index(step_id)
        if self.steps[index].status is not StepStatus.RUNNING:
            raise InvalidTransitionError(
                f"Cannot {action} step '{step_id}': it is {self.steps[index].status.value}"
            )
        return index

    def _with_step(self, index: int, step: PipelineStep) -> "DiscoveryPipeline":
        steps = list(self.steps)
        steps[index] = step
        return replace(self, steps=tuple(steps))


@dataclass(frozen=True)
class MetricsPipeline:
    """30-day engagement metrics over a set of handles; steps live in the status."""

    kind: ClassVar[str] = "metrics"

    id: str
    handles: tuple[str, ...]
    status: MetricsStatus = MetricsStatus.PENDING
    steps: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None
    error: str | None = None
    results: tuple[dict[str, Any], ...] = ()

    @classmethod
    def create(cls, handles: list[str], pipeline_id: str | None = None) -> "MetricsPipeline":
        if not handles:
            raise ValueError("MetricsPipeline needs at least one handle")
        return cls(id=pipeline_id or new_pipeline_id(cls.kind), handles=tuple(handles))

    @property
    def is_terminal(self) -> bool:
        return self.status in (MetricsStatus.COMPLETED, MetricsStatus.FAILED)

    @property
    def label(self) -> str:
        return ",".join(self.handles)

    def progress(self) -> int:
        return METRICS_PROGRESS[self.status]

    def advance(self, to: MetricsStatus) -> "MetricsPipeline":
        """Move to the next status in the fixed order."""
        if self.is_terminal:
            raise InvalidTransitionError(f"Pipeline {self.id} is already {self.status.value}")
        expected = _METRICS_ORDER[_METRICS_ORDER.index(self.status) + 1]
        if to is not expected:
            raise InvalidTransitionError(
                f"Cannot move pipeline {self.id} from {self.status.value} to {to.value}"
            )
        if to is MetricsStatus.COMPLETED:
            return replace(self, status=to, completed_at=_now())
        return replace(self, status=to)

    def record(self, results: list[dict[str, Any]] | None = None, **step_data: Any) -> "MetricsPipeline":
        """Attach step output (dataset ids, counts) and accumulated results."""
        updated = replace(self, steps={**self.steps, **step_data})
        if results is not None:
            updated = replace(updated, results=tuple(results))
        return updated

    def fail(self, error: str) -> "MetricsPipeline":
        if self.is_terminal:
            raise InvalidTransitionError(f"Pipeline {self.id} is already {self.status.value}")
        return replace(self, status=MetricsStatus.FAILED, error=error, completed_at=_now())

    def state_view(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status.value,
            "error": self.error,
            "handles": list(self.handles),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status.value,
            "handles": list(self.handles),
            "steps": {_camel(k): v for k, v in self.steps.items()},
            "createdAt": _iso(self.created_at),
            "completedAt": _iso(self.completed_at),
            "error": self.error,
            "results": list(self.results),
        }


Pipeline = DiscoveryPipeline | MetricsPipeline


class PipelineRegistry:
    """Lookup-by-id store of pipeline snapshots.

    Only the run driver writes (`add`, `put`); everyone else reads through
    `get_status`, which returns the current immutable snapshot and never
    changes anything. Terminal pipelines beyond `max_entries` are evicted
    oldest first.
    """

    def __init__(self, max_entries: int = 1000):
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._pipelines: OrderedDict[str, Pipeline] = OrderedDict()

    def add(self, pipeline: Pipeline) -> None:
        with self._lock:
            if pipeline.id in self._pipelines:
                raise ValueError(f"Pipeline {pipeline.id} already registered")
            self._pipelines[pipeline.id] = pipeline
            self._evict()

    def put(self, pipeline: Pipeline) -> None:
        """Replace the snapshot of an already registered pipeline."""
        with self._lock:
            current = self._pipelines.get(pipeline.id)
            if current is None:
                raise PipelineNotFoundError(pipeline.id)
            if current.kind != pipeline.kind:
                raise InvalidTransitionError(
                    f"Pipeline {pipeline.id} is {current.kind}, not {pipeline.kind}"
                )
            self._pipelines[pipeline.id] = pipeline

    def get_status(self, pipeline_id: str) -> Pipeline:
        with self._lock:
            pipeline = self._pipelines.get(pipeline_id)
        if pipeline is None:
            raise PipelineNotFoundError(pipeline_id)
        return pipeline

    def list_ids(self) -> list[str]:
        with self._lock:
            return list(self._pipelines)

    def __contains__(self, pipeline_id: object) -> bool:
        with self._lock:
            return pipeline_id in self._pipelines

    def __len__(self) -> int:
        with self._lock:
            return len(self._pipelines)

    def _evict(self) -> None:
        overflow = len(self._pipelines) - self.max_entries
        if overflow <= 0:
            return
        for pipeline_id in [pid for pid, p in self._pipelines.items() if p.is_terminal][:overflow]:
            del self._pipelines[pipeline_id]
