"""
Rebuild pipeline state from a captured event sequence.

Only `progress` events that carry a `pipelineId` take part. A step-level
event (with `step`) drives the step transition; a pipeline-level event
drives the pipeline itself, and echoes of transitions the steps already
implied (completed, failed) are no-ops.
"""

from collections.abc import Iterable

from ..core.pipeline import (
    DiscoveryPipeline,
    DiscoveryStatus,
    MetricsPipeline,
    MetricsStatus,
    Pipeline,
)
from .events import ProgressData, ProgressEvent, StreamEvent


def replay_events(events: Iterable[StreamEvent]) -> dict[str, Pipeline]:
    pipelines: dict[str, Pipeline] = {}
    for event in events:
        if not isinstance(event, ProgressEvent) or event.data.pipeline_id is None:
            continue
        data = event.data
        current = pipelines.get(data.pipeline_id)
        if current is None:
            current = _create(data)
        pipelines[data.pipeline_id] = _apply(current, data)
    return pipelines


def _create(data: ProgressData) -> Pipeline:
    if data.kind == MetricsPipeline.kind:
        return MetricsPipeline.create(data.keyword.split(","), pipeline_id=data.pipeline_id)
    return DiscoveryPipeline.create(data.keyword, pipeline_id=data.pipeline_id)


def _apply(pipeline: Pipeline, data: ProgressData) -> Pipeline:
    if isinstance(pipeline, MetricsPipeline):
        status = MetricsStatus(data.status)
        if status is pipeline.status:
            return pipeline
        if status is MetricsStatus.FAILED:
            return pipeline.fail(data.error or "")
        return pipeline.advance(status)

    if data.step is not None:
        if data.status == "running":
            return pipeline.start_step(data.step)
        if data.status == "completed":
            return pipeline.complete_step(data.step, data.output_count)
        if data.status == "failed":
            return pipeline.fail_step(data.step, data.error or "")
        return pipeline

    status = DiscoveryStatus(data.status)
    if status is pipeline.status:
        return pipeline
    if status is DiscoveryStatus.RUNNING:
        return pipeline.start()
    if status is DiscoveryStatus.FAILED:
        return pipeline.fail(data.error or "")
    return pipeline
