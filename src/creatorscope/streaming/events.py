"""
Wire events of the progress stream.

Every frame on the wire is one SSE record, `data: <json>\\n\\n`, whose JSON
payload is one of four event shapes discriminated by `type`:

    output    free-text log line from an external job
    error     non-fatal problem (retry scheduled, keyword failed)
    progress  pipeline or step status transition
    complete  end of one keyword (has keyword) or of the whole run (no keyword)
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _WireModel(BaseModel):
    # camelCase on the wire, snake_case in Python
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProgressData(_WireModel):
    keyword: str
    status: str
    pipeline_id: str | None = Field(default=None, alias="pipelineId")
    kind: Literal["discovery", "metrics"] | None = None
    step: str | None = None
    error: str | None = None
    output_count: int | None = Field(default=None, alias="outputCount")


class CompleteData(_WireModel):
    success: bool
    keyword: str | None = None
    summary: dict[str, Any] | None = None


class OutputEvent(_WireModel):
    type: Literal["output"] = "output"
    data: str
    keyword: str | None = None


class ErrorEvent(_WireModel):
    type: Literal["error"] = "error"
    data: str
    keyword: str | None = None


class ProgressEvent(_WireModel):
    type: Literal["progress"] = "progress"
    data: ProgressData


class CompleteEvent(_WireModel):
    type: Literal["complete"] = "complete"
    data: CompleteData

    @property
    def is_final(self) -> bool:
        """The run-level summary: a complete event without a keyword."""
        return self.data.keyword is None


StreamEvent = Annotated[
    OutputEvent | ErrorEvent | ProgressEvent | CompleteEvent,
    Field(discriminator="type"),
]

_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


def encode_json(event: StreamEvent) -> str:
    return event.model_dump_json(by_alias=True, exclude_none=True)


def encode_sse(event: StreamEvent) -> str:
    """Frame one event as an SSE record."""
    return f"data: {encode_json(event)}\n\n"


def decode_event(payload: str | bytes | dict[str, Any]) -> StreamEvent:
    """Parse one event payload; raises pydantic.ValidationError on bad shapes."""
    if isinstance(payload, dict):
        return _adapter.validate_python(payload)
    return _adapter.validate_json(payload)
