"""
Progress streaming: SSE framed JSON events from run drivers to clients.
"""

from .channel import EventChannel
from .client import SseDecoder, StreamHandle, StreamingClient
from .events import (
    CompleteData,
    CompleteEvent,
    ErrorEvent,
    OutputEvent,
    ProgressData,
    ProgressEvent,
    StreamEvent,
    decode_event,
    encode_sse,
)
from .replay import replay_events
from .session import RunSession

__all__ = [
    "EventChannel",
    "RunSession",
    "SseDecoder",
    "StreamingClient",
    "StreamHandle",
    "StreamEvent",
    "OutputEvent",
    "ErrorEvent",
    "ProgressEvent",
    "ProgressData",
    "CompleteEvent",
    "CompleteData",
    "encode_sse",
    "decode_event",
    "replay_events",
]
