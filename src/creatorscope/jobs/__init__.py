"""
External scraping jobs: API client, output transforms and profile sinks.
"""

from .client import HttpJobClient, JobClient, JobRun, JobRunStatus
from .sinks import InMemoryProfileSink, ProfileSink
from .transforms import (
    extract_handles,
    filter_profiles,
    normalize_handle,
    parse_handles,
    parse_keywords,
    reduce_metrics,
)

__all__ = [
    "JobClient",
    "HttpJobClient",
    "JobRun",
    "JobRunStatus",
    "ProfileSink",
    "InMemoryProfileSink",
    "extract_handles",
    "filter_profiles",
    "normalize_handle",
    "parse_handles",
    "parse_keywords",
    "reduce_metrics",
]
