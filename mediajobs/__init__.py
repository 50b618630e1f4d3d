"""
mediajobs

Cancellable ffmpeg and yt-dlp jobs with structured progress events:
job specifications are validated and translated into argument vectors,
the resulting processes are supervised one per job slot, and their text
output is parsed into progress and terminal events.
"""

from .config import Settings, load_settings
from .dispatcher import JobDispatcher, JobEventStream
from .errors import MediaJobError, SlotBusyError, SpawnError, ValidationError
from .locator import ExecutableLocator, Tool
from .models import (
    Cancelled,
    Completed,
    DownloadSpec,
    EncodeSpec,
    ExecutionPlan,
    ExtractAudioSpec,
    Failed,
    GifSpec,
    MetadataSpec,
    Priority,
    ProgressEvent,
    TaskType,
    ThumbnailSpec,
    TrackDescriptor,
    TrimSpec,
    WaveformSpec,
    parse_job_spec,
)

__all__ = [
    "Settings",
    "load_settings",
    "JobDispatcher",
    "JobEventStream",
    "MediaJobError",
    "SlotBusyError",
    "SpawnError",
    "ValidationError",
    "ExecutableLocator",
    "Tool",
    "Cancelled",
    "Completed",
    "DownloadSpec",
    "EncodeSpec",
    "ExecutionPlan",
    "ExtractAudioSpec",
    "Failed",
    "GifSpec",
    "MetadataSpec",
    "Priority",
    "ProgressEvent",
    "TaskType",
    "ThumbnailSpec",
    "TrackDescriptor",
    "TrimSpec",
    "WaveformSpec",
    "parse_job_spec",
]
