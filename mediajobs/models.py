"""Job specifications, execution plans and pipeline events.

Job specifications are frozen pydantic models, one per task type, joined
in a discriminated union on ``task_type``. Plans and events are frozen
dataclasses produced by the pipeline itself.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Mapping, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)

from .errors import ValidationError


class TaskType(str, Enum):
    """Job kinds; each one owns a supervisor slot of the same name."""
    ENCODE = "encode"
    EXTRACT_AUDIO = "extract_audio"
    TRIM = "trim"
    GIF = "gif"
    DOWNLOAD = "download"
    THUMBNAIL = "thumbnail"
    WAVEFORM = "waveform"
    METADATA = "metadata"


class Priority(str, Enum):
    """Abstract worker priority, mapped to an OS primitive per platform."""
    IDLE = "idle"
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class HwAccel(str, Enum):
    """Hardware encoder families."""
    NONE = "none"
    AUTO = "auto"
    NVENC = "nvenc"
    AMF = "amf"
    QSV = "qsv"


class RateMode(str, Enum):
    CRF = "crf"
    BITRATE = "bitrate"


class DownloadMode(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"


class ProgressMode(str, Enum):
    """Which pattern set reads a plan's output."""
    TRANSCODE = "transcode"
    DOWNLOAD = "download"
    NONE = "none"


# ------------------------------------------------------------------ #
#   Job specifications                                               #
# ------------------------------------------------------------------ #

_AUDIO_BITRATE = r"^\d{1,4}[kK]$"


class TrackDescriptor(BaseModel):
    """An audio or subtitle stream taken from the primary input or an external file.

    Position in its list determines output stream order.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    path: Optional[str] = None
    is_source_track: bool = False
    display_name: str = ""
    # Stream index inside the primary input, for source tracks
    stream_index: int = Field(default=0, ge=0, le=99)

    @model_validator(mode="after")
    def _external_needs_path(self) -> "TrackDescriptor":
        if not self.is_source_track and not self.path:
            raise ValueError("external track requires a path")
        return self


class CropBox(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    width: int = Field(gt=0)
    height: int = Field(gt=0)
    x: int = Field(default=0, ge=0)
    y: int = Field(default=0, ge=0)


class BaseJobSpec(BaseModel):
    """Fields shared by every task type.

    ``None`` means "use the settings default" for folder, priority and
    thread count.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    task_type: str
    output_folder: Optional[str] = None
    work_priority: Optional[Priority] = None
    threads: Optional[int] = Field(default=None, ge=1, le=128)


class MediaJobSpec(BaseJobSpec):
    """A job that transforms a local input file."""
    input_path: str
    output_suffix: str = ""


class EncodeSpec(MediaJobSpec):
    task_type: Literal["encode"] = "encode"
    output_suffix: str = "_encoded"

    container: Literal["mp4", "mkv", "mov", "webm", "avi", "m4v"] = "mp4"
    codec: str = "h264"
    hardware: Optional[HwAccel] = None
    preset: Optional[str] = None
    rate_mode: RateMode = RateMode.CRF
    crf: Optional[int] = Field(default=None, ge=0, le=51)
    bitrate: Optional[int] = Field(default=None, ge=50, le=50000)
    resolution: Optional[Union[int, str]] = None
    fps: Optional[float] = Field(default=None, gt=0, le=240)

    audio_codec: Optional[str] = "aac"
    audio_bitrate: str = Field(default="192k", pattern=_AUDIO_BITRATE)
    audio_tracks: Optional[tuple[TrackDescriptor, ...]] = None
    subtitle_tracks: tuple[TrackDescriptor, ...] = ()
    chapters_path: Optional[str] = None
    custom_args: Optional[str] = None

    @model_validator(mode="after")
    def _rate_mode_needs_value(self) -> "EncodeSpec":
        if (self.rate_mode is RateMode.BITRATE and self.bitrate is None
                and self.codec != "copy"):
            raise ValueError("bitrate is required when rate_mode is 'bitrate'")
        return self


class ExtractAudioSpec(MediaJobSpec):
    task_type: Literal["extract_audio"] = "extract_audio"
    output_suffix: str = "_audio"

    audio_format: Literal["mp3", "aac", "flac", "wav", "ogg", "opus"] = "mp3"
    bitrate: Optional[str] = Field(default=None, pattern=_AUDIO_BITRATE)
    sample_rate: Optional[Literal[44100, 48000, 96000]] = None
    mp3_mode: Literal["cbr", "vbr"] = "cbr"
    mp3_quality: int = Field(default=2, ge=0, le=9)
    flac_level: Optional[int] = Field(default=None, ge=0, le=8)
    stream_index: int = Field(default=0, ge=0, le=99)


class TrimSpec(MediaJobSpec):
    task_type: Literal["trim"] = "trim"
    output_suffix: str = "_trimmed"

    start_seconds: float = 0.0
    end_seconds: float
    # Output container; defaults to the input's own extension
    container: Optional[str] = Field(default=None, pattern=r"^[A-Za-z0-9]{2,5}$")


class GifSpec(MediaJobSpec):
    task_type: Literal["gif"] = "gif"
    output_suffix: str = "_converted"

    fps: int = Field(default=15, ge=1, le=60)
    width: int = Field(default=480, ge=16, le=3840)
    speed: float = Field(default=1.0, ge=0.25, le=4.0)
    start_seconds: Optional[float] = Field(default=None, ge=0)
    duration_seconds: Optional[float] = Field(default=None, gt=0)
    crop: Optional[CropBox] = None


class DownloadSpec(BaseJobSpec):
    task_type: Literal["download"] = "download"

    url: str
    mode: DownloadMode = DownloadMode.VIDEO
    download_format: Literal["mp4", "mkv", "mov", "webm"] = "mp4"
    quality: Union[int, str] = "best"
    format_id: Optional[str] = Field(default=None, pattern=r"^[A-Za-z0-9_.+\-/]+$")
    audio_format: Literal["mp3", "m4a", "aac", "opus", "flac", "wav", "vorbis", "best"] = "mp3"
    audio_quality: Optional[str] = Field(default=None, pattern=r"^\d{1,4}[kK]?$")
    # Re-encode overrides; malformed values are dropped, not rejected
    video_codec: str = "copy"
    video_bitrate: Optional[str] = None
    fps: Optional[str] = None
    file_name: Optional[str] = None
    playlist: bool = False


class ThumbnailSpec(MediaJobSpec):
    task_type: Literal["thumbnail"] = "thumbnail"
    output_suffix: str = "_thumbs"

    duration_seconds: float = Field(gt=0)
    count: Optional[int] = Field(default=None, ge=1, le=500)
    image_format: Literal["jpg", "png"] = "jpg"


class WaveformSpec(MediaJobSpec):
    task_type: Literal["waveform"] = "waveform"
    output_suffix: str = "_waveform"

    mode: Literal["waveform", "spectrogram"] = "waveform"
    width: int = Field(default=800, ge=100, le=4000)
    height: int = Field(default=120, ge=20, le=1000)
    palette: Literal["heatmap", "accent", "mono"] = "heatmap"
    palette_color: str = Field(default="63f1af", pattern=r"^#?[0-9a-fA-F]{6}$")


_TAG_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

# Written in this order
METADATA_TAGS = ("title", "artist", "album", "date", "genre", "track", "comment")


class MetadataSpec(BaseJobSpec):
    """Rewrite container tags of ``input_path`` in place.

    Streams are copied into a ``<stem>_temp`` sibling which replaces the
    input once ffmpeg succeeds. Unset or empty tags are left untouched.
    """
    task_type: Literal["metadata"] = "metadata"

    input_path: str
    title: Optional[str] = Field(default=None, max_length=1024)
    artist: Optional[str] = Field(default=None, max_length=1024)
    album: Optional[str] = Field(default=None, max_length=1024)
    date: Optional[str] = Field(
        default=None, max_length=64, validation_alias=AliasChoices("date", "year"),
    )
    genre: Optional[str] = Field(default=None, max_length=256)
    track: Optional[str] = Field(default=None, pattern=r"^\d{1,4}(/\d{1,4})?$")
    comment: Optional[str] = Field(default=None, max_length=4096)

    @field_validator("title", "artist", "album", "date", "genre", "comment")
    @classmethod
    def _no_control_characters(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and _TAG_CONTROL_RE.search(value):
            raise ValueError("tag values must not contain control characters")
        return value

    @model_validator(mode="after")
    def _needs_a_tag(self) -> "MetadataSpec":
        if not self.tags():
            raise ValueError("at least one metadata tag is required")
        return self

    def tags(self) -> dict[str, str]:
        """Tags to write, as ffmpeg ``key=value`` pairs in a fixed order."""
        out = {}
        for name in METADATA_TAGS:
            value = getattr(self, name)
            if value is not None and value.strip():
                out[name] = value.strip()
        return out


JobSpec = Annotated[
    Union[
        EncodeSpec,
        ExtractAudioSpec,
        TrimSpec,
        GifSpec,
        DownloadSpec,
        ThumbnailSpec,
        WaveformSpec,
        MetadataSpec,
    ],
    Field(discriminator="task_type"),
]

_JOB_SPEC_ADAPTER: TypeAdapter = TypeAdapter(JobSpec)

_TASK_ALIASES = {
    "extractAudio": "extract_audio",
    "extract-audio": "extract_audio",
    "generateThumbnail": "thumbnail",
    "saveMetadata": "metadata",
    "save-metadata": "metadata",
}


def resolve_task_type(value: TaskType | str) -> TaskType:
    """Map a task type or one of its accepted aliases to :class:`TaskType`.

    Raises:
        ValidationError: If the name is unknown.
    """
    if isinstance(value, TaskType):
        return value
    try:
        return TaskType(_TASK_ALIASES.get(value, value))
    except ValueError:
        raise ValidationError(f"Unknown task type: {value!r}") from None


def format_pydantic_error(exc: PydanticValidationError) -> str:
    """Flatten pydantic's error list into one line."""
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def parse_job_spec(data: BaseJobSpec | Mapping[str, Any]) -> BaseJobSpec:
    """Validate a mapping into the matching job specification model.

    Args:
        data: A job specification model (returned unchanged) or a mapping
            with a ``task_type`` key.

    Returns:
        The validated, frozen specification.

    Raises:
        ValidationError: If the task type is unknown or any field is
            invalid.
    """
    if isinstance(data, BaseJobSpec):
        return data
    if not isinstance(data, Mapping):
        raise ValidationError(f"Job specification must be a mapping, got {type(data).__name__}")

    payload = dict(data)
    task = payload.get("task_type")
    if isinstance(task, TaskType):
        payload["task_type"] = task.value
    elif task in _TASK_ALIASES:
        payload["task_type"] = _TASK_ALIASES[task]

    try:
        return _JOB_SPEC_ADAPTER.validate_python(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid job specification: {format_pydantic_error(exc)}") from exc


# ------------------------------------------------------------------ #
#   Execution plan                                                   #
# ------------------------------------------------------------------ #

@dataclass(frozen=True)
class ExecutionPlan:
    """A fully resolved invocation of one external tool.

    ``args`` excludes the program itself; :attr:`argv` prepends the
    resolved executable (or the bare tool name before resolution).

    When no ``duration_hint`` is known, the duration detected from the
    tool's output is mapped onto the output timeline as
    ``(detected - time_offset) / time_scale``. ``replace_target`` names a
    file that the finished output is moved over.
    """
    task_type: TaskType
    tool: str
    args: tuple[str, ...]
    inputs: tuple[str, ...] = ()
    stream_maps: tuple[str, ...] = ()
    output_path: Optional[str] = None
    output_folder: Optional[str] = None
    duration_hint: Optional[float] = None
    time_offset: float = 0.0
    time_scale: float = 1.0
    replace_target: Optional[str] = None
    priority: Priority = Priority.NORMAL
    progress_mode: ProgressMode = ProgressMode.TRANSCODE
    discard_output_on_failure: bool = False
    executable: Optional[str] = None

    @property
    def slot(self) -> str:
        return self.task_type.value

    @property
    def argv(self) -> list[str]:
        return [self.executable or self.tool, *self.args]

    def with_executable(self, path: str) -> "ExecutionPlan":
        return replace(self, executable=path)


# ------------------------------------------------------------------ #
#   Events                                                           #
# ------------------------------------------------------------------ #

@dataclass(frozen=True)
class ProgressEvent:
    """Incremental progress; ``percent`` never exceeds 99."""
    kind: ClassVar[str] = "progress"

    percent: Optional[int] = None
    elapsed_timecode: Optional[str] = None
    speed: Optional[str] = None
    status: Optional[str] = None
    size: Optional[str] = None
    eta: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = {k: v for k, v in asdict(self).items() if v is not None}
        return {"kind": self.kind, **data}


@dataclass(frozen=True)
class Completed:
    kind: ClassVar[str] = "completed"

    output_path: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "output_path": self.output_path}


@dataclass(frozen=True)
class Failed:
    kind: ClassVar[str] = "error"

    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


@dataclass(frozen=True)
class Cancelled:
    kind: ClassVar[str] = "cancelled"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind}


TerminalResult = Union[Completed, Failed, Cancelled]
JobEvent = Union[ProgressEvent, Completed, Failed, Cancelled]

TERMINAL_EVENTS = (Completed, Failed, Cancelled)


def is_terminal(event: JobEvent) -> bool:
    return isinstance(event, TERMINAL_EVENTS)
