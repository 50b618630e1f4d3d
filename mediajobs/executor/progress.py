"""Incremental progress parsing of ffmpeg and yt-dlp text output.

Both tools write free-form text in chunks that need not end on a line
boundary (ffmpeg redraws its status line with ``\\r``). A parser keeps one
bounded :class:`LineBuffer` per stream, splits complete lines out of it
and turns the interesting ones into :class:`ProgressEvent` objects.

The regular expressions live in small frozen pattern sets so a different
tool version can be supported by passing another pattern set, without
touching the supervisor.
"""

import logging
import math
import re
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Optional

from ..models import ExecutionPlan, ProgressEvent, ProgressMode

logger = logging.getLogger("mediajobs")

DEFAULT_MAX_BUFFER = 2 * 1024 * 1024
DEFAULT_TAIL_LINES = 20

_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")


class LineBuffer:
    """Accumulates text and yields complete lines.

    The retained text never exceeds ``max_size`` characters: when an
    append would overflow, the oldest text is dropped first so the most
    recent output survives.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_BUFFER):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._pending = ""

    def __len__(self) -> int:
        return len(self._pending)

    def feed(self, text: str) -> list[str]:
        """Append ``text`` and return the complete, non-blank lines it closes."""
        if not text:
            return []

        if len(text) >= self.max_size:
            self._pending = text[-self.max_size:]
        else:
            overflow = len(self._pending) + len(text) - self.max_size
            if overflow > 0:
                self._pending = self._pending[overflow:]
            self._pending += text

        parts = _LINE_SPLIT_RE.split(self._pending)
        self._pending = parts.pop()
        return [p for p in parts if p.strip()]

    def flush(self) -> list[str]:
        """Return the trailing fragment as a final line, if any."""
        rest, self._pending = self._pending, ""
        return [rest] if rest.strip() else []


def _hms_to_seconds(hours: str, minutes: str, seconds: str) -> float:
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def format_timecode(seconds: float) -> str:
    """Format seconds as ``HH:MM:SS``."""
    total = max(0, int(seconds))
    return f"{total // 3600:02d}:{total % 3600 // 60:02d}:{total % 60:02d}"


def capped_percent(value: float) -> int:
    """Round half up and cap at 99; 100 is reserved for completion."""
    return max(0, min(99, math.floor(value + 0.5)))


class ProgressParser(ABC):
    """Stateful parser fed with raw text chunks from stdout and stderr."""

    def __init__(
        self,
        max_buffer: int = DEFAULT_MAX_BUFFER,
        tail_lines: int = DEFAULT_TAIL_LINES,
    ):
        self._buffers = {
            "stdout": LineBuffer(max_buffer),
            "stderr": LineBuffer(max_buffer),
        }
        self._tail: deque[str] = deque(maxlen=tail_lines)

    @property
    def destination(self) -> Optional[str]:
        """Output path reported by the tool itself, when it reports one."""
        return None

    @property
    def tail(self) -> list[str]:
        """Most recent diagnostic (stderr) lines."""
        return list(self._tail)

    def buffered(self, stream: str) -> int:
        return len(self._buffers[stream])

    def feed(self, stream: str, chunk: str) -> list[ProgressEvent]:
        """Consume a chunk from ``stream`` ("stdout" or "stderr")."""
        return self._consume(stream, self._buffers[stream].feed(chunk))

    def finish(self) -> list[ProgressEvent]:
        """Flush unterminated trailing lines once both streams are closed."""
        events = []
        for stream, buf in self._buffers.items():
            events.extend(self._consume(stream, buf.flush()))
        return events

    def _consume(self, stream: str, lines: list[str]) -> list[ProgressEvent]:
        events = []
        for line in lines:
            line = line.strip()
            if stream == "stderr":
                self._tail.append(line)
            event = self.parse_line(line)
            if event is not None:
                events.append(event)
        return events

    @abstractmethod
    def parse_line(self, line: str) -> Optional[ProgressEvent]:
        """Turn one complete line into an event, or None to skip it."""


class NullProgressParser(ProgressParser):
    """Collects the diagnostic tail only."""

    def parse_line(self, line: str) -> Optional[ProgressEvent]:
        return None


# ------------------------------------------------------------------ #
#   ffmpeg                                                           #
# ------------------------------------------------------------------ #

@dataclass(frozen=True)
class FFmpegPatterns:
    """Regexes for ffmpeg's stderr status output."""
    duration: re.Pattern = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
    time: re.Pattern = re.compile(r"time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
    speed: re.Pattern = re.compile(r"speed=\s*(\d+(?:\.\d+)?x)")
    size: re.Pattern = re.compile(r"L?size=\s*(\d+\s*[kKMG]i?B)")
    status_marker: re.Pattern = re.compile(r"\b(?:time|speed)=")


FFMPEG_PATTERNS = FFmpegPatterns()


class FFmpegProgressParser(ProgressParser):
    """Derives percent from ``time=`` against the detected ``Duration:``.

    Args:
        known_duration: Duration in seconds when the caller already knows
            it (trim windows, thumbnails). Disables detection from output.
        patterns: Regex set for the ffmpeg build in use.
        time_offset: Seconds of input skipped before the output starts.
        time_scale: Playback speed factor applied to the output.
    """

    def __init__(
        self,
        known_duration: Optional[float] = None,
        patterns: FFmpegPatterns = FFMPEG_PATTERNS,
        time_offset: float = 0.0,
        time_scale: float = 1.0,
        **kwargs,
    ):
        super().__init__(**kwargs)
        if time_scale <= 0:
            raise ValueError("time_scale must be positive")
        self.patterns = patterns
        self.time_offset = max(0.0, time_offset)
        self.time_scale = time_scale
        self.duration: Optional[float] = (
            known_duration if known_duration and known_duration > 0 else None
        )

    def output_duration(self, input_seconds: float) -> float:
        """Length of the output timeline for an input of ``input_seconds``."""
        return (input_seconds - self.time_offset) / self.time_scale

    def parse_line(self, line: str) -> Optional[ProgressEvent]:
        p = self.patterns

        if self.duration is None:
            m = p.duration.search(line)
            if m:
                seconds = self.output_duration(_hms_to_seconds(*m.groups()))
                if seconds > 0:
                    self.duration = seconds
                    logger.debug("Detected output duration: %.2fs", seconds)
                return None

        if not p.status_marker.search(line):
            return None

        percent = None
        timecode = None
        m = p.time.search(line)
        if m:
            elapsed = _hms_to_seconds(*m.groups())
            timecode = format_timecode(elapsed)
            if self.duration:
                percent = capped_percent(100 * elapsed / self.duration)

        speed_m = p.speed.search(line)
        size_m = p.size.search(line)
        event = ProgressEvent(
            percent=percent,
            elapsed_timecode=timecode,
            speed=speed_m.group(1) if speed_m else None,
            size=size_m.group(1).replace(" ", "") if size_m else None,
        )
        if event == ProgressEvent():
            return None
        return event


# ------------------------------------------------------------------ #
#   yt-dlp                                                           #
# ------------------------------------------------------------------ #

@dataclass(frozen=True)
class DownloadPatterns:
    """Regexes for yt-dlp's ``--newline`` console output."""
    progress: re.Pattern = re.compile(r"\[download\]\s+(\d+(?:\.\d+)?)%")
    size: re.Pattern = re.compile(r"of\s+~?\s*(\d+(?:\.\d+)?\s*[KMG]iB)")
    speed: re.Pattern = re.compile(r"at\s+(\d+(?:\.\d+)?\s*[KMG]iB/s)")
    eta: re.Pattern = re.compile(r"ETA\s+(\d{1,2}:\d{2}(?::\d{2})?)")
    tag: re.Pattern = re.compile(r"^\[([^\]]+)\]")
    destination: re.Pattern = re.compile(r"Destination:\s+(.+)$")
    merging: re.Pattern = re.compile(r'Merging formats into\s+"(.+)"$')
    already: re.Pattern = re.compile(r"^\[download\]\s+(.+?) has already been downloaded")
    error: re.Pattern = re.compile(r"^ERROR:\s*(.*)$")


DOWNLOAD_PATTERNS = DownloadPatterns()

# Bracketed yt-dlp tags -> status shown while no percentage is available
STATUS_TAGS = {
    "Merger": "Merging audio and video...",
    "ExtractAudio": "Extracting audio...",
    "info": "Extracting metadata...",
    "download": "Downloading...",
    "FixupM3u8": "Fixing container...",
    "FixupM4a": "Fixing container...",
    "VideoConvertor": "Converting video...",
    "VideoRemuxer": "Remuxing video...",
    "Metadata": "Writing metadata...",
    "hlsnative": "Fetching stream fragments...",
    "dashsegments": "Fetching stream fragments...",
    "youtube": "Contacting YouTube...",
    "generic": "Resolving URL...",
}

# Message fragments that override the tag mapping
STATUS_PHRASES = (
    ("Deleting original file", "Cleaning up temporary files..."),
    ("Fixing video timestamp", "Finalizing media timestamps..."),
)


class DownloadProgressParser(ProgressParser):
    """Status-line parser for the downloader.

    Tracks the final output file from ``Destination:``, ``Merging formats
    into`` and ``has already been downloaded`` lines.
    """

    def __init__(self, patterns: DownloadPatterns = DOWNLOAD_PATTERNS, **kwargs):
        super().__init__(**kwargs)
        self.patterns = patterns
        self._destination: Optional[str] = None

    @property
    def destination(self) -> Optional[str]:
        return self._destination

    def parse_line(self, line: str) -> Optional[ProgressEvent]:
        p = self.patterns

        m = p.error.match(line)
        if m:
            return ProgressEvent(status=f"Error: {m.group(1)}")

        for pattern in (p.merging, p.destination, p.already):
            m = pattern.search(line)
            if m:
                self._destination = m.group(1).strip().strip('"')
                break

        m = p.progress.search(line)
        if m:
            value = float(m.group(1))
            size_m = p.size.search(line)
            speed_m = p.speed.search(line)
            eta_m = p.eta.search(line)
            return ProgressEvent(
                percent=capped_percent(value),
                status="Finalizing download..." if value >= 99.9 else "Downloading...",
                size=size_m.group(1).replace(" ", "") if size_m else None,
                speed=speed_m.group(1).replace(" ", "") if speed_m else None,
                eta=eta_m.group(1) if eta_m else None,
            )

        for fragment, status in STATUS_PHRASES:
            if fragment in line:
                return ProgressEvent(status=status)

        m = p.tag.match(line)
        if m:
            tag = m.group(1)
            return ProgressEvent(status=STATUS_TAGS.get(tag, f"{tag}..."))

        return None


def create_parser(
    plan: ExecutionPlan,
    max_buffer: int = DEFAULT_MAX_BUFFER,
    tail_lines: int = DEFAULT_TAIL_LINES,
) -> ProgressParser:
    """Pick the parser matching the plan's progress mode."""
    if plan.progress_mode is ProgressMode.DOWNLOAD:
        return DownloadProgressParser(max_buffer=max_buffer, tail_lines=tail_lines)
    if plan.progress_mode is ProgressMode.TRANSCODE:
        return FFmpegProgressParser(
            known_duration=plan.duration_hint,
            time_offset=plan.time_offset,
            time_scale=plan.time_scale,
            max_buffer=max_buffer,
            tail_lines=tail_lines,
        )
    return NullProgressParser(max_buffer=max_buffer, tail_lines=tail_lines)
