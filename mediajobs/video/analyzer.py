"""Media metadata probing with ffprobe, and hardware encoder detection.

Probing is best-effort: problems come back in ``ProbeResult.error``
instead of being raised.
"""

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any, Optional
from pydantic import BaseModel

from ..errors import SpawnError
from ..executor.process_manager import parse_error, run_capture
from ..locator import ExecutableLocator, Tool
from .formats import EncoderSupport

logger = logging.getLogger("mediajobs")

PROBE_MAX_BYTES = 8 * 1024 * 1024
PROBE_TIMEOUT = 30.0

_ENCODER_LINE_RE = re.compile(r"^\s*[VAS][\w.]{5}\s+(\S+)")


class StreamInfo(BaseModel):
    """Information about a single stream."""
    index: int
    codec_name: str
    codec_type: str
    codec_long_name: Optional[str] = None
    language: Optional[str] = None
    title: Optional[str] = None


class VideoStreamInfo(StreamInfo):
    """Video stream specific information."""
    width: int = 0
    height: int = 0
    pixel_format: Optional[str] = None
    frame_rate: Optional[float] = None


class AudioStreamInfo(StreamInfo):
    """Audio stream specific information."""
    sample_rate: Optional[int] = None
    channels: Optional[int] = None
    channel_layout: Optional[str] = None


class MediaInfo(BaseModel):
    """Summary of a probed file."""
    file_path: str
    file_size: int = 0
    format_name: str = "unknown"
    duration: Optional[float] = None
    bit_rate: Optional[int] = None
    video_streams: list[VideoStreamInfo] = []
    audio_streams: list[AudioStreamInfo] = []
    subtitle_streams: list[StreamInfo] = []
    chapter_count: int = 0

    @property
    def primary_video(self) -> Optional[VideoStreamInfo]:
        """Get the primary video stream."""
        return self.video_streams[0] if self.video_streams else None

    @property
    def resolution(self) -> Optional[tuple[int, int]]:
        """Get video resolution as (width, height)."""
        if self.primary_video:
            return (self.primary_video.width, self.primary_video.height)
        return None

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_streams)


class ProbeResult(BaseModel):
    """Raw ffprobe JSON plus its parsed summary, or an error."""
    data: Optional[dict[str, Any]] = None
    info: Optional[MediaInfo] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "", "N/A") else None
    except (TypeError, ValueError):
        return None


def _float_or_none(value: Any) -> Optional[float]:
    try:
        return float(value) if value not in (None, "", "N/A") else None
    except (TypeError, ValueError):
        return None


def _parse_rate(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        num, den = map(int, value.split("/"))
        return num / den if den != 0 else None
    except (ValueError, ZeroDivisionError):
        return None


def parse_probe_data(file_path: str, data: dict) -> MediaInfo:
    """Parse ffprobe JSON output into :class:`MediaInfo`."""
    format_info = data.get("format", {}) or {}
    video_streams = []
    audio_streams = []
    subtitle_streams = []

    for stream in data.get("streams", []) or []:
        tags = stream.get("tags", {}) or {}
        common = dict(
            index=stream.get("index", 0),
            codec_name=stream.get("codec_name", "unknown"),
            codec_type=stream.get("codec_type", "unknown"),
            codec_long_name=stream.get("codec_long_name"),
            language=tags.get("language"),
            title=tags.get("title"),
        )
        codec_type = stream.get("codec_type", "")
        if codec_type == "video":
            video_streams.append(VideoStreamInfo(
                **common,
                width=stream.get("width", 0),
                height=stream.get("height", 0),
                pixel_format=stream.get("pix_fmt"),
                frame_rate=_parse_rate(stream.get("avg_frame_rate")) or _parse_rate(stream.get("r_frame_rate")),
            ))
        elif codec_type == "audio":
            audio_streams.append(AudioStreamInfo(
                **common,
                sample_rate=_int_or_none(stream.get("sample_rate")),
                channels=stream.get("channels"),
                channel_layout=stream.get("channel_layout"),
            ))
        elif codec_type == "subtitle":
            subtitle_streams.append(StreamInfo(**common))

    return MediaInfo(
        file_path=file_path,
        file_size=_int_or_none(format_info.get("size")) or 0,
        format_name=format_info.get("format_name", "unknown"),
        duration=_float_or_none(format_info.get("duration")),
        bit_rate=_int_or_none(format_info.get("bit_rate")),
        video_streams=video_streams,
        audio_streams=audio_streams,
        subtitle_streams=subtitle_streams,
        chapter_count=len(data.get("chapters", []) or []),
    )


def parse_encoder_list(text: str) -> EncoderSupport:
    """Read ``ffmpeg -encoders`` output into an :class:`EncoderSupport`."""
    names = set()
    for line in text.splitlines():
        m = _ENCODER_LINE_RE.match(line)
        if m:
            names.add(m.group(1))
    return EncoderSupport(
        nvenc=bool(names & {"h264_nvenc", "hevc_nvenc"}),
        amf=bool(names & {"h264_amf", "hevc_amf"}),
        qsv=bool(names & {"h264_qsv", "hevc_qsv"}),
    )


class MediaAnalyzer:
    """Runs ffprobe/ffmpeg queries through the executable locator."""

    def __init__(self, locator: ExecutableLocator):
        self.locator = locator
        self._encoder_support: Optional[EncoderSupport] = None

    async def probe(self, path: str | Path) -> ProbeResult:
        """Probe container, stream and chapter information of ``path``."""
        ffprobe = self.locator.resolve(Tool.FFPROBE)
        if not ffprobe:
            return ProbeResult(error="ffprobe executable not found")

        argv = [
            ffprobe,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            "-show_chapters",
            str(path),
        ]
        try:
            result = await run_capture(argv, max_bytes=PROBE_MAX_BYTES, timeout=PROBE_TIMEOUT)
        except SpawnError as exc:
            return ProbeResult(error=str(exc))
        except asyncio.TimeoutError:
            return ProbeResult(error=f"ffprobe timed out after {PROBE_TIMEOUT:g}s")

        if result.returncode != 0:
            return ProbeResult(
                error=f"ffprobe failed: {parse_error(result.stderr.splitlines())}"
            )
        if not result.stdout.strip():
            return ProbeResult(error="ffprobe produced no output")
        if result.truncated:
            return ProbeResult(error=f"ffprobe output exceeded {PROBE_MAX_BYTES} bytes")

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            return ProbeResult(error=f"Could not decode ffprobe output: {exc}")
        if not isinstance(data, dict):
            return ProbeResult(error="Unexpected ffprobe output")

        return ProbeResult(data=data, info=parse_probe_data(str(path), data))

    async def detect_encoders(self, refresh: bool = False) -> EncoderSupport:
        """Hardware encoder families compiled into the local ffmpeg (cached)."""
        if self._encoder_support is not None and not refresh:
            return self._encoder_support

        support = EncoderSupport()
        ffmpeg = self.locator.resolve(Tool.FFMPEG)
        if ffmpeg:
            try:
                result = await run_capture(
                    [ffmpeg, "-hide_banner", "-encoders"], timeout=PROBE_TIMEOUT
                )
                if result.returncode == 0:
                    support = parse_encoder_list(result.stdout)
            except (SpawnError, asyncio.TimeoutError) as exc:
                logger.warning("Hardware encoder detection failed: %s", exc)

        logger.debug("Hardware encoders: %s", [f.value for f in support.available])
        self._encoder_support = support
        return support
