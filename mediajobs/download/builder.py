"""yt-dlp argument building.

The URL is validated before anything else is assembled, since it and the
derived file name end up on a command line. Re-encode overrides that do
not match their strict token patterns are dropped rather than passed on.
"""

import logging
import os
import re
from pathlib import Path
from typing import Optional

from ..errors import ValidationError
from ..models import (
    DownloadMode,
    DownloadSpec,
    ExecutionPlan,
    Priority,
    ProgressMode,
    TaskType,
)
from ..sanitize import sanitize_download_name, validate_output_dir, validate_url
from ..video.formats import DOWNLOAD_VIDEO_CODECS

logger = logging.getLogger("mediajobs")

YTDLP = "yt-dlp"

MIN_HEIGHT = 144
MAX_HEIGHT = 4320

_BITRATE_RE = re.compile(r"^\d+[kKmM]$")
_FPS_RE = re.compile(r"^\d+(\.\d+)?$")
_HEIGHT_RE = re.compile(r"^(\d{3,4})p?$")

# --audio-format value -> resulting file extension
_AUDIO_EXTENSIONS = {"aac": "m4a", "vorbis": "ogg"}

BASE_ARGS = ("--newline", "--progress", "--no-cache-dir", "--force-overwrites")


def default_download_folder() -> str:
    return str(Path.home() / "Downloads")


def quality_height(quality: int | str) -> Optional[int]:
    """Parse a quality selector; ``"best"`` yields None."""
    if isinstance(quality, str):
        key = quality.strip().lower()
        if key == "best":
            return None
        m = _HEIGHT_RE.match(key)
        if not m:
            raise ValidationError(f"Invalid download quality: {quality!r}")
        height = int(m.group(1))
    else:
        height = int(quality)

    if not MIN_HEIGHT <= height <= MAX_HEIGHT:
        raise ValidationError(
            f"Download quality must be between {MIN_HEIGHT} and {MAX_HEIGHT}, got {height}"
        )
    return height


def format_selector(spec: DownloadSpec) -> str:
    """The ``-f`` value for video mode."""
    if spec.format_id:
        if "+" in spec.format_id:
            return spec.format_id
        return f"{spec.format_id}+bestaudio/best"

    height = quality_height(spec.quality)
    if height is None:
        return "bestvideo+bestaudio/best"

    # Prefer the chosen container at or below the height, then any container
    ext = spec.download_format
    return (
        f"bv*[height<={height}][ext={ext}]+ba/b[height<={height}][ext={ext}]"
        f"/bv*[height<={height}]+ba/b[height<={height}]/best"
    )


def _is_set(token: Optional[str]) -> bool:
    return bool(token) and token.strip().lower() != "none"


def postprocessor_args(spec: DownloadSpec) -> Optional[str]:
    """``--postprocessor-args`` value, or None when nothing is re-encoded."""
    codec = (spec.video_codec or "copy").strip().lower()
    if not (_is_set(spec.fps) or _is_set(spec.video_bitrate) or codec != "copy"):
        return None

    ffmpeg_args = []
    if codec in DOWNLOAD_VIDEO_CODECS:
        ffmpeg_args += ["-c:v", DOWNLOAD_VIDEO_CODECS[codec]]
    else:
        logger.warning("Ignoring unsupported video codec override %r", spec.video_codec)

    if _is_set(spec.video_bitrate):
        bitrate = spec.video_bitrate.strip()
        if _BITRATE_RE.match(bitrate):
            ffmpeg_args += ["-b:v", bitrate]
        else:
            logger.warning("Dropping malformed video bitrate %r", spec.video_bitrate)

    if _is_set(spec.fps):
        fps = spec.fps.strip()
        if _FPS_RE.match(fps):
            ffmpeg_args += ["-r", fps]
        else:
            logger.warning("Dropping malformed frame rate %r", spec.fps)

    ffmpeg_args += ["-c:a", "copy"]
    return "ffmpeg:" + " ".join(ffmpeg_args)


def expected_extension(spec: DownloadSpec) -> Optional[str]:
    if spec.mode is DownloadMode.AUDIO:
        if spec.audio_format == "best":
            return None
        return _AUDIO_EXTENSIONS.get(spec.audio_format, spec.audio_format)
    return spec.download_format


def build_download_plan(
    spec: DownloadSpec,
    base_dir: Optional[str] = None,
    ffmpeg_location: Optional[str] = None,
) -> ExecutionPlan:
    """Build the yt-dlp plan for a download job.

    Args:
        spec: Download specification.
        base_dir: Optional containment root for the output folder.
        ffmpeg_location: Transcoder yt-dlp should use for merging and
            post-processing; passed only if the file exists.

    Raises:
        ValidationError: For a non-http(s) URL, an unsafe folder or an
            invalid quality selector.
    """
    url = validate_url(spec.url)
    folder = validate_output_dir(spec.output_folder or default_download_folder(), base_dir)

    output_path = None
    if spec.file_name is not None:
        name = sanitize_download_name(spec.file_name)
        template = os.path.join(folder, f"{name}.%(ext)s")
        ext = expected_extension(spec)
        if ext:
            output_path = os.path.join(folder, f"{name}.{ext}")
    else:
        template = os.path.join(folder, "%(title)s.%(ext)s")

    args = list(BASE_ARGS)
    if not spec.playlist:
        args.append("--no-playlist")
    args += ["-o", template]

    if ffmpeg_location and Path(ffmpeg_location).exists():
        args += ["--ffmpeg-location", ffmpeg_location]

    if spec.mode is DownloadMode.AUDIO:
        args += ["-x", "--audio-format", spec.audio_format]
        if spec.audio_quality:
            args += ["--audio-quality", spec.audio_quality]
    else:
        args += ["--merge-output-format", spec.download_format]
        args += ["-f", format_selector(spec)]
        pp_args = postprocessor_args(spec)
        if pp_args:
            args += ["--postprocessor-args", pp_args]

    # Nothing after the separator can be read as an option
    args += ["--", url]

    return ExecutionPlan(
        task_type=TaskType.DOWNLOAD,
        tool=YTDLP,
        args=tuple(args),
        inputs=(url,),
        output_path=output_path,
        output_folder=folder,
        priority=spec.work_priority or Priority.NORMAL,
        progress_mode=ProgressMode.DOWNLOAD,
    )
