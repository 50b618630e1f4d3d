"""Metadata probing through yt-dlp without downloading.

yt-dlp normally prints one JSON document, but some extractors emit one
object per line instead. :func:`parse_info_output` accepts both and turns
several line objects into a synthesized playlist.
"""

import asyncio
import json
import logging
from typing import Any, Optional
from urllib.parse import parse_qs, urlsplit

from pydantic import BaseModel

from ..errors import SpawnError
from ..executor.process_manager import parse_error, run_capture
from ..locator import ExecutableLocator, Tool
from ..sanitize import validate_url

logger = logging.getLogger("mediajobs")

PREVIEW_CHARS = 200
INFO_MAX_BYTES = 16 * 1024 * 1024
INFO_TIMEOUT = 120.0


class VideoInfoResult(BaseModel):
    """A single video or a playlist, or an ``error`` when probing failed."""
    url: Optional[str] = None
    is_playlist: bool = False
    title: Optional[str] = None
    thumbnail: Optional[str] = None
    duration: Optional[str] = None
    channel: Optional[str] = None
    is_video: Optional[bool] = None
    formats: Optional[list[dict[str, Any]]] = None
    count: Optional[int] = None
    entries: Optional[list[dict[str, Any]]] = None
    error: Optional[str] = None
    raw_preview: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def format_duration(seconds: Optional[float]) -> Optional[str]:
    """``H:MM:SS`` for an hour or more, ``M:SS`` otherwise."""
    if seconds is None:
        return None
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def _preview(text: str) -> str:
    text = text.strip()
    if len(text) <= PREVIEW_CHARS:
        return text
    return text[:PREVIEW_CHARS] + "..."


def _playlist(info: dict, url: Optional[str]) -> VideoInfoResult:
    entries = info.get("entries")
    entries = [e for e in entries if isinstance(e, dict)] if isinstance(entries, list) else None
    return VideoInfoResult(
        url=url,
        is_playlist=True,
        title=info.get("title"),
        count=len(entries) if entries is not None else None,
        entries=entries,
    )


def _video(info: dict, url: Optional[str]) -> VideoInfoResult:
    duration = info.get("duration")
    vcodec = info.get("vcodec")
    formats = info.get("formats")
    return VideoInfoResult(
        url=url,
        title=info.get("title"),
        thumbnail=info.get("thumbnail"),
        duration=format_duration(duration) if isinstance(duration, (int, float)) else None,
        channel=info.get("uploader") or info.get("channel"),
        is_video=(vcodec != "none") if isinstance(vcodec, str) else None,
        formats=formats if isinstance(formats, list) else None,
    )


def _from_objects(objects: list[dict], url: Optional[str]) -> VideoInfoResult:
    for obj in objects:
        if obj.get("_type") == "playlist":
            return _playlist(obj, url)

    if len(objects) == 1:
        return _video(objects[0], url)

    # Several top-level objects: one entry per line of a playlist
    return VideoInfoResult(
        url=url,
        is_playlist=True,
        title=objects[0].get("title"),
        count=len(objects),
        entries=objects,
    )


def parse_info_output(text: str, url: Optional[str] = None) -> VideoInfoResult:
    """Parse yt-dlp ``--dump-single-json`` output.

    Tries the whole text as one JSON document first, then falls back to
    newline-delimited objects. Parse failures are returned in ``error``
    with a bounded preview of the raw output, never the whole payload.
    """
    if not text or not text.strip():
        return VideoInfoResult(url=url, error="No JSON output from yt-dlp")

    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        document = None
    if isinstance(document, dict):
        return _from_objects([document], url)

    objects = []
    last_error = "No valid JSON object found in yt-dlp output"
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as exc:
            last_error = f"Failed to parse video info: {exc}"
            continue
        if isinstance(obj, dict):
            objects.append(obj)

    if objects:
        return _from_objects(objects, url)

    preview = _preview(text)
    logger.warning("Unparseable yt-dlp output for %s: %s", url, preview)
    return VideoInfoResult(url=url, error=last_error, raw_preview=preview)


def wants_single_video(url: str) -> bool:
    """True for ``/watch?v=...&list=...`` URLs, which should not expand the list."""
    parts = urlsplit(url)
    query = parse_qs(parts.query)
    return (
        parts.path.lower() == "/watch"
        and bool(query.get("v", [""])[0])
        and bool(query.get("list", [""])[0])
    )


def info_args(url: str, disable_flat_playlist: bool = False) -> list[str]:
    args = ["--dump-single-json", "--no-download", "--no-warnings"]
    if wants_single_video(url):
        args.append("--no-playlist")
    if not disable_flat_playlist:
        args.append("--flat-playlist")
    args += ["--", url]
    return args


async def probe_download_info(
    url: str,
    locator: ExecutableLocator,
    disable_flat_playlist: bool = False,
    timeout: float = INFO_TIMEOUT,
) -> VideoInfoResult:
    """Query metadata for ``url`` without downloading anything.

    Raises:
        ValidationError: If the URL is not http(s); nothing is spawned.

    Returns:
        A :class:`VideoInfoResult`; every other failure is reported in its
        ``error`` field.
    """
    url = validate_url(url)

    executable = locator.resolve(Tool.YTDLP)
    if not executable:
        return VideoInfoResult(url=url, error="yt-dlp executable not found")

    argv = [executable, *info_args(url, disable_flat_playlist)]
    try:
        result = await run_capture(argv, max_bytes=INFO_MAX_BYTES, timeout=timeout)
    except SpawnError as exc:
        return VideoInfoResult(url=url, error=str(exc))
    except asyncio.TimeoutError:
        return VideoInfoResult(url=url, error=f"yt-dlp timed out after {timeout:g}s")

    if result.returncode != 0:
        headline = parse_error(result.stderr.splitlines())
        return VideoInfoResult(
            url=url,
            error=f"yt-dlp exited with code {result.returncode}: {_preview(headline)}",
        )
    if result.truncated:
        logger.warning("yt-dlp info output for %s exceeded %d bytes", url, INFO_MAX_BYTES)

    return parse_info_output(result.stdout, url)
