"""yt-dlp download and metadata probing."""

from .builder import build_download_plan
from .info import VideoInfoResult, parse_info_output, probe_download_info

__all__ = [
    "build_download_plan",
    "VideoInfoResult",
    "parse_info_output",
    "probe_download_info",
]
