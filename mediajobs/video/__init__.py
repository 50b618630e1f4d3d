"""Codec tables, metadata probing and preview image plans."""

from .formats import AudioCodec, EncoderSupport, VideoCodec
from .analyzer import MediaAnalyzer, MediaInfo, ProbeResult

__all__ = [
    "AudioCodec",
    "EncoderSupport",
    "VideoCodec",
    "MediaAnalyzer",
    "MediaInfo",
    "ProbeResult",
]
