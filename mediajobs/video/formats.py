"""Codec, container and preset tables shared by the argument builders."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
from pydantic import BaseModel

from ..models import HwAccel


class VideoCodec(str, Enum):
    """Software video encoders."""
    H264 = "libx264"
    H265 = "libx265"
    VP9 = "libvpx-vp9"
    AV1 = "libaom-av1"
    COPY = "copy"


class AudioCodec(str, Enum):
    """Audio encoders."""
    AAC = "aac"
    MP3 = "libmp3lame"
    OPUS = "libopus"
    VORBIS = "libvorbis"
    AC3 = "ac3"
    FLAC = "flac"
    PCM = "pcm_s16le"
    COPY = "copy"


# Canonical name -> software encoder
VIDEO_CODECS: dict[str, VideoCodec] = {
    "h264": VideoCodec.H264,
    "h265": VideoCodec.H265,
    "hevc": VideoCodec.H265,
    "vp9": VideoCodec.VP9,
    "av1": VideoCodec.AV1,
    "copy": VideoCodec.COPY,
}

# Canonical name -> encoder per hardware family
HW_ENCODERS: dict[HwAccel, dict[str, str]] = {
    HwAccel.NVENC: {"h264": "h264_nvenc", "h265": "hevc_nvenc", "hevc": "hevc_nvenc"},
    HwAccel.AMF: {"h264": "h264_amf", "h265": "hevc_amf", "hevc": "hevc_amf"},
    HwAccel.QSV: {"h264": "h264_qsv", "h265": "hevc_qsv", "hevc": "hevc_qsv"},
}

# Auto-detection preference
HW_PREFERENCE = (HwAccel.NVENC, HwAccel.QSV, HwAccel.AMF)

AUDIO_CODECS: dict[str, AudioCodec] = {
    "aac": AudioCodec.AAC,
    "opus": AudioCodec.OPUS,
    "mp3": AudioCodec.MP3,
    "vorbis": AudioCodec.VORBIS,
    "ac3": AudioCodec.AC3,
    "flac": AudioCodec.FLAC,
    "pcm_s16le": AudioCodec.PCM,
    "copy": AudioCodec.COPY,
}

# Encoders that take no bitrate
LOSSLESS_AUDIO = {AudioCodec.FLAC, AudioCodec.PCM}

# Subtitle encoder forced by the output container; others pass through
SUBTITLE_CODECS = {
    "mp4": "mov_text",
    "mov": "mov_text",
    "m4v": "mov_text",
    "webm": "webvtt",
}

# Heights offered for downscaling, largest first
RESOLUTION_MENU = (4320, 2160, 1080, 720, 480, 360)

X264_PRESETS = (
    "ultrafast", "superfast", "veryfast", "faster", "fast",
    "medium", "slow", "slower", "veryslow",
)
DEFAULT_X264_PRESET = "medium"

NVENC_PRESETS = {
    "ultrafast": "p1",
    "superfast": "p2",
    "veryfast": "p3",
    "faster": "p4",
    "fast": "p5",
    "medium": "p6",
    "slow": "p7",
    "slower": "p7",
    "veryslow": "p7",
}
DEFAULT_NVENC_PRESET = "p4"

AMF_QUALITY = {
    "ultrafast": "speed",
    "superfast": "speed",
    "veryfast": "speed",
    "faster": "speed",
    "fast": "balanced",
    "medium": "balanced",
    "slow": "quality",
    "slower": "quality",
    "veryslow": "quality",
}
DEFAULT_AMF_QUALITY = "balanced"

QSV_PRESETS = {
    "ultrafast": "veryfast",
    "superfast": "veryfast",
    "veryfast": "veryfast",
    "faster": "faster",
    "fast": "fast",
    "medium": "medium",
    "slow": "slow",
    "slower": "slower",
    "veryslow": "veryslow",
}
DEFAULT_QSV_PRESET = "medium"

# libvpx / libaom speed knob
CPU_USED = {
    "ultrafast": 8,
    "superfast": 7,
    "veryfast": 6,
    "faster": 5,
    "fast": 4,
    "medium": 3,
    "slow": 2,
    "slower": 1,
    "veryslow": 0,
}
DEFAULT_CPU_USED = 4


def hw_family_of(encoder: str) -> Optional[HwAccel]:
    """Return the hardware family an explicit encoder name belongs to."""
    for family in (HwAccel.NVENC, HwAccel.AMF, HwAccel.QSV):
        if encoder.endswith(f"_{family.value}"):
            return family
    return None


class AudioTarget(BaseModel):
    """Encoder settings for one extract-audio output format."""
    codec: AudioCodec
    extension: str
    default_bitrate: Optional[str] = None

    @property
    def lossless(self) -> bool:
        return self.codec in LOSSLESS_AUDIO


EXTRACT_AUDIO_TARGETS: dict[str, AudioTarget] = {
    "mp3": AudioTarget(codec=AudioCodec.MP3, extension="mp3", default_bitrate="192k"),
    "aac": AudioTarget(codec=AudioCodec.AAC, extension="m4a", default_bitrate="192k"),
    "flac": AudioTarget(codec=AudioCodec.FLAC, extension="flac"),
    "wav": AudioTarget(codec=AudioCodec.PCM, extension="wav"),
    "ogg": AudioTarget(codec=AudioCodec.VORBIS, extension="ogg", default_bitrate="192k"),
    "opus": AudioTarget(codec=AudioCodec.OPUS, extension="opus", default_bitrate="128k"),
}

# Re-encode overrides accepted by the downloader's post-processor
DOWNLOAD_VIDEO_CODECS: dict[str, str] = {
    "h264": "libx264",
    "h265": "libx265",
    "vp9": "libvpx-vp9",
    "av1": "libaom-av1",
    "copy": "copy",
}


@dataclass(frozen=True)
class EncoderSupport:
    """Hardware encoder families reported by ``ffmpeg -encoders``."""
    nvenc: bool = False
    amf: bool = False
    qsv: bool = False

    def has(self, family: HwAccel) -> bool:
        return bool(getattr(self, family.value, False))

    @property
    def available(self) -> list[HwAccel]:
        return [f for f in HW_PREFERENCE if self.has(f)]
