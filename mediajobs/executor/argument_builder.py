"""Translate job specifications into ffmpeg execution plans.

Everything in this module is pure: specifications go in, immutable
:class:`~mediajobs.models.ExecutionPlan` objects come out, and nothing is
spawned. Invalid input raises :class:`~mediajobs.errors.ValidationError`.

Input indices are assigned in a fixed order (primary input, external audio
tracks, external subtitle tracks, chapters source) and the stream-mapping
directives refer to those indices verbatim.
"""

import logging
import re
from pathlib import Path
from typing import Optional

from ..errors import ValidationError
from ..models import (
    BaseJobSpec,
    DownloadSpec,
    EncodeSpec,
    ExecutionPlan,
    ExtractAudioSpec,
    GifSpec,
    HwAccel,
    MetadataSpec,
    Priority,
    ProgressMode,
    RateMode,
    TaskType,
    ThumbnailSpec,
    TrackDescriptor,
    TrimSpec,
    WaveformSpec,
)
from ..sanitize import (
    CHAPTER_EXTENSIONS,
    MEDIA_EXTENSIONS,
    SUBTITLE_EXTENSIONS,
    validate_input_path,
    validate_output_dir,
    validate_suffix,
)
from ..video.formats import (
    AMF_QUALITY,
    AUDIO_CODECS,
    CPU_USED,
    DEFAULT_AMF_QUALITY,
    DEFAULT_CPU_USED,
    DEFAULT_NVENC_PRESET,
    DEFAULT_QSV_PRESET,
    DEFAULT_X264_PRESET,
    EXTRACT_AUDIO_TARGETS,
    HW_ENCODERS,
    HW_PREFERENCE,
    LOSSLESS_AUDIO,
    NVENC_PRESETS,
    QSV_PRESETS,
    RESOLUTION_MENU,
    SUBTITLE_CODECS,
    VIDEO_CODECS,
    X264_PRESETS,
    AudioCodec,
    EncoderSupport,
    VideoCodec,
    hw_family_of,
)
from .command_builder import CommandBuilder, Filter, FilterGraph

logger = logging.getLogger("mediajobs")

DEFAULT_CRF = 23

_HW_ENCODER_RE = re.compile(r"^(h264|hevc|av1)_(nvenc|amf|qsv)$")
_HEIGHT_RE = re.compile(r"^(\d{3,4})p?$")
_HEIGHT_ALIASES = {"8k": 4320, "4k": 2160, "uhd": 2160, "fhd": 1080, "hd": 720}

SOURCE_AUDIO = TrackDescriptor(is_source_track=True, display_name="Source audio")
SOURCE_AUDIO_LIST = (SOURCE_AUDIO,)


# ------------------------------------------------------------------ #
#   Shared helpers                                                   #
# ------------------------------------------------------------------ #

def format_seconds(value: float) -> str:
    """Seconds as a compact decimal string for -ss/-t."""
    text = f"{value:.3f}".rstrip("0").rstrip(".")
    return text or "0"


def resolve_output(
    input_path: str,
    suffix: str,
    extension: str,
    output_folder: Optional[str] = None,
    base_dir: Optional[str] = None,
) -> tuple[str, str]:
    """Derive ``<folder>/<input stem><suffix>.<extension>``.

    The folder is the validated ``output_folder`` or, when none is given,
    the input's own directory.

    Returns:
        ``(output_path, folder)``.

    Raises:
        ValidationError: If the folder is unsafe or the result would
            overwrite the input.
    """
    source = Path(input_path)
    if output_folder:
        folder = validate_output_dir(output_folder, base_dir)
    else:
        folder = str(source.parent)

    name = f"{source.stem}{validate_suffix(suffix)}.{extension.lstrip('.')}"
    output = Path(folder) / name
    if output == source:
        raise ValidationError(f"Output would overwrite the input file: {output}")
    return str(output), folder


def resolve_height(resolution: Optional[int | str]) -> Optional[int]:
    """Clamp a requested height to the largest menu entry not above it.

    ``None``, ``"source"`` and ``"original"`` keep the source resolution.
    Requests below the smallest entry use the smallest entry.
    """
    if resolution is None:
        return None
    if isinstance(resolution, str):
        key = resolution.strip().lower()
        if key in ("", "source", "original"):
            return None
        if key in _HEIGHT_ALIASES:
            requested = _HEIGHT_ALIASES[key]
        else:
            m = _HEIGHT_RE.match(key)
            if not m:
                raise ValidationError(f"Invalid resolution: {resolution!r}")
            requested = int(m.group(1))
    else:
        requested = int(resolution)

    if requested <= 0:
        raise ValidationError(f"Invalid resolution: {resolution!r}")
    for height in RESOLUTION_MENU:
        if height <= requested:
            return height
    return RESOLUTION_MENU[-1]


def _plan(
    task_type: TaskType,
    builder: CommandBuilder,
    spec: BaseJobSpec,
    output_path: str,
    folder: str,
    duration_hint: Optional[float] = None,
    priority: Optional[Priority] = None,
    discard_output_on_failure: bool = False,
    **plan_options,
) -> ExecutionPlan:
    command = builder.build()
    return ExecutionPlan(
        task_type=task_type,
        tool=command.program,
        args=tuple(command.to_args()[1:]),
        inputs=tuple(command.inputs),
        stream_maps=tuple(command.map_args()),
        output_path=output_path,
        output_folder=folder,
        duration_hint=duration_hint,
        priority=priority or spec.work_priority or Priority.NORMAL,
        progress_mode=ProgressMode.TRANSCODE,
        discard_output_on_failure=discard_output_on_failure,
        **plan_options,
    )


# ------------------------------------------------------------------ #
#   Encode                                                           #
# ------------------------------------------------------------------ #

def select_video_encoder(
    codec: str,
    hardware: Optional[HwAccel],
    support: Optional[EncoderSupport] = None,
) -> tuple[str, Optional[HwAccel]]:
    """Resolve a canonical codec name to an ffmpeg encoder.

    Args:
        codec: Canonical name (``h264``, ``h265``, ``vp9``, ``av1``,
            ``copy``) or an explicit hardware encoder such as ``hevc_nvenc``.
        hardware: Requested family; ``auto`` picks the first detected family
            in nvenc, qsv, amf order.
        support: Detected hardware encoders, used for ``auto``.

    Returns:
        ``(encoder, family)`` where family is None for software encoders.
    """
    name = codec.strip().lower()
    if hw_family_of(name):
        if not _HW_ENCODER_RE.match(name):
            raise ValidationError(f"Unsupported hardware encoder: {codec!r}")
        return name, hw_family_of(name)

    if name not in VIDEO_CODECS:
        raise ValidationError(
            f"Unsupported video codec: {codec!r}. Allowed: {sorted(VIDEO_CODECS)}"
        )
    software = VIDEO_CODECS[name].value
    hardware = HwAccel(hardware or HwAccel.NONE)
    if name == "copy" or hardware is HwAccel.NONE:
        return software, None

    if hardware is HwAccel.AUTO:
        support = support or EncoderSupport()
        for family in HW_PREFERENCE:
            if support.has(family) and name in HW_ENCODERS[family]:
                return HW_ENCODERS[family][name], family
        logger.info("No hardware encoder available for %s, using %s", name, software)
        return software, None

    if name in HW_ENCODERS[hardware]:
        return HW_ENCODERS[hardware][name], hardware

    logger.warning(
        "%s has no %s encoder, falling back to software %s", name, hardware.value, software
    )
    return software, None


def video_directives(
    encoder: str,
    family: Optional[HwAccel],
    preset: Optional[str],
    rate_mode: RateMode,
    crf: Optional[int],
    bitrate: Optional[int],
) -> list[str]:
    """Preset and rate-control options for ``encoder``.

    Each hardware family has its own speed vocabulary, so x264-style
    presets are translated per family with a safe default for unknown
    values.
    """
    key = (preset or "").strip().lower()
    args: list[str] = []

    if family is HwAccel.NVENC:
        value = key if re.fullmatch(r"p[1-7]", key) else NVENC_PRESETS.get(key, DEFAULT_NVENC_PRESET)
        args += ["-preset", value]
    elif family is HwAccel.AMF:
        value = key if key in ("speed", "balanced", "quality") else AMF_QUALITY.get(key, DEFAULT_AMF_QUALITY)
        args += ["-quality", value]
    elif family is HwAccel.QSV:
        args += ["-preset", QSV_PRESETS.get(key, DEFAULT_QSV_PRESET)]
    elif encoder in (VideoCodec.VP9.value, VideoCodec.AV1.value):
        args += ["-cpu-used", str(CPU_USED.get(key, DEFAULT_CPU_USED))]
    else:
        args += ["-preset", key if key in X264_PRESETS else DEFAULT_X264_PRESET]

    if rate_mode is RateMode.BITRATE:
        args += ["-b:v", f"{bitrate}k"]
        return args

    quality = str(DEFAULT_CRF if crf is None else crf)
    if family is HwAccel.NVENC:
        args += ["-rc", "vbr", "-cq", quality]
    elif family is HwAccel.QSV:
        args += ["-global_quality", quality]
    elif family is HwAccel.AMF:
        args += ["-rc", "cqp", "-qp_i", quality, "-qp_p", quality]
    elif encoder in (VideoCodec.VP9.value, VideoCodec.AV1.value):
        # Constant quality needs an unconstrained bitrate
        args += ["-crf", quality, "-b:v", "0"]
    else:
        args += ["-crf", quality]
    return args


def _register_inputs(
    builder: CommandBuilder,
    spec: EncodeSpec,
    base_dir: Optional[str],
) -> tuple[str, list[tuple[TrackDescriptor, Optional[int]]], list[int], Optional[int]]:
    """Add every input in index order and return the assigned indices."""
    source = validate_input_path(spec.input_path, base_dir, MEDIA_EXTENSIONS)
    builder.input(source)

    audio_tracks = SOURCE_AUDIO_LIST if spec.audio_tracks is None else spec.audio_tracks
    audio: list[tuple[TrackDescriptor, Optional[int]]] = []
    if _audio_enabled(spec):
        for track in audio_tracks:
            if track.is_source_track:
                audio.append((track, None))
            else:
                path = validate_input_path(track.path, base_dir, MEDIA_EXTENSIONS, "Audio track")
                audio.append((track, builder.input(path)))

    subtitles = []
    for track in spec.subtitle_tracks:
        if track.is_source_track:
            # Covered by the primary's optional subtitle map
            continue
        path = validate_input_path(track.path, base_dir, SUBTITLE_EXTENSIONS, "Subtitle track")
        subtitles.append(builder.input(path))

    chapters = None
    if spec.chapters_path:
        path = validate_input_path(spec.chapters_path, base_dir, CHAPTER_EXTENSIONS, "Chapters source")
        chapters = builder.input(path)

    return source, audio, subtitles, chapters


def _audio_enabled(spec: EncodeSpec) -> bool:
    codec = (spec.audio_codec or "none").strip().lower()
    tracks = SOURCE_AUDIO_LIST if spec.audio_tracks is None else spec.audio_tracks
    return codec != "none" and len(tracks) > 0


def build_encode_plan(
    spec: EncodeSpec,
    base_dir: Optional[str] = None,
    encoder_support: Optional[EncoderSupport] = None,
) -> ExecutionPlan:
    """Build the ffmpeg plan for a re-encode job."""
    audio_codec = (spec.audio_codec or "none").strip().lower()
    if audio_codec != "none" and audio_codec not in AUDIO_CODECS:
        raise ValidationError(
            f"Unsupported audio codec: {spec.audio_codec!r}. Allowed: {sorted(AUDIO_CODECS)}"
        )
    encoder, family = select_video_encoder(spec.codec, spec.hardware, encoder_support)
    height = None if encoder == "copy" else resolve_height(spec.resolution)

    builder = CommandBuilder()
    source, audio, subtitles, chapters = _register_inputs(builder, spec, base_dir)
    output_path, folder = resolve_output(
        source, spec.output_suffix, spec.container, spec.output_folder, base_dir
    )

    # Stream mapping
    builder.map("0:v:0")
    for track, index in audio:
        if index is None:
            builder.map(f"0:a:{track.stream_index}")
        else:
            builder.map(f"{index}:a:0")
    builder.map("0:s?")
    for index in subtitles:
        builder.map(f"{index}:s")
    if chapters is not None:
        builder.map_metadata(chapters)
        builder.map_chapters(chapters)

    # Video
    builder.video_codec(encoder)
    if encoder != "copy":
        builder.output_options(*video_directives(
            encoder, family, spec.preset, spec.rate_mode, spec.crf, spec.bitrate
        ))
        if height:
            builder.scale(-2, height)
        if spec.fps:
            builder.fps(spec.fps)

    # Audio
    if not audio:
        builder.no_audio()
    else:
        codec = AUDIO_CODECS[audio_codec]
        if codec is AudioCodec.COPY or codec in LOSSLESS_AUDIO:
            builder.audio_codec(codec.value)
        else:
            builder.audio_codec(codec.value, bitrate=spec.audio_bitrate)

    builder.subtitle_codec(SUBTITLE_CODECS.get(spec.container, "copy"))
    builder.threads(spec.threads)
    if spec.custom_args:
        builder.extra_args(*spec.custom_args.split())
    builder.output(output_path)

    return _plan(TaskType.ENCODE, builder, spec, output_path, folder)


# ------------------------------------------------------------------ #
#   Extract audio                                                    #
# ------------------------------------------------------------------ #

def build_extract_audio_plan(
    spec: ExtractAudioSpec,
    base_dir: Optional[str] = None,
) -> ExecutionPlan:
    """Build the ffmpeg plan that pulls one audio stream into its own file."""
    target = EXTRACT_AUDIO_TARGETS[spec.audio_format]
    if target.codec is AudioCodec.OPUS and spec.sample_rate not in (None, 48000):
        raise ValidationError("Opus output only supports a 48000 Hz sample rate")

    source = validate_input_path(spec.input_path, base_dir, MEDIA_EXTENSIONS)
    output_path, folder = resolve_output(
        source, spec.output_suffix, target.extension, spec.output_folder, base_dir
    )

    builder = CommandBuilder()
    builder.input(source)
    builder.map(f"0:a:{spec.stream_index}")
    builder.no_video()

    if target.codec is AudioCodec.MP3 and spec.mp3_mode == "vbr":
        builder.audio_codec(target.codec.value, quality=spec.mp3_quality)
    elif target.lossless:
        level = spec.flac_level if target.codec is AudioCodec.FLAC else None
        builder.audio_codec(target.codec.value, compression_level=level)
    else:
        builder.audio_codec(target.codec.value, bitrate=spec.bitrate or target.default_bitrate)

    if spec.sample_rate:
        builder.output_options("-ar", str(spec.sample_rate))
    builder.threads(spec.threads)
    builder.output(output_path)

    return _plan(TaskType.EXTRACT_AUDIO, builder, spec, output_path, folder)


# ------------------------------------------------------------------ #
#   Trim                                                             #
# ------------------------------------------------------------------ #

def trim_window(start_seconds: float, end_seconds: float) -> tuple[float, float]:
    """Clamp start to >= 0 and end to at least one second after start."""
    start = max(0.0, float(start_seconds))
    end = max(float(end_seconds), start + 1.0)
    return start, end


def build_trim_plan(spec: TrimSpec, base_dir: Optional[str] = None) -> ExecutionPlan:
    """Build a stream-copy cut of ``[start, end)``."""
    source = validate_input_path(spec.input_path, base_dir, MEDIA_EXTENSIONS)
    start, end = trim_window(spec.start_seconds, spec.end_seconds)
    duration = end - start

    extension = spec.container or Path(source).suffix.lstrip(".") or "mp4"
    output_path, folder = resolve_output(
        source, spec.output_suffix, extension, spec.output_folder, base_dir
    )

    builder = CommandBuilder()
    builder.input(source, options=["-ss", format_seconds(start)])
    builder.output_options("-t", format_seconds(duration))
    builder.stream_copy()
    builder.output_options("-avoid_negative_ts", "make_zero")
    builder.output(output_path)

    return _plan(TaskType.TRIM, builder, spec, output_path, folder, duration_hint=duration)


# ------------------------------------------------------------------ #
#   Video to GIF                                                     #
# ------------------------------------------------------------------ #

def gif_filter_graph(spec: GifSpec) -> FilterGraph:
    """Crop, retime and scale, then a two-branch palettegen/paletteuse graph."""
    filters = []
    if spec.crop:
        c = spec.crop
        filters.append(Filter("crop", {"": f"{c.width}:{c.height}:{c.x}:{c.y}"}))
    if spec.speed != 1.0:
        filters.append(Filter("setpts", {"": f"PTS/{spec.speed:g}"}))
    filters.append(Filter("fps", {"": spec.fps}))
    filters.append(Filter("scale", {"": f"{spec.width}:-1", "flags": "lanczos"}))
    filters[0].inputs = ["0:v"]
    filters[-1].outputs = ["v"]

    graph = FilterGraph()
    prep = graph.chain()
    for f in filters:
        prep.add(f)
    graph.chain().add_filter("split", inputs=["v"], outputs=["v1", "v2"])
    graph.chain().add_filter("palettegen", {"stats_mode": "diff"}, inputs=["v1"], outputs=["p"])
    graph.chain().add_filter("paletteuse", {"dither": "sierra2_4a"}, inputs=["v2", "p"], outputs=["out"])
    return graph


def build_gif_plan(spec: GifSpec, base_dir: Optional[str] = None) -> ExecutionPlan:
    """Build an animated-GIF conversion with a generated palette."""
    source = validate_input_path(spec.input_path, base_dir, MEDIA_EXTENSIONS)
    output_path, folder = resolve_output(
        source, spec.output_suffix, "gif", spec.output_folder, base_dir
    )

    input_options = []
    if spec.start_seconds:
        input_options += ["-ss", format_seconds(spec.start_seconds)]
    if spec.duration_seconds:
        input_options += ["-t", format_seconds(spec.duration_seconds)]

    builder = CommandBuilder()
    builder.input(source, options=input_options)
    builder.complex_filter(gif_filter_graph(spec))
    builder.map("[out]")
    builder.threads(spec.threads)
    builder.output(output_path)

    # Output timestamps run faster by the speed factor
    if spec.duration_seconds:
        return _plan(
            TaskType.GIF, builder, spec, output_path, folder,
            duration_hint=spec.duration_seconds / spec.speed,
        )
    return _plan(
        TaskType.GIF, builder, spec, output_path, folder,
        time_offset=spec.start_seconds or 0.0,
        time_scale=spec.speed,
    )


# ------------------------------------------------------------------ #
#   In-place metadata                                                #
# ------------------------------------------------------------------ #

def metadata_temp_path(source: str) -> str:
    """``clip.mp4`` -> ``clip_temp.mp4`` in the same folder."""
    path = Path(source)
    return str(path.with_name(f"{path.stem}_temp{path.suffix}"))


def build_metadata_plan(spec: MetadataSpec, base_dir: Optional[str] = None) -> ExecutionPlan:
    """Copy every stream into a temp sibling with new tags.

    The supervisor moves the temp file over the input after a clean exit
    and deletes it otherwise.
    """
    source = validate_input_path(spec.input_path, base_dir, MEDIA_EXTENSIONS)
    temp_path = metadata_temp_path(source)

    builder = CommandBuilder()
    builder.input(source)
    builder.map("0")
    builder.stream_copy()
    for key, value in spec.tags().items():
        builder.metadata(key, value)
    builder.output(temp_path)

    return _plan(
        TaskType.METADATA, builder, spec, temp_path, str(Path(source).parent),
        discard_output_on_failure=True,
        replace_target=source,
    )


# ------------------------------------------------------------------ #
#   Dispatch                                                         #
# ------------------------------------------------------------------ #

def build_plan(
    spec: BaseJobSpec,
    base_dir: Optional[str] = None,
    encoder_support: Optional[EncoderSupport] = None,
    ffmpeg_location: Optional[str] = None,
) -> ExecutionPlan:
    """Build the execution plan for any job specification.

    Args:
        spec: A validated job specification.
        base_dir: Optional containment root for every path.
        encoder_support: Detected hardware encoders for ``hardware=auto``.
        ffmpeg_location: Transcoder path handed to the downloader.

    Raises:
        ValidationError: If the specification cannot be turned into a
            safe invocation.
    """
    from ..download.builder import build_download_plan
    from ..video.thumbnails import build_thumbnail_plan, build_waveform_plan

    if isinstance(spec, EncodeSpec):
        return build_encode_plan(spec, base_dir, encoder_support)
    if isinstance(spec, ExtractAudioSpec):
        return build_extract_audio_plan(spec, base_dir)
    if isinstance(spec, TrimSpec):
        return build_trim_plan(spec, base_dir)
    if isinstance(spec, GifSpec):
        return build_gif_plan(spec, base_dir)
    if isinstance(spec, MetadataSpec):
        return build_metadata_plan(spec, base_dir)
    if isinstance(spec, DownloadSpec):
        return build_download_plan(spec, base_dir, ffmpeg_location)
    if isinstance(spec, ThumbnailSpec):
        return build_thumbnail_plan(spec, base_dir)
    if isinstance(spec, WaveformSpec):
        return build_waveform_plan(spec, base_dir)
    raise ValidationError(f"Unsupported job type: {type(spec).__name__}")
