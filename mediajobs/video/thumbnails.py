"""Background preview images: thumbnail strips and audio waveforms.

Both run at idle priority next to a primary job and write a single image.
Sampling is coarser for bigger inputs so generation time and memory stay
bounded regardless of file size.
"""

import math
import os
from dataclasses import dataclass
from typing import Optional

from ..models import (
    ExecutionPlan,
    Priority,
    ProgressMode,
    TaskType,
    ThumbnailSpec,
    WaveformSpec,
)
from ..sanitize import MEDIA_EXTENSIONS, validate_input_path
from ..executor.argument_builder import resolve_output
from ..executor.command_builder import CommandBuilder, Filter, FilterGraph

TILE_COLUMNS = 10
DEFAULT_THUMBNAIL_COUNT = 50
MAX_THUMBNAIL_COUNT = 300
# Keep generated images well inside decoder/browser dimension limits
MAX_IMAGE_DIMENSION = 16000

_MB = 1024 * 1024

# (minimum size in MB, tile height, jpeg quality, max frame count),
# largest first; the last row catches everything smaller
SAMPLING_STEPS = (
    (600, 160, 6, 80),
    (300, 180, 5, 100),
    (120, 200, 4, 140),
    (40, 220, 3, 180),
    (0, 240, 2, 300),
)

# Gray level -> blue/green/red ramp
HEATMAP_LUT = {
    "r": "'if(lte(val,128),0,2*(val-128))'",
    "g": "'if(lte(val,128),2*val,255-2*(val-128))'",
    "b": "'if(lte(val,128),255-2*val,0)'",
}


@dataclass(frozen=True)
class ThumbnailLayout:
    """Sampling and tiling parameters for one thumbnail strip."""
    tile_height: int
    quality: int
    count: int
    columns: int
    rows: int
    fps: float
    interval: float


def sampling_for_size(size_bytes: int) -> tuple[int, int, int]:
    """Return ``(tile height, quality, max count)`` for an input size."""
    size_mb = size_bytes / _MB
    for threshold, height, quality, max_count in SAMPLING_STEPS:
        if size_mb > threshold:
            return height, quality, max_count
    _, height, quality, max_count = SAMPLING_STEPS[-1]
    return height, quality, max_count


def thumbnail_layout(
    size_bytes: int,
    duration: float,
    count: Optional[int] = None,
) -> ThumbnailLayout:
    """Compute the tile grid and frame rate for a strip.

    The grid has a fixed column count; rows follow from the requested
    count and are limited so the image height stays below
    ``MAX_IMAGE_DIMENSION``. The count is rounded up to fill the grid and
    the sampling rate is ``(count + 2) / duration`` so the last tile
    always receives a frame.
    """
    height, quality, max_count = sampling_for_size(size_bytes)
    desired = min(count or DEFAULT_THUMBNAIL_COUNT, max_count, MAX_THUMBNAIL_COUNT)
    rows = max(1, math.ceil(desired / TILE_COLUMNS))
    rows = min(rows, MAX_IMAGE_DIMENSION // height)
    actual = TILE_COLUMNS * rows
    fps = (actual + 2) / duration
    return ThumbnailLayout(
        tile_height=height,
        quality=quality,
        count=actual,
        columns=TILE_COLUMNS,
        rows=rows,
        fps=fps,
        interval=duration / actual,
    )


def build_thumbnail_plan(spec: ThumbnailSpec, base_dir: Optional[str] = None) -> ExecutionPlan:
    """Plan a single tiled image of evenly spaced frames."""
    source = validate_input_path(spec.input_path, base_dir, MEDIA_EXTENSIONS)
    layout = thumbnail_layout(os.path.getsize(source), spec.duration_seconds, spec.count)
    output_path, folder = resolve_output(
        source, spec.output_suffix, spec.image_format, spec.output_folder, base_dir
    )

    builder = CommandBuilder()
    builder.input(source)
    builder.vf(
        Filter("fps", {"": f"{layout.fps:.6f}"}),
        Filter("scale", {"": f"-1:{layout.tile_height}"}),
        Filter("tile", {"": f"{layout.columns}x{layout.rows}"}),
    )
    builder.no_audio()
    builder.frames(1)
    if spec.image_format == "jpg":
        builder.output_options("-q:v", str(layout.quality))
    builder.format("image2")
    builder.output(output_path)
    return _preview_plan(TaskType.THUMBNAIL, builder, output_path, folder, spec.duration_seconds)


def waveform_filter(spec: WaveformSpec) -> FilterGraph:
    """Spectrogram or waveform picture filter for the first audio stream."""
    size = f"{spec.width}x{spec.height}"
    graph = FilterGraph()
    chain = graph.chain()

    if spec.mode == "spectrogram":
        chain.add(Filter(
            "showspectrumpic",
            {"s": size, "legend": 0, "color": "rainbow", "scale": "log"},
            inputs=["0:a"],
        ))
        return graph

    color = "0x" + spec.palette_color.lstrip("#") if spec.palette == "accent" else "white"
    chain.add(Filter("aformat", {"channel_layouts": "mono"}, inputs=["0:a"]))
    chain.add(Filter("showwavespic", {"s": size, "colors": color, "scale": "log"}))
    if spec.palette == "heatmap":
        chain.add(Filter("format", {"": "gray"}))
        chain.add(Filter("format", {"": "rgb24"}))
        chain.add(Filter("lutrgb", dict(HEATMAP_LUT)))
    return graph


def build_waveform_plan(spec: WaveformSpec, base_dir: Optional[str] = None) -> ExecutionPlan:
    """Plan a PNG rendering of the input's audio."""
    source = validate_input_path(spec.input_path, base_dir, MEDIA_EXTENSIONS)
    output_path, folder = resolve_output(
        source, spec.output_suffix, "png", spec.output_folder, base_dir
    )

    builder = CommandBuilder()
    builder.input(source)
    builder.complex_filter(waveform_filter(spec))
    builder.frames(1)
    builder.format("image2")
    builder.output(output_path)
    return _preview_plan(TaskType.WAVEFORM, builder, output_path, folder)


def _preview_plan(
    task_type: TaskType,
    builder: CommandBuilder,
    output_path: str,
    folder: str,
    duration: Optional[float] = None,
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
        duration_hint=duration,
        priority=Priority.IDLE,
        progress_mode=ProgressMode.NONE,
        discard_output_on_failure=True,
    )
