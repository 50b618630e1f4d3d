"""FFMPEG command model and fluent builder.

The argument order produced by :meth:`FFMPEGCommand.to_args` is fixed:
program, overwrite flag, global options, inputs (each preceded by its own
options), filters, stream maps, output options, free-form extra
arguments, outputs. Extra arguments therefore always follow the mapping
directives and precede the output path.
"""

import shlex
from dataclasses import dataclass, field
from typing import Optional
from pathlib import Path


@dataclass
class Filter:
    """Represents a single FFMPEG filter."""
    name: str
    params: dict[str, str | int | float | None] = field(default_factory=dict)
    inputs: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)

    def to_string(self) -> str:
        """Convert filter to FFMPEG filter string.

        A parameter keyed by ``""`` is emitted positionally and one whose
        value is ``None`` is emitted as a bare flag.
        """
        parts = []

        for inp in self.inputs:
            parts.append(f"[{inp}]")

        if self.params:
            param_str = ":".join(
                str(v) if k == "" else (k if v is None else f"{k}={v}")
                for k, v in self.params.items()
            )
            parts.append(f"{self.name}={param_str}")
        else:
            parts.append(self.name)

        for out in self.outputs:
            parts.append(f"[{out}]")

        return "".join(parts)


@dataclass
class FilterChain:
    """A chain of filters connected in sequence."""
    filters: list[Filter] = field(default_factory=list)

    def add(self, filter_obj: Filter) -> "FilterChain":
        """Add a filter to the chain."""
        self.filters.append(filter_obj)
        return self

    def add_filter(
        self,
        name: str,
        params: Optional[dict] = None,
        inputs: Optional[list[str]] = None,
        outputs: Optional[list[str]] = None,
    ) -> "FilterChain":
        """Add a filter by parameters."""
        self.filters.append(Filter(
            name=name,
            params=params or {},
            inputs=inputs or [],
            outputs=outputs or [],
        ))
        return self

    def to_string(self) -> str:
        """Convert filter chain to FFMPEG filter string."""
        if not self.filters:
            return ""
        return ",".join(f.to_string() for f in self.filters)


@dataclass
class FilterGraph:
    """Several labelled chains joined with ``;`` for ``-filter_complex``."""
    chains: list[FilterChain] = field(default_factory=list)

    def chain(self) -> FilterChain:
        """Start a new chain and return it."""
        new_chain = FilterChain()
        self.chains.append(new_chain)
        return new_chain

    def to_string(self) -> str:
        return ";".join(c.to_string() for c in self.chains if c.filters)


@dataclass
class FFMPEGCommand:
    """Represents a complete FFMPEG command."""
    program: str = "ffmpeg"
    inputs: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    input_options: dict[int, list[str]] = field(default_factory=dict)
    maps: list[tuple[str, str]] = field(default_factory=list)
    output_options: list[str] = field(default_factory=list)
    extra_args: list[str] = field(default_factory=list)
    video_filters: FilterChain = field(default_factory=FilterChain)
    complex_filter: Optional[str] = None
    global_options: list[str] = field(default_factory=list)
    overwrite: bool = True

    def to_args(self) -> list[str]:
        """Convert command to list of arguments for subprocess."""
        args = [self.program]

        if self.overwrite:
            args.append("-y")
        args.extend(self.global_options)

        # Inputs with their options; keyed by index so the same file may
        # appear twice with different options
        for index, input_path in enumerate(self.inputs):
            args.extend(self.input_options.get(index, []))
            args.extend(["-i", input_path])

        if self.complex_filter:
            args.extend(["-filter_complex", self.complex_filter])
        else:
            vf = self.video_filters.to_string()
            if vf:
                args.extend(["-vf", vf])

        args.extend(self.map_args())
        args.extend(self.output_options)
        args.extend(self.extra_args)
        args.extend(self.outputs)

        return args

    def map_args(self) -> list[str]:
        """Mapping directives as they appear on the command line."""
        out: list[str] = []
        for flag, value in self.maps:
            out.extend([flag, value])
        return out

    def to_string(self) -> str:
        """Convert command to shell string."""
        return " ".join(shlex.quote(arg) for arg in self.to_args())


class CommandBuilder:
    """Builder for constructing FFMPEG commands."""

    def __init__(self, program: str = "ffmpeg"):
        self._program = program
        self._command = FFMPEGCommand(program=program)

    def reset(self) -> "CommandBuilder":
        """Reset the builder to initial state."""
        self._command = FFMPEGCommand(program=self._program)
        return self

    @property
    def input_count(self) -> int:
        return len(self._command.inputs)

    def input(
        self,
        path: str | Path,
        options: Optional[list[str]] = None,
    ) -> int:
        """Add an input file and return its index."""
        index = len(self._command.inputs)
        self._command.inputs.append(str(path))
        if options:
            self._command.input_options[index] = list(options)
        return index

    def output(self, path: str | Path) -> "CommandBuilder":
        """Set output file."""
        self._command.outputs.append(str(path))
        return self

    def output_options(self, *options: str) -> "CommandBuilder":
        """Add output options."""
        self._command.output_options.extend(options)
        return self

    def global_options(self, *options: str) -> "CommandBuilder":
        """Add global options."""
        self._command.global_options.extend(options)
        return self

    def map(self, spec: str) -> "CommandBuilder":
        """Add a ``-map`` stream selector such as ``0:v:0`` or ``2:a``."""
        self._command.maps.append(("-map", spec))
        return self

    def map_metadata(self, index: int) -> "CommandBuilder":
        """Take global metadata from input ``index``."""
        self._command.maps.append(("-map_metadata", str(index)))
        return self

    def map_chapters(self, index: int) -> "CommandBuilder":
        """Take chapters from input ``index``."""
        self._command.maps.append(("-map_chapters", str(index)))
        return self

    def video_codec(self, codec: str) -> "CommandBuilder":
        """Set the video codec."""
        self._command.output_options.extend(["-c:v", codec])
        return self

    def audio_codec(self, codec: str, **params) -> "CommandBuilder":
        """Set audio codec with optional parameters."""
        self._command.output_options.extend(["-c:a", codec])
        for key, value in params.items():
            if value is None:
                continue
            if key == "bitrate":
                self._command.output_options.extend(["-b:a", str(value)])
            elif key == "quality":
                self._command.output_options.extend(["-q:a", str(value)])
            elif key == "sample_rate":
                self._command.output_options.extend(["-ar", str(value)])
            elif key == "compression_level":
                self._command.output_options.extend(["-compression_level", str(value)])
        return self

    def subtitle_codec(self, codec: str) -> "CommandBuilder":
        """Set the subtitle codec."""
        self._command.output_options.extend(["-c:s", codec])
        return self

    def stream_copy(self) -> "CommandBuilder":
        """Copy every mapped stream without re-encoding."""
        self._command.output_options.extend(["-c", "copy"])
        return self

    def metadata(self, key: str, value: str) -> "CommandBuilder":
        """Set a global metadata tag on the output."""
        self._command.output_options.extend(["-metadata", f"{key}={value}"])
        return self

    def no_audio(self) -> "CommandBuilder":
        """Remove audio from output."""
        self._command.output_options.append("-an")
        return self

    def no_video(self) -> "CommandBuilder":
        """Remove video from output."""
        self._command.output_options.append("-vn")
        return self

    def vf(self, *filters: str | Filter) -> "CommandBuilder":
        """Add video filters."""
        for f in filters:
            if isinstance(f, str):
                self._command.video_filters.add_filter(f)
            else:
                self._command.video_filters.add(f)
        return self

    def scale(self, width: int | str, height: int | str, **params) -> "CommandBuilder":
        """Add scale filter (positional ``W:H``)."""
        self._command.video_filters.add(
            Filter("scale", {"": f"{width}:{height}", **params})
        )
        return self

    def fps(self, rate: int | float) -> "CommandBuilder":
        """Set output frame rate with ``-r``."""
        self._command.output_options.extend(["-r", f"{rate:g}"])
        return self

    def threads(self, count: Optional[int]) -> "CommandBuilder":
        """Limit encoder threads."""
        if count:
            self._command.output_options.extend(["-threads", str(count)])
        return self

    def complex_filter(self, filter_graph: str | FilterGraph) -> "CommandBuilder":
        """Set complex filtergraph."""
        if isinstance(filter_graph, FilterGraph):
            filter_graph = filter_graph.to_string()
        self._command.complex_filter = filter_graph
        return self

    def format(self, fmt: str) -> "CommandBuilder":
        """Set output format."""
        self._command.output_options.extend(["-f", fmt])
        return self

    def frames(self, count: int) -> "CommandBuilder":
        """Stop after ``count`` video frames."""
        self._command.output_options.extend(["-frames:v", str(count)])
        return self

    def extra_args(self, *args: str) -> "CommandBuilder":
        """Append caller-supplied arguments just before the outputs."""
        self._command.extra_args.extend(args)
        return self

    def overwrite(self, value: bool = True) -> "CommandBuilder":
        """Set overwrite flag."""
        self._command.overwrite = value
        return self

    def build(self) -> FFMPEGCommand:
        """Build and return the command."""
        return self._command

    def build_args(self) -> list[str]:
        """Build and return command as argument list."""
        return self._command.to_args()

    def build_string(self) -> str:
        """Build and return command as shell string."""
        return self._command.to_string()
