"""Tests for the FFMPEG command model and builder."""

from mediajobs.executor.command_builder import (
    CommandBuilder,
    Filter,
    FilterChain,
    FilterGraph,
    FFMPEGCommand,
)


class TestFilter:
    """Tests for Filter class."""

    def test_simple_filter(self):
        """Named parameters render as key=value."""
        f = Filter(name="scale", params={"w": 1920, "h": 1080})
        assert f.to_string() == "scale=w=1920:h=1080"

    def test_positional_parameter(self):
        """An empty key renders the value alone."""
        f = Filter(name="scale", params={"": "-2:720"})
        assert f.to_string() == "scale=-2:720"

    def test_filter_with_labels(self):
        """Test filter with input/output labels."""
        f = Filter(name="split", inputs=["v"], outputs=["v1", "v2"])
        assert f.to_string() == "[v]split[v1][v2]"

    def test_filter_no_params(self):
        """Test filter without parameters."""
        assert Filter(name="hflip").to_string() == "hflip"


class TestFilterChainAndGraph:
    """Tests for FilterChain and FilterGraph."""

    def test_chain_joins_with_commas(self):
        chain = FilterChain()
        chain.add_filter("fps", {"": 15})
        chain.add_filter("scale", {"": "480:-1", "flags": "lanczos"})
        assert chain.to_string() == "fps=15,scale=480:-1:flags=lanczos"

    def test_empty_chain(self):
        assert FilterChain().to_string() == ""

    def test_graph_joins_with_semicolons(self):
        graph = FilterGraph()
        graph.chain().add_filter("split", inputs=["v"], outputs=["a", "b"])
        graph.chain().add_filter("palettegen", inputs=["a"], outputs=["p"])
        graph.chain()  # empty chains are skipped
        assert graph.to_string() == "[v]split[a][b];[a]palettegen[p]"


class TestFFMPEGCommand:
    """Tests for argument ordering."""

    def test_argument_order(self):
        """Maps precede output options, extra args sit right before outputs."""
        cmd = FFMPEGCommand(
            inputs=["in.mp4"],
            outputs=["out.mp4"],
            maps=[("-map", "0:v:0")],
            output_options=["-c:v", "libx264"],
            extra_args=["-tune", "film"],
        )
        assert cmd.to_args() == [
            "ffmpeg", "-y", "-i", "in.mp4",
            "-map", "0:v:0",
            "-c:v", "libx264",
            "-tune", "film",
            "out.mp4",
        ]

    def test_input_options_are_per_index(self):
        """The same file can appear twice with different options."""
        cmd = FFMPEGCommand(
            inputs=["a.mp4", "a.mp4"],
            input_options={1: ["-ss", "5"]},
        )
        assert cmd.to_args() == ["ffmpeg", "-y", "-i", "a.mp4", "-ss", "5", "-i", "a.mp4"]

    def test_to_string_quotes(self):
        cmd = FFMPEGCommand(inputs=["my file.mp4"], outputs=["out.mp4"])
        assert "'my file.mp4'" in cmd.to_string()


class TestCommandBuilder:
    """Tests for CommandBuilder class."""

    def test_input_returns_index(self):
        builder = CommandBuilder()
        assert builder.input("a.mp4") == 0
        assert builder.input("b.m4a") == 1
        assert builder.input_count == 2

    def test_maps_and_metadata(self):
        builder = CommandBuilder()
        builder.input("a.mp4")
        builder.map("0:v:0").map("0:s?").map_metadata(1).map_chapters(1)
        assert builder.build().map_args() == [
            "-map", "0:v:0", "-map", "0:s?",
            "-map_metadata", "1", "-map_chapters", "1",
        ]

    def test_stream_copy_with_metadata_tags(self):
        builder = CommandBuilder()
        builder.input("a.mp4")
        builder.stream_copy().metadata("title", "A = B").output("out.mp4")
        assert builder.build_args()[-5:] == ["-c", "copy", "-metadata", "title=A = B", "out.mp4"]

    def test_no_audio_filter_option(self):
        """Only video filters are emitted; there is no -af slot."""
        builder = CommandBuilder()
        builder.input("a.mp4")
        builder.vf("hflip").output("out.mp4")
        args = builder.build_args()
        assert "-af" not in args
        assert args[args.index("-vf") + 1] == "hflip"

    def test_audio_codec_params(self):
        builder = CommandBuilder()
        builder.audio_codec("libmp3lame", bitrate="192k", sample_rate=48000, quality=None)
        assert builder.build().output_options == ["-c:a", "libmp3lame", "-b:a", "192k", "-ar", "48000"]

    def test_scale_and_fps(self):
        builder = CommandBuilder()
        builder.input("a.mp4")
        builder.scale(-2, 720).fps(29.97).output("out.mp4")
        args = builder.build_args()
        assert args[args.index("-vf") + 1] == "scale=-2:720"
        assert args[args.index("-r") + 1] == "29.97"

    def test_threads_skipped_when_unset(self):
        builder = CommandBuilder()
        builder.threads(None)
        assert "-threads" not in builder.build_args()
        builder.threads(4)
        assert builder.build_args()[-2:] == ["-threads", "4"]

    def test_complex_filter_accepts_graph(self):
        graph = FilterGraph()
        graph.chain().add_filter("null", inputs=["0:v"], outputs=["out"])
        builder = CommandBuilder()
        builder.input("a.mp4")
        builder.complex_filter(graph).map("[out]").output("o.gif")
        args = builder.build_args()
        assert args[args.index("-filter_complex") + 1] == "[0:v]null[out]"
        assert "-vf" not in args

    def test_custom_program(self):
        assert CommandBuilder("/opt/ffmpeg").build_args()[0] == "/opt/ffmpeg"

    def test_reset(self):
        builder = CommandBuilder()
        builder.input("a.mp4")
        builder.reset()
        assert builder.build().inputs == []
