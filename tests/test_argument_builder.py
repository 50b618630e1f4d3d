"""Tests for the ffmpeg plan builders."""

import os

import pytest

from mediajobs.errors import ValidationError
from mediajobs.executor.argument_builder import (
    build_encode_plan,
    build_extract_audio_plan,
    build_gif_plan,
    build_metadata_plan,
    build_plan,
    build_trim_plan,
    format_seconds,
    gif_filter_graph,
    resolve_height,
    resolve_output,
    select_video_encoder,
    trim_window,
)
from mediajobs.executor.progress import create_parser
from mediajobs.models import (
    EncodeSpec,
    ExtractAudioSpec,
    GifSpec,
    HwAccel,
    MetadataSpec,
    Priority,
    ProgressMode,
    TaskType,
    TrimSpec,
)
from mediajobs.video.formats import EncoderSupport


def _value_after(args, flag):
    return args[args.index(flag) + 1]


def _maps(plan):
    args = list(plan.args)
    return [args[i + 1] for i, a in enumerate(args) if a == "-map"]


class TestHelpers:
    """Tests for small helpers."""

    def test_format_seconds(self):
        assert format_seconds(10) == "10"
        assert format_seconds(1.5) == "1.5"
        assert format_seconds(0) == "0"

    def test_trim_window_enforces_one_second(self):
        assert trim_window(10, 5) == (10.0, 11.0)
        assert trim_window(-3, 20) == (0.0, 20.0)

    @pytest.mark.parametrize("requested,expected", [
        (1080, 1080),
        (1000, 720),
        ("4k", 2160),
        ("720p", 720),
        (200, 360),
        (9999, 4320),
        ("source", None),
        (None, None),
    ])
    def test_resolve_height(self, requested, expected):
        assert resolve_height(requested) == expected

    def test_resolve_height_rejects_garbage(self):
        with pytest.raises(ValidationError):
            resolve_height("huge")

    def test_resolve_output_defaults_to_input_folder(self, media_file):
        path, folder = resolve_output(str(media_file), "_x", "mkv")
        assert folder == str(media_file.parent)
        assert path == os.path.join(str(media_file.parent), "clip_x.mkv")

    def test_resolve_output_refuses_overwrite(self, media_file):
        with pytest.raises(ValidationError, match="overwrite"):
            resolve_output(str(media_file), "", "mp4")


class TestEncoderSelection:
    """Tests for software and hardware encoder resolution."""

    def test_software_default(self):
        assert select_video_encoder("h264", None) == ("libx264", None)

    def test_explicit_family(self):
        assert select_video_encoder("h265", HwAccel.NVENC) == ("hevc_nvenc", HwAccel.NVENC)

    def test_auto_prefers_nvenc_then_qsv(self):
        support = EncoderSupport(nvenc=False, qsv=True, amf=True)
        assert select_video_encoder("h264", HwAccel.AUTO, support) == ("h264_qsv", HwAccel.QSV)

    def test_auto_without_hardware_falls_back(self):
        assert select_video_encoder("h264", HwAccel.AUTO, EncoderSupport()) == ("libx264", None)

    def test_family_without_codec_falls_back(self):
        assert select_video_encoder("vp9", HwAccel.AMF) == ("libvpx-vp9", None)

    def test_explicit_hardware_encoder_name(self):
        assert select_video_encoder("hevc_qsv", None) == ("hevc_qsv", HwAccel.QSV)

    def test_unknown_codec(self):
        with pytest.raises(ValidationError, match="Unsupported video codec"):
            select_video_encoder("divx", None)


class TestEncodePlan:
    """Tests for build_encode_plan."""

    def test_defaults(self, media_file):
        plan = build_encode_plan(EncodeSpec(input_path=str(media_file)))
        args = list(plan.args)
        assert plan.task_type is TaskType.ENCODE
        assert plan.tool == "ffmpeg"
        assert plan.output_path == os.path.join(os.path.realpath(media_file.parent), "clip_encoded.mp4")
        assert args[-1] == plan.output_path
        assert _value_after(args, "-c:v") == "libx264"
        assert _value_after(args, "-preset") == "medium"
        assert _value_after(args, "-crf") == "23"
        assert _value_after(args, "-c:a") == "aac"
        assert _value_after(args, "-b:a") == "192k"
        assert _value_after(args, "-c:s") == "mov_text"
        assert _maps(plan) == ["0:v:0", "0:a:0", "0:s?"]
        assert plan.progress_mode is ProgressMode.TRANSCODE
        assert plan.priority is Priority.NORMAL

    def test_copy_codec_skips_video_options(self, media_file):
        spec = EncodeSpec(
            input_path=str(media_file), codec="copy", preset="slow",
            crf=18, resolution=720, fps=30,
        )
        args = list(build_encode_plan(spec).args)
        assert _value_after(args, "-c:v") == "copy"
        for flag in ("-preset", "-crf", "-b:v", "-vf", "-r"):
            assert flag not in args

    def test_bitrate_mode(self, media_file):
        spec = EncodeSpec(input_path=str(media_file), rate_mode="bitrate", bitrate=4000)
        args = list(build_encode_plan(spec).args)
        assert _value_after(args, "-b:v") == "4000k"
        assert "-crf" not in args

    def test_bitrate_mode_requires_value(self, media_file):
        with pytest.raises(ValueError, match="bitrate is required"):
            EncodeSpec(input_path=str(media_file), rate_mode="bitrate")

    def test_resolution_and_fps(self, media_file):
        spec = EncodeSpec(input_path=str(media_file), resolution=1000, fps=25)
        args = list(build_encode_plan(spec).args)
        assert _value_after(args, "-vf") == "scale=-2:720"
        assert _value_after(args, "-r") == "25"

    def test_nvenc_translates_preset(self, media_file):
        spec = EncodeSpec(input_path=str(media_file), hardware="nvenc", preset="slow", crf=20)
        args = list(build_encode_plan(spec).args)
        assert _value_after(args, "-c:v") == "h264_nvenc"
        assert _value_after(args, "-preset") == "p7"
        assert _value_after(args, "-cq") == "20"

    def test_amf_quality(self, media_file):
        spec = EncodeSpec(input_path=str(media_file), hardware="amf", preset="fast")
        args = list(build_encode_plan(spec).args)
        assert _value_after(args, "-quality") == "balanced"
        assert "-preset" not in args

    def test_auto_hardware_uses_detected_support(self, media_file):
        spec = EncodeSpec(input_path=str(media_file), hardware="auto")
        plan = build_encode_plan(spec, encoder_support=EncoderSupport(amf=True))
        assert _value_after(list(plan.args), "-c:v") == "h264_amf"

    def test_vp9_uses_cpu_used(self, media_file):
        spec = EncodeSpec(input_path=str(media_file), codec="vp9", container="webm")
        args = list(build_encode_plan(spec).args)
        assert _value_after(args, "-cpu-used") == "4"
        assert _value_after(args, "-b:v") == "0"
        assert _value_after(args, "-c:s") == "webvtt"

    def test_audio_tracks_in_order(self, media_file, make_file):
        dub = make_file("dub.m4a")
        spec = EncodeSpec(
            input_path=str(media_file),
            audio_tracks=[
                {"path": dub},
                {"is_source_track": True, "stream_index": 1},
                {"is_source_track": True},
            ],
        )
        plan = build_encode_plan(spec)
        assert plan.inputs == (os.path.realpath(media_file), os.path.realpath(dub))
        assert _maps(plan) == ["0:v:0", "1:a:0", "0:a:1", "0:a:0", "0:s?"]

    def test_empty_audio_list_disables_audio(self, media_file):
        spec = EncodeSpec(input_path=str(media_file), audio_tracks=[])
        args = list(build_encode_plan(spec).args)
        assert "-an" in args
        assert "-c:a" not in args
        assert _maps(build_encode_plan(spec)) == ["0:v:0", "0:s?"]

    def test_audio_codec_none_disables_audio(self, media_file):
        args = list(build_encode_plan(EncodeSpec(input_path=str(media_file), audio_codec="none")).args)
        assert "-an" in args

    def test_lossless_audio_has_no_bitrate(self, media_file):
        spec = EncodeSpec(input_path=str(media_file), container="mkv", audio_codec="flac")
        args = list(build_encode_plan(spec).args)
        assert _value_after(args, "-c:a") == "flac"
        assert "-b:a" not in args

    def test_unknown_audio_codec(self, media_file):
        with pytest.raises(ValidationError, match="audio codec"):
            build_encode_plan(EncodeSpec(input_path=str(media_file), audio_codec="dts"))

    def test_subtitles_and_chapters(self, media_file, make_file):
        subs = make_file("clip.en.srt")
        chapters = make_file("chapters.txt")
        spec = EncodeSpec(
            input_path=str(media_file),
            container="mkv",
            subtitle_tracks=[{"path": subs}],
            chapters_path=chapters,
        )
        plan = build_encode_plan(spec)
        args = list(plan.args)
        assert _maps(plan) == ["0:v:0", "0:a:0", "0:s?", "1:s"]
        assert _value_after(args, "-map_metadata") == "2"
        assert _value_after(args, "-map_chapters") == "2"
        assert _value_after(args, "-c:s") == "copy"

    def test_subtitle_extension_checked(self, media_file, make_file):
        bad = make_file("subs.exe")
        spec = EncodeSpec(input_path=str(media_file), subtitle_tracks=[{"path": bad}])
        with pytest.raises(ValidationError, match="extension"):
            build_encode_plan(spec)

    def test_custom_args_before_output(self, media_file):
        spec = EncodeSpec(input_path=str(media_file), custom_args="-tune film", threads=4)
        args = list(build_encode_plan(spec).args)
        assert args[-3:-1] == ["-tune", "film"]
        assert args.index("-threads") < args.index("-tune")
        assert args.index("-map") < args.index("-tune")

    def test_output_folder(self, media_file, tmp_path):
        out = tmp_path / "out"
        spec = EncodeSpec(input_path=str(media_file), output_folder=str(out), container="mkv")
        plan = build_encode_plan(spec)
        assert plan.output_folder == os.path.realpath(out)
        assert plan.output_path == os.path.join(os.path.realpath(out), "clip_encoded.mkv")

    def test_missing_input(self, tmp_path):
        with pytest.raises(ValidationError, match="not found"):
            build_encode_plan(EncodeSpec(input_path=str(tmp_path / "gone.mp4")))

    def test_base_dir_enforced(self, media_file, tmp_path):
        other = tmp_path / "jail"
        other.mkdir()
        with pytest.raises(ValidationError, match="outside"):
            build_encode_plan(EncodeSpec(input_path=str(media_file)), base_dir=str(other))

    def test_priority_carried(self, media_file):
        spec = EncodeSpec(input_path=str(media_file), work_priority="low")
        assert build_encode_plan(spec).priority is Priority.LOW


class TestExtractAudioPlan:
    """Tests for build_extract_audio_plan."""

    def test_mp3_cbr(self, media_file):
        plan = build_extract_audio_plan(ExtractAudioSpec(input_path=str(media_file)))
        args = list(plan.args)
        assert plan.output_path.endswith("clip_audio.mp3")
        assert _value_after(args, "-map") == "0:a:0"
        assert "-vn" in args
        assert _value_after(args, "-c:a") == "libmp3lame"
        assert _value_after(args, "-b:a") == "192k"

    def test_mp3_vbr(self, media_file):
        spec = ExtractAudioSpec(input_path=str(media_file), mp3_mode="vbr", mp3_quality=4)
        args = list(build_extract_audio_plan(spec).args)
        assert _value_after(args, "-q:a") == "4"
        assert "-b:a" not in args

    def test_flac_level(self, media_file):
        spec = ExtractAudioSpec(input_path=str(media_file), audio_format="flac", flac_level=8)
        args = list(build_extract_audio_plan(spec).args)
        assert _value_after(args, "-compression_level") == "8"
        assert "-b:a" not in args

    def test_aac_goes_to_m4a(self, media_file):
        spec = ExtractAudioSpec(input_path=str(media_file), audio_format="aac", stream_index=2)
        plan = build_extract_audio_plan(spec)
        assert plan.output_path.endswith(".m4a")
        assert _value_after(list(plan.args), "-map") == "0:a:2"

    def test_sample_rate(self, media_file):
        spec = ExtractAudioSpec(input_path=str(media_file), audio_format="wav", sample_rate=96000)
        args = list(build_extract_audio_plan(spec).args)
        assert _value_after(args, "-ar") == "96000"
        assert _value_after(args, "-c:a") == "pcm_s16le"

    def test_opus_rejects_44100(self, media_file):
        spec = ExtractAudioSpec(input_path=str(media_file), audio_format="opus", sample_rate=44100)
        with pytest.raises(ValidationError, match="48000"):
            build_extract_audio_plan(spec)


class TestTrimPlan:
    """Tests for build_trim_plan."""

    def test_end_before_start_gives_one_second(self, media_file):
        plan = build_trim_plan(TrimSpec(input_path=str(media_file), start_seconds=10, end_seconds=5))
        args = list(plan.args)
        assert args[args.index("-ss") + 2] == "-i"
        assert _value_after(args, "-ss") == "10"
        assert _value_after(args, "-t") == "1"
        assert _value_after(args, "-c") == "copy"
        assert plan.duration_hint == 1.0

    def test_keeps_input_container(self, media_file):
        plan = build_trim_plan(TrimSpec(input_path=str(media_file), end_seconds=30))
        assert plan.output_path.endswith("clip_trimmed.mp4")

    def test_explicit_container(self, media_file):
        plan = build_trim_plan(TrimSpec(input_path=str(media_file), end_seconds=30, container="mkv"))
        assert plan.output_path.endswith(".mkv")


class TestGifPlan:
    """Tests for the GIF filter graph and plan."""

    def test_filter_graph(self, media_file):
        graph = gif_filter_graph(GifSpec(input_path=str(media_file)))
        assert graph.to_string() == (
            "[0:v]fps=15,scale=480:-1:flags=lanczos[v];"
            "[v]split[v1][v2];"
            "[v1]palettegen=stats_mode=diff[p];"
            "[v2][p]paletteuse=dither=sierra2_4a[out]"
        )

    def test_crop_and_speed(self, media_file):
        spec = GifSpec(
            input_path=str(media_file), speed=2.0,
            crop={"width": 320, "height": 240, "x": 10, "y": 20},
        )
        assert gif_filter_graph(spec).to_string().startswith(
            "[0:v]crop=320:240:10:20,setpts=PTS/2,fps=15"
        )

    def test_plan(self, media_file):
        spec = GifSpec(input_path=str(media_file), start_seconds=3, duration_seconds=4, speed=2.0)
        plan = build_gif_plan(spec)
        args = list(plan.args)
        assert plan.output_path.endswith("clip_converted.gif")
        assert args.index("-ss") < args.index("-i")
        assert _value_after(args, "-map") == "[out]"
        assert plan.duration_hint == 2.0
        assert (plan.time_offset, plan.time_scale) == (0.0, 1.0)

    @pytest.mark.parametrize("speed, start, final_time", [
        (2.0, None, "00:00:05.00"),
        (1.0, 8.0, "00:00:02.00"),
        (0.5, 4.0, "00:00:12.00"),
    ])
    def test_open_ended_progress_reaches_end(self, media_file, speed, start, final_time):
        """Without a duration the detected input length is mapped onto the GIF timeline."""
        spec = GifSpec(input_path=str(media_file), speed=speed, start_seconds=start)
        plan = build_gif_plan(spec)
        assert plan.duration_hint is None

        parser = create_parser(plan)
        parser.feed("stderr", "  Duration: 00:00:10.00, start: 0.000000\n")
        events = parser.feed("stderr", f"frame=50 time={final_time} speed=1.0x\r")
        assert events[0].percent == 99


class TestMetadataPlan:
    """Tests for the in-place metadata rewrite plan."""

    def test_plan(self, media_file):
        spec = MetadataSpec(input_path=str(media_file), title="My Clip", year="2021", genre="")
        plan = build_metadata_plan(spec)
        source = os.path.realpath(media_file)
        temp = os.path.join(os.path.dirname(source), "clip_temp.mp4")
        assert plan.task_type is TaskType.METADATA
        assert plan.output_path == temp
        assert plan.replace_target == source
        assert plan.discard_output_on_failure
        assert list(plan.args) == [
            "-y", "-i", source,
            "-map", "0", "-c", "copy",
            "-metadata", "title=My Clip", "-metadata", "date=2021",
            temp,
        ]

    def test_missing_input(self, tmp_path):
        with pytest.raises(ValidationError, match="not found"):
            build_metadata_plan(MetadataSpec(input_path=str(tmp_path / "gone.mp4"), title="x"))

    def test_dispatched_by_build_plan(self, media_file):
        plan = build_plan(MetadataSpec(input_path=str(media_file), artist="Someone"))
        assert plan.slot == "metadata"


class TestBuildPlan:
    """Tests for the dispatching entry point."""

    def test_dispatches_on_type(self, media_file):
        plan = build_plan(TrimSpec(input_path=str(media_file), end_seconds=4))
        assert plan.task_type is TaskType.TRIM
        assert plan.slot == "trim"

    def test_argv_uses_executable(self, media_file):
        plan = build_plan(GifSpec(input_path=str(media_file)))
        assert plan.argv[0] == "ffmpeg"
        assert plan.with_executable("/opt/ffmpeg").argv[0] == "/opt/ffmpeg"
