"""Tests for job specification parsing, plans and events."""

import pytest

from mediajobs.errors import ValidationError
from mediajobs.models import (
    Cancelled,
    Completed,
    DownloadSpec,
    EncodeSpec,
    ExecutionPlan,
    ExtractAudioSpec,
    Failed,
    MetadataSpec,
    ProgressEvent,
    TaskType,
    ThumbnailSpec,
    TrackDescriptor,
    is_terminal,
    parse_job_spec,
    resolve_task_type,
)


class TestParseJobSpec:
    """Tests for parse_job_spec."""

    def test_discriminates_on_task_type(self):
        spec = parse_job_spec({"task_type": "encode", "input_path": "/v/a.mp4", "crf": 20})
        assert isinstance(spec, EncodeSpec)
        assert spec.crf == 20
        assert spec.output_suffix == "_encoded"

    @pytest.mark.parametrize("alias,cls", [
        ("extractAudio", ExtractAudioSpec),
        ("extract-audio", ExtractAudioSpec),
        ("generateThumbnail", ThumbnailSpec),
    ])
    def test_aliases(self, alias, cls):
        data = {"task_type": alias, "input_path": "/v/a.mp4", "duration_seconds": 10}
        if cls is ExtractAudioSpec:
            del data["duration_seconds"]
        assert isinstance(parse_job_spec(data), cls)

    def test_enum_task_type(self):
        spec = parse_job_spec({"task_type": TaskType.DOWNLOAD, "url": "https://x.org/v"})
        assert isinstance(spec, DownloadSpec)

    def test_model_passthrough(self):
        spec = EncodeSpec(input_path="/v/a.mp4")
        assert parse_job_spec(spec) is spec

    def test_unknown_task(self):
        with pytest.raises(ValidationError, match="Invalid job specification"):
            parse_job_spec({"task_type": "transmogrify"})

    def test_out_of_range(self):
        with pytest.raises(ValidationError, match="crf"):
            parse_job_spec({"task_type": "encode", "input_path": "/v/a.mp4", "crf": 60})

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError, match="bogus"):
            parse_job_spec({"task_type": "trim", "input_path": "/v/a.mp4", "end_seconds": 3, "bogus": 1})

    def test_not_a_mapping(self):
        with pytest.raises(ValidationError, match="mapping"):
            parse_job_spec(["encode"])

    def test_specs_are_frozen(self):
        spec = EncodeSpec(input_path="/v/a.mp4")
        with pytest.raises(Exception):
            spec.crf = 10


class TestResolveTaskType:
    """Tests for resolve_task_type."""

    @pytest.mark.parametrize("name,expected", [
        ("encode", TaskType.ENCODE),
        ("extractAudio", TaskType.EXTRACT_AUDIO),
        ("save-metadata", TaskType.METADATA),
        (TaskType.GIF, TaskType.GIF),
    ])
    def test_names_and_aliases(self, name, expected):
        assert resolve_task_type(name) is expected

    def test_unknown(self):
        with pytest.raises(ValidationError, match="Unknown task type"):
            resolve_task_type("transmogrify")


class TestMetadataSpec:
    """Tests for MetadataSpec."""

    def test_tags_in_fixed_order(self):
        spec = MetadataSpec(input_path="/v/a.mp4", comment=" nice ", title="Song", track="3/12")
        assert list(spec.tags().items()) == [("title", "Song"), ("track", "3/12"), ("comment", "nice")]

    def test_year_alias(self):
        spec = parse_job_spec({"task_type": "saveMetadata", "input_path": "/v/a.mp4", "year": "1999"})
        assert isinstance(spec, MetadataSpec)
        assert spec.tags() == {"date": "1999"}

    def test_requires_a_tag(self):
        with pytest.raises(ValueError, match="at least one metadata tag"):
            MetadataSpec(input_path="/v/a.mp4", title="  ")

    @pytest.mark.parametrize("value", ["bad\x00name", "carriage\rreturn", "bell\x07"])
    def test_control_characters_rejected(self, value):
        with pytest.raises(ValidationError, match="control characters"):
            parse_job_spec({"task_type": "metadata", "input_path": "/v/a.mp4", "title": value})

    def test_multiline_comment_allowed(self):
        assert MetadataSpec(input_path="/v/a.mp4", comment="line 1\nline 2").comment == "line 1\nline 2"

    def test_track_format(self):
        with pytest.raises(ValueError):
            MetadataSpec(input_path="/v/a.mp4", track="three")


class TestTrackDescriptor:
    """Tests for TrackDescriptor."""

    def test_external_requires_path(self):
        with pytest.raises(ValueError, match="requires a path"):
            TrackDescriptor()

    def test_source_track(self):
        track = TrackDescriptor(is_source_track=True, stream_index=2)
        assert track.path is None
        assert track.stream_index == 2


class TestPlanAndEvents:
    """Tests for ExecutionPlan and event types."""

    def test_plan_argv(self):
        plan = ExecutionPlan(task_type=TaskType.TRIM, tool="ffmpeg", args=("-i", "a.mp4"))
        assert plan.slot == "trim"
        assert plan.argv == ["ffmpeg", "-i", "a.mp4"]
        resolved = plan.with_executable("/usr/bin/ffmpeg")
        assert resolved.argv[0] == "/usr/bin/ffmpeg"
        assert plan.executable is None

    def test_progress_to_dict_drops_unset(self):
        event = ProgressEvent(percent=42, speed="1.5x")
        assert event.to_dict() == {"kind": "progress", "percent": 42, "speed": "1.5x"}

    def test_terminal_events(self):
        assert Completed("/o.mp4").to_dict() == {"kind": "completed", "output_path": "/o.mp4"}
        assert Failed("boom").to_dict() == {"kind": "error", "message": "boom"}
        assert Cancelled().to_dict() == {"kind": "cancelled"}
        assert is_terminal(Cancelled())
        assert not is_terminal(ProgressEvent(percent=1))
