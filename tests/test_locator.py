"""Tests for executable resolution."""

import os
from unittest.mock import patch

import pytest

from mediajobs.errors import SpawnError
from mediajobs.locator import ExecutableLocator, Tool

pytestmark = pytest.mark.skipif(os.name == "nt", reason="POSIX executable names")


class TestExecutableLocator:
    """Tests for ExecutableLocator."""

    def test_bin_dir_wins(self, tmp_path, make_file):
        bundled = make_file("bin/ffmpeg")
        with patch("mediajobs.locator.shutil.which", return_value="/usr/bin/ffmpeg"):
            locator = ExecutableLocator(bin_dir=tmp_path / "bin", search_dirs=[])
            assert locator.resolve(Tool.FFMPEG) == bundled

    def test_path_lookup(self, tmp_path):
        with patch("mediajobs.locator.shutil.which", return_value="/usr/bin/ffprobe") as which:
            locator = ExecutableLocator(bin_dir=tmp_path, search_dirs=[])
            assert locator.resolve("ffprobe") == "/usr/bin/ffprobe"
        which.assert_called_once_with("ffprobe")

    def test_search_dirs_fallback(self, tmp_path, make_file):
        found = make_file("brew/yt-dlp")
        with patch("mediajobs.locator.shutil.which", return_value=None):
            locator = ExecutableLocator(search_dirs=[tmp_path / "empty", tmp_path / "brew"])
            assert locator.resolve(Tool.YTDLP) == found

    def test_hits_are_cached(self):
        with patch("mediajobs.locator.shutil.which", return_value="/usr/bin/ffmpeg") as which:
            locator = ExecutableLocator(search_dirs=[])
            locator.resolve(Tool.FFMPEG)
            locator.resolve(Tool.FFMPEG)
        assert which.call_count == 1

    def test_missing(self):
        with patch("mediajobs.locator.shutil.which", return_value=None):
            locator = ExecutableLocator(search_dirs=[])
            assert locator.resolve(Tool.FFMPEG) is None
            with pytest.raises(SpawnError, match="ffmpeg executable not found"):
                locator.require(Tool.FFMPEG)

    def test_unknown_tool(self):
        with pytest.raises(ValueError):
            ExecutableLocator(search_dirs=[]).resolve("vlc")
