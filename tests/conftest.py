"""Pytest configuration for mediajobs tests.

Puts the project root on sys.path so ``import mediajobs`` works when
running pytest from a checkout without installing the package.
"""

import sys
import os

import pytest

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)


@pytest.fixture
def media_file(tmp_path):
    """A fake input video inside a temporary directory."""
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"fake video data")
    return path


@pytest.fixture
def make_file(tmp_path):
    """Create a small file relative to tmp_path and return its path."""
    def _make(name: str, data: bytes = b"x") -> str:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return str(path)
    return _make
