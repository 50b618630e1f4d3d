"""Executable resolution for the transcoder, prober and downloader.

Lookup order for each tool:

1. The bundled ``bin`` directory: an explicit ``bin_dir``, or
   ``<exe dir>/bin`` when running as a frozen/packaged application.
2. ``shutil.which`` on the current ``PATH``.
3. Well-known per-platform install directories (Homebrew, Scoop,
   Chocolatey, ``~/.local/bin``), since GUI launchers often start with a
   narrowed ``PATH``.

Supports **Linux**, **macOS**, and **Windows**.
"""

import os
import pathlib
import platform
import shutil
import sys
from enum import Enum
from typing import Optional

from .errors import SpawnError


class Tool(str, Enum):
    """External executables the pipeline drives."""
    FFMPEG = "ffmpeg"
    FFPROBE = "ffprobe"
    YTDLP = "yt-dlp"


def _build_search_dirs() -> list[pathlib.Path]:
    """Well-known directories where media tools get installed."""
    home = pathlib.Path.home()
    dirs: list[pathlib.Path] = []
    system = platform.system()

    if system == "Windows":
        dirs.append(home / "scoop" / "shims")
        programdata = os.environ.get("ProgramData")
        if programdata:
            dirs.append(pathlib.Path(programdata) / "chocolatey" / "bin")
        localappdata = os.environ.get("LOCALAPPDATA")
        if localappdata:
            dirs.append(pathlib.Path(localappdata) / "Microsoft" / "WinGet" / "Links")
    else:
        dirs.append(home / ".local" / "bin")        # pipx installs of yt-dlp
        dirs.append(pathlib.Path("/usr/local/bin"))
        if system == "Darwin":
            dirs.append(pathlib.Path("/opt/homebrew/bin"))

    return dirs


def _executable_name(tool: str) -> str:
    return f"{tool}.exe" if os.name == "nt" else tool


def _bundled_bin_dir() -> Optional[pathlib.Path]:
    """``<exe dir>/bin`` when running from a frozen bundle."""
    if getattr(sys, "frozen", False):
        return pathlib.Path(sys.executable).resolve().parent / "bin"
    return None


class ExecutableLocator:
    """Resolves absolute paths of the external tools, caching hits."""

    def __init__(
        self,
        bin_dir: Optional[str | os.PathLike] = None,
        search_dirs: Optional[list[pathlib.Path]] = None,
    ):
        """Initialize the locator.

        Args:
            bin_dir: Directory holding bundled executables. Defaults to the
                frozen-bundle ``bin`` directory, if any.
            search_dirs: Fallback directories; defaults to the platform's
                well-known install locations.
        """
        self.bin_dir = pathlib.Path(bin_dir) if bin_dir else _bundled_bin_dir()
        self.search_dirs = search_dirs if search_dirs is not None else _build_search_dirs()
        self._cache: dict[str, str] = {}

    def resolve(self, tool: Tool | str) -> Optional[str]:
        """Return the absolute path of ``tool``, or ``None`` if not found."""
        name = Tool(tool).value
        if name in self._cache:
            return self._cache[name]

        found = self._lookup(name)
        if found:
            self._cache[name] = found
        return found

    def require(self, tool: Tool | str) -> str:
        """Like :meth:`resolve` but raise :class:`SpawnError` when missing."""
        found = self.resolve(tool)
        if not found:
            raise SpawnError(f"{Tool(tool).value} executable not found")
        return found

    def _lookup(self, name: str) -> Optional[str]:
        filename = _executable_name(name)

        if self.bin_dir is not None:
            candidate = self.bin_dir / filename
            if candidate.is_file():
                return str(candidate)

        found = shutil.which(name)
        if found:
            return found

        for directory in self.search_dirs:
            candidate = directory / filename
            if candidate.is_file():
                return str(candidate)

        return None
