"""Removal of partial outputs left behind by a cancelled job.

Which sibling files count as leftovers is decided by a declarative rule
list, matched against the part of a file name that follows the output's
stem. ``movie.mp4`` therefore owns ``movie.mp4.part``,
``movie.f137.mp4.part``, ``movie.temp.mp4`` and so on, but never
``movie2.mp4``.

Temp outputs of in-place edits are promoted with :func:`replace_with`
or dropped with :func:`discard_file`.
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger("mediajobs")


@dataclass(frozen=True)
class ArtifactRule:
    """A leftover-file pattern, matched against the name after the stem."""
    name: str
    pattern: re.Pattern

    def matches(self, remainder: str) -> bool:
        return self.pattern.search(remainder) is not None


_FORMAT_ID_RE = re.compile(r"\.f\d+(-\d+)?$")

DEFAULT_ARTIFACT_RULES: tuple[ArtifactRule, ...] = (
    ArtifactRule("part", re.compile(r"^(\.[\w-]+)*\.part$")),
    ArtifactRule("fragment", re.compile(r"^(\.[\w-]+)*\.part-Frag\d+(\.part)?$")),
    ArtifactRule("ytdl-state", re.compile(r"^(\.[\w-]+)*\.ytdl$")),
    ArtifactRule("temp", re.compile(r"^(\.[\w-]+)*\.temp(\.\w+)?$")),
    ArtifactRule("format-stream", re.compile(r"^\.f\d+(-\d+)?\.\w+(\.part)?$")),
    ArtifactRule("tmp", re.compile(r"^(\.[\w-]+)*\.tmp$")),
)


def find_artifacts(
    output_path: str | Path,
    rules: Iterable[ArtifactRule] = DEFAULT_ARTIFACT_RULES,
) -> list[Path]:
    """List the output itself (if present) and every sibling matching a rule."""
    output = Path(output_path)
    folder = output.parent
    if not folder.is_dir():
        return []

    # Per-format downloads (movie.f137.mp4) share the merged file's stem
    stem = _FORMAT_ID_RE.sub("", output.stem)
    rules = tuple(rules)
    found = []
    for entry in folder.iterdir():
        if entry == output:
            found.append(entry)
            continue
        if not entry.name.startswith(stem) or not entry.is_file():
            continue
        remainder = entry.name[len(stem):]
        if any(rule.matches(remainder) for rule in rules):
            found.append(entry)
    return sorted(found)


def sweep_artifacts(
    output_path: Optional[str | Path],
    rules: Iterable[ArtifactRule] = DEFAULT_ARTIFACT_RULES,
) -> list[Path]:
    """Delete a cancelled job's output and its partial siblings.

    Deletion is best-effort: failures are logged and the sweep continues.

    Returns:
        The paths that were actually removed.
    """
    if not output_path:
        return []

    try:
        candidates = find_artifacts(output_path, rules)
    except OSError as exc:
        logger.warning("Could not scan for partial files of %s: %s", output_path, exc)
        return []

    removed = []
    for path in candidates:
        try:
            path.unlink()
            removed.append(path)
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("Failed to delete partial file %s: %s", path, exc)
    if removed:
        logger.info("Removed %d partial file(s) for %s", len(removed), output_path)
    return removed


def discard_file(path: Optional[str | Path]) -> bool:
    """Best-effort removal of a single file; failures are logged."""
    if not path:
        return False
    try:
        Path(path).unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.warning("Failed to remove %s: %s", path, exc)
        return False


def replace_with(temp_path: str | Path, target: str | Path) -> None:
    """Move a finished temp file over ``target``.

    On failure the temp file is discarded and the original is left as it
    was.

    Raises:
        OSError: If the rename fails.
    """
    try:
        os.replace(temp_path, target)
    except OSError:
        discard_file(temp_path)
        raise
    logger.debug("Replaced %s with %s", target, temp_path)
