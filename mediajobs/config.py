"""Read-only settings store.

Settings supply defaults that the dispatcher applies to job specifications
which leave the corresponding fields unset. The pipeline never writes this
file back.

Example ``settings.yaml``::

    output_folder: ~/Videos/converted
    download_folder: ~/Downloads
    work_priority: low
    threads: 8
    hardware: auto
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from .models import HwAccel, Priority

logger = logging.getLogger("mediajobs")

DEFAULT_MAX_BUFFER_BYTES = 2 * 1024 * 1024


class Settings(BaseModel):
    """Defaults and tunables consumed by the dispatcher and supervisor."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    output_folder: Optional[str] = None
    download_folder: Optional[str] = None
    base_dir: Optional[str] = None
    work_priority: Priority = Priority.NORMAL
    threads: Optional[int] = Field(default=None, ge=1, le=128)
    hardware: HwAccel = HwAccel.NONE
    bin_dir: Optional[str] = None
    cancel_grace_seconds: float = Field(default=1.0, ge=0.0, le=30.0)
    max_buffer_bytes: int = Field(default=DEFAULT_MAX_BUFFER_BYTES, ge=4096)
    stderr_tail_lines: int = Field(default=20, ge=1, le=500)


def _read_yaml(path: Path) -> Optional[dict[str, Any]]:
    """Parse a YAML mapping, returning None on any read or parse problem."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to read settings %s: %s", path, exc)
        return None

    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("Settings file %s is not a mapping, ignoring", path)
        return None
    return data


def load_settings(path: Optional[str | Path] = None) -> Settings:
    """Load settings from a YAML file.

    A missing path, unreadable file or invalid content yields the defaults;
    problems are logged and never raised.

    Args:
        path: Location of the YAML file, or None for pure defaults.

    Returns:
        A frozen :class:`Settings` instance.
    """
    if path is None:
        return Settings()

    path = Path(path).expanduser()
    if not path.is_file():
        logger.debug("No settings file at %s, using defaults", path)
        return Settings()

    data = _read_yaml(path)
    if not data:
        return Settings()

    try:
        return Settings.model_validate(data)
    except PydanticValidationError as exc:
        logger.warning("Invalid settings in %s: %s", path, exc)
        return Settings()
