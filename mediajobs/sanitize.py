"""Path, URL and filename validation for values that reach a command line.

Everything here raises :class:`~mediajobs.errors.ValidationError` (a
``ValueError`` subclass) so a bad job is rejected before any process is
spawned.
"""

import os
import re
import uuid
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

from .errors import ValidationError

# Common video, image, and audio extensions
MEDIA_EXTENSIONS = {
    # Video
    '.mp4', '.mkv', '.avi', '.mov', '.webm', '.flv', '.wmv', '.m4v', '.mpg', '.mpeg', '.3gp', '.ts',
    '.m2ts', '.mts', '.vob', '.ogv', '.mxf',
    # Image
    '.png', '.jpg', '.jpeg', '.webp', '.bmp', '.gif', '.tiff',
    # Audio
    '.mp3', '.wav', '.aac', '.flac', '.m4a', '.ogg', '.wma', '.opus', '.ac3', '.mka'
}

SUBTITLE_EXTENSIONS = {'.srt', '.ass', '.ssa', '.vtt', '.sub', '.sbv'}
CHAPTER_EXTENSIONS = MEDIA_EXTENSIONS | {'.txt', '.ffmetadata', '.xml'}

# Critical system directories that should be protected from write operations
UNSAFE_DIRECTORIES = {
    "/bin", "/boot", "/dev", "/etc", "/lib", "/lib64", "/proc",
    "/run", "/sbin", "/sys", "/usr"
}

ALLOWED_URL_SCHEMES = {"http", "https"}

_SUFFIX_RE = re.compile(r"^[A-Za-z0-9._-]*$")
_NAME_UNSAFE_RE = re.compile(r"[^A-Za-z0-9 ._()\-]+")
_CONTROL_RE = re.compile(r"[\x00-\x20\x7f]")
MAX_NAME_LENGTH = 180


def _check_unsafe_path(path: Path) -> None:
    """Check if the path targets a sensitive system directory.

    Args:
        path: The resolved path to check.

    Raises:
        ValidationError: If path is unsafe.
    """
    path_str = str(path)
    for unsafe in UNSAFE_DIRECTORIES:
        # Match directory exactly or as a parent
        if path_str == unsafe or path_str.startswith(f"{unsafe}{os.sep}"):
            raise ValidationError(f"Path targets unsafe system directory: {path}")

    if os.name == 'nt':
        lower_path = path_str.lower()
        if (lower_path.startswith("c:\\windows") or
                lower_path.startswith("c:\\program files")):
            raise ValidationError(f"Path targets unsafe system directory: {path}")


def _canonicalize(path: str | Path, label: str) -> Path:
    """Reject empty and traversal paths, then resolve to an absolute path."""
    if path is None or not str(path).strip():
        raise ValidationError(f"{label} cannot be empty")

    if ".." in Path(path).parts:
        raise ValidationError(
            f"{label} contains directory traversal (..): {path}"
        )

    return Path(path).expanduser().resolve()


def ensure_within(resolved: Path, base_dir: Optional[str | Path]) -> None:
    """Raise if ``resolved`` lies outside ``base_dir`` (no-op when base is None)."""
    if base_dir is None:
        return
    base = Path(base_dir).expanduser().resolve()
    if resolved != base and not resolved.is_relative_to(base):
        raise ValidationError(
            f"Path {resolved} is outside the allowed base directory {base}"
        )


def validate_input_path(
    path: str | Path,
    base_dir: Optional[str | Path] = None,
    allowed_extensions: Optional[set[str]] = None,
    label: str = "Input path",
) -> str:
    """Validate and resolve an existing input file.

    Args:
        path: The path to validate.
        base_dir: Optional containment root; the resolved path must lie
            inside it.
        allowed_extensions: Optional extension whitelist (lower-case, with dot).
        label: Name used in error messages.

    Returns:
        The resolved, absolute path string.

    Raises:
        ValidationError: If the path is empty, traverses upward, escapes
            ``base_dir``, has a disallowed extension or is not a file.
    """
    resolved = _canonicalize(path, label)
    ensure_within(resolved, base_dir)

    if allowed_extensions is not None and resolved.suffix.lower() not in allowed_extensions:
        raise ValidationError(
            f"Invalid file extension: {resolved.suffix}. "
            f"Allowed: {sorted(allowed_extensions)}"
        )

    if not resolved.exists():
        raise ValidationError(f"File not found: {resolved}")
    if not resolved.is_file():
        raise ValidationError(f"Path is not a file: {resolved}")

    return str(resolved)


def validate_output_dir(
    path: str | Path,
    base_dir: Optional[str | Path] = None,
) -> str:
    """Validate an output folder.

    The folder does not have to exist yet (the dispatcher creates it before
    spawning), but it must not be an existing file or a protected system
    directory, and it must stay inside ``base_dir`` when one is given.

    Raises:
        ValidationError: On any of the conditions above.
    """
    resolved = _canonicalize(path, "Output folder")
    _check_unsafe_path(resolved)
    ensure_within(resolved, base_dir)
    if resolved.exists() and not resolved.is_dir():
        raise ValidationError(f"Output folder is not a directory: {resolved}")
    return str(resolved)


def validate_url(url: str) -> str:
    """Accept only absolute http(s) URLs without whitespace or control bytes.

    Returns:
        The URL, stripped of surrounding whitespace.
    """
    if not url or not url.strip():
        raise ValidationError("URL cannot be empty")
    url = url.strip()
    if _CONTROL_RE.search(url):
        raise ValidationError("URL contains whitespace or control characters")

    parts = urlsplit(url)
    if parts.scheme.lower() not in ALLOWED_URL_SCHEMES:
        raise ValidationError(
            f"Unsupported URL scheme '{parts.scheme}': only http and https are allowed"
        )
    if not parts.netloc:
        raise ValidationError(f"URL has no host: {url}")
    return url


def validate_suffix(suffix: str) -> str:
    """Output suffixes are inserted into filenames; keep them to a safe charset."""
    if not _SUFFIX_RE.match(suffix or ""):
        raise ValidationError(f"Invalid output suffix: {suffix!r}")
    return suffix or ""


def sanitize_download_name(name: Optional[str]) -> str:
    """Reduce a caller-supplied file name to a restricted character set.

    Characters outside letters, digits, space and ``._()-`` are replaced
    with underscores, leading dashes and dots are stripped (they would read
    as options or hidden files) and the result is length-limited. When
    nothing usable remains, a unique ``download_<hex>`` token is returned.
    """
    cleaned = _NAME_UNSAFE_RE.sub("_", name or "")
    cleaned = re.sub(r"_+", "_", cleaned).strip(" ._-")
    cleaned = cleaned[:MAX_NAME_LENGTH].rstrip(" .")
    if not cleaned or not any(ch.isalnum() for ch in cleaned):
        return f"download_{uuid.uuid4().hex[:12]}"
    return cleaned
