"""Error types raised by the job pipeline."""


class MediaJobError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(MediaJobError, ValueError):
    """A job specification was rejected before any process was spawned.

    Raised for path traversal, paths escaping the configured base
    directory, non-http(s) URLs and out-of-range numeric fields.
    """


class SpawnError(MediaJobError, RuntimeError):
    """The external executable is missing or the OS refused to start it."""


class SlotBusyError(MediaJobError, RuntimeError):
    """A job was started on a slot that still holds a live process."""
