"""OS scheduling priority for spawned tools.

A backend translates the abstract :class:`~mediajobs.models.Priority`
into the platform primitive: nice values on POSIX, priority classes on
Windows. Applying a priority is best-effort by contract; failures (for
instance raising priority without privileges) are logged and ignored.
"""

import logging
import os
from abc import ABC, abstractmethod

import psutil

from ..models import Priority

logger = logging.getLogger("mediajobs")


class PriorityBackend(ABC):
    """Sets the priority of a running process."""

    @abstractmethod
    def native_value(self, level: Priority) -> int:
        """Platform value for ``level``."""

    def set_priority(self, pid: int, level: Priority) -> None:
        """Apply ``level`` to ``pid``; raises ``psutil.Error`` on failure."""
        psutil.Process(pid).nice(self.native_value(level))


class NicePriorityBackend(PriorityBackend):
    """POSIX nice values."""

    NICE_VALUES = {
        Priority.IDLE: 19,
        Priority.LOW: 10,
        Priority.NORMAL: 0,
        Priority.HIGH: -10,
    }

    def native_value(self, level: Priority) -> int:
        return self.NICE_VALUES[Priority(level)]


class WindowsPriorityBackend(PriorityBackend):
    """Win32 priority classes (psutil only exports the names on Windows)."""

    PRIORITY_CLASSES = {
        Priority.IDLE: getattr(psutil, "IDLE_PRIORITY_CLASS", 0x40),
        Priority.LOW: getattr(psutil, "BELOW_NORMAL_PRIORITY_CLASS", 0x4000),
        Priority.NORMAL: getattr(psutil, "NORMAL_PRIORITY_CLASS", 0x20),
        Priority.HIGH: getattr(psutil, "HIGH_PRIORITY_CLASS", 0x80),
    }

    def native_value(self, level: Priority) -> int:
        return self.PRIORITY_CLASSES[Priority(level)]


def default_priority_backend() -> PriorityBackend:
    """Backend for the running platform."""
    if os.name == "nt":
        return WindowsPriorityBackend()
    return NicePriorityBackend()


def apply_priority(pid: int, level: Priority, backend: PriorityBackend) -> bool:
    """Best-effort priority change.

    Returns:
        True if the priority was applied, False if it was skipped or failed.
    """
    level = Priority(level)
    if level is Priority.NORMAL:
        # Leave the inherited priority untouched
        return True
    try:
        backend.set_priority(pid, level)
    except (psutil.Error, OSError) as exc:
        logger.warning("Could not set priority %s for pid %s: %s", level.value, pid, exc)
        return False
    logger.debug("Applied priority %s to pid %s", level.value, pid)
    return True
