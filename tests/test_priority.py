"""Tests for OS priority mapping."""

from unittest.mock import MagicMock, patch

import psutil

from mediajobs.executor.priority import (
    NicePriorityBackend,
    PriorityBackend,
    WindowsPriorityBackend,
    apply_priority,
    default_priority_backend,
)
from mediajobs.models import Priority


class TestBackends:
    """Tests for native value tables."""

    def test_nice_values(self):
        backend = NicePriorityBackend()
        assert backend.native_value(Priority.IDLE) == 19
        assert backend.native_value(Priority.LOW) == 10
        assert backend.native_value(Priority.NORMAL) == 0
        assert backend.native_value(Priority.HIGH) == -10

    def test_windows_classes(self):
        backend = WindowsPriorityBackend()
        assert backend.native_value("idle") == 0x40
        assert backend.native_value(Priority.LOW) == 0x4000
        assert backend.native_value(Priority.HIGH) == 0x80

    def test_default_backend_on_posix(self):
        with patch("mediajobs.executor.priority.os.name", "posix"):
            assert isinstance(default_priority_backend(), NicePriorityBackend)

    def test_set_priority_uses_psutil(self):
        with patch("mediajobs.executor.priority.psutil.Process") as process_cls:
            NicePriorityBackend().set_priority(1234, Priority.LOW)
        process_cls.assert_called_once_with(1234)
        process_cls.return_value.nice.assert_called_once_with(10)


class TestApplyPriority:
    """Tests for apply_priority."""

    def test_normal_is_untouched(self):
        backend = MagicMock(spec=PriorityBackend)
        assert apply_priority(42, Priority.NORMAL, backend) is True
        backend.set_priority.assert_not_called()

    def test_applies_level(self):
        backend = MagicMock(spec=PriorityBackend)
        assert apply_priority(42, Priority.IDLE, backend) is True
        backend.set_priority.assert_called_once_with(42, Priority.IDLE)

    def test_access_denied_is_not_fatal(self, caplog):
        backend = MagicMock(spec=PriorityBackend)
        backend.set_priority.side_effect = psutil.AccessDenied(42)
        assert apply_priority(42, Priority.HIGH, backend) is False
        assert "Could not set priority" in caplog.text

    def test_vanished_process(self):
        backend = MagicMock(spec=PriorityBackend)
        backend.set_priority.side_effect = psutil.NoSuchProcess(42)
        assert apply_priority(42, Priority.LOW, backend) is False
