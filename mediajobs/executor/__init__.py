"""Process execution: command building, progress parsing and supervision."""

from .command_builder import CommandBuilder, FilterChain, FilterGraph, FFMPEGCommand
from .progress import DownloadProgressParser, FFmpegProgressParser, LineBuffer
from .process_manager import ProcessHandle, ProcessSupervisor, SlotState

__all__ = [
    "CommandBuilder",
    "FilterChain",
    "FilterGraph",
    "FFMPEGCommand",
    "DownloadProgressParser",
    "FFmpegProgressParser",
    "LineBuffer",
    "ProcessHandle",
    "ProcessSupervisor",
    "SlotState",
]
