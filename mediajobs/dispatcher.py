"""Job submission façade.

:class:`JobDispatcher` validates a job specification, fills unset fields
from the settings store, builds the execution plan, resolves the
executable and hands the plan to the :class:`ProcessSupervisor`. Each
submission returns a :class:`JobEventStream` that yields progress events
and finishes after exactly one terminal event.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Mapping, Optional

from .config import Settings
from .download.info import VideoInfoResult, probe_download_info
from .executor.argument_builder import build_plan
from .executor.process_manager import ProcessHandle, ProcessSupervisor, SlotState
from .locator import ExecutableLocator, Tool
from .models import (
    BaseJobSpec,
    DownloadSpec,
    EncodeSpec,
    Failed,
    HwAccel,
    JobEvent,
    MetadataSpec,
    TaskType,
    TerminalResult,
    ThumbnailSpec,
    WaveformSpec,
    is_terminal,
    parse_job_spec,
    resolve_task_type,
)
from .video.analyzer import MediaAnalyzer, ProbeResult

logger = logging.getLogger("mediajobs")

# Background previews always run at idle priority
_PREVIEW_SPECS = (ThumbnailSpec, WaveformSpec)


class JobEventStream:
    """Events of one submitted job, in emission order.

    Iterate with ``async for``; iteration stops after the terminal event
    (``Completed``, ``Failed`` or ``Cancelled``).
    """

    def __init__(self, slot: str):
        self.slot = slot
        self.handle: Optional[ProcessHandle] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._terminal: Optional[TerminalResult] = None
        self._finished = False

    def push(self, event: JobEvent) -> None:
        """Event sink handed to the supervisor."""
        self._queue.put_nowait(event)

    def __aiter__(self) -> "JobEventStream":
        return self

    async def __anext__(self) -> JobEvent:
        if self._finished:
            raise StopAsyncIteration
        event = await self._queue.get()
        if is_terminal(event):
            self._finished = True
            self._terminal = event
        return event

    async def result(self) -> TerminalResult:
        """Drain remaining events and return the terminal result."""
        async for _ in self:
            pass
        return self._terminal


class JobDispatcher:
    """Accepts job specifications and runs them one per slot."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        locator: Optional[ExecutableLocator] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        analyzer: Optional[MediaAnalyzer] = None,
    ):
        self.settings = settings or Settings()
        self.locator = locator or ExecutableLocator(self.settings.bin_dir)
        self.supervisor = supervisor or ProcessSupervisor(
            grace_delay=self.settings.cancel_grace_seconds,
            max_buffer=self.settings.max_buffer_bytes,
            tail_lines=self.settings.stderr_tail_lines,
        )
        self.analyzer = analyzer or MediaAnalyzer(self.locator)

    def apply_defaults(self, spec: BaseJobSpec) -> BaseJobSpec:
        """Return a copy of ``spec`` with unset fields taken from settings."""
        s = self.settings
        updates: dict[str, Any] = {}

        if spec.work_priority is None and not isinstance(spec, _PREVIEW_SPECS):
            updates["work_priority"] = s.work_priority
        if spec.threads is None and s.threads is not None:
            updates["threads"] = s.threads
        if spec.output_folder is None and not isinstance(spec, MetadataSpec):
            folder = s.download_folder if isinstance(spec, DownloadSpec) else s.output_folder
            if folder:
                updates["output_folder"] = folder
        if isinstance(spec, EncodeSpec) and spec.hardware is None:
            updates["hardware"] = s.hardware

        return spec.model_copy(update=updates) if updates else spec

    async def submit(self, spec: BaseJobSpec | Mapping[str, Any]) -> JobEventStream:
        """Validate, plan and start a job.

        Args:
            spec: A job specification model or an equivalent mapping.

        Returns:
            The job's event stream. A missing executable, an uncreatable
            output folder and a refused spawn all arrive as a ``Failed``
            event on the stream.

        Raises:
            ValidationError: If the specification is rejected; nothing has
                been spawned.
            SlotBusyError: If the job's slot is still occupied.
        """
        spec = self.apply_defaults(parse_job_spec(spec))

        support = None
        if isinstance(spec, EncodeSpec) and spec.hardware is HwAccel.AUTO:
            support = await self.analyzer.detect_encoders()

        plan = build_plan(
            spec,
            base_dir=self.settings.base_dir,
            encoder_support=support,
            ffmpeg_location=self.locator.resolve(Tool.FFMPEG),
        )

        stream = JobEventStream(plan.slot)
        executable = self.locator.resolve(plan.tool)
        if not executable:
            message = f"{plan.tool} executable not found"
            logger.error("[%s] %s", plan.slot, message)
            stream.push(Failed(message))
            return stream

        if plan.output_folder:
            try:
                Path(plan.output_folder).mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                message = f"Cannot create output folder {plan.output_folder}: {exc}"
                logger.error("[%s] %s", plan.slot, message)
                stream.push(Failed(message))
                return stream

        stream.handle = await self.supervisor.start(
            plan.with_executable(executable), on_event=stream.push
        )
        return stream

    def cancel(self, slot: TaskType | str) -> bool:
        """Request cancellation; the outcome arrives as a ``Cancelled`` event.

        Returns:
            True if a running process was signalled, False if there was
            nothing to cancel.
        """
        return self.supervisor.cancel(resolve_task_type(slot).value)

    def state(self, slot: TaskType | str) -> SlotState:
        return self.supervisor.state(resolve_task_type(slot).value)

    async def shutdown(self) -> None:
        """Cancel all running jobs and wait for them to settle."""
        await self.supervisor.shutdown()

    async def probe(self, path: str) -> ProbeResult:
        """Container and stream metadata for a local file."""
        return await self.analyzer.probe(path)

    async def probe_url(self, url: str, disable_flat_playlist: bool = False) -> VideoInfoResult:
        """Downloader metadata for ``url`` without downloading."""
        return await probe_download_info(url, self.locator, disable_flat_playlist)
