"""Process supervision for ffmpeg and yt-dlp jobs.

Each job type owns a :class:`JobSlot` that holds at most one live process.
:class:`ProcessSupervisor` spawns the tool for an
:class:`~mediajobs.models.ExecutionPlan`, feeds its output through a
progress parser, applies the requested OS priority, and turns the exit
into exactly one terminal event: ``Completed``, ``Failed`` or
``Cancelled``.
"""

import asyncio
import codecs
import logging
import os
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

import psutil

from ..errors import SlotBusyError, SpawnError
from ..models import (
    Cancelled,
    Completed,
    ExecutionPlan,
    Failed,
    JobEvent,
    Priority,
    TerminalResult,
)
from .cleanup import (
    DEFAULT_ARTIFACT_RULES,
    ArtifactRule,
    discard_file,
    replace_with,
    sweep_artifacts,
)
from .priority import PriorityBackend, apply_priority, default_priority_backend
from .progress import (
    DEFAULT_MAX_BUFFER,
    DEFAULT_TAIL_LINES,
    ProgressParser,
    create_parser,
)

logger = logging.getLogger("mediajobs")

CHUNK_SIZE = 4096
MAX_FAILURE_TAIL_CHARS = 4000

EventSink = Callable[[JobEvent], None]


class SlotState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    CANCELLING = "cancelling"
    TERMINATED = "terminated"


_TRANSITIONS = {
    SlotState.IDLE: {SlotState.RUNNING},
    SlotState.RUNNING: {SlotState.CANCELLING, SlotState.TERMINATED},
    SlotState.CANCELLING: {SlotState.TERMINATED},
    SlotState.TERMINATED: {SlotState.RUNNING},
}


class JobSlot:
    """A named channel holding at most one live process."""

    def __init__(self, name: str):
        self.name = name
        self.state = SlotState.IDLE
        self.handle: Optional["ProcessHandle"] = None

    @property
    def busy(self) -> bool:
        return self.state in (SlotState.RUNNING, SlotState.CANCELLING)

    def transition(self, new_state: SlotState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            if new_state is SlotState.RUNNING:
                raise SlotBusyError(
                    f"Slot '{self.name}' is {self.state.value}; wait for the current job to finish"
                )
            raise RuntimeError(
                f"Illegal slot transition for '{self.name}': "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state


@dataclass
class ProcessHandle:
    """One live external process, owned by the supervisor."""
    slot: str
    pid: int
    output_path: Optional[str]
    duration_estimate: Optional[float] = None
    cancelling: bool = False
    _process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)
    _result: Optional[asyncio.Future] = field(default=None, repr=False)
    _task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self._result is not None and self._result.done()

    async def wait(self) -> TerminalResult:
        """Wait for the terminal result of this process."""
        return await asyncio.shield(self._result)


def _spawn_kwargs() -> dict:
    if os.name == "nt":
        # No console window per job
        return {"creationflags": getattr(subprocess, "CREATE_NO_WINDOW", 0)}
    return {}


def kill_process_tree(pid: int) -> int:
    """Kill ``pid`` and all of its descendants.

    Returns:
        Number of processes signalled.
    """
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return 0

    try:
        children = parent.children(recursive=True)
    except psutil.Error:
        children = []

    killed = 0
    for proc in [*children, parent]:
        try:
            proc.kill()
            killed += 1
        except psutil.NoSuchProcess:
            continue
        except psutil.Error as exc:
            logger.warning("Could not kill pid %s: %s", proc.pid, exc)
    return killed


def parse_error(lines: Iterable[str]) -> str:
    """Extract the most meaningful error line from diagnostic output."""
    lines = [line.strip() for line in lines]

    error_patterns = [
        r"^ERROR:.*",
        r"Error.*",
        r"Invalid.*",
        r"No such file.*",
        r".*not found.*",
        r"Permission denied.*",
        r"Discarding.*",
    ]

    for line in reversed(lines):
        for pattern in error_patterns:
            if re.search(pattern, line, re.IGNORECASE):
                return line

    for line in reversed(lines):
        if line:
            return line

    return "Unknown error"


def describe_failure(program: str, returncode: int, tail: list[str]) -> str:
    """Failure message: exit status, headline and a bounded diagnostic tail."""
    if returncode < 0:
        status = f"{program} was terminated by signal {-returncode}"
    else:
        status = f"{program} exited with code {returncode}"

    message = f"{status}: {parse_error(tail)}"
    details = "\n".join(tail)
    if details:
        if len(details) > MAX_FAILURE_TAIL_CHARS:
            details = "..." + details[-MAX_FAILURE_TAIL_CHARS:]
        message = f"{message}\n{details}"
    return message


class ProcessSupervisor:
    """Starts, watches and cancels one process per job slot."""

    def __init__(
        self,
        priority_backend: Optional[PriorityBackend] = None,
        artifact_rules: Iterable[ArtifactRule] = DEFAULT_ARTIFACT_RULES,
        grace_delay: float = 1.0,
        max_buffer: int = DEFAULT_MAX_BUFFER,
        tail_lines: int = DEFAULT_TAIL_LINES,
        parser_factory: Callable[..., ProgressParser] = create_parser,
    ):
        """Initialize the supervisor.

        Args:
            priority_backend: OS priority mechanism; the platform default
                when None.
            artifact_rules: Partial-file rules used by the cancel sweep.
            grace_delay: Seconds to wait after a cancelled process exits
                before deleting its files.
            max_buffer: Per-stream cap of the parser's line buffer.
            tail_lines: Number of stderr lines kept for failure messages.
            parser_factory: Builds a progress parser for a plan.
        """
        self.priority_backend = priority_backend or default_priority_backend()
        self.artifact_rules = tuple(artifact_rules)
        self.grace_delay = grace_delay
        self.max_buffer = max_buffer
        self.tail_lines = tail_lines
        self.parser_factory = parser_factory
        self._slots: dict[str, JobSlot] = {}

    def slot(self, name: str) -> JobSlot:
        if name not in self._slots:
            self._slots[name] = JobSlot(name)
        return self._slots[name]

    def state(self, name: str) -> SlotState:
        return self.slot(name).state

    async def start(
        self,
        plan: ExecutionPlan,
        priority: Optional[Priority] = None,
        on_event: Optional[EventSink] = None,
    ) -> Optional[ProcessHandle]:
        """Spawn the plan's executable and supervise it in the background.

        Args:
            plan: Resolved plan; ``plan.argv[0]`` is the executable.
            priority: OS priority level, defaulting to the plan's.
            on_event: Receives progress events and one terminal event.

        Returns:
            The handle of the running process, or None if spawning failed
            (a ``Failed`` event has been emitted in that case).

        Raises:
            SlotBusyError: If the plan's slot still holds a live process.
        """
        slot = self.slot(plan.slot)
        if slot.busy:
            raise SlotBusyError(
                f"Slot '{slot.name}' is {slot.state.value}; wait for the current job to finish"
            )

        emit = on_event or (lambda event: None)
        level = Priority(priority or plan.priority)
        argv = plan.argv
        program = Path(argv[0]).name

        logger.info("[%s] Running: %s", slot.name, shlex.join(argv))
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **_spawn_kwargs(),
            )
        except OSError as exc:
            message = f"Failed to start {program}: {exc}"
            logger.error("[%s] %s", slot.name, message)
            emit(Failed(message))
            return None

        loop = asyncio.get_running_loop()
        handle = ProcessHandle(
            slot=slot.name,
            pid=process.pid,
            output_path=plan.output_path,
            duration_estimate=plan.duration_hint,
            _process=process,
            _result=loop.create_future(),
        )
        slot.transition(SlotState.RUNNING)
        slot.handle = handle

        # Applied off the spawn path; failures are logged inside
        loop.call_soon(apply_priority, process.pid, level, self.priority_backend)

        parser = self.parser_factory(
            plan, max_buffer=self.max_buffer, tail_lines=self.tail_lines
        )
        handle._task = asyncio.create_task(
            self._supervise(slot, handle, plan, parser, emit)
        )
        return handle

    def cancel(self, slot_name: str) -> bool:
        """Kill the slot's process tree; the outcome arrives as ``Cancelled``.

        Idempotent: returns False without side effects when the slot is
        idle, already cancelling, or its process has already exited.
        """
        slot = self._slots.get(slot_name)
        if slot is None or slot.state is not SlotState.RUNNING or slot.handle is None:
            return False

        handle = slot.handle
        if handle._process is None or handle._process.returncode is not None:
            return False

        handle.cancelling = True
        slot.transition(SlotState.CANCELLING)
        logger.info("[%s] Cancelling pid %s", slot.name, handle.pid)
        kill_process_tree(handle.pid)
        return True

    async def shutdown(self) -> None:
        """Cancel every running job and wait for their terminal results."""
        pending = []
        for name, slot in list(self._slots.items()):
            if slot.handle is not None:
                self.cancel(name)
                pending.append(slot.handle.wait())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _pump(
        self,
        stream: str,
        reader: asyncio.StreamReader,
        handle: ProcessHandle,
        parser: ProgressParser,
        emit: EventSink,
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await reader.read(CHUNK_SIZE)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                self._forward(parser.feed(stream, text), handle, parser, emit)
            if not chunk:
                break

    def _forward(self, events, handle: ProcessHandle, parser: ProgressParser, emit: EventSink) -> None:
        duration = getattr(parser, "duration", None)
        if duration:
            handle.duration_estimate = duration
        if handle.cancelling:
            return
        for event in events:
            emit(event)

    async def _supervise(
        self,
        slot: JobSlot,
        handle: ProcessHandle,
        plan: ExecutionPlan,
        parser: ProgressParser,
        emit: EventSink,
    ) -> None:
        process = handle._process
        program = Path(plan.argv[0]).name
        try:
            await asyncio.gather(
                self._pump("stdout", process.stdout, handle, parser, emit),
                self._pump("stderr", process.stderr, handle, parser, emit),
            )
            returncode = await process.wait()
            self._forward(parser.finish(), handle, parser, emit)
            result = await self._dispose(slot, handle, plan, parser, program, returncode)
        except Exception as exc:
            logger.exception("[%s] Supervision failed", slot.name)
            if process.returncode is None:
                kill_process_tree(process.pid)
            result = Failed(f"{program} supervision failed: {exc}")

        slot.transition(SlotState.TERMINATED)
        slot.handle = None
        handle._process = None
        handle._result.set_result(result)
        emit(result)

    async def _dispose(
        self,
        slot: JobSlot,
        handle: ProcessHandle,
        plan: ExecutionPlan,
        parser: ProgressParser,
        program: str,
        returncode: int,
    ) -> TerminalResult:
        if handle.cancelling:
            if self.grace_delay > 0:
                await asyncio.sleep(self.grace_delay)
            targets = {t for t in (plan.output_path, parser.destination) if t}
            for target in sorted(targets):
                sweep_artifacts(target, self.artifact_rules)
            logger.info("[%s] Cancelled", slot.name)
            return Cancelled()

        if returncode == 0:
            output = parser.destination or plan.output_path or plan.output_folder
            if plan.replace_target and plan.output_path:
                try:
                    replace_with(plan.output_path, plan.replace_target)
                except OSError as exc:
                    message = f"Failed to replace {plan.replace_target}: {exc}"
                    logger.error("[%s] %s", slot.name, message)
                    return Failed(message)
                output = plan.replace_target
            logger.info("[%s] Completed: %s", slot.name, output)
            return Completed(output_path=output)

        message = describe_failure(program, returncode, parser.tail)
        logger.error("[%s] %s", slot.name, message.splitlines()[0])
        if plan.discard_output_on_failure:
            discard_file(plan.output_path)
        return Failed(message)


# ------------------------------------------------------------------ #
#   One-shot capture for probes                                      #
# ------------------------------------------------------------------ #

@dataclass
class CaptureResult:
    """Output of a short-lived probe process."""
    returncode: int
    stdout: str
    stderr: str
    truncated: bool = False


async def _read_bounded(reader: asyncio.StreamReader, limit: int) -> tuple[bytes, bool]:
    """Read to EOF, keeping at most ``limit`` bytes and draining the rest."""
    kept = bytearray()
    truncated = False
    while True:
        chunk = await reader.read(65536)
        if not chunk:
            break
        room = limit - len(kept)
        if room > 0:
            kept.extend(chunk[:room])
        if len(chunk) > max(room, 0):
            truncated = True
    return bytes(kept), truncated


async def run_capture(
    argv: list[str],
    max_bytes: int = DEFAULT_MAX_BUFFER,
    timeout: Optional[float] = 60.0,
) -> CaptureResult:
    """Run a probe to completion with bounded output capture.

    Raises:
        SpawnError: If the executable cannot be started.
        asyncio.TimeoutError: If it runs longer than ``timeout``; the
            process tree is killed first.
    """
    logger.debug("Running: %s", shlex.join(argv))
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            **_spawn_kwargs(),
        )
    except OSError as exc:
        raise SpawnError(f"Failed to start {Path(argv[0]).name}: {exc}") from exc

    try:
        (out, out_trunc), (err, _) = await asyncio.wait_for(
            asyncio.gather(
                _read_bounded(process.stdout, max_bytes),
                _read_bounded(process.stderr, max_bytes),
            ),
            timeout=timeout,
        )
        returncode = await process.wait()
    except asyncio.TimeoutError:
        kill_process_tree(process.pid)
        await process.wait()
        raise

    return CaptureResult(
        returncode=returncode,
        stdout=out.decode("utf-8", errors="replace"),
        stderr=err.decode("utf-8", errors="replace"),
        truncated=out_trunc,
    )
