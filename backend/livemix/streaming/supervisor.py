"""
FFmpeg engine supervisor.

Owns the one transcoding process of a pipeline and its state machine:

    idle -> starting -> running -> stopping -> idle
                \\          \\
                 +-> failed  +-> failed   (spawn error, no readiness, unexpected exit)

``failed`` sticks until ``stop()`` brings the supervisor back to idle. The
supervisor never restarts the engine on its own.
"""
import asyncio
import codecs
import contextlib
import enum
import logging
import re
from collections import deque
from typing import Any, Callable

from livemix.config import settings
from livemix.core.exceptions import ProcessRuntimeError, ProcessSpawnError
from livemix.schemas.pipeline import MixConfig
from livemix.services.audio_source import AudioSourceHandle, AudioSourceProvider
from livemix.streaming.graph import GraphSpec
from livemix.streaming.process import spawn_process, stop_process

logger = logging.getLogger(__name__)


class ProcessState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


# FFmpeg writes progress as "frame=  25 fps=..." (video) or "size=  12kB time=..."
PROGRESS_RE = re.compile(r"^\s*(frame=\s*\d+|size=\s*\S+)")
ERROR_RE = re.compile(r"error|failed|invalid|refused|could not|not found|broken pipe", re.IGNORECASE)
LINE_SPLIT_RE = re.compile(r"[\r\n]+")

STDERR_TAIL_LINES = 20
STDERR_CHUNK = 4096

Listener = Callable[[dict[str, Any]], Any]


class StreamProcessSupervisor:
    def __init__(
        self,
        provider: AudioSourceProvider,
        spawner=spawn_process,
        ffmpeg_path: str | None = None,
        startup_timeout: float | None = None,
        stop_grace: float | None = None,
    ):
        self._provider = provider
        self._spawner = spawner
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.startup_timeout = startup_timeout if startup_timeout is not None else settings.ENGINE_STARTUP_TIMEOUT_SEC
        self.stop_grace = stop_grace if stop_grace is not None else settings.ENGINE_STOP_GRACE_SEC

        self._state = ProcessState.IDLE
        self._proc = None
        self._spec: GraphSpec | None = None
        self._config: MixConfig | None = None
        self._handle: AudioSourceHandle | None = None
        self._stopping = False
        self._ready = asyncio.Event()
        self._monitor_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._last_error: str | None = None
        self._failure: Exception | None = None
        self._listeners: list[Listener] = []

    # --- read side ---

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def handle(self) -> AudioSourceHandle | None:
        return self._handle

    @property
    def config(self) -> MixConfig | None:
        return self._config

    @property
    def is_alive(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def last_stderr(self) -> list[str]:
        return list(self._stderr_tail)

    def get_status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "config": self._config.model_dump(mode="json") if self._config else None,
            "exit_reason": self._failure.detail if self._failure else None,
            "last_error": self._last_error,
            "pid": self._proc.pid if self.is_alive else None,
        }

    # --- event channel ---

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def _set_state(self, new_state: ProcessState) -> None:
        if new_state is self._state:
            return
        logger.info("Engine state %s -> %s", self._state.value, new_state.value)
        self._state = new_state
        event = {
            "type": "state",
            "state": new_state.value,
            "exit_reason": self._failure.detail if self._failure else None,
        }
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("State listener failed: %s", e)

    # --- lifecycle ---

    async def start(
        self,
        spec: GraphSpec,
        handle: AudioSourceHandle | None = None,
        config: MixConfig | None = None,
    ) -> ProcessState:
        """Spawn the engine for ``spec`` and wait for its first progress report.

        The supervisor takes ownership of ``handle``; it is released on stop,
        on failure, or by a later start. Raises ProcessSpawnError when the
        engine cannot be launched or never reports readiness.
        """
        if self._state is not ProcessState.IDLE:
            logger.warning("Engine start ignored: supervisor is %s", self._state.value)
            return self._state

        self._spec = spec
        self._config = config
        self._handle = handle
        self._failure = None
        self._last_error = None
        self._stderr_tail.clear()
        self._ready = asyncio.Event()
        self._set_state(ProcessState.STARTING)

        args = spec.to_args(self.ffmpeg_path)
        logger.info("Starting FFmpeg: %s", " ".join(args))

        # Shielded so a cancelled start still learns about (and can kill) the child.
        spawn = asyncio.ensure_future(self._spawner(args))
        try:
            proc = await asyncio.shield(spawn)
        except asyncio.CancelledError:
            with contextlib.suppress(Exception):
                self._proc = await spawn
            raise
        except (OSError, ValueError) as e:
            await self._fail_start(f"Could not launch {self.ffmpeg_path}: {e}")
            raise self._failure from e

        self._proc = proc
        self._stderr_task = asyncio.create_task(self._drain_stderr(proc))
        self._monitor_task = asyncio.create_task(self._watch_exit(proc))

        try:
            await asyncio.wait_for(self._ready.wait(), timeout=self.startup_timeout)
        except asyncio.TimeoutError:
            await self._shutdown_process()
            await self._fail_start(f"Engine reported no progress within {self.startup_timeout}s")
            raise self._failure

        if proc.returncode is not None:
            # Readiness was released by the exit watcher, not by progress output.
            await self._shutdown_process()
            await self._fail_start(self._describe_exit(proc.returncode))
            raise self._failure

        self._set_state(ProcessState.RUNNING)
        logger.info("FFmpeg running (pid %s)", proc.pid)
        return self._state

    async def stop(self) -> ProcessState:
        """Stop the engine from any state and release the source handle."""
        if self._proc is not None or self._state in (ProcessState.STARTING, ProcessState.RUNNING):
            self._set_state(ProcessState.STOPPING)
        await self._shutdown_process()
        await self._release_handle()
        self._set_state(ProcessState.IDLE)
        return self._state

    async def restart(self, new_spec: GraphSpec, config: MixConfig | None = None) -> ProcessState:
        """Replace the running engine with one built from ``new_spec``.

        The old process has fully exited before the new one is spawned. The
        bound source handle carries over to the new engine.
        """
        handle = self._handle
        if self._state is not ProcessState.IDLE:
            self._set_state(ProcessState.STOPPING)
        await self._shutdown_process()
        self._handle = None
        self._set_state(ProcessState.IDLE)
        return await self.start(new_spec, handle=handle, config=config or self._config)

    # --- internals ---

    async def _fail_start(self, reason: str) -> None:
        logger.error("FFmpeg failed to start: %s", reason)
        self._failure = ProcessSpawnError(reason)
        await self._release_handle()
        self._set_state(ProcessState.FAILED)

    async def _release_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            await self._provider.release(handle)

    async def _shutdown_process(self) -> None:
        """Terminate the engine (if any) and wait for it and its watchers to finish.

        The process reference is only dropped once the process has exited, so a
        cancelled shutdown leaves it visible to the next ``stop()``.
        """
        proc = self._proc
        watchers = [t for t in (self._monitor_task, self._stderr_task) if t is not None and not t.done()]
        self._stopping = True
        try:
            if proc is not None and proc.returncode is None:
                logger.info("Stopping FFmpeg process (pid %s)...", proc.pid)
                returncode = await stop_process(proc, grace=self.stop_grace)
                logger.info("FFmpeg process ended (code %s)", returncode)
        finally:
            for task in watchers:
                task.cancel()
            if proc is None or proc.returncode is not None:
                self._proc = None
            self._monitor_task = None
            self._stderr_task = None
            self._stopping = False
        for task in watchers:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _watch_exit(self, proc) -> None:
        returncode = await proc.wait()
        # Wake a pending start() so it can report the early exit.
        self._ready.set()
        if self._stopping or proc is not self._proc:
            return
        if self._state is not ProcessState.RUNNING:
            return

        # Let the stderr drain pick up the final lines before describing the exit.
        if self._stderr_task is not None:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=1.0)
            if self._stopping or self._state is not ProcessState.RUNNING:
                return

        reason = self._describe_exit(returncode)
        logger.error("FFmpeg exited unexpectedly: %s", reason)
        self._failure = ProcessRuntimeError(reason)
        self._proc = None
        self._stderr_task = None
        self._monitor_task = None
        await self._release_handle()
        # stop() may have run while the handle was being released
        if self._state is ProcessState.RUNNING:
            self._set_state(ProcessState.FAILED)

    async def _drain_stderr(self, proc) -> None:
        stream = proc.stderr
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await stream.read(STDERR_CHUNK)
            if not chunk:
                break
            pending += decoder.decode(chunk)
            # Progress lines end with \r, log lines with \n
            *lines, pending = LINE_SPLIT_RE.split(pending)
            for line in lines:
                self._handle_stderr_line(line)
        pending += decoder.decode(b"", final=True)
        if pending:
            self._handle_stderr_line(pending)

    def _handle_stderr_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        if PROGRESS_RE.match(line):
            if not self._ready.is_set():
                logger.info("FFmpeg reported first output: %s", line)
                self._ready.set()
            else:
                logger.debug("Processing: %s", line)
            return
        self._stderr_tail.append(line)
        if ERROR_RE.search(line):
            self._last_error = line
            logger.warning("FFmpeg: %s", line)
        else:
            logger.debug("FFmpeg: %s", line)

    def _describe_exit(self, returncode: int | None) -> str:
        if returncode is not None and returncode < 0:
            reason = f"killed by signal {-returncode}"
        else:
            reason = f"exit code {returncode}"
        if self._last_error:
            reason += f": {self._last_error}"
        return reason
