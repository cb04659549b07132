import asyncio
from collections.abc import AsyncIterator
from types import SimpleNamespace

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from livemix.main import create_app
from livemix.services.audio_source import AudioSourceProvider, TimeoutPolicy
from livemix.services.pipeline_controller import MixPipelineController
from livemix.streaming.supervisor import ProcessState, StreamProcessSupervisor

PROGRESS_LINE = b"frame=    1 fps=0.0 q=-1.0 size=       0kB time=00:00:00.04 bitrate=N/A speed=N/A\r"


class FakeProcess:
    """Stands in for asyncio.subprocess.Process."""

    def __init__(self, pid: int, args: list[str], stderr_chunks=(), ignore_terminate: bool = False):
        self.pid = pid
        self.args = args
        self.returncode = None
        self.terminated = False
        self.killed = False
        self.ignore_terminate = ignore_terminate
        self._exited = asyncio.Event()
        if stderr_chunks is None:
            self.stderr = None
        else:
            self.stderr = asyncio.StreamReader()
            for chunk in stderr_chunks:
                self.stderr.feed_data(chunk)

    @property
    def is_engine(self) -> bool:
        return "-filter_complex" in self.args

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        if self.stderr is not None:
            self.stderr.feed_eof()
        self._exited.set()

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeSpawner:
    """Records spawned commands and simulates what FFmpeg does with them.

    Placeholder renders write their WAV and exit 0. Device captures write
    their output file and keep running (unless ``device_produces`` is off).
    Engines report progress on stderr unless ``engine_stderr`` says otherwise.
    """

    def __init__(self):
        self.calls: list[list[str]] = []
        self.processes: list[FakeProcess] = []
        self.fail_with: Exception | None = None
        self.engine_stderr: list[bytes] = [b"Input #0, flv, from 'rtmp://in/live':\n", PROGRESS_LINE]
        self.engine_ignores_terminate = False
        self.device_produces = True
        self.placeholder_exit = 0
        self.max_engines_alive = 0

    @property
    def engines(self) -> list[FakeProcess]:
        return [p for p in self.processes if p.is_engine]

    @property
    def alive(self) -> list[FakeProcess]:
        return [p for p in self.processes if p.returncode is None]

    async def __call__(self, args, capture_stderr: bool = True):
        args = list(args)
        self.calls.append(args)
        if self.fail_with is not None:
            raise self.fail_with

        pid = 4000 + len(self.processes)
        if "-filter_complex" in args:
            proc = FakeProcess(
                pid, args,
                stderr_chunks=list(self.engine_stderr) if capture_stderr else None,
                ignore_terminate=self.engine_ignores_terminate,
            )
        else:
            proc = FakeProcess(pid, args, stderr_chunks=None)
        self.processes.append(proc)

        output_path = args[-1]
        if "lavfi" in args:
            if self.placeholder_exit == 0:
                with open(output_path, "wb") as f:
                    f.write(b"RIFF" + b"\x00" * 40)
            proc.exit(self.placeholder_exit)
        elif "mpegts" in args and self.device_produces:
            with open(output_path, "wb") as f:
                f.write(b"\x47" * 188)

        self.max_engines_alive = max(
            self.max_engines_alive, len([p for p in self.engines if p.returncode is None])
        )
        return proc


class FakeBrowser:
    def __init__(self):
        self.inits: list[str] = []
        self.teardowns: list = []
        self.init_delay = 0.0
        self.fail_with: Exception | None = None

    async def init(self, url, viewport, actions=(), custom_js=None, timeout=None):
        self.inits.append(url)
        if self.init_delay:
            await asyncio.sleep(self.init_delay)
        if self.fail_with is not None:
            raise self.fail_with
        return SimpleNamespace(url=url, page=object())

    async def execute_action(self, session, action):
        return None

    async def teardown(self, session):
        self.teardowns.append(session)


async def wait_for_state(target, state: ProcessState, timeout: float = 2.0) -> None:
    """Poll until ``target.state`` (supervisor or controller) reaches ``state``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while target.state is not state:
        if loop.time() >= deadline:
            raise AssertionError(f"state stayed {target.state.value}, expected {state.value}")
        await asyncio.sleep(0.01)


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def browser() -> FakeBrowser:
    return FakeBrowser()


@pytest.fixture
def timeouts() -> TimeoutPolicy:
    return TimeoutPolicy(
        source_ready_sec=0.3,
        poll_interval_sec=0.01,
        browser_navigation_sec=1.0,
        browser_settle_sec=0,
    )


@pytest.fixture
def provider(spawner, browser, tmp_path) -> AudioSourceProvider:
    return AudioSourceProvider(
        browser=browser,
        spawner=spawner,
        ffmpeg_path="ffmpeg",
        scratch_dir=str(tmp_path),
        placeholder_enabled=True,
        placeholder_duration=10,
        stop_grace=0.2,
    )


@pytest.fixture
def supervisor(provider, spawner) -> StreamProcessSupervisor:
    return StreamProcessSupervisor(
        provider,
        spawner=spawner,
        ffmpeg_path="ffmpeg",
        startup_timeout=1.0,
        stop_grace=0.2,
    )


@pytest.fixture
def controller(provider, supervisor, timeouts) -> MixPipelineController:
    return MixPipelineController(provider, supervisor, timeouts)


@pytest.fixture
def base_config() -> dict:
    return {"input_url": "rtmp://in/live/stream", "output_url": "rtmp://out/live/key"}


@pytest_asyncio.fixture
async def client(controller) -> AsyncIterator[AsyncClient]:
    app = create_app()
    # ASGITransport skips lifespan, so the controller is installed directly
    app.state.controller = controller
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await controller.cleanup()
