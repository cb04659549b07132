"""
Secondary audio source acquisition.

``AudioSourceProvider.acquire`` turns a source mode plus its parameters into an
``AudioSourceHandle`` the engine can read, or ``None``. It never raises: every
failure is logged and degrades to a primary-only mix. The only exception that
escapes is task cancellation, after whatever was half-acquired has been
released.
"""
import asyncio
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from livemix.config import settings
from livemix.core.exceptions import CleanupError, SourceAcquisitionError
from livemix.schemas.pipeline import SourceMode, SourceParams
from livemix.services.browser_automation import BrowserAutomation, PlaywrightBrowser, session_budget
from livemix.streaming.process import spawn_process, stop_process
from livemix.streaming.scratch import file_ready, remove_scratch_file, scratch_path

logger = logging.getLogger(__name__)

CAPTURE_SAMPLE_RATE = 48000


@dataclass(frozen=True)
class TimeoutPolicy:
    source_ready_sec: float = 5.0
    poll_interval_sec: float = 0.1
    browser_navigation_sec: float = 30.0
    browser_settle_sec: float = 2.0

    @classmethod
    def from_settings(cls) -> "TimeoutPolicy":
        return cls(
            source_ready_sec=settings.SOURCE_READY_TIMEOUT_SEC,
            poll_interval_sec=settings.SOURCE_POLL_INTERVAL_SEC,
            browser_navigation_sec=settings.BROWSER_NAVIGATION_TIMEOUT_SEC,
            browser_settle_sec=settings.BROWSER_SETTLE_SEC,
        )


@dataclass(eq=False)
class AudioSourceHandle:
    """An acquired secondary audio resource and everything it owns."""
    mode: SourceMode
    locator: str | None
    loop: bool = False
    placeholder: bool = False
    process: Any = field(default=None, repr=False)
    browser_session: Any = field(default=None, repr=False)
    ephemeral_paths: list[str] = field(default_factory=list, repr=False)
    released: bool = False


def capture_command(
    device: str | None,
    output_path: str,
    ffmpeg_path: str | None = None,
    platform: str | None = None,
) -> list[str]:
    """FFmpeg command that records a capture device to a growing MPEG-TS file."""
    platform = platform or sys.platform
    if platform.startswith("linux"):
        source = ["-f", "pulse", "-i", device or "default"]
    elif platform == "darwin":
        source = ["-f", "avfoundation", "-i", f":{device or '0'}"]
    elif platform.startswith("win"):
        if not device:
            raise SourceAcquisitionError("A DirectShow device name is required on Windows")
        source = ["-f", "dshow", "-i", f"audio={device}"]
    else:
        raise SourceAcquisitionError(f"Device capture is not supported on {platform}")

    return [
        ffmpeg_path or settings.FFMPEG_PATH,
        "-hide_banner", "-loglevel", "error", "-nostdin",
        *source,
        "-ac", "2",
        "-ar", str(CAPTURE_SAMPLE_RATE),
        "-c:a", "aac",
        "-b:a", settings.AUDIO_BITRATE,
        "-f", "mpegts",
        "-y", output_path,
    ]


def placeholder_command(output_path: str, duration_sec: int, ffmpeg_path: str | None = None) -> list[str]:
    """FFmpeg command that renders a bit-exact silent stereo WAV."""
    return [
        ffmpeg_path or settings.FFMPEG_PATH,
        "-hide_banner", "-loglevel", "error", "-nostdin",
        "-f", "lavfi",
        "-i", f"anullsrc=r={CAPTURE_SAMPLE_RATE}:cl=stereo",
        "-t", str(duration_sec),
        "-c:a", "pcm_s16le",
        "-bitexact",
        "-y", output_path,
    ]


class AudioSourceProvider:
    def __init__(
        self,
        browser: BrowserAutomation | None = None,
        spawner=spawn_process,
        ffmpeg_path: str | None = None,
        scratch_dir: str | None = None,
        placeholder_enabled: bool | None = None,
        placeholder_duration: int | None = None,
        stop_grace: float | None = None,
    ):
        self._browser = browser
        self._spawner = spawner
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.scratch_dir = scratch_dir or settings.SCRATCH_DIR
        self.placeholder_enabled = (
            settings.browser_placeholder_enabled if placeholder_enabled is None else placeholder_enabled
        )
        self.placeholder_duration = placeholder_duration or settings.PLACEHOLDER_DURATION_SEC
        self.stop_grace = stop_grace if stop_grace is not None else settings.ENGINE_STOP_GRACE_SEC

    @property
    def browser(self) -> BrowserAutomation:
        if self._browser is None:
            self._browser = PlaywrightBrowser()
        return self._browser

    async def acquire(
        self,
        mode: SourceMode | str,
        params: SourceParams | None = None,
        timeouts: TimeoutPolicy | None = None,
    ) -> AudioSourceHandle | None:
        """Acquire a secondary source for ``mode``; ``None`` when disabled or unavailable."""
        try:
            mode = SourceMode(mode)
        except ValueError:
            logger.warning("Unknown secondary source mode %r, continuing without it", mode)
            return None
        if mode is SourceMode.DISABLED:
            return None

        params = params or SourceParams()
        timeouts = timeouts or TimeoutPolicy.from_settings()
        acquirers = {
            SourceMode.URL: self._acquire_url,
            SourceMode.DEVICE: self._acquire_device,
            SourceMode.BROWSER: self._acquire_browser,
        }

        try:
            handle = await acquirers[mode](params, timeouts)
        except SourceAcquisitionError as e:
            logger.warning("Secondary audio (%s) unavailable, continuing without it: %s", mode.value, e.detail)
            return None
        except Exception as e:
            logger.error("Secondary audio (%s) acquisition failed: %s", mode.value, e, exc_info=True)
            return None

        logger.info("Secondary audio (%s) acquired: %s (loop=%s)", mode.value, handle.locator, handle.loop)
        return handle

    async def release(self, handle: AudioSourceHandle | None) -> None:
        """Free everything the handle owns. Safe on None and safe to repeat."""
        if handle is None or handle.released:
            return
        handle.released = True

        if handle.process is not None:
            try:
                await stop_process(handle.process, grace=self.stop_grace)
            except OSError as e:
                logger.warning("Could not stop %s subprocess: %s", handle.mode.value, e)
            handle.process = None

        if handle.browser_session is not None:
            try:
                await self.browser.teardown(handle.browser_session)
            except Exception as e:
                logger.warning("Browser teardown failed: %s", e)
            handle.browser_session = None

        for path in handle.ephemeral_paths:
            try:
                remove_scratch_file(path)
            except CleanupError as e:
                logger.warning("%s", e.detail)

        logger.info("Secondary audio (%s) released", handle.mode.value)

    def describe(self, handle: AudioSourceHandle | None) -> dict[str, Any]:
        """Browser-facing status snapshot for a handle."""
        if handle is None or handle.released:
            return {"mode": None, "is_running": False, "has_page": False, "placeholder_audio": False}
        session = handle.browser_session
        return {
            "mode": handle.mode.value,
            "is_running": session is not None,
            "has_page": bool(session is not None and getattr(session, "page", None) is not None),
            "placeholder_audio": handle.placeholder,
        }

    # --- url ---

    async def _acquire_url(self, params: SourceParams, timeouts: TimeoutPolicy) -> AudioSourceHandle:
        url = (params.audio_url or "").strip()
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise SourceAcquisitionError(f"Audio URL must be http(s): {url!r}")
        # Remote sources are treated as continuous; the engine reads them once.
        return AudioSourceHandle(mode=SourceMode.URL, locator=url, loop=False)

    # --- device ---

    async def _acquire_device(self, params: SourceParams, timeouts: TimeoutPolicy) -> AudioSourceHandle:
        output_path = scratch_path("device-capture", ".ts", self.scratch_dir)
        args = capture_command(params.device, output_path, self.ffmpeg_path)
        logger.info("Starting audio capture from device %s", params.device or "default")
        try:
            proc = await self._spawner(args, capture_stderr=False)
        except OSError as e:
            raise SourceAcquisitionError(f"Could not start capture process: {e}") from e

        handle = AudioSourceHandle(
            mode=SourceMode.DEVICE,
            locator=output_path,
            loop=False,
            process=proc,
            ephemeral_paths=[output_path],
        )
        try:
            ready = await self._wait_for_file(output_path, proc, timeouts)
        except BaseException:
            await self.release(handle)
            raise
        if not ready:
            await self.release(handle)
            raise SourceAcquisitionError(
                f"Capture device produced no audio within {timeouts.source_ready_sec}s"
            )
        return handle

    async def _wait_for_file(self, path: str, proc, timeouts: TimeoutPolicy) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeouts.source_ready_sec
        while True:
            if os.path.exists(path):
                return True
            if proc is not None and proc.returncode is not None:
                logger.warning("Capture process exited early with code %s", proc.returncode)
                return False
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(timeouts.poll_interval_sec)

    # --- browser ---

    async def _acquire_browser(self, params: SourceParams, timeouts: TimeoutPolicy) -> AudioSourceHandle:
        if not params.browser_url:
            raise SourceAcquisitionError("No browser URL configured")

        browser = self.browser
        # goto is bounded by the navigation timeout; scripted actions add their own allowance
        budget = session_budget(timeouts.browser_navigation_sec, params.actions)
        try:
            session = await asyncio.wait_for(
                browser.init(
                    params.browser_url,
                    (params.viewport_width, params.viewport_height),
                    params.actions,
                    params.custom_js,
                    timeouts.browser_navigation_sec,
                ),
                timeout=budget,
            )
        except asyncio.TimeoutError as e:
            raise SourceAcquisitionError(
                f"Browser session was not ready within {budget:.1f}s"
            ) from e

        handle = AudioSourceHandle(mode=SourceMode.BROWSER, locator=None, browser_session=session)
        try:
            if timeouts.browser_settle_sec > 0:
                await asyncio.sleep(timeouts.browser_settle_sec)

            # Tab audio is not extracted; a looped silent track stands in for it.
            if not self.placeholder_enabled:
                raise SourceAcquisitionError("Browser tab audio capture is not supported")

            path = await self._render_placeholder(timeouts)
            handle.ephemeral_paths.append(path)
            handle.locator = path
            handle.loop = True
            handle.placeholder = True
        except BaseException:
            await self.release(handle)
            raise

        logger.warning("Browser audio is a silent placeholder; tab audio is not captured")
        return handle

    async def _render_placeholder(self, timeouts: TimeoutPolicy) -> str:
        output_path = scratch_path("browser-silence", ".wav", self.scratch_dir)
        args = placeholder_command(output_path, self.placeholder_duration, self.ffmpeg_path)
        logger.info("Generating silent audio placeholder...")
        try:
            proc = await self._spawner(args, capture_stderr=False)
        except OSError as e:
            raise SourceAcquisitionError(f"Could not start placeholder generator: {e}") from e

        try:
            returncode = await asyncio.wait_for(proc.wait(), timeout=timeouts.source_ready_sec)
        except asyncio.TimeoutError:
            await stop_process(proc, grace=self.stop_grace)
            remove_scratch_file(output_path)
            raise SourceAcquisitionError("Placeholder generation timed out")
        except BaseException:
            await stop_process(proc, grace=self.stop_grace)
            remove_scratch_file(output_path)
            raise

        if returncode != 0 or not file_ready(output_path):
            remove_scratch_file(output_path)
            raise SourceAcquisitionError(f"Placeholder generation failed (rc={returncode})")
        return output_path
