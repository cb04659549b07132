"""Process-spawning capability for FFmpeg engines and capture helpers."""
import asyncio
import logging
import sys

logger = logging.getLogger(__name__)


async def spawn_process(args: list[str], capture_stderr: bool = True) -> asyncio.subprocess.Process:
    """Start a long-running child process.

    The child never reads stdin (FFmpeg would otherwise treat keystrokes as
    commands) and runs in its own session so terminal signals aimed at the
    server don't reach it.
    """
    kwargs = {}
    if sys.platform != "win32":
        kwargs["start_new_session"] = True
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE if capture_stderr else asyncio.subprocess.DEVNULL,
        **kwargs,
    )
    logger.debug("Spawned pid %s: %s", proc.pid, args[0] if args else "?")
    return proc


def _kill(proc) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        pass


async def stop_process(proc: asyncio.subprocess.Process, grace: float = 5.0) -> int | None:
    """Gracefully stop a child process, force-killing it after ``grace`` seconds.

    Returns once the process has fully exited. If the caller is cancelled
    during the grace period the child is killed before the cancellation
    propagates.
    """
    if proc.returncode is not None:
        return proc.returncode
    try:
        proc.terminate()
    except ProcessLookupError:
        return await proc.wait()
    try:
        return await asyncio.wait_for(proc.wait(), timeout=grace)
    except asyncio.TimeoutError:
        logger.warning("pid %s ignored SIGTERM for %.1fs, killing", proc.pid, grace)
        _kill(proc)
        return await proc.wait()
    except asyncio.CancelledError:
        logger.warning("Stop of pid %s cancelled, killing", proc.pid)
        _kill(proc)
        await proc.wait()
        raise
