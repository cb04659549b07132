"""
Mix pipeline controller: the single owner of one live mix.

Composes source acquisition, graph building and engine supervision behind
start / stop / update_live_parameters / get_status. Transitions are serialized
by one lock. The slow part of a transition (acquire + spawn, or a restart) runs
in an inner task so that ``stop()`` can cancel it without waiting its turn.
"""
import asyncio
import logging
from typing import Any, Awaitable, Mapping

from pydantic import ValidationError

from livemix.core.exceptions import ConfigError
from livemix.schemas.pipeline import Ack, MixConfig, SourceMode
from livemix.services.audio_source import AudioSourceProvider, TimeoutPolicy
from livemix.streaming.graph import build_graph
from livemix.streaming.supervisor import Listener, ProcessState, StreamProcessSupervisor

logger = logging.getLogger(__name__)

LIVE_PARAMETERS = ("primary_volume", "secondary_volume", "primary_delay_ms", "secondary_delay_ms")


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid mix configuration"


def parse_config(data: MixConfig | Mapping[str, Any]) -> MixConfig:
    """Validate caller input into a MixConfig, raising ConfigError."""
    if isinstance(data, MixConfig):
        return data
    try:
        return MixConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_validation_error(e)) from e


def merge_live_parameters(config: MixConfig, **changes: int | None) -> MixConfig:
    """Return a new config with the given live parameters replaced."""
    unknown = set(changes) - set(LIVE_PARAMETERS)
    if unknown:
        raise ConfigError(f"Not a live parameter: {', '.join(sorted(unknown))}")
    updates = {k: v for k, v in changes.items() if v is not None}
    data = config.model_dump()
    data.update(updates)
    # model_copy(update=...) skips validation, so rebuild from the merged dump
    return parse_config(data)


class MixPipelineController:
    def __init__(
        self,
        provider: AudioSourceProvider | None = None,
        supervisor: StreamProcessSupervisor | None = None,
        timeouts: TimeoutPolicy | None = None,
    ):
        self.provider = provider or AudioSourceProvider()
        self.supervisor = supervisor or StreamProcessSupervisor(self.provider)
        self.timeouts = timeouts
        self._config: MixConfig | None = None
        self._lock = asyncio.Lock()
        self._transition: asyncio.Task | None = None
        self._cancel_requested = False

    @property
    def state(self) -> ProcessState:
        return self.supervisor.state

    @property
    def config(self) -> MixConfig | None:
        return self._config

    def _ack(self, accepted: bool, message: str) -> Ack:
        return Ack(
            accepted=accepted,
            state=self.supervisor.state.value,
            message=message,
            has_secondary_audio=self.supervisor.handle is not None,
        )

    async def start(self, config: MixConfig | Mapping[str, Any]) -> Ack:
        """Acquire the secondary source, build the graph and launch the engine.

        Raises ConfigError before touching any state, and ProcessSpawnError when
        the engine fails to launch (the pipeline is then ``failed``).
        """
        config = parse_config(config)
        async with self._lock:
            state = self.supervisor.state
            if state in (ProcessState.STARTING, ProcessState.RUNNING, ProcessState.STOPPING):
                logger.warning("Start rejected: pipeline is %s", state.value)
                return self._ack(False, f"Pipeline already {state.value}")
            if state is ProcessState.FAILED:
                await self.supervisor.stop()

            logger.info("Starting mix pipeline...")
            logger.info("Input: %s", config.input_url)
            logger.info("Output: %s", config.output_url)
            logger.info(
                "Volumes: primary=%d%% secondary=%d%%, delays: primary=%dms secondary=%dms",
                config.primary_volume, config.secondary_volume,
                config.primary_delay_ms, config.secondary_delay_ms,
            )
            self._config = config
            cancelled = await self._run_transition(self._start_pipeline(config))
            if cancelled:
                return self._ack(False, "Start cancelled by stop")

            if self.supervisor.handle is not None:
                message = "Streaming started with secondary audio"
            elif config.source_mode is SourceMode.DISABLED:
                message = "Streaming started"
            else:
                message = "Streaming started (secondary audio unavailable)"
            return self._ack(True, message)

    async def stop(self) -> Ack:
        """Stop the pipeline from any state, cancelling an in-flight start or restart."""
        transition = self._transition
        if transition is not None and not transition.done():
            logger.info("Cancelling in-flight pipeline transition")
            self._cancel_requested = True
            transition.cancel()

        async with self._lock:
            self._cancel_requested = False
            logger.info("Stopping mix pipeline...")
            await self.supervisor.stop()
            return self._ack(True, "Streaming stopped")

    async def update_live_parameters(
        self,
        primary_volume: int | None = None,
        secondary_volume: int | None = None,
        primary_delay_ms: int | None = None,
        secondary_delay_ms: int | None = None,
    ) -> Ack:
        """Apply new volumes/delays by restarting the engine with a rebuilt graph.

        The secondary source handle is reused. Expect a short gap in the
        output while the engine restarts.
        """
        async with self._lock:
            if self._config is None:
                return self._ack(False, "Pipeline has not been configured")

            new_config = merge_live_parameters(
                self._config,
                primary_volume=primary_volume,
                secondary_volume=secondary_volume,
                primary_delay_ms=primary_delay_ms,
                secondary_delay_ms=secondary_delay_ms,
            )
            self._config = new_config

            if self.supervisor.state is not ProcessState.RUNNING:
                return self._ack(True, "Parameters stored; pipeline is not running")

            logger.info(
                "Updating live parameters: primary=%d%%/%dms secondary=%d%%/%dms",
                new_config.primary_volume, new_config.primary_delay_ms,
                new_config.secondary_volume, new_config.secondary_delay_ms,
            )
            spec = build_graph(new_config, self.supervisor.handle)
            cancelled = await self._run_transition(self._guarded(self.supervisor.restart(spec, config=new_config)))
            if cancelled:
                return self._ack(False, "Update cancelled by stop")
            return self._ack(True, "Parameters applied")

    def get_status(self) -> dict[str, Any]:
        status = self.supervisor.get_status()
        return {
            "browser_state": self.provider.describe(self.supervisor.handle),
            "process_state": status["state"],
            "config": self._config.model_dump(mode="json") if self._config else None,
            "exit_reason": status["exit_reason"],
            "last_error": status["last_error"],
            "pid": status["pid"],
        }

    def subscribe(self, listener: Listener) -> None:
        self.supervisor.add_listener(listener)

    def unsubscribe(self, listener: Listener) -> None:
        self.supervisor.remove_listener(listener)

    async def cleanup(self) -> None:
        await self.stop()

    # --- internals ---

    async def _run_transition(self, coro: Awaitable[Any]) -> bool:
        """Run ``coro`` as the cancellable transition. Returns True if stop() cancelled it."""
        task = asyncio.ensure_future(coro)
        self._transition = task
        try:
            await task
        except asyncio.CancelledError:
            if self._cancel_requested and task.cancelled():
                logger.info("Pipeline transition cancelled")
                return True
            raise
        finally:
            self._transition = None
        return False

    async def _start_pipeline(self, config: MixConfig) -> None:
        handle = await self.provider.acquire(config.source_mode, config.source_params, self.timeouts)
        spec = build_graph(config, handle)
        # From here the supervisor owns the handle
        await self._guarded(self.supervisor.start(spec, handle=handle, config=config))

    async def _guarded(self, coro: Awaitable[Any]) -> Any:
        """Await a supervisor call; on cancellation, bring the supervisor back to idle."""
        try:
            return await coro
        except asyncio.CancelledError:
            await self.supervisor.stop()
            raise
