"""
WebSocket endpoint for live pipeline status.

Pushes the full status every STATUS_PUSH_INTERVAL_SEC and forwards every
engine state change as it happens.
"""
import asyncio
import contextlib
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from livemix.config import settings
from livemix.core.dependencies import get_ws_controller

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    # Client messages are ignored; reading is how a disconnect is noticed.
    with contextlib.suppress(WebSocketDisconnect):
        while True:
            await websocket.receive_text()


@router.websocket("/pipeline/ws")
async def pipeline_status_ws(websocket: WebSocket):
    controller = get_ws_controller(websocket)
    await websocket.accept()
    logger.info("Status WebSocket connected")

    events: asyncio.Queue = asyncio.Queue(maxsize=100)

    def on_event(event: dict) -> None:
        with contextlib.suppress(asyncio.QueueFull):
            events.put_nowait(event)

    controller.subscribe(on_event)
    receiver = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        await websocket.send_json({"type": "status", "data": controller.get_status()})
        while not receiver.done():
            try:
                event = await asyncio.wait_for(events.get(), timeout=settings.STATUS_PUSH_INTERVAL_SEC)
                await websocket.send_json({"type": "event", "data": event})
            except asyncio.TimeoutError:
                pass
            if receiver.done():
                break
            await websocket.send_json({"type": "status", "data": controller.get_status()})
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Status WebSocket send failed: %s", e)
    finally:
        controller.unsubscribe(on_event)
        receiver.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await receiver
        logger.info("Status WebSocket disconnected")
