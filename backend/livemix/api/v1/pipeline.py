import logging
from typing import Any

from fastapi import APIRouter, Body, Depends

from livemix.config import settings
from livemix.core.dependencies import get_controller
from livemix.schemas.pipeline import Ack, LiveParameterUpdate, PipelineStatus
from livemix.services.pipeline_controller import MixPipelineController

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pipeline", tags=["pipeline"])


def _with_endpoint_defaults(body: dict[str, Any]) -> dict[str, Any]:
    data = dict(body)
    data.setdefault("input_url", settings.RTMP_INPUT_URL)
    if not data.get("output_url") and settings.default_output_url:
        data["output_url"] = settings.default_output_url
    return data


@router.post("/start", response_model=Ack)
async def start_pipeline(
    body: dict[str, Any] = Body(default_factory=dict),
    controller: MixPipelineController = Depends(get_controller),
):
    """Start streaming. Missing endpoints fall back to the RTMP_* settings."""
    return await controller.start(_with_endpoint_defaults(body))


@router.post("/stop", response_model=Ack)
async def stop_pipeline(controller: MixPipelineController = Depends(get_controller)):
    return await controller.stop()


@router.post("/parameters", response_model=Ack)
async def update_parameters(
    body: LiveParameterUpdate,
    controller: MixPipelineController = Depends(get_controller),
):
    return await controller.update_live_parameters(**body.changes())


@router.get("/status", response_model=PipelineStatus)
async def pipeline_status(controller: MixPipelineController = Depends(get_controller)):
    return controller.get_status()
