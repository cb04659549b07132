from fastapi import APIRouter

from livemix.api.v1.pipeline import router as pipeline_router
from livemix.api.v1.websocket import router as websocket_router

router = APIRouter()
router.include_router(pipeline_router)
router.include_router(websocket_router)
