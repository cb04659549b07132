import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from livemix.config import settings
from livemix.core.exceptions import LiveMixError
from livemix.core.middleware import setup_middleware
from livemix.services.pipeline_controller import MixPipelineController

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Startup: one controller owns the live mix for the life of the process
    if getattr(app.state, "controller", None) is None:
        app.state.controller = MixPipelineController()
    logger.info("Mix pipeline controller ready")

    yield

    # Shutdown: stop the engine and release the secondary source
    try:
        await app.state.controller.cleanup()
        logger.info("Mix pipeline stopped")
    except Exception as e:
        logger.warning(f"Mix pipeline failed to stop cleanly: {e}")


async def livemix_error_handler(request: Request, exc: LiveMixError) -> JSONResponse:
    logger.warning("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(
        title="LiveMix API",
        version="0.1.0",
        description="Live RTMP restreaming with a mixed-in secondary audio track",
        debug=settings.APP_DEBUG,
        lifespan=lifespan,
    )

    setup_middleware(app)
    app.add_exception_handler(LiveMixError, livemix_error_handler)

    @app.get("/health")
    async def health_check():
        controller = getattr(app.state, "controller", None)
        return {
            "status": "ok",
            "pipeline": controller.state.value if controller is not None else None,
        }

    # Register API routers
    from livemix.api.v1 import router as api_v1_router
    app.include_router(api_v1_router, prefix="/api/v1")

    return app


app = create_app()
