from fastapi import Request, WebSocket

from livemix.services.pipeline_controller import MixPipelineController


def get_controller(request: Request) -> MixPipelineController:
    """The pipeline controller owned by the running app."""
    return request.app.state.controller


def get_ws_controller(websocket: WebSocket) -> MixPipelineController:
    return websocket.app.state.controller
