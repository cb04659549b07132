from livemix.schemas.pipeline import (
    Ack,
    BrowserAction,
    LiveParameterUpdate,
    MixConfig,
    PipelineStatus,
    SourceMode,
    SourceParams,
)

__all__ = [
    "Ack",
    "BrowserAction",
    "LiveParameterUpdate",
    "MixConfig",
    "PipelineStatus",
    "SourceMode",
    "SourceParams",
]
