import enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

MAX_VOLUME = 200
MAX_DELAY_MS = 5000


class SourceMode(str, enum.Enum):
    DISABLED = "disabled"
    URL = "url"
    DEVICE = "device"
    BROWSER = "browser"


class BrowserAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    selector: str | None = None
    delay: int = Field(0, ge=0)  # ms before the action runs
    x: int | None = None
    y: int | None = None
    code: str | None = None


class SourceParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    device: str | None = None
    audio_url: str | None = None
    browser_url: str | None = None
    viewport_width: int = Field(1920, gt=0)
    viewport_height: int = Field(1080, gt=0)
    actions: tuple[BrowserAction, ...] = ()
    custom_js: str | None = None


class MixConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    input_url: str = Field(min_length=1)
    output_url: str = Field(min_length=1)
    source_mode: SourceMode = SourceMode.DISABLED
    source_params: SourceParams = SourceParams()
    primary_volume: int = Field(100, ge=0, le=MAX_VOLUME)
    secondary_volume: int = Field(100, ge=0, le=MAX_VOLUME)
    primary_delay_ms: int = Field(0, ge=0, le=MAX_DELAY_MS)
    secondary_delay_ms: int = Field(0, ge=0, le=MAX_DELAY_MS)
    video_bitrate: str = Field("6000k", pattern=r"^\d+[kKmM]?$")


class LiveParameterUpdate(BaseModel):
    primary_volume: int | None = Field(None, ge=0, le=MAX_VOLUME)
    secondary_volume: int | None = Field(None, ge=0, le=MAX_VOLUME)
    primary_delay_ms: int | None = Field(None, ge=0, le=MAX_DELAY_MS)
    secondary_delay_ms: int | None = Field(None, ge=0, le=MAX_DELAY_MS)

    def changes(self) -> dict[str, int]:
        return self.model_dump(exclude_none=True)


class Ack(BaseModel):
    accepted: bool
    state: str
    message: str = ""
    has_secondary_audio: bool = False


class PipelineStatus(BaseModel):
    browser_state: dict[str, Any]
    process_state: str
    config: dict[str, Any] | None = None
    exit_reason: str | None = None
    last_error: str | None = None
    pid: int | None = None
