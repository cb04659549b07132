from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Any


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # App
    APP_ENV: str = "development"
    APP_DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return str(v).strip().upper() or "INFO"

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:80"]

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        if isinstance(v, str):
            import json
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(",")]
        return v

    # FFmpeg
    FFMPEG_PATH: str = "ffmpeg"
    AUDIO_BITRATE: str = "192k"
    ENGINE_STARTUP_TIMEOUT_SEC: float = 20.0
    ENGINE_STOP_GRACE_SEC: float = 5.0

    # Scratch directory for capture files and placeholder audio
    SCRATCH_DIR: str = "/tmp/livemix"

    # Secondary source acquisition
    SOURCE_READY_TIMEOUT_SEC: float = 5.0
    SOURCE_POLL_INTERVAL_SEC: float = 0.1

    # Browser automation (Playwright)
    BROWSER_HEADLESS: bool = True
    BROWSER_NAVIGATION_TIMEOUT_SEC: float = 30.0
    BROWSER_SETTLE_SEC: float = 2.0
    BROWSER_AUDIO_FALLBACK: str = "placeholder"  # "placeholder" or "none"
    PLACEHOLDER_DURATION_SEC: int = 10

    @field_validator("BROWSER_AUDIO_FALLBACK", mode="before")
    @classmethod
    def check_browser_fallback(cls, v: str) -> str:
        v = str(v).strip().lower()
        if v not in ("placeholder", "none"):
            raise ValueError("BROWSER_AUDIO_FALLBACK must be 'placeholder' or 'none'")
        return v

    @property
    def browser_placeholder_enabled(self) -> bool:
        return self.BROWSER_AUDIO_FALLBACK == "placeholder"

    # RTMP endpoints (defaults for the control API)
    RTMP_INPUT_URL: str = "rtmp://localhost:1935/live/stream"
    RTMP_OUTPUT_URL: str = ""
    RTMP_OUTPUT_KEY: str = ""

    @property
    def default_output_url(self) -> str:
        if not self.RTMP_OUTPUT_URL:
            return ""
        if not self.RTMP_OUTPUT_KEY:
            return self.RTMP_OUTPUT_URL
        return f"{self.RTMP_OUTPUT_URL.rstrip('/')}/{self.RTMP_OUTPUT_KEY}"

    # Status push over WebSocket
    STATUS_PUSH_INTERVAL_SEC: float = 2.0


settings = Settings()
