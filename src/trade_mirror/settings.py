from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_env: Literal["development", "production"] = "development"
    cron_secret: str = ""
    log_level: str = "INFO"
    log_file: Path | None = None
    db_path: Path = Path("data/trade_mirror.sqlite3")
    channels_config_path: Path = Path("config/channels.yaml")
    bots_config_path: Path = Path("config/bots.yaml")

    # Upstream video platform
    youtube_api_key: str = ""
    youtube_api_base_url: str = "https://www.googleapis.com/youtube/v3"
    youtube_feed_base_url: str = "https://www.youtube.com/feeds/videos.xml"
    youtube_request_timeout_seconds: int = Field(default=10, ge=1, le=60)
    youtube_feed_max_videos: int = Field(default=5, ge=1, le=15)

    # Quota budget
    quota_daily_limit: int = Field(default=10_000, ge=1, le=1_000_000)
    quota_reset_timezone: str = "America/Los_Angeles"
    quota_safety_floor_units: int = Field(default=10, ge=0, le=10_000)
    quota_skip_poll_below_units: int = Field(default=50, ge=0, le=10_000)
    quota_store: Literal["memory", "sqlite"] = "sqlite"

    # Liveness polling
    market_hours_only: bool = True
    market_timezone: str = "America/New_York"
    market_open_hour: int = Field(default=9, ge=0, le=23)
    market_close_hour: int = Field(default=16, ge=1, le=24)
    off_hours_poll_minutes: int = Field(default=30, ge=1, le=1440)
    video_status_cache_seconds: int = Field(default=300, ge=5, le=3600)
    live_chat_id_cache_seconds: int = Field(default=300, ge=5, le=3600)
    inter_channel_delay_seconds: float = Field(default=0.05, ge=0, le=10)
    poll_in_process: bool = False
    chat_polling_enabled: bool = False

    # Correlation
    correlation_window_seconds: float = Field(default=10.0, ge=0.5, le=300)
    vision_confidence: float = Field(default=0.9, ge=0, le=1)
    unconfirmed_verbal_discount: float = Field(default=0.7, ge=0, le=1)
    max_pending_signals_per_stream: int = Field(default=50, ge=1, le=1000)
    scale_out_policy: Literal["evidence", "split"] = "evidence"

    # Vision / OCR
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_vision_model: str = "gpt-4o"
    openai_timeout_seconds: int = Field(default=60, ge=5, le=300)
    openai_max_output_tokens: int = Field(default=1000, ge=64, le=4096)
    ocr_min_confidence: float = Field(default=0.6, ge=0, le=1)

    # Speech transcription
    transcription_api_key: str = ""
    transcription_base_url: str = "https://api.openai.com/v1"
    transcription_model: str = "whisper-1"
    transcription_timeout_seconds: int = Field(default=120, ge=5, le=600)

    # Frame capture service
    capture_service_url: str = ""
    capture_service_key: str = ""
    capture_timeout_seconds: int = Field(default=20, ge=1, le=120)

    # Broker
    tradovate_env: Literal["demo", "live"] = "demo"
    live_mode_unlock: bool = False
    tradovate_username: str = ""
    tradovate_password: str = ""
    tradovate_client_id: str = ""
    tradovate_client_secret: str = ""
    tradovate_device_id: str = ""
    tradovate_account_id: int = 0
    tradovate_timeout_seconds: int = Field(default=10, ge=1, le=60)
    tradovate_max_retries: int = Field(default=3, ge=1, le=10)
    tradovate_retry_base_delay_seconds: float = Field(default=1.0, ge=0.0, le=30)

    # Default bot risk limits (used when config/bots.yaml omits a field)
    default_max_daily_loss: float = Field(default=500.0, ge=0, le=1_000_000)
    default_max_position_size: int = Field(default=1, ge=1, le=1000)
    default_max_concurrent_trades: int = Field(default=5, ge=1, le=100)
    default_max_daily_trades: int = Field(default=10, ge=1, le=1000)
    default_trading_timezone: str = "America/New_York"

    # Alerts
    alert_webhook_url: str = ""
    alert_webhook_timeout_seconds: int = Field(default=10, ge=2, le=60)
    alert_event_types_csv: str = "quota_exhausted,policy_rejected,broker_rejected,trade_closed"

    @model_validator(mode="after")
    def validate_live_mode(self) -> "Settings":
        if self.tradovate_env == "live" and not self.live_mode_unlock:
            raise ValueError(
                "Live broker mode is blocked. Set LIVE_MODE_UNLOCK=true to explicitly permit live execution."
            )
        if self.market_close_hour <= self.market_open_hour:
            raise ValueError("MARKET_CLOSE_HOUR must be after MARKET_OPEN_HOUR")
        return self


settings = Settings()
