from __future__ import annotations
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
    database_url: str = Field(..., alias="DATABASE_URL")

    auth_jwks_url: str = Field(..., alias="AUTH_JWKS_URL")

    # event lookup; unset means events are assumed to exist and be open
    events_base_url: str | None = Field(default=None, alias="EVENTS_BASE_URL")

    # shared between issuing and scanning sides, never part of the payload
    checkin_secret: str = Field(..., alias="CHECKIN_SECRET")
    qr_rotation_seconds: float = Field(default=120, alias="QR_ROTATION_SECONDS")
    qr_size_px: int = Field(default=512, alias="QR_SIZE_PX")
    qr_margin: int = Field(default=1, alias="QR_MARGIN")
    # None disables the age check: any correctly signed payload is accepted
    qr_expiration_window_ms: int | None = Field(default=None, alias="QR_EXPIRATION_WINDOW_MS")

    # Redis
    redis_url: str = Field("redis://127.0.0.1:6379/0", alias="REDIS_URL")
    rl_enabled: bool = Field(default=True, alias="RL_ENABLED")
    rl_window_seconds: int = Field(default=60, alias="RL_WINDOW_SECONDS")
    rl_max_reqs: int = Field(default=60, alias="RL_MAX_REQS")

    # NATS
    nats_enabled: bool = Field(default=True, alias="NATS_ENABLED")
    nats_urls: str = Field("nats://127.0.0.1:4222", alias="NATS_URLS")
    nats_subject_checkin: str = Field("checkins.recorded", alias="NATS_SUBJECT_CHECKIN")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(env_file=".env", env_prefix="", case_sensitive=False)

_settings: Settings | None = None
def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
