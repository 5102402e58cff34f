"""Application configuration for the watch-party client."""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])

    room_code_alphabet: str = Field(default="ABCDEFGHJKLMNPQRSTUVWXYZ23456789")
    room_code_length: int = Field(default=6, ge=1)
    peer_id_prefix: str = Field(default="bynge-")

    signaling_host: str = Field(default="0.peerjs.com")
    signaling_port: int = Field(default=443)
    signaling_path: str = Field(default="/")
    signaling_key: str = Field(default="peerjs")
    signaling_secure: bool = Field(default=True)
    signaling_heartbeat_seconds: float = Field(default=5.0, gt=0)
    ice_servers: list[str] = Field(default_factory=lambda: [
        "stun:stun.l.google.com:19302",
        "stun:global.stun.twilio.com:3478",
    ])

    capture_monitor: int = Field(default=1, ge=0)
    capture_audio_device: str = Field(default="")
    capture_audio_format: str = Field(default="pulse")
    scale_max_width: int = Field(default=1280, gt=0)
    scale_max_height: int = Field(default=720, gt=0)
    scale_fps: int = Field(default=24, gt=0)

    max_bitrate: int = Field(default=1_200_000, gt=0)
    max_framerate: int = Field(default=24, gt=0)
    bitrate_max_attempts: int = Field(default=3, ge=1)
    bitrate_retry_seconds: float = Field(default=1.5, ge=0)

    reaction_ttl_seconds: float = Field(default=3.0, gt=0)

    tmdb_api_key: str = Field(default="")
    tmdb_base_url: str = Field(default="https://api.themoviedb.org/3")
    tmdb_cache_ttl_seconds: int = Field(default=600, ge=0)

    @field_validator("ice_servers", "cors_allow_origins", mode="before")
    @classmethod
    def _split_list(cls, value: object) -> object:
        """Allow comma-separated env values for list settings."""

        if isinstance(value, str):
            parts = [item.strip() for item in value.split(",") if item.strip()]
            return parts
        return value


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
