"""
Configuration for the filedrop relay and transfer client.

All settings can be overridden via environment variables with the FILEDROP_
prefix, e.g. FILEDROP_PORT=3001 or FILEDROP_REPLY_ON_MISSING_TARGET=true.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="FILEDROP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server
    host: str = Field(default="0.0.0.0", description="Relay bind host")
    port: int = Field(default=3001, description="Relay port")
    log_level: str = Field(default="INFO", description="Logging level")

    # Rooms
    public_room_id_length: int = Field(default=6, ge=4, le=32)
    username_prefix: str = Field(default="User", description="Prefix of generated display names")
    reply_on_missing_target: bool = Field(
        default=False,
        description="Send an error back when an offer/answer/candidate names an unknown peer",
    )

    # Transfer
    chunk_size: int = Field(default=16384, gt=0, description="Bytes per data channel message")
    buffer_threshold: int = Field(default=1024 * 1024, gt=0, description="Send buffer high-water mark")

    # Signaling client
    signaling_url: str = Field(default="ws://localhost:3001/ws")
    max_reconnect_attempts: int = Field(default=5, ge=0)
    reconnect_delay: float = Field(default=1.0, ge=0, description="Seconds, multiplied by the attempt number")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


@lru_cache()
def get_settings() -> Settings:
    return Settings()
