"""
Configuration loader for the image resize service.

Environment variables are centralized here to keep the rest of the code
focused on pipeline logic and to make operational tuning clear.
"""

from functools import lru_cache
import logging
from typing import List, Optional, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import OutputFormat, VariantSpec


def parse_widths(raw: str) -> Tuple[int, ...]:
    """Parse a comma separated width list such as ``"100,500,1000"``."""
    widths: List[int] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        width = int(part)
        if width <= 0:
            raise ValueError(f"variant width must be positive, got {width}")
        if width in widths:
            raise ValueError(f"duplicate variant width {width}")
        widths.append(width)
    if not widths:
        raise ValueError("at least one variant width is required")
    return tuple(widths)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Buckets + variant catalog
    source_bucket: Optional[str] = None
    destination_bucket: str
    destination_prefix: str = ""
    variant_widths: str = "100,500,1000"
    jpeg_quality: int = Field(75, ge=1, le=95)
    public_read: bool = False
    cache_control: Optional[str] = None

    # Queues
    queue_url: Optional[str] = None
    dead_letter_queue_url: Optional[str] = None

    # Orchestrator tunables
    max_concurrency: int = Field(4, ge=1)
    batch_size: int = Field(10, ge=1, le=10)
    max_attempts: int = Field(5, ge=1)
    wait_time_seconds: int = Field(20, ge=0, le=20)
    visibility_timeout: Optional[int] = Field(None, ge=0, le=43200)
    backoff_base_seconds: int = Field(5, ge=0)
    backoff_max_seconds: int = Field(900, ge=0, le=43200)

    # AWS / S3-compatible storage
    aws_region: Optional[str] = None
    s3_endpoint_url: Optional[str] = None
    s3_access_key_id: Optional[str] = None
    s3_secret_access_key: Optional[str] = None
    request_timeout_seconds: int = 30

    log_level: str = "INFO"

    @field_validator("variant_widths")
    @classmethod
    def validate_variant_widths(cls, v: str) -> str:
        parse_widths(v)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        if not isinstance(logging.getLevelName(v.upper()), int):
            raise ValueError(f"LOG_LEVEL {v!r} is not a logging level")
        return v

    def variant_specs(self) -> List[VariantSpec]:
        return [
            VariantSpec(target_width=width, output_format=OutputFormat.JPEG, key_prefix=self.destination_prefix)
            for width in parse_widths(self.variant_widths)
        ]


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()


def configure_logging(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
