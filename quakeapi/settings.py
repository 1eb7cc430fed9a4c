# quakeapi/settings.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from quakeapi import __version__


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", populate_by_name=True
    )

    host: str = Field(default="0.0.0.0", validation_alias="HOST")
    port: int = Field(default=3000, validation_alias="PORT")
    fetch_interval_minutes: int = Field(
        default=5, ge=1, validation_alias="FETCH_INTERVAL"
    )

    # unset -> storage unconfigured: no ingestion, query routes answer 503
    database_path: Optional[Path] = Field(default=None, validation_alias="DATABASE_PATH")

    bmkg_base_url: str = Field(
        default="https://data.bmkg.go.id", validation_alias="BMKG_BASE_URL"
    )
    fetch_timeout_seconds: float = Field(default=10.0, validation_alias="FETCH_TIMEOUT")
    user_agent: str = Field(
        default=f"quakeapi/{__version__}", validation_alias="USER_AGENT"
    )

    cors_origins: str = Field(default="*", validation_alias="CORS_ORIGINS")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    @property
    def cors_origin_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
