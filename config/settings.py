"""Application settings via pydantic-settings (reads from .env).

All environment variables are documented here. The .env file in the working
directory is loaded automatically.
"""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Dashboard grid (fixed viewport, tiles never scroll)
    grid_columns: int = 4
    grid_rows: int = 4

    # Rendered viewport used to size per-tile content budgets
    viewport_width: int = 1600
    viewport_height: int = 900
    grid_gap_px: int = 12

    # Insight generation service (slow, rate-limited)
    insight_base_url: str = "http://localhost:3000"
    insight_request_timeout_sec: float = 60.0

    # Insight batching: tiles per concurrent batch, pause between batches
    insight_batch_size: int = 4
    insight_batch_delay_sec: float = 0.5

    # Redis mirror of the insight cache (warm start after restart)
    redis_url: str = "redis://localhost:6379"
    insight_mirror_enabled: bool = False
    insight_mirror_ttl_sec: int = 1800

    # FastAPI server
    api_port: int = 8510

    # Application metadata
    app_name: str = "tileboard"
    app_version: str = "0.1.0"
    debug: bool = False


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
