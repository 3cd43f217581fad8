from __future__ import annotations

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    local_timezone: str = Field(default="Europe/Athens", alias="LOCAL_TIMEZONE")

    cors_origins: List[str] = Field(
        default_factory=lambda: [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        alias="CORS_ORIGINS",
    )

    # ──────────────────────────────────────────────────────────────
    # Incidents (fire service listing page)
    # ──────────────────────────────────────────────────────────────

    incidents_url: str = Field(
        default="https://museum.fireservice.gr/symvanta/",
        alias="INCIDENTS_URL",
    )
    incidents_timeout_s: float = Field(default=120.0, alias="INCIDENTS_TIMEOUT_S")
    incidents_poll_interval_s: float = Field(default=60.0, alias="INCIDENTS_POLL_INTERVAL_S")
    incidents_initial_delay_s: float = Field(default=30.0, alias="INCIDENTS_INITIAL_DELAY_S")
    incidents_user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
        alias="INCIDENTS_USER_AGENT",
    )

    # ──────────────────────────────────────────────────────────────
    # 112 warnings (client-side rendered feed widget)
    # ──────────────────────────────────────────────────────────────

    warnings_url: str = Field(
        default="https://widgets.sociablekit.com/twitter-feed/iframe/25590424",
        alias="WARNINGS_URL",
    )
    warnings_render_timeout_s: float = Field(default=30.0, alias="WARNINGS_RENDER_TIMEOUT_S")
    warnings_post_selector: str = Field(default=".sk-post-item", alias="WARNINGS_POST_SELECTOR")
    warnings_settle_s: float = Field(default=2.0, alias="WARNINGS_SETTLE_S")
    warnings_poll_interval_s: float = Field(default=60.0, alias="WARNINGS_POLL_INTERVAL_S")
    warnings_initial_delay_s: float = Field(default=45.0, alias="WARNINGS_INITIAL_DELAY_S")
    warnings_retention_h: float = Field(default=24.0, alias="WARNINGS_RETENTION_H")
    warnings_immediate_h: float = Field(default=12.0, alias="WARNINGS_IMMEDIATE_H")
    warnings_pair_window_s: float = Field(default=300.0, alias="WARNINGS_PAIR_WINDOW_S")

    # ──────────────────────────────────────────────────────────────
    # Poll cycles
    # ──────────────────────────────────────────────────────────────

    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    poll_hard_timeout_s: float = Field(default=300.0, alias="POLL_HARD_TIMEOUT_S")

    # ──────────────────────────────────────────────────────────────
    # Geocoding (Nominatim + local fallbacks)
    # ──────────────────────────────────────────────────────────────

    nominatim_url: str = Field(
        default="https://nominatim.openstreetmap.org/search",
        alias="NOMINATIM_URL",
    )
    geocoder_user_agent: str = Field(default="FireIncidents/1.0", alias="GEOCODER_USER_AGENT")
    geocoder_min_interval_s: float = Field(default=1.1, alias="GEOCODER_MIN_INTERVAL_S")
    geocoder_timeout_s: float = Field(default=10.0, alias="GEOCODER_TIMEOUT_S")
    geocoder_language: str = Field(default="el", alias="GEOCODER_LANGUAGE")
    geocoder_country: str = Field(default="gr", alias="GEOCODER_COUNTRY")
    geocoder_dataset_path: str | None = Field(default=None, alias="GEOCODER_DATASET_PATH")
    geocoder_region_fallback: bool = Field(default=True, alias="GEOCODER_REGION_FALLBACK")

    # Greece bounding envelope
    greece_min_lat: float = Field(default=34.0, alias="GREECE_MIN_LAT")
    greece_max_lat: float = Field(default=42.0, alias="GREECE_MAX_LAT")
    greece_min_lon: float = Field(default=19.0, alias="GREECE_MIN_LON")
    greece_max_lon: float = Field(default=30.0, alias="GREECE_MAX_LON")

    # ──────────────────────────────────────────────────────────────
    # Notifications
    # ──────────────────────────────────────────────────────────────

    notify_enabled: bool = Field(default=True, alias="NOTIFY_ENABLED")
    notify_min_spacing_s: float = Field(default=2.0, alias="NOTIFY_MIN_SPACING_S")
    notify_queue_max: int = Field(default=1000, alias="NOTIFY_QUEUE_MAX")


settings = Settings()
