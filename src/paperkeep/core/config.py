from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"
    base_url: str = "http://localhost:8000"
    secret_key: str = "change-me"
    cron_secret: str | None = None

    database_url: str = "sqlite:///./paperkeep.db"
    redis_url: str = "redis://localhost:6379/0"

    storage_backend: Literal["local", "s3"] = "local"
    local_storage_path: Path = Path(".local_storage")

    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_bucket: str = "paperkeep"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None

    local_currency: str = "ILS"
    foreign_currency: str = "USD"
    phone_country_code: str = "972"
    phone_channel_prefix: str = "whatsapp:"

    fx_rate_url: str = "https://open.er-api.com/v6/latest/USD"
    fx_rate_ttl_seconds: int = 6 * 60 * 60
    fx_rate_timeout_seconds: float = 2.5
    fx_fallback_rate: float | None = None
    fx_rate_min: float = 2.0
    fx_rate_max: float = 10.0

    google_vision_api_key: str | None = None
    google_vision_base_url: str = "https://vision.googleapis.com/v1"
    google_vision_pdf_output_uri: str | None = None
    google_vision_pdf_max_pages: int = 5
    google_vision_poll_timeout_seconds: float = 30.0
    google_vision_request_timeout_seconds: float = 30.0
    gcs_endpoint_url: str = "https://storage.googleapis.com"
    gcs_hmac_access_key_id: str | None = None
    gcs_hmac_secret: str | None = None

    extraction_max_attempts: int = 3
    extraction_poke_on_enqueue: bool = True
    extraction_backoff_seconds: tuple[int, ...] = (10, 30, 120)
    extraction_stale_running_minutes: int = 15
    extraction_batch_max_jobs: int = 20
    extraction_batch_max_seconds: float = 25.0
    ocr_text_max_chars: int = 50_000
    ocr_error_max_chars: int = 4_000

    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    inbound_reclassify_window_minutes: int = 20

    access_token_exp_minutes: int = 60 * 24

    init_admin_email: str | None = None
    init_admin_phone_number: str | None = None


settings = Settings()
