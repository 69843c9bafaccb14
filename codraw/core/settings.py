from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = Field(default="sqlite+pysqlite:///./dev.db", validation_alias="DATABASE_URL")
    db_auto_create: bool = Field(default=True, validation_alias="DB_AUTO_CREATE")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str | None = Field(default=None, validation_alias="LOG_FILE")
    otel_endpoint: str | None = Field(default=None, validation_alias="OTEL_EXPORTER_OTLP_ENDPOINT")

    google_cloud_project: str | None = Field(default=None, validation_alias="GOOGLE_CLOUD_PROJECT")
    google_cloud_location: str = Field(default="us-central1", validation_alias="GOOGLE_CLOUD_LOCATION")

    gemini_api_key: str | None = Field(default=None, validation_alias="GEMINI_API_KEY")
    gemini_text_model: str = Field(default="gemini-2.5-flash", validation_alias="GEMINI_TEXT_MODEL")
    gemini_classifier_model: str | None = Field(default=None, validation_alias="GEMINI_CLASSIFIER_MODEL")
    gemini_image_model: str = Field(default="gemini-2.5-flash-image", validation_alias="GEMINI_IMAGE_MODEL")
    gemini_fallback_text_model: str | None = Field(
        default="gemini-2.0-flash",
        validation_alias="GEMINI_FALLBACK_TEXT_MODEL",
    )
    gemini_fallback_image_model: str | None = Field(
        default=None,
        validation_alias="GEMINI_FALLBACK_IMAGE_MODEL",
    )
    gemini_max_retries: int = Field(default=3, validation_alias="GEMINI_MAX_RETRIES")
    gemini_initial_backoff_seconds: float = Field(
        default=0.8,
        validation_alias="GEMINI_INITIAL_BACKOFF_SECONDS",
    )
    gemini_timeout_seconds: float = Field(default=60.0, validation_alias="GEMINI_TIMEOUT_SECONDS")
    gemini_circuit_breaker_threshold: int = Field(
        default=5,
        validation_alias="GEMINI_CIRCUIT_BREAKER_THRESHOLD",
    )
    gemini_circuit_breaker_timeout: int = Field(
        default=60,
        validation_alias="GEMINI_CIRCUIT_BREAKER_TIMEOUT",
    )

    openrouter_api_key: str | None = Field(default=None, validation_alias="OPENROUTER_API_KEY")
    openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1", validation_alias="OPENROUTER_BASE_URL")
    openrouter_model: str = Field(default="google/gemini-2.5-flash", validation_alias="OPENROUTER_MODEL")
    site_url: str = Field(default="http://localhost:3000", validation_alias="SITE_URL")
    analysis_timeout_seconds: float = Field(default=45.0, validation_alias="ANALYSIS_TIMEOUT_SECONDS")

    openai_api_key: str | None = Field(default=None, validation_alias="OPENAI_API_KEY")
    openai_base_url: str = Field(default="https://api.openai.com/v1", validation_alias="OPENAI_BASE_URL")
    transcription_model: str = Field(default="whisper-1", validation_alias="TRANSCRIPTION_MODEL")
    realtime_url: str = Field(default="wss://api.openai.com/v1/realtime", validation_alias="REALTIME_URL")
    realtime_model: str = Field(default="gpt-4o-realtime-preview", validation_alias="REALTIME_MODEL")
    realtime_voice: str = Field(default="alloy", validation_alias="REALTIME_VOICE")

    activity_debounce_seconds: float = Field(default=2.0, validation_alias="ACTIVITY_DEBOUNCE_SECONDS")
    autosave_debounce_seconds: float = Field(default=2.0, validation_alias="AUTOSAVE_DEBOUNCE_SECONDS")
    engine_write_settle_seconds: float = Field(default=0.1, validation_alias="ENGINE_WRITE_SETTLE_SECONDS")
    success_reset_seconds: float = Field(default=2.0, validation_alias="SUCCESS_RESET_SECONDS")
    error_reset_seconds: float = Field(default=3.0, validation_alias="ERROR_RESET_SECONDS")
    generation_timeout_seconds: float | None = Field(default=90.0, validation_alias="GENERATION_TIMEOUT_SECONDS")

    background_threshold: int = Field(default=240, ge=0, le=255, validation_alias="BACKGROUND_THRESHOLD")
    correct_yellowed_whites: bool = Field(default=False, validation_alias="CORRECT_YELLOWED_WHITES")
    snapshot_scale: float = Field(default=0.7, gt=0, validation_alias="SNAPSHOT_SCALE")
    snapshot_quality: float = Field(default=0.7, gt=0, le=1, validation_alias="SNAPSHOT_QUALITY")
    preview_scale: float = Field(default=0.5, gt=0, validation_alias="PREVIEW_SCALE")
    preview_max_length: int = Field(default=8000, validation_alias="PREVIEW_MAX_LENGTH")


settings = Settings()
