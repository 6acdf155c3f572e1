from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env from the project root so it loads regardless of cwd
_BACKEND_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _BACKEND_ROOT / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(str(_ENV_FILE), ".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str
    database_ssl: bool = False

    # JWT (business owner endpoints)
    secret_key: str
    access_token_expire_minutes: int = 60
    algorithm: str = "HS256"

    # CORS
    cors_origins: str = "http://localhost:3000"

    # Google Calendar (OAuth client used to refresh stored calendar credentials)
    google_client_id: str = ""
    google_client_secret: str = ""

    # Availability engine
    availability_cache_ttl_minutes: int = 60
    availability_cache_backend: str = "database"  # "database" or "memory"
    calendar_source_timeout_seconds: float = 5.0
    availability_request_timeout_seconds: float = 15.0
    # Purge expired cache rows on startup and every hour
    cache_cleanup_interval_seconds: int = 60 * 60

    # Env
    env: str = "development"

    # Email (SMTP). Leave smtp_host empty to disable sending.
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_email: str = ""
    from_name: str = "Bookings"

    # SMS (Twilio). Leave twilio_account_sid empty to disable sending.
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""

    # Public booking site, used in notification bodies
    public_booking_base_url: str = "http://localhost:3000"

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password and self.from_email)

    @property
    def sms_enabled(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)

    @property
    def google_calendar_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)


settings = Settings()
