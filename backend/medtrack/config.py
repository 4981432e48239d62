from pydantic_settings import BaseSettings
from pydantic import Field
from functools import lru_cache


def _split(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings."""

    app_name: str = Field(default="MedTrack Scheduling Service", env="APP_NAME")
    debug: bool = Field(default=False, env="DEBUG")
    log_level: str = Field(default="INFO", env="LOG_LEVEL")

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./medtrack.db", env="DATABASE_URL")
    db_pool_timeout: int = Field(default=10, env="DB_POOL_TIMEOUT")
    db_echo: bool = Field(default=False, env="DB_ECHO")

    # Sessions
    jwt_secret_key: str = Field(default="dev-only-change-me", env="JWT_SECRET_KEY")
    session_ttl_minutes: int = Field(default=30, env="SESSION_TTL_MINUTES")
    session_rotate_on_refresh: bool = Field(default=False, env="SESSION_ROTATE_ON_REFRESH")
    # A new login ends the user's other sessions
    single_session_per_user: bool = Field(default=True, env="SINGLE_SESSION_PER_USER")
    password_schemes: str = Field(default="pbkdf2_sha256", env="PASSWORD_SCHEMES")

    # Scheduling
    storage_timeout_seconds: float = Field(default=5.0, env="STORAGE_TIMEOUT_SECONDS")
    create_max_retries: int = Field(default=3, env="CREATE_MAX_RETRIES")
    create_retry_backoff_seconds: float = Field(default=0.05, env="CREATE_RETRY_BACKOFF_SECONDS")
    max_note_length: int = Field(default=2000, env="MAX_NOTE_LENGTH")
    min_user_age: int = Field(default=18, env="MIN_USER_AGE")

    # CORS - comma separated list of origins
    cors_origins: str = Field(default="http://localhost:3000", env="CORS_ORIGINS")

    @property
    def cors_origin_list(self) -> list[str]:
        return _split(self.cors_origins)

    @property
    def password_scheme_list(self) -> list[str]:
        return _split(self.password_schemes)

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
