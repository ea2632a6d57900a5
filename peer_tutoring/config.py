from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Optional

class Settings(BaseSettings):
    """
    Settings for the Peer Tutoring API.

    Please do not modify this file directly.
    Instead, create a .env file in the root directory of the project
    and specify the settings you would like to change there.
    For example, if you would like to use a redis server, add the following
    line to the .env file:
    - USE_REDIS=True.

    Some settings are required to be set in the .env file, such as:
    - SECRET_KEY

    Google Calendar sync is only enabled when GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET and GOOGLE_REFRESH_TOKEN are all set.

    SUMMARY:
    - Override settings (if needed) using a .env file
    - Never push the .env file to GitHub (it should be in .gitignore)
    - SECRET_KEY is required (ask a team member for the value)
    """

    # Application settings
    app_name: str = "Peer Tutoring API"
    app_version: str = "0.1.0"

    # Local vs production settings
    local: bool = True # Default to local development

    # Token settings
    access_token_expire_minutes: int = 60
    secret_key: str
    hash_algorithm: str = "HS256"

    # Logs settings
    logs_dir: str = "logs"

    # Database settings
    db_url: str = "sqlite:///peer_tutoring.db" # Default, for local development

    # Redis settings
    use_redis: bool = False # Default to not using Redis, change this to True if you have a Redis server set up
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    session_cache_seconds: int = 600

    # Rate limiting
    rate_limit_enabled: bool = True
    write_rate_limit: str = "30/minute"

    # Enrollment settings
    enrollment_max_retries: int = 5 # Optimistic-lock retries for join/leave
    prevent_duplicate_sessions: bool = False

    # Google Calendar settings
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    google_refresh_token: Optional[str] = None
    google_calendar_id: str = "primary"
    google_token_url: str = "https://oauth2.googleapis.com/token"
    google_calendar_api_url: str = "https://www.googleapis.com/calendar/v3"
    calendar_time_zone: str = "Asia/Colombo"
    calendar_timeout_seconds: float = 10.0

    # Load settings from .env file
    model_config = SettingsConfigDict(env_file=".env")

    @property
    def calendar_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret and self.google_refresh_token)

@lru_cache() # Cache settings to avoid reading .env file multiple times
def get_settings():
    """
    Use this function as a dependency to get the settings object.
    Dependency injection will make it easier to test endpoints with different settings, simply inject a different settings object.
    """
    return Settings()
