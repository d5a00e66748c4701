import logging
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    app_name: str = "EPUB Builder"
    debug: bool = False

    # Request settings
    max_request_size_mb: int = 50

    # Server settings
    port: int = 7860

    # Book defaults
    default_title: str = "Untitled"
    default_creator: str = "Unknown Author"
    default_language: str = "en"

    # Remote resource fetching
    fetch_timeout_seconds: float = 30.0
    fetch_max_workers: int = 8
    fetch_user_agent: str = "Mozilla/5.0 (compatible; epub-builder)"

    # Logging
    log_level: str = "INFO"


settings = Settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)
