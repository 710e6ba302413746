from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """
    Launcher configuration loaded from Environment Variables or .env file.
    Timing values bound every wait the orchestrator performs.
    """

    COMPOSE_FILE: Path = Path("compose.yaml")
    CONTAINER_NAME: str = "WinBoat"
    DOCKER_BASE_URL: str | None = None  # Optional: Connect to remote docker

    GUEST_API_PORT: int = 7148
    RDP_PORT: int = 3389
    HTTP_TIMEOUT: float = 5.0

    POLL_INTERVAL: float = 1.0
    ONLINE_MAX_ATTEMPTS: int = 60
    PORT_MAX_ATTEMPTS: int = 30
    LAUNCH_GRACE_DELAY: float = 3.0

    RDP_USERNAME: str = "winboat"
    RDP_PASSWORD: str = ""

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="GUEST_", env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> AppSettings:
    """
    Creates a singleton instance of AppSettings.
    Uses lru_cache to ensure the .env file is read only once.
    """
    return AppSettings()
