"""Configuration module for the IPAM allocator.

The config file is discovered in the following order: (1) via the `IPAM_ALLOCATOR_CONFIG_PATH`
environment variable, (2) `.ipam` in the project root, (3) `.env` in the project root, (4) fallback to
environment variables only. The `Settings` class loads every field from the environment or that file
and tolerates extra variables so deployments can carry unrelated configuration alongside.

How to extend/maintain:
-----------------------
- Add new config fields to the `Settings` class, and document them.
- If you change the config discovery logic, update this docstring.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Constants ---
IPAM_FILENAME: str = ".ipam"
DEFAULT_ENV_FILENAME: str = ".env"
CONFIG_ENV_VAR: str = "IPAM_ALLOCATOR_CONFIG_PATH"
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent


# --- Config file discovery (no logging) ---
def get_config_path() -> Optional[str]:
    """Determine the config file path to use, in order of precedence:
    1. Environment variable IPAM_ALLOCATOR_CONFIG_PATH
    2. .ipam in project root
    3. .env in project root
    4. None (fallback to environment variables only)

    Returns:
        Optional[str]: Path to config file, or None if not found.
    """
    env_path: Optional[str] = os.environ.get(CONFIG_ENV_VAR)
    if env_path and os.path.exists(env_path):
        return env_path
    ipam_path: Path = PROJECT_ROOT / IPAM_FILENAME
    if ipam_path.exists():
        return str(ipam_path)
    env_path_file: Path = PROJECT_ROOT / DEFAULT_ENV_FILENAME
    if env_path_file.exists():
        return str(env_path_file)
    return None


CONFIG_PATH: Optional[str] = get_config_path()
if CONFIG_PATH:
    load_dotenv(dotenv_path=CONFIG_PATH, override=True)


class Settings(BaseSettings):
    """Application settings with environment variable support.
    All fields are loaded from the environment or the .ipam/.env file.
    """

    model_config = SettingsConfigDict(
        env_file=CONFIG_PATH if CONFIG_PATH else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow",
    )

    # Server configuration
    APP_NAME: str = "IPAM_Allocator"
    ENV: str = "dev"
    HOST: str = "127.0.0.1"
    PORT: int = 8000
    DEBUG: bool = False

    # MongoDB configuration
    MONGODB_URL: str = "mongodb://localhost:27017"
    MONGODB_DATABASE: str = "ipam"
    MONGODB_CONNECTION_TIMEOUT: int = 10000
    MONGODB_SERVER_SELECTION_TIMEOUT: int = 5000
    MONGODB_USERNAME: Optional[str] = None
    MONGODB_PASSWORD: Optional[SecretStr] = None

    # Redis configuration (read caches only)
    REDIS_URL: Optional[str] = None
    REDIS_HOST: str = "127.0.0.1"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[SecretStr] = None

    # Logging configuration
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE: bool = False
    LOG_DIR: str = "logs"
    LOKI_ENABLED: bool = False
    LOKI_URL: str = "http://localhost:3100/loki/api/v1/push"
    LOKI_COMPRESS: bool = True

    # IPAM allocation policy
    IPAM_REUSE_RETIRED_REGION_SLOTS: bool = True  # Retired /24s without active hosts may be reallocated
    IPAM_REUSE_RELEASED_HOST_SLOTS: bool = True  # Released host octets may be reallocated
    IPAM_FORECAST_WINDOW_DAYS: int = 30
    IPAM_UTILIZATION_CACHE_TTL: int = 30  # Seconds, 0 disables the cache
    IPAM_COUNTRY_MAPPINGS_FILE: Optional[str] = None  # JSON list replacing the built-in country table
    IPAM_AUDIT_MAX_PAGE_SIZE: int = 100
    IPAM_DEFAULT_ACTOR: str = "system"

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        """Upper-case the level name and reject unknown levels."""
        level = (v or "INFO").upper()
        if level not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(f"Unsupported LOG_LEVEL: {v}")
        return level

    @field_validator("IPAM_FORECAST_WINDOW_DAYS")
    @classmethod
    def validate_forecast_window(cls, v: int) -> int:
        """A least-squares fit needs at least two daily points."""
        if v < 2:
            raise ValueError("IPAM_FORECAST_WINDOW_DAYS must be at least 2")
        return v


# Global settings instance
settings: Settings = Settings()

# Compute effective REDIS_URL if not explicitly provided.
if not settings.REDIS_URL:
    creds = ""
    if settings.REDIS_PASSWORD:
        creds = f":{settings.REDIS_PASSWORD.get_secret_value()}@"
    settings.REDIS_URL = f"redis://{creds}{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"
