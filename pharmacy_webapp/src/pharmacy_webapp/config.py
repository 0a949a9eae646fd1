# src/pharmacy_webapp/config.py

import logging
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# .env is at the service root, two levels up from src/pharmacy_webapp/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=True)
    logger.info("Loaded .env file from: %s", ENV_FILE_PATH)
else:
    logger.debug(".env file not found at %s. Relying on environment variables.", ENV_FILE_PATH)


class Settings(BaseSettings):
    # === Backend API ===
    API_BASE_URL: str = "http://localhost:5001/api"
    REQUEST_TIMEOUT_SECONDS: float = 30.0
    # The refresh call gets its own, shorter bound: every queued request waits on it
    REFRESH_TIMEOUT_SECONDS: float = 10.0

    # === Session lifecycle ===
    LOGIN_ROUTE: str = "/login"
    INACTIVITY_TIMEOUT_SECONDS: int = 4 * 60 * 60  # 4 hours
    ACTIVITY_CHECK_INTERVAL_SECONDS: float = 60.0
    STORAGE_FILE: Path = PROJECT_ROOT_DIR / ".pharmacy_webapp" / "storage.json"

    # === Static bundle server ===
    PORT: int = 8080
    DIST_DIR: Path = PROJECT_ROOT_DIR / "dist"

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False
    )

    @field_validator("API_BASE_URL", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v: Any) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("API_BASE_URL must be a non-empty string.")
        return v.strip().rstrip("/")

    @field_validator("LOGIN_ROUTE", mode="before")
    @classmethod
    def ensure_leading_slash(cls, v: Any) -> str:
        if not isinstance(v, str) or not v.strip():
            return "/login"
        v = v.strip()
        return v if v.startswith("/") else f"/{v}"

    @model_validator(mode="after")
    def check_intervals(self) -> "Settings":
        if self.INACTIVITY_TIMEOUT_SECONDS <= 0:
            raise ValueError("INACTIVITY_TIMEOUT_SECONDS must be positive.")
        if self.ACTIVITY_CHECK_INTERVAL_SECONDS <= 0:
            raise ValueError("ACTIVITY_CHECK_INTERVAL_SECONDS must be positive.")
        return self

    @property
    def INACTIVITY_TIMEOUT_MS(self) -> int:
        return self.INACTIVITY_TIMEOUT_SECONDS * 1000


try:
    settings = Settings()
    logger.debug("API base URL: %s", settings.API_BASE_URL)
    logger.debug("Build output directory: %s", settings.DIST_DIR)
except Exception as e:
    logger.error("Error instantiating Settings: %s", e)
    raise
