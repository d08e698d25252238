"""
Settings Configuration

Centralized runtime configuration for the evaluation service.
All values are loaded from environment variables (a `.env` file at the
project root is read first).
"""
import os
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
ENV_FILE = PROJECT_ROOT / ".env"

load_dotenv(dotenv_path=ENV_FILE)


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_int_env(key: str, default: int) -> int:
    """Get an integer value from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def get_float_env(key: str, default: float) -> float:
    """Get a float value from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


class Settings:
    """
    Runtime settings for the application.

    To add a new setting:
    1. Add it here as a class attribute
    2. Load it from an environment variable
    3. Read it through `settings`
    """

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./defense_eval.db")
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Connection pool
    DB_POOL_SIZE: int = get_int_env("DB_POOL_SIZE", 20)
    DB_MAX_OVERFLOW: int = get_int_env("DB_MAX_OVERFLOW", 30)
    DB_POOL_TIMEOUT: int = get_int_env("DB_POOL_TIMEOUT", 30)
    SQLITE_BUSY_TIMEOUT: float = get_float_env("SQLITE_BUSY_TIMEOUT", 30.0)
    DB_ECHO: bool = get_bool_env("DB_ECHO", False)

    # Upper bound on one submission's unit of work
    TRANSACTION_TIMEOUT_SECONDS: float = get_float_env("TRANSACTION_TIMEOUT_SECONDS", 15.0)

    ALLOWED_ORIGINS: str = os.getenv("ALLOWED_ORIGINS", "")

    @classmethod
    def is_development(cls) -> bool:
        return cls.ENVIRONMENT.lower() == "development"

    @classmethod
    def allowed_origins(cls) -> list:
        return [origin.strip() for origin in cls.ALLOWED_ORIGINS.split(",") if origin.strip()]

    @classmethod
    def as_dict(cls) -> dict:
        """Get all settings as a dictionary (database URL credentials masked)."""
        result = {
            key: value
            for key, value in cls.__dict__.items()
            if key.isupper() and not key.startswith('_')
        }
        if "@" in result.get("DATABASE_URL", ""):
            scheme, _, host = result["DATABASE_URL"].rpartition("@")
            result["DATABASE_URL"] = f"{scheme.split('://')[0]}://***@{host}"
        return result


# Singleton instance for easy importing
settings = Settings()
