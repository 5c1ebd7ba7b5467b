import logging
import os
from typing import Any, List, Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_settings_instance: Optional["Settings"] = None

dont_use_env = os.getenv("ROLLCALL_NO_ENV", "false").lower() in ("true", "1", "t")


class Settings(BaseSettings):
    """
    Manages all application configuration using Pydantic.
    Loads settings from environment variables for security and flexibility.
    """
    # Application settings
    APP_NAME: str = "Rollcall"
    ALGORITHM: str = "HS256"  # JWT signing algorithm

    # Security settings
    JWT_SECRET_KEY: SecretStr = SecretStr("dev-secret-key-change-in-production")
    LOGIN_TICKET_LIFETIME_SECONDS: int = 300
    SESSION_TOKEN_LIFETIME_SECONDS: int = 28800
    BCRYPT_ROUNDS: int = 10
    MIN_PASSWORD_LENGTH: int = 6

    # Signups are restricted to these email domains, empty means any domain is accepted.
    INSTITUTION_EMAIL_DOMAINS: List[str] = []

    # Database settings
    DEFAULT_DATABASE_URI: str = "sqlite+aiosqlite:///./rollcall_dev.db"  # PROVIDE ASYNC URI
    AUTO_CREATE_DATABASE: bool = True  # Automatically create the database tables if they don't exist
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30
    DATABASE_POOL_RECYCLE: int = 1800
    DATABASE_POOL_PRE_PING: bool = True

    # Webauthn settings
    WEBAUTHN_RP_ID: str = "localhost"  # The domain of your site
    WEBAUTHN_RP_NAME: str = "Secure Attendance"
    WEBAUTHN_ORIGIN: str = "http://localhost:5000"
    WEBAUTHN_TIMEOUT_MS: int = 120000
    WEBAUTHN_REQUIRE_USER_VERIFICATION: bool = False
    WEBAUTHN_VERIFY_WINDOW_SECONDS: int = 120  # how long a session-scoped device check counts as recent

    model_config = SettingsConfigDict(env_file=None if dont_use_env else os.getenv("ENV_FILE_NAME", ".env"),
                                      env_file_encoding='utf-8', extra='ignore')


def init_settings(**kwargs: Any) -> "Settings":
    """
    Initializes or re-initializes the global settings singleton. This should
    be called explicitly at the start of your application, especially for
    testing or when using a secrets manager.

    Args:
        **kwargs: Keyword arguments to initialize settings with. Values not given
        are still read from the environment.
    """
    global _settings_instance
    if _settings_instance is not None:
        logger.warning("Settings have already been initialized. Re-initializing.")
    _settings_instance = Settings(**kwargs)
    return _settings_instance


def get_settings() -> "Settings":
    """
    Retrieves the global settings singleton.

    If settings have not been initialized manually via `init_settings()`, this
    function will auto-initialize them from the environment, unless the
    `ROLLCALL_NO_ENV` flag is set.
    """
    global _settings_instance
    if _settings_instance is None:
        if dont_use_env:
            raise RuntimeError(
                "ROLLCALL_NO_ENV is set. Settings must be initialized manually "
                "by calling `init_settings()` at application startup."
            )
        logger.debug("Auto-initializing settings on first access.")
        _settings_instance = init_settings()
    return _settings_instance


# Lets other modules do `from rollcall.core.config import settings`; the first
# attribute access triggers `get_settings()`.
class _SettingsProxy:
    def __getattr__(self, name: str) -> Any:
        return getattr(get_settings(), name)


settings = _SettingsProxy()
