# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/config.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti, Manav Gupta

mcpfixed Configuration.
This module defines configuration settings for mcpfixed using Pydantic.
It loads configuration from environment variables (prefix ``MCPFIXED_``) or a
``.env`` file with sensible defaults.

Environment variables:
- MCPFIXED_DATABASE_URL: SQLAlchemy database URL (default: "sqlite:///./mcpfixed.db")
- MCPFIXED_DATA_DIR: Directory for local state such as the master key (default: "~/.mcpfixed")
- MCPFIXED_AUTH_ENCRYPTION_SECRET: Overrides the generated master key (default: unset)
- MCPFIXED_VALIDATION_INTERVAL: Soft re-validation interval in seconds (default: 86400)
- MCPFIXED_TOOL_TIMEOUT: Remote call timeout in seconds (default: 60)
- MCPFIXED_OAUTH_MANUAL_INTERVENTION_TIMEOUT: Pending authorization lifetime (default: 600)
- MCPFIXED_LOG_LEVEL: Logging level (default: "INFO")

Examples:
    >>> from mcpfixed.config import Settings
    >>> s = Settings(database_url='sqlite:///./test.db')
    >>> s.validation_interval
    86400
    >>> Settings(log_level='debug').log_level
    'DEBUG'
"""

# Standard
from functools import lru_cache
import logging
from pathlib import Path
from typing import Any, Literal, Optional

# Third-Party
from pydantic import Field, field_validator, PositiveInt, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Only configure basic logging if no handlers exist yet
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    mcpfixed configuration settings.

    Examples:
        >>> from mcpfixed.config import Settings
        >>> s = Settings()
        >>> s.oauth_max_retries
        3
        >>> s.performance_target_ms
        100.0
        >>> s.master_key_path.name
        'master.key'
        >>> s2 = Settings(master_key_file='/tmp/other.key')
        >>> str(s2.master_key_path)
        '/tmp/other.key'
    """

    # Storage
    database_url: str = Field(default="sqlite:///./mcpfixed.db", description="SQLAlchemy database URL")
    db_sqlite_busy_timeout: int = Field(default=5000, ge=1000, le=60000, description="SQLite busy timeout in milliseconds")
    data_dir: Path = Field(default=Path("~/.mcpfixed"), description="Directory for local state (master key file)")

    # Credential encryption
    master_key_file: Optional[Path] = Field(default=None, description="Master key file path (default: <data_dir>/master.key)")
    auth_encryption_secret: Optional[SecretStr] = Field(default=None, description="Explicit master key; overrides the key file when set")
    encryption_kdf_iterations: PositiveInt = Field(default=100_000, description="PBKDF2 iterations used to derive cipher keys")

    # Fixed interfaces
    validation_interval: int = Field(default=86400, ge=0, description="Seconds after which an interface is re-validated on use (0 disables)")
    performance_target_ms: float = Field(default=100.0, gt=0, description="Target fixed interface response time in milliseconds")
    metrics_retention_days: int = Field(default=30, ge=1, description="Days of performance metrics to keep")

    # Remote calls
    tool_timeout: float = Field(default=60.0, gt=0, description="Protocol call timeout in seconds")
    max_retries: int = Field(default=3, ge=0, description="Retries for retryable network failures during execution")
    retry_backoff_base: float = Field(default=0.5, ge=0, description="Base delay for exponential backoff in seconds")
    retry_backoff_max: float = Field(default=8.0, ge=0, description="Upper bound of a single backoff delay in seconds")
    skip_ssl_verify: bool = Field(default=False, description="Disable TLS verification for outgoing HTTP requests")

    # OAuth
    oauth_request_timeout: int = Field(default=30, description="OAuth request timeout in seconds")
    oauth_max_retries: int = Field(default=3, description="Maximum retries for OAuth token requests")
    oauth_token_refresh_threshold: int = Field(default=3600, description="Refresh tokens that expire within this many seconds")
    oauth_manual_intervention_timeout: int = Field(default=600, ge=30, description="Seconds a pending browser authorization stays valid")
    oauth_refresh_interval: int = Field(default=300, ge=10, description="Background token refresh interval in seconds")
    oauth_default_redirect_uri: str = Field(default="http://localhost:8765/oauth/callback", description="Redirect URI used when a configuration has none")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")

    model_config = SettingsConfigDict(env_prefix="MCPFIXED_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore")

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """
        Normalize and validate the log level value.

        Args:
            v (str): The log level string provided via configuration or environment.

        Returns:
            str: The validated and normalized (uppercase) log level.

        Raises:
            ValueError: If the provided value is not a known log level.
        """
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_up = v.upper()
        if v_up not in allowed:
            raise ValueError(f"Invalid log_level: {v}")
        return v_up

    @field_validator("auth_encryption_secret", mode="before")
    @classmethod
    def validate_secret_strength(cls, v: Any) -> Any:
        """Warn when an explicit encryption secret is too short.

        Args:
            v: Raw secret value.

        Returns:
            The unchanged value.
        """
        raw = v.get_secret_value() if isinstance(v, SecretStr) else v
        if raw is not None and len(str(raw)) < 16:
            logger.warning("auth_encryption_secret is shorter than 16 characters; consider a stronger secret")
        return v

    @property
    def master_key_path(self) -> Path:
        """Location of the wrapped master key file.

        Returns:
            Path: Explicit ``master_key_file`` or ``<data_dir>/master.key``.
        """
        if self.master_key_file is not None:
            return self.master_key_file.expanduser()
        return self.data_dir.expanduser() / "master.key"

    def validate_database(self) -> None:
        """Validate database configuration.

        Examples:
            >>> from mcpfixed.config import Settings
            >>> s = Settings(database_url='sqlite:///./test.db')
            >>> s.validate_database()  # Should create the directory if it does not exist
        """
        if self.database_url.startswith("sqlite") and ":memory:" not in self.database_url:
            db_path = Path(self.database_url.replace("sqlite:///", ""))
            db_dir = db_path.parent
            if not db_dir.exists():
                db_dir.mkdir(parents=True)


@lru_cache()
def get_settings(**kwargs: Any) -> Settings:
    """Get cached settings instance.

    Args:
        **kwargs: Keyword arguments to pass to the Settings setup.

    Returns:
        Settings: A cached instance of the Settings class.

    Examples:
        >>> settings = get_settings()
        >>> isinstance(settings, Settings)
        True
        >>> settings is get_settings()
        True
    """
    cfg = Settings(**kwargs)
    cfg.validate_database()
    return cfg


# Lazy "instance" of settings
class LazySettingsWrapper:
    """Lazily initialize settings singleton on getattr"""

    def __getattr__(self, key: str) -> Any:
        """Get the real settings object and forward to it

        Args:
            key: The key to fetch from settings

        Returns:
            Any: The value of the attribute on the settings
        """
        return getattr(get_settings(), key)


settings = LazySettingsWrapper()
