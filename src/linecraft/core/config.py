"""Configuration management for the Linecraft colouring-page bridge.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the LINECRAFT_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (LINECRAFT_* prefix)
2. .env file in the project root
3. Default values defined in LinecraftConfig

Example .env file:
    LINECRAFT_UPSTREAM_BASE_URL=https://api.kie.ai
    LINECRAFT_UPSTREAM_API_KEY=sk-...
    LINECRAFT_UPSTREAM_API=jobs
    LINECRAFT_POLL_TIMEOUT=180

Credential Handling
-------------------
The upstream API key is optional at construction time so the server can start
without it.  A missing key is reported as a warning on startup and raised as
:class:`~linecraft.core.errors.ConfigurationError` by
:meth:`LinecraftConfig.require_api_key` on the first request that needs it.

Usage Example
-------------
    from linecraft.core.config import config

    print(config.upstream_base_url)
    api_key = config.require_api_key()
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from linecraft.core.errors import ConfigurationError


class LinecraftConfig(BaseSettings):
    """Main configuration for the Linecraft bridge.

    Attributes
    ----------
    Upstream Settings:
        upstream_base_url : str
            Base URL of the upstream job API
        upstream_api_key : str | None
            Bearer credential for the upstream API
        upstream_api : Literal["jobs", "gpt4o-image"]
            Which upstream endpoint family to submit to and poll
        upstream_model : str
            Model name sent to the ``jobs`` endpoint family
        upstream_variants : int
            Number of variants requested from the ``gpt4o-image`` family
        http_timeout : float
            Per-call network timeout in seconds

    Polling Settings:
        poll_interval : float
            Delay between status queries while the job is generating
        backoff_step : float
            Increment added to the retry delay after a failed query
        backoff_max : float
            Upper bound for the retry delay
        poll_timeout : float
            Overall deadline, measured from submission

    Server Settings:
        server_host : str
            Bind address for uvicorn
        server_port : int
            Port for uvicorn
        log_level : str
            Root logging level used by ``main()``
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LINECRAFT_",
        case_sensitive=False,
    )

    # Upstream settings
    upstream_base_url: str = Field(
        default="https://api.kie.ai",
        description="Base URL of the upstream job API",
    )
    upstream_api_key: str | None = Field(
        default=None,
        description="Bearer credential for the upstream API",
    )
    upstream_api: Literal["jobs", "gpt4o-image"] = Field(
        default="jobs",
        description="Upstream endpoint family (jobs or gpt4o-image)",
    )
    upstream_model: str = Field(
        default="gpt-image/1.5-text-to-image",
        description="Model name for the jobs endpoint family",
    )
    upstream_variants: int = Field(
        default=1,
        description="Variants requested from the gpt4o-image endpoint family",
        ge=1,
        le=4,
    )
    http_timeout: float = Field(
        default=30.0,
        description="Per-call network timeout in seconds",
        gt=0,
    )

    # Polling settings
    poll_interval: float = Field(
        default=2.0,
        description="Seconds between status queries while generating",
        ge=0,
    )
    backoff_step: float = Field(
        default=0.5,
        description="Seconds added to the retry delay after a failed query",
        ge=0,
    )
    backoff_max: float = Field(
        default=5.0,
        description="Upper bound for the retry delay in seconds",
        ge=0,
    )
    poll_timeout: float = Field(
        default=180.0,
        description="Overall polling deadline in seconds, from submission",
        gt=0,
    )

    # Server settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address",
    )
    server_port: int = Field(
        default=7860,
        description="Server port",
        ge=1024,
        le=65535,
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level for the server process",
    )

    @property
    def has_api_key(self) -> bool:
        return bool(self.upstream_api_key and self.upstream_api_key.strip())

    def require_api_key(self) -> str:
        """Return the upstream credential or fail with a configuration error.

        Raises:
            ConfigurationError: If ``LINECRAFT_UPSTREAM_API_KEY`` is unset or
                blank.
        """
        if not self.has_api_key:
            raise ConfigurationError("Missing upstream API key (LINECRAFT_UPSTREAM_API_KEY)")
        return self.upstream_api_key.strip()


# Global configuration instance, loaded from LINECRAFT_* variables and .env.
config = LinecraftConfig()
