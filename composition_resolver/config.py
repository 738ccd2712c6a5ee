"""Configuration management for the composition resolver."""

import os
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field


class ChromiumConfig(BaseModel):
    """Chromium launch flags."""
    headless: bool = Field(default=True, description="Run Chromium headless")
    disable_web_security: bool = Field(default=False, description="Pass --disable-web-security")
    ignore_certificate_errors: bool = Field(default=False, description="Ignore TLS certificate errors")
    gl: Optional[str] = Field(default=None, description="OpenGL backend passed as --use-gl")


class ResolverConfig(BaseModel):
    """Defaults applied to every resolution started from this process."""

    log_level: str = Field(default="INFO", description="Logging level")
    verbose: bool = Field(default=False, description="Promote verbose log lines to INFO")

    timeout_in_milliseconds: int = Field(default=30_000, description="Budget for page operations")
    launch_timeout_in_milliseconds: int = Field(default=25_000, description="Budget for launching Chromium")
    browser_executable: Optional[str] = Field(default=None, description="Chromium/Chrome executable path")
    chromium: ChromiumConfig = Field(default_factory=ChromiumConfig)

    port: Optional[int] = Field(default=None, description="Port for the content server (ephemeral if unset)")

    injection_retries: int = Field(default=2, description="Extra attempts when preparing the page fails transiently")
    injection_retry_delay_seconds: float = Field(default=0.5, description="Pause between injection attempts")

    env_variables: Dict[str, str] = Field(default_factory=dict, description="Env variables exposed to the bundle")


def load_config(config_path: Optional[str] = None) -> ResolverConfig:
    """Load configuration from file or environment variables."""
    if config_path is None:
        config_path = os.getenv("RESOLVER_CONFIG", "config/resolver.yaml")

    config_data = {}

    if os.path.exists(config_path):
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}

    env_overrides = {
        "log_level": os.getenv("LOG_LEVEL"),
        "verbose": os.getenv("RESOLVER_VERBOSE"),
        "timeout_in_milliseconds": os.getenv("RESOLVER_TIMEOUT_MS"),
        "port": os.getenv("RESOLVER_PORT"),
        "browser_executable": os.getenv("CHROMIUM_PATH"),
    }

    for key, value in env_overrides.items():
        if value is not None:
            if key in ["timeout_in_milliseconds", "port"]:
                value = int(value)
            elif key in ["verbose"]:
                value = value.lower() in ("true", "1", "yes")
            config_data[key] = value

    return ResolverConfig(**config_data)
