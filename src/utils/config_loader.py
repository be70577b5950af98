"""
Configuration loader for the Daraja gateway
"""

import os
from typing import List, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator
import logging

from src.integrations.contracts.interfaces import IntegrationEnvironment

logger = logging.getLogger(__name__)

REQUIRED_ENV_VARS = [
    "MPESA_CONSUMER_KEY",
    "MPESA_CONSUMER_SECRET",
    "MPESA_PASS_KEY",
    "MPESA_SHORT_CODE",
    "MPESA_CALLBACK_URL",
]

_BASE_URLS = {
    IntegrationEnvironment.PRODUCTION: "https://api.safaricom.co.ke",
    IntegrationEnvironment.SANDBOX: "https://sandbox.safaricom.co.ke",
}


class DarajaConfig(BaseModel):
    """Daraja credentials and runtime settings"""

    consumer_key: str = Field(min_length=1)
    consumer_secret: str = Field(min_length=1)
    pass_key: str = Field(min_length=1)
    short_code: str = Field(min_length=1)
    callback_url: str
    environment: IntegrationEnvironment = IntegrationEnvironment.SANDBOX
    timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("callback_url")
    @classmethod
    def _callback_must_be_https(cls, value: str) -> str:
        if not value.startswith("https://"):
            raise ValueError("MPESA_CALLBACK_URL must start with https://")
        return value

    @property
    def base_url(self) -> str:
        return _BASE_URLS[self.environment]


class ServerConfig(BaseModel):
    """HTTP server settings. Loaded in mock mode too, so no credentials here"""

    port: int = Field(default=3000, ge=1, le=65535)
    app_env: str = "development"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


def missing_required_env(env: Optional[Mapping[str, str]] = None) -> List[str]:
    """Names of required variables that are unset or blank."""
    env = os.environ if env is None else env
    return [key for key in REQUIRED_ENV_VARS if not (env.get(key) or "").strip()]


def load_daraja_config(env: Optional[Mapping[str, str]] = None) -> DarajaConfig:
    """
    Build and validate the Daraja configuration from environment variables

    Args:
        env: Mapping to read from. Defaults to os.environ after loading .env

    Returns:
        Validated DarajaConfig object

    Raises:
        ValidationError: If a variable is missing or malformed
    """
    if env is None:
        load_dotenv()
        env = os.environ

    config_data = {
        "consumer_key": env.get("MPESA_CONSUMER_KEY", ""),
        "consumer_secret": env.get("MPESA_CONSUMER_SECRET", ""),
        "pass_key": env.get("MPESA_PASS_KEY", ""),
        "short_code": env.get("MPESA_SHORT_CODE", ""),
        "callback_url": env.get("MPESA_CALLBACK_URL", ""),
        "environment": env.get("MPESA_ENVIRONMENT") or IntegrationEnvironment.SANDBOX.value,
        "timeout_seconds": env.get("DARAJA_TIMEOUT_SECONDS") or 30.0,
    }

    try:
        config = DarajaConfig(**config_data)
        logger.info("Loaded Daraja config (environment=%s)", config.environment.value)
        return config
    except ValidationError as e:
        logger.error(f"Daraja config validation failed: {e}")
        raise


def load_server_config(env: Optional[Mapping[str, str]] = None) -> ServerConfig:
    """Read PORT and APP_ENV; both are optional."""
    if env is None:
        load_dotenv()
        env = os.environ

    return ServerConfig(
        port=env.get("PORT") or 3000,
        app_env=env.get("APP_ENV") or "development",
    )
