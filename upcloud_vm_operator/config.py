"""
config.py
---------
Operator configuration, read once at startup and injected into the
provisioning client and the reconciler.

Values come from the process environment; a ``.env`` file next to the working
directory is loaded first for local development. Missing credentials raise
``ConfigError``, which the startup handler turns into a fatal error.
"""
from __future__ import annotations

import logging
import os
from typing import Mapping, Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, SecretStr, ValidationError

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.upcloud.com/1.3"

_TRUTHY = {"1", "true", "yes", "on"}


class OperatorConfig(BaseModel):
    """Everything the controller needs besides the Kubernetes connection."""

    upcloud_username: str = Field(min_length=1)
    upcloud_password: SecretStr
    api_url: str = DEFAULT_API_URL
    request_timeout: float = Field(default=30.0, gt=0)
    wait_timeout: float = Field(default=600.0, gt=0)
    poll_interval: float = Field(default=5.0, gt=0)
    storage_tier: str = "maxiops"
    install_crd: bool = False
    status_write_attempts: int = Field(default=5, ge=1)


class HandlerTimings(BaseModel):
    """Intervals the kopf handlers are registered with at import time."""

    resync_interval: float = Field(default=600.0, gt=0)
    retry_delay: float = Field(default=30.0, ge=0)


def env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def load_env_file() -> None:
    """Load ``.env`` from the working directory; existing variables win."""
    load_dotenv(find_dotenv(usecwd=True))


def load_handler_timings(env: Optional[Mapping[str, str]] = None) -> HandlerTimings:
    """Read the resync interval and retry delay, raising ``ConfigError`` on bad values."""
    if env is None:
        load_env_file()
        env = os.environ

    raw = {
        "resync_interval": env.get("UPCLOUD_VM_RESYNC_SECONDS", "600"),
        "retry_delay": env.get("UPCLOUD_VM_RETRY_DELAY", "30"),
    }
    try:
        return HandlerTimings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid handler timing configuration: {exc}") from exc


def load_config(env: Optional[Mapping[str, str]] = None) -> OperatorConfig:
    """Build :class:`OperatorConfig` from *env* (defaults to ``os.environ``)."""
    if env is None:
        load_env_file()
        env = os.environ

    username = env.get("UPCLOUD_USERNAME", "")
    password = env.get("UPCLOUD_PASSWORD", "")
    if not username:
        raise ConfigError("UPCLOUD_USERNAME must be specified")
    if not password:
        raise ConfigError("UPCLOUD_PASSWORD must be specified")

    raw = {
        "upcloud_username": username,
        "upcloud_password": password,
        "api_url": env.get("UPCLOUD_API_URL", DEFAULT_API_URL).rstrip("/"),
        "request_timeout": env.get("UPCLOUD_REQUEST_TIMEOUT", "30"),
        "wait_timeout": env.get("UPCLOUD_WAIT_TIMEOUT", "600"),
        "poll_interval": env.get("UPCLOUD_POLL_INTERVAL", "5"),
        "storage_tier": env.get("UPCLOUD_STORAGE_TIER", "maxiops"),
        "install_crd": env_flag(env.get("UPCLOUD_VM_INSTALL_CRD")),
    }
    try:
        config = OperatorConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid operator configuration: {exc}") from exc

    logger.info(
        "Configuration loaded (api=%s, wait_timeout=%ss, poll_interval=%ss)",
        config.api_url,
        config.wait_timeout,
        config.poll_interval,
    )
    return config
