# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The DevAgent Authors

"""
DevAgent Configuration Module

Typed model for the operator configuration record, directory defaults and
logging setup. Persistence lives in store.py.
"""

import logging
import os
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_HOME_DIRNAME = ".devagent"
DEFAULT_API_URL = "https://api.remotedevai.com"
LOG_LEVELS = ("debug", "info", "warning", "error")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ConfigKey(str, Enum):
    """Recognized configuration keys, as stored on disk."""
    AUTH_TOKEN = "authToken"
    API_URL = "apiUrl"
    LOG_LEVEL = "logLevel"
    AUTO_UPDATE = "autoUpdate"
    PROJECT_ID = "projectId"
    CONFIG_DIR = "configDir"
    AGENT_DIR = "agentDir"
    LOGS_DIR = "logsDir"


# Keys whose values are never shown or logged in plaintext
SENSITIVE_KEYS = {ConfigKey.AUTH_TOKEN}

# Older CLI releases stored the token as "apiKey"
_KEY_ALIASES = {
    "apiKey": ConfigKey.AUTH_TOKEN,
    "auth_token": ConfigKey.AUTH_TOKEN,
    "api_url": ConfigKey.API_URL,
    "log_level": ConfigKey.LOG_LEVEL,
    "auto_update": ConfigKey.AUTO_UPDATE,
    "project_id": ConfigKey.PROJECT_ID,
    "config_dir": ConfigKey.CONFIG_DIR,
    "agent_dir": ConfigKey.AGENT_DIR,
    "logs_dir": ConfigKey.LOGS_DIR,
}


class AgentConfig(BaseModel):
    """Operator configuration record.

    Field names are snake_case in Python and camelCase on disk. Keys that
    are not recognized are kept as extras so they survive a rewrite.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    auth_token: Optional[str] = Field(default=None, alias="authToken", description="RemoteDevAI API token")
    api_url: Optional[str] = Field(default=None, alias="apiUrl", description="RemoteDevAI API base URL")
    log_level: str = Field(default="info", alias="logLevel", description="Log level (debug, info, warning, error)")
    auto_update: bool = Field(default=True, alias="autoUpdate", description="Check for agent updates before commands")
    project_id: Optional[str] = Field(default=None, alias="projectId", description="Project the agent serves")
    config_dir: Optional[Path] = Field(default=None, alias="configDir", description="Informational only. config.yaml always lives in the DevAgent home")
    agent_dir: Optional[Path] = Field(default=None, alias="agentDir", description="Agent installation directory")
    logs_dir: Optional[Path] = Field(default=None, alias="logsDir", description="Log directory")

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: Any) -> str:
        level = str(value).strip().lower()
        if level == "warn":
            level = "warning"
        if level not in LOG_LEVELS:
            raise ValueError(f"log level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @property
    def unknown_keys(self) -> List[str]:
        return sorted((self.model_extra or {}).keys())

    def effective_api_url(self) -> str:
        return self.api_url or default_api_url()


def resolve_key(name: Union[str, ConfigKey]) -> Optional[ConfigKey]:
    """Map a user supplied key name to a recognized key, or None."""
    if isinstance(name, ConfigKey):
        return name
    try:
        return ConfigKey(name)
    except ValueError:
        return _KEY_ALIASES.get(name)


def field_name(key: ConfigKey) -> str:
    """Python attribute name of AgentConfig for a stored key."""
    for name, info in AgentConfig.model_fields.items():
        if info.alias == key.value:
            return name
    raise KeyError(key)


def default_home() -> Path:
    """Root of all user-scoped state, honoring DEVAGENT_HOME."""
    env_home = os.environ.get("DEVAGENT_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / DEFAULT_HOME_DIRNAME


def default_api_url() -> str:
    return os.environ.get("DEVAGENT_API_URL", DEFAULT_API_URL)


def mask_secret(value: Optional[str]) -> str:
    """Mask a secret for display, keeping a short prefix and suffix."""
    if not value:
        return "Not set"
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"


class SecretRedactingFilter(logging.Filter):
    """Replace known secrets in log records with their masked form."""

    def __init__(self, secrets: Iterable[str]):
        super().__init__()
        self._secrets = [s for s in secrets if s]

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in self._secrets:
            redacted = redacted.replace(secret, mask_secret(secret))
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(level: str = "info", log_file: Optional[Path] = None,
                  secrets: Iterable[str] = ()) -> None:
    """
    Configure logging for a CLI invocation.

    Args:
        level: Log level name (debug, info, warning, error)
        log_file: Optional file to append records to
        secrets: Values that must never appear in plaintext
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    # Console goes to stderr so JSON output on stdout stays clean
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_file))
        except OSError as e:
            # If file logging fails, continue with console-only logging
            print(f"Warning: Could not setup file logging: {e}", file=sys.stderr)

    redactor = SecretRedactingFilter(secrets)
    for handler in handlers:
        handler.addFilter(redactor)

    logging.basicConfig(level=numeric_level, format=LOG_FORMAT, handlers=handlers)

    # aiohttp is chatty at debug level
    logging.getLogger("aiohttp").setLevel(max(numeric_level, logging.INFO))

    if log_file:
        logger.debug("Logging configured: level=%s, file=%s", level, log_file)
    else:
        logger.debug("Logging configured: level=%s (console only)", level)
