# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The DevAgent Authors

"""
DevAgent Version Store

Durable, user-scoped local state:
  - config.yaml              operator configuration (key -> value)
  - agent/installation.json  which agent build is installed and where
  - agent/agent.pid          handle of the running agent process

Every write goes through a temp file in the same directory followed by
os.replace(), so readers see either the old record or the new one.
"""

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import ValidationError

from .config import AgentConfig, ConfigKey, default_home, field_name, resolve_key
from .errors import ConfigError, StorageError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"
INSTALLATION_FILENAME = "installation.json"
HANDLE_FILENAME = "agent.pid"
LOCK_FILENAME = "supervisor.lock"


@dataclass
class InstallationRecord:
    """Pointer to the installed agent build."""
    version: str
    install_path: Path
    installed_at: str
    sha256: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["install_path"] = str(self.install_path)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstallationRecord":
        return cls(
            version=str(data["version"]),
            install_path=Path(data["install_path"]),
            installed_at=str(data.get("installed_at", "")),
            sha256=data.get("sha256"),
        )


def atomic_write_text(path: Path, text: str, mode: Optional[int] = None) -> None:
    """Write text to path via temp file + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class VersionStore:
    """File-backed configuration, installation and process-handle records.

    Usage:
        store = VersionStore()
        store.set("apiUrl", "https://api.example.com")
        version = store.get_installed_version()
    """

    def __init__(self, home: Optional[Path] = None):
        """
        Args:
            home: Root directory for all state. Defaults to $DEVAGENT_HOME
                  or ~/.devagent.
        """
        self.home = Path(home) if home is not None else default_home()
        self.config_path = self.home / CONFIG_FILENAME

    # =========================================================================
    # DIRECTORIES
    # =========================================================================

    @property
    def config_dir(self) -> Path:
        # configDir cannot move the file it is read from
        return self.home

    @property
    def agent_dir(self) -> Path:
        override = self.read().agent_dir
        return Path(override).expanduser() if override else self.home / "agent"

    @property
    def logs_dir(self) -> Path:
        override = self.read().logs_dir
        return Path(override).expanduser() if override else self.home / "logs"

    @property
    def installation_path(self) -> Path:
        return self.agent_dir / INSTALLATION_FILENAME

    @property
    def handle_path(self) -> Path:
        return self.agent_dir / HANDLE_FILENAME

    @property
    def lock_path(self) -> Path:
        return self.agent_dir / LOCK_FILENAME

    # =========================================================================
    # CONFIGURATION
    # =========================================================================

    def _read_raw(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            return {}
        try:
            with open(self.config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise StorageError(f"Configuration file {self.config_path} is corrupt: {e}") from e
        except OSError as e:
            raise StorageError(f"Cannot read configuration file {self.config_path}: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise StorageError(f"Configuration file {self.config_path} does not contain a mapping")
        return data

    def _write_raw(self, data: Dict[str, Any]) -> None:
        text = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
        try:
            # Owner-only: the file holds the auth token
            atomic_write_text(self.config_path, text, mode=0o600)
        except OSError as e:
            raise StorageError(f"Cannot write configuration file {self.config_path}: {e}") from e

    def read(self) -> AgentConfig:
        """Return the full configuration. A missing file yields defaults."""
        raw = self._read_raw()
        try:
            return AgentConfig.model_validate(raw)
        except ValidationError as e:
            raise StorageError(f"Configuration file {self.config_path} has invalid values: {e}") from e

    def get(self, key: Union[str, ConfigKey]) -> Any:
        """Return the stored value for key, or None if unset."""
        resolved = resolve_key(key)
        raw = self._read_raw()
        if resolved is None:
            return raw.get(str(key))
        if resolved is ConfigKey.AUTH_TOKEN:
            return self.auth_token()
        if resolved.value not in raw:
            return None
        config = self.read()
        return getattr(config, field_name(resolved))

    def set(self, key: Union[str, ConfigKey], value: Any, allow_unknown: bool = False) -> None:
        """
        Validate and persist a single key.

        Args:
            key: Recognized key (camelCase or snake_case) or, with
                 allow_unknown, any other name.
            value: New value. Strings are coerced to the key's type.
            allow_unknown: Store unrecognized keys verbatim instead of
                           rejecting them.

        Raises:
            ConfigError: Unknown key or invalid value.
            StorageError: The record could not be written.
        """
        raw = self._read_raw()
        resolved = resolve_key(key)

        if resolved is None:
            if not allow_unknown:
                raise ConfigError(
                    f"Unknown configuration key: {key}",
                    hint="Known keys: " + ", ".join(k.value for k in ConfigKey),
                )
            raw[str(key)] = value
            self._write_raw(raw)
            logger.debug("Stored unrecognized config key %s", key)
            return

        candidate = dict(raw)
        candidate[resolved.value] = value
        try:
            validated = AgentConfig.model_validate(candidate)
        except ValidationError as e:
            raise ConfigError(f"Invalid value for {resolved.value}: {e.errors()[0]['msg']}") from e

        dumped = validated.model_dump(mode="json", by_alias=True)
        raw[resolved.value] = dumped[resolved.value]
        # Drop the legacy spelling once the canonical key is written
        if resolved is ConfigKey.AUTH_TOKEN:
            raw.pop("apiKey", None)
        self._write_raw(raw)
        logger.debug("Configuration key %s updated", resolved.value)

    def unset(self, key: Union[str, ConfigKey]) -> None:
        """Remove a single key. Removing the token also drops its legacy spelling."""
        raw = self._read_raw()
        resolved = resolve_key(key)
        name = resolved.value if resolved else str(key)

        removed = name in raw
        raw.pop(name, None)
        if resolved is ConfigKey.AUTH_TOKEN and "apiKey" in raw:
            raw.pop("apiKey")
            removed = True
        if removed:
            self._write_raw(raw)
            logger.debug("Configuration key %s removed", name)

    def delete(self) -> None:
        """Remove all configuration. Safe to call when nothing is stored."""
        try:
            self.config_path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot remove configuration file {self.config_path}: {e}") from e
        logger.info("Configuration reset")

    def is_authenticated(self) -> bool:
        raw = self._read_raw()
        return bool(raw.get(ConfigKey.AUTH_TOKEN.value) or raw.get("apiKey"))

    def auth_token(self) -> Optional[str]:
        raw = self._read_raw()
        return raw.get(ConfigKey.AUTH_TOKEN.value) or raw.get("apiKey")

    # =========================================================================
    # INSTALLATION RECORD
    # =========================================================================

    def read_installation(self) -> Optional[InstallationRecord]:
        data = self._read_json(self.installation_path)
        if data is None:
            return None
        try:
            return InstallationRecord.from_dict(data)
        except (KeyError, TypeError) as e:
            raise StorageError(f"Installation record {self.installation_path} is incomplete: {e}") from e

    def write_installation(self, record: InstallationRecord) -> None:
        self._write_json(self.installation_path, record.to_dict())
        logger.debug("Installation record now points at %s (%s)", record.install_path, record.version)

    def get_installed_version(self) -> Optional[str]:
        record = self.read_installation()
        return record.version if record else None

    # =========================================================================
    # PROCESS HANDLE RECORD
    # =========================================================================

    def read_handle(self) -> Optional[Dict[str, Any]]:
        try:
            return self._read_json(self.handle_path)
        except StorageError as e:
            # A garbled handle cannot describe a live agent
            logger.warning("Ignoring unreadable agent handle: %s", e)
            return None

    def write_handle(self, data: Dict[str, Any]) -> None:
        self._write_json(self.handle_path, data)

    def clear_handle(self) -> None:
        try:
            self.handle_path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot remove agent handle {self.handle_path}: {e}") from e

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _read_json(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StorageError(f"{path} is corrupt: {e}") from e
        except OSError as e:
            raise StorageError(f"Cannot read {path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"{path} does not contain an object")
        return data

    def _write_json(self, path: Path, data: Dict[str, Any]) -> None:
        try:
            atomic_write_text(path, json.dumps(data, indent=2))
        except OSError as e:
            raise StorageError(f"Cannot write {path}: {e}") from e

