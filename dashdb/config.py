"""
Store configuration loader.

Reads config/dashdb.yaml and applies environment overrides.
"""

import os
import yaml
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, Optional

from dashdb.migration.encryption import EncryptionMode

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/dashdb.yaml"

# Environment variable → settings key
ENV_OVERRIDES = {
    "DATA_DIR": "data_dir",
    "DASHDB_DB_PATH": "db_path",
    "DASHDB_ENV": "environment",
    "SECRET_ENCRYPTION_KEY": "encryption_key",
    "DASHDB_LOG_LEVEL": "log_level",
}


@dataclass
class StoreSettings:
    """Where the database lives and how migrations run against it."""

    data_dir: str = "data"
    db_path: Optional[str] = None
    backup_dir: Optional[str] = None
    max_backups: int = 3
    environment: str = "production"
    encryption_key: Optional[str] = None
    log_level: str = "INFO"
    strict_ledger: bool = False

    @property
    def database_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path)
        return Path(self.data_dir) / "dashdb.db"

    @property
    def backup_path(self) -> Path:
        if self.backup_dir:
            return Path(self.backup_dir)
        return Path(self.data_dir) / "backups"

    @property
    def encryption_mode(self) -> EncryptionMode:
        """Development stores integration configs in plaintext."""
        if self.environment == "development":
            return EncryptionMode.PLAINTEXT
        return EncryptionMode.ENCRYPTED


class SettingsLoader:
    """Loads store settings from YAML."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_PATH):
        """
        Initialize config loader.

        Args:
            config_path: Path to YAML configuration file
        """
        self.config_path = config_path
        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load YAML configuration."""
        if not os.path.exists(self.config_path):
            logger.debug(f"Store config not found: {self.config_path}, using defaults")
            return {}

        try:
            with open(self.config_path, 'r') as f:
                config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load store config: {e}, using defaults")
            return {}

        if not isinstance(config, dict):
            return {}
        # Settings may sit at the top level or under a "database" section
        return config.get("database", config) or {}

    def _expand_env_vars(self, value):
        """Expand environment variables in config values."""
        if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
            env_var = value[2:-1]
            return os.environ.get(env_var, "")
        return value

    def settings(self) -> StoreSettings:
        """
        Build settings from the file, then the environment.

        Returns:
            StoreSettings with empty values replaced by defaults
        """
        values = {}
        known = StoreSettings.__dataclass_fields__

        for key, value in self.config.items():
            if key not in known:
                logger.warning(f"Ignoring unknown store setting: {key}")
                continue
            value = self._expand_env_vars(value)
            if value not in ("", None):
                values[key] = value

        for env_var, key in ENV_OVERRIDES.items():
            env_value = os.environ.get(env_var)
            if env_value:
                values[key] = env_value

        if "max_backups" in values:
            values["max_backups"] = int(values["max_backups"])
        if "strict_ledger" in values and isinstance(values["strict_ledger"], str):
            values["strict_ledger"] = values["strict_ledger"].lower() in ("1", "true", "yes")

        return StoreSettings(**values)


def load_settings(config_path: str = DEFAULT_CONFIG_PATH) -> StoreSettings:
    """Load store settings from a YAML file plus environment overrides."""
    return SettingsLoader(config_path).settings()
