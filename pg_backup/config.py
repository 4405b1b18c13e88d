"""Configuration model and loader for the backup tool."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml
from dotenv import dotenv_values

DEFAULT_ENV_FILE = ".env"
DEFAULT_BACKUP_DIR = Path("/tmp/postgres_backups")

# Field name -> environment variable.
ENV_VARIABLES: Dict[str, str] = {
    "db_host": "DB_HOST",
    "db_port": "DB_PORT",
    "db_user": "DB_USER",
    "db_password": "DB_PASSWORD",
    "db_name": "DB_NAME",
    "r2_account_id": "R2_ACCOUNT_ID",
    "r2_access_key": "R2_ACCESS_KEY",
    "r2_secret_key": "R2_SECRET_KEY",
    "r2_bucket_name": "R2_BUCKET_NAME",
    "r2_region": "R2_REGION",
}

SECRET_FIELDS = frozenset({"db_password", "r2_access_key", "r2_secret_key"})


class ConfigurationError(Exception):
    """Raised when a configuration source cannot be read."""


@dataclass(frozen=True)
class BackupConfig:
    db_host: str = ""
    db_port: str = ""
    db_user: str = ""
    db_password: str = field(default="", repr=False)
    db_name: str = ""
    r2_account_id: str = ""
    r2_access_key: str = field(default="", repr=False)
    r2_secret_key: str = field(default="", repr=False)
    r2_bucket_name: str = ""
    r2_region: str = ""
    backup_dir: Path = DEFAULT_BACKUP_DIR

    @property
    def secrets(self) -> Tuple[str, ...]:
        return tuple(getattr(self, name) for name in sorted(SECRET_FIELDS))

    def to_dict(self, mask: bool = True) -> Dict[str, str]:
        result: Dict[str, str] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if mask and item.name in SECRET_FIELDS and value:
                value = "***"
            result[item.name] = str(value)
        return result


# ---------------------------------------------------------------------------
def _read_yaml(path: Path) -> Dict[str, str]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Config file '{path}' not found.") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigurationError(f"Cannot read config file '{path}': {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Cannot parse config file '{path}': {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file '{path}' must contain a mapping of variables.")
    return {str(key): "" if value is None else str(value) for key, value in data.items()}


def _read_env_file(path: Path, required: bool) -> Dict[str, str]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"Error loading env file '{path}': file not found.")
        return {}
    try:
        values = dotenv_values(path, encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigurationError(f"Error loading env file '{path}': {exc}") from exc
    return {key: value or "" for key, value in values.items()}


# ---------------------------------------------------------------------------
def load_config(
    env_file: Optional[Path] = None,
    config_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BackupConfig:
    """Build a :class:`BackupConfig` from the configured sources.

    Precedence, lowest first: *config_file* (YAML), *env_file* (dotenv),
    *environ* (defaults to ``os.environ``). When *env_file* is not given a
    ``.env`` in the working directory is used if present. Variables missing
    from every source load as empty strings.
    """

    values: Dict[str, str] = {}
    if config_file is not None:
        values.update(_read_yaml(Path(config_file)))

    if env_file is None:
        values.update(_read_env_file(Path(DEFAULT_ENV_FILE), required=False))
    else:
        values.update(_read_env_file(Path(env_file), required=True))

    environ = os.environ if environ is None else environ
    values.update({name: environ[name] for name in ENV_VARIABLES.values() if name in environ})

    return BackupConfig(
        **{attr: values.get(variable, "") for attr, variable in ENV_VARIABLES.items()}
    )


__all__ = [
    "BackupConfig",
    "ConfigurationError",
    "DEFAULT_BACKUP_DIR",
    "ENV_VARIABLES",
    "load_config",
]
