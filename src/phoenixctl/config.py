"""Configuration loader for phoenixctl.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``~/.config/phoenixctl/config.yml`` (or an override path).
3. The legacy dotenv file ``phoenix-config.local.env`` (falling back to
   ``phoenix-config.env``) in the working directory.
4. Legacy environment variables (``PROJECT_ID``, ``ZONE``, ``PHOENIX_PORT``...).
5. Environment variables prefixed with ``PHOENIXCTL_``.
6. Explicit overrides supplied programmatically (CLI flags).

Prefixed environment keys use double underscores to express nesting, e.g.::

    export PHOENIXCTL_SERVICE__PORT=7007
    export PHOENIXCTL_BACKUPS__RETENTION_DAYS=14

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` and passed explicitly to every component.
"""
from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml
from dotenv import dotenv_values

from .errors import PhoenixError

ENV_PREFIX = "PHOENIXCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
PLACEHOLDER_PROJECT_ID = "your-gcp-project-id"
ENV_FILE_NAMES = ("phoenix-config.local.env", "phoenix-config.env")

# Variable names read by the phoenix-config.env shell tooling.
LEGACY_ENV_KEYS: dict[str, tuple[str, ...]] = {
    "PROJECT_ID": ("project_id",),
    "INSTANCE_NAME": ("instance", "name"),
    "ZONE": ("instance", "zone"),
    "MACHINE_TYPE": ("instance", "machine_type"),
    "DISK_SIZE": ("instance", "disk_size"),
    "PHOENIX_PORT": ("service", "port"),
    "PHOENIX_VERSION": ("service", "version"),
    "BACKUP_BUCKET": ("backups", "bucket"),
}

_DISK_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*(gb|g)?\s*$", re.IGNORECASE)


class ConfigError(PhoenixError):
    """Raised when configuration parsing or validation fails."""


@dataclass(frozen=True)
class InstanceConfig:
    """Compute Engine instance identity and sizing."""

    name: str = "phoenix-server"
    zone: str = "us-central1-a"
    machine_type: str = "e2-standard-2"
    disk_size_gb: int = 20


@dataclass(frozen=True)
class ServiceConfig:
    """Container and systemd unit settings on the instance."""

    port: int = 6006
    version: str = "latest"
    image: str = "arizephoenix/phoenix"
    container_port: int = 6006
    name: str = "phoenix"
    user: str = "phoenix"
    base_dir: str = "/opt/phoenix"

    @property
    def image_ref(self) -> str:
        """Return ``image:version``."""
        return f"{self.image}:{self.version}"

    @property
    def data_dir(self) -> str:
        """Return the live data directory on the instance."""
        return f"{self.base_dir.rstrip('/')}/data"


@dataclass(frozen=True)
class BackupConfig:
    """Backup bucket and retention settings."""

    bucket: str
    retention_days: int = 30


@dataclass(frozen=True)
class RemoteConfig:
    """Paths and binaries used when executing commands on the instance."""

    temp_dir: str = "/tmp"
    gsutil_bin: str = "gsutil"


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for phoenixctl."""

    config_file: Path
    project_id: str
    gcloud_bin: str
    logs_dir: Path
    templates_dir: Path | None
    lock_timeout: float
    instance: InstanceConfig
    service: ServiceConfig
    backups: BackupConfig
    remote: RemoteConfig

    @property
    def project_is_placeholder(self) -> bool:
        """Return True when the project identifier was never configured."""
        value = self.project_id.strip()
        return not value or value == PLACEHOLDER_PROJECT_ID

    def require_project(self) -> None:
        """Raise :class:`ConfigError` when the project is unset."""
        if self.project_is_placeholder:
            raise ConfigError(
                "Please set PROJECT_ID either via environment variable or --project flag"
            )


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/phoenixctl/config.yml",
    "project_id": PLACEHOLDER_PROJECT_ID,
    "gcloud_bin": "gcloud",
    "logs_dir": "~/.local/state/phoenixctl/logs",
    "templates_dir": None,
    "lock_timeout": 30.0,
    "instance": {
        "name": "phoenix-server",
        "zone": "us-central1-a",
        "machine_type": "e2-standard-2",
        "disk_size": "20GB",
    },
    "service": {
        "port": 6006,
        "version": "latest",
        "image": "arizephoenix/phoenix",
        "container_port": 6006,
        "name": "phoenix",
        "user": "phoenix",
        "base_dir": "/opt/phoenix",
    },
    "backups": {
        "bucket": None,  # derived from project_id when absent
        "retention_days": 30,
    },
    "remote": {
        "temp_dir": "/tmp",
        "gsutil_bin": "gsutil",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("instance", "service", "backups", "remote")
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
    search_dir: Path | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_file_values = _load_env_file(search_dir or Path.cwd())
    if env_file_values:
        _deep_merge(merged, _build_legacy_overrides(env_file_values))
        _deep_merge(merged, _build_env_overrides(env_file_values))

    legacy_values = _build_legacy_overrides(resolved_env)
    if legacy_values:
        _deep_merge(merged, legacy_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, _drop_none(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def parse_disk_size(value: object) -> int:
    """Return a disk size in GB from ``20``, ``"20"`` or ``"20GB"``."""
    if isinstance(value, bool):
        raise ConfigError(f"Invalid disk size: {value!r}.")
    if isinstance(value, int):
        size = value
    elif isinstance(value, str):
        match = _DISK_SIZE_PATTERN.match(value)
        if match is None:
            raise ConfigError(f"Invalid disk size {value!r}; expected a value such as 20GB.")
        size = int(match.group(1))
    else:
        raise ConfigError(f"Invalid disk size: {value!r}.")
    if size <= 0:
        raise ConfigError("instance.disk_size must be greater than zero.")
    return size


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _load_env_file(directory: Path) -> dict[str, str]:
    for name in ENV_FILE_NAMES:
        candidate = directory / name
        if candidate.is_file():
            values = dotenv_values(candidate)
            return {key: value for key, value in values.items() if value is not None}
    return {}


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    project_id = _scalar_str(raw.get("project_id"), "project_id")
    logs_dir = _to_path(raw.get("logs_dir"))
    templates_value = raw.get("templates_dir")
    templates_dir = _to_path(templates_value) if templates_value else None
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    instance_mapping = _as_dict(raw.get("instance"), "instance")
    instance = InstanceConfig(
        name=_scalar_str(instance_mapping.get("name"), "instance.name"),
        zone=_scalar_str(instance_mapping.get("zone"), "instance.zone"),
        machine_type=_scalar_str(instance_mapping.get("machine_type"), "instance.machine_type"),
        disk_size_gb=parse_disk_size(instance_mapping.get("disk_size")),
    )

    service_mapping = _as_dict(raw.get("service"), "service")
    service = ServiceConfig(
        port=_expect_port(service_mapping.get("port"), "service.port"),
        version=_scalar_str(service_mapping.get("version"), "service.version"),
        image=_scalar_str(service_mapping.get("image"), "service.image"),
        container_port=_expect_port(
            service_mapping.get("container_port"), "service.container_port"
        ),
        name=_scalar_str(service_mapping.get("name"), "service.name"),
        user=_scalar_str(service_mapping.get("user"), "service.user"),
        base_dir=_scalar_str(service_mapping.get("base_dir"), "service.base_dir"),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    bucket_value = backups_mapping.get("bucket")
    bucket = (
        _scalar_str(bucket_value, "backups.bucket")
        if bucket_value
        else f"{project_id}-phoenix-backups"
    )
    retention_days = _expect_int(
        backups_mapping.get("retention_days"), "backups.retention_days", default=30
    )
    if retention_days <= 0:
        raise ConfigError("backups.retention_days must be greater than zero.")
    backups = BackupConfig(bucket=bucket, retention_days=retention_days)

    remote_mapping = _as_dict(raw.get("remote"), "remote")
    remote = RemoteConfig(
        temp_dir=_scalar_str(remote_mapping.get("temp_dir"), "remote.temp_dir"),
        gsutil_bin=_scalar_str(remote_mapping.get("gsutil_bin"), "remote.gsutil_bin"),
    )

    return AppConfig(
        config_file=config_file,
        project_id=project_id,
        gcloud_bin=_scalar_str(raw.get("gcloud_bin"), "gcloud_bin"),
        logs_dir=logs_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        instance=instance,
        service=service,
        backups=backups,
        remote=remote,
    )


def _build_legacy_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, path in LEGACY_ENV_KEYS.items():
        value = env.get(key)
        if value is None or not value.strip():
            continue
        _assign_nested(overrides, list(path), value.strip())
    return overrides


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _drop_none(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if value is None:
            continue
        if isinstance(value, Mapping):
            nested = _drop_none(_as_dict(value, f"overrides.{key}"))
            if nested:
                result[key] = nested
            continue
        result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _scalar_str(value: object, label: str) -> str:
    if value is None or isinstance(value, (Mapping, list)):
        raise ConfigError(f"Expected {label} to be a string. Got {value!r}.")
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a string. Got boolean {value!r}.")
    text = str(value).strip()
    if not text:
        raise ConfigError(f"{label} must be a non-empty string.")
    return text


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_port(value: object | None, label: str) -> int:
    port = _expect_int(value, label, default=6006)
    if port < 1 or port > 65535:
        raise ConfigError(f"{label} must be between 1 and 65535. Got {port}.")
    return port


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "InstanceConfig",
    "PLACEHOLDER_PROJECT_ID",
    "RemoteConfig",
    "ServiceConfig",
    "load_config",
    "parse_disk_size",
]
