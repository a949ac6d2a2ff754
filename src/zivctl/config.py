"""Configuration loader for zivctl.

Values are read from several layered sources, later sources winning:

1. Built-in defaults (matching a stock ZiVPN install under ``/etc/zivpn``).
2. ``/etc/zivctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``ZIVCTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export ZIVCTL_REMOTE__TARGET=drive:ZIVPN-BACKUP
    export ZIVCTL_BACKUPS__RETENTION_DAYS=14

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure is environmental
    raise RuntimeError(
        "PyYAML is required to load zivctl configuration. Install with "
        "`pip install zivctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "ZIVCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PathsConfig:
    """Locations of the files managed by zivctl.

    The backup set is every field of this class, in declaration order.
    """

    service_config: Path
    ledger: Path
    domain: Path
    api_key: Path
    bot_config: Path
    tls_cert: Path
    tls_key: Path

    def backup_set(self) -> list[Path]:
        """Return the fixed list of files captured by a backup."""
        return [
            self.service_config,
            self.ledger,
            self.domain,
            self.api_key,
            self.bot_config,
            self.tls_cert,
            self.tls_key,
        ]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "service_config": str(self.service_config),
            "ledger": str(self.ledger),
            "domain": str(self.domain),
            "api_key": str(self.api_key),
            "bot_config": str(self.bot_config),
            "tls_cert": str(self.tls_cert),
            "tls_key": str(self.tls_key),
        }


@dataclass(frozen=True)
class RemoteConfig:
    """Settings for the ``rclone`` remote holding backup archives."""

    target: str = "drive:ZIVPN-BACKUP"
    rclone_bin: str = "rclone"
    timeout: float = 300.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"target": self.target, "rclone_bin": self.rclone_bin, "timeout": self.timeout}


@dataclass(frozen=True)
class BackupConfig:
    """Local staging and retention settings for backups."""

    staging_dir: Path
    restore_dir: Path = Path("/tmp")
    suffix: str = ".zip"
    retention_days: int = 7

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "staging_dir": str(self.staging_dir),
            "restore_dir": str(self.restore_dir),
            "suffix": self.suffix,
            "retention_days": self.retention_days,
        }


@dataclass(frozen=True)
class ServicesConfig:
    """Units restarted after credential changes and restores."""

    units: tuple[str, ...] = ("zivpn", "zivpn-api", "zivpn-bot")
    systemctl_bin: str = "systemctl"
    timeout: float = 60.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "units": list(self.units),
            "systemctl_bin": self.systemctl_bin,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class AutoBackupConfig:
    """Where the auto-backup policy lives and what the cron entry runs."""

    policy_file: Path
    cron_file: Path = Path("/etc/cron.d/zivctl-backup")
    schedule: str = "0 2 * * *"
    command: str = "/usr/local/bin/zivctl backup create && /usr/local/bin/zivctl backup cleanup"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "policy_file": str(self.policy_file),
            "cron_file": str(self.cron_file),
            "schedule": self.schedule,
            "command": self.command,
        }


@dataclass(frozen=True)
class ApiConfig:
    """Listen address for the HTTP API."""

    host: str = "0.0.0.0"
    port: int = 8080

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"host": self.host, "port": self.port}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for zivctl."""

    config_file: Path
    config_root: Path
    runtime_dir: Path
    logs_dir: Path
    lock_timeout: float
    paths: PathsConfig
    remote: RemoteConfig
    backups: BackupConfig
    services: ServicesConfig
    auto_backup: AutoBackupConfig
    api: ApiConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "config_root": str(self.config_root),
            "runtime_dir": str(self.runtime_dir),
            "logs_dir": str(self.logs_dir),
            "lock_timeout": self.lock_timeout,
            "paths": self.paths.to_dict(),
            "remote": self.remote.to_dict(),
            "backups": self.backups.to_dict(),
            "services": self.services.to_dict(),
            "auto_backup": self.auto_backup.to_dict(),
            "api": self.api.to_dict(),
        }


# File names relative to ``config_root`` used when a path is not configured.
DEFAULT_FILE_NAMES: dict[str, str] = {
    "service_config": "config.json",
    "ledger": "users.db",
    "domain": "domain",
    "api_key": "apikey",
    "bot_config": "bot-config.json",
    "tls_cert": "zivpn.crt",
    "tls_key": "zivpn.key",
}

DEFAULTS: dict[str, object] = {
    "config_file": "/etc/zivctl/config.yml",
    "config_root": "/etc/zivpn",
    "runtime_dir": "/run/zivctl",
    "logs_dir": "/var/log/zivctl",
    "lock_timeout": 30.0,
    "paths": {name: None for name in DEFAULT_FILE_NAMES},
    "remote": {
        "target": "drive:ZIVPN-BACKUP",
        "rclone_bin": "rclone",
        "timeout": 300.0,
    },
    "backups": {
        "staging_dir": None,  # derived from config_root when absent
        "restore_dir": "/tmp",
        "suffix": ".zip",
        "retention_days": 7,
    },
    "services": {
        "units": ["zivpn", "zivpn-api", "zivpn-bot"],
        "systemctl_bin": "systemctl",
        "timeout": 60.0,
    },
    "auto_backup": {
        "policy_file": None,  # derived from config_root when absent
        "cron_file": "/etc/cron.d/zivctl-backup",
        "schedule": "0 2 * * *",
        "command": "/usr/local/bin/zivctl backup create && /usr/local/bin/zivctl backup cleanup",
    },
    "api": {
        "host": "0.0.0.0",
        "port": 8080,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("paths", "remote", "backups", "services", "auto_backup", "api")
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


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


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    backups_map = _as_dict(raw.get("backups"), "backups")
    suffix = backups_map.get("suffix")
    if suffix is not None:
        if not isinstance(suffix, str) or not suffix.startswith(".") or len(suffix) < 2:
            raise ConfigError("backups.suffix must be a file extension such as '.zip'.")

    services_map = _as_dict(raw.get("services"), "services")
    units = services_map.get("units")
    if units is not None:
        sequence = _as_sequence(units, "services.units")
        if not all(isinstance(item, str) and item.strip() for item in sequence):
            raise ConfigError("services.units must be a list of non-empty unit names.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    config_root = _to_path(raw.get("config_root"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    paths_mapping = _as_dict(raw.get("paths"), "paths")
    resolved_paths: dict[str, Path] = {}
    for key, file_name in DEFAULT_FILE_NAMES.items():
        value = paths_mapping.get(key)
        resolved_paths[key] = _to_path(value) if value else config_root / file_name
    paths = PathsConfig(**resolved_paths)

    remote_mapping = _as_dict(raw.get("remote"), "remote")
    target = str(remote_mapping.get("target", "drive:ZIVPN-BACKUP")).strip()
    if not target:
        raise ConfigError("remote.target must be a non-empty rclone remote path.")
    remote = RemoteConfig(
        target=target.rstrip("/"),
        rclone_bin=str(remote_mapping.get("rclone_bin", "rclone")),
        timeout=_expect_positive_float(
            remote_mapping.get("timeout"), "remote.timeout", default=300.0
        ),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    staging_value = backups_mapping.get("staging_dir")
    retention_days = _expect_int(
        backups_mapping.get("retention_days"), "backups.retention_days", default=7
    )
    if retention_days <= 0:
        raise ConfigError("backups.retention_days must be greater than zero.")
    backups = BackupConfig(
        staging_dir=_to_path(staging_value) if staging_value else config_root / "backups",
        restore_dir=_to_path(backups_mapping.get("restore_dir", "/tmp")),
        suffix=str(backups_mapping.get("suffix", ".zip")),
        retention_days=retention_days,
    )

    services_mapping = _as_dict(raw.get("services"), "services")
    units_raw = services_mapping.get("units")
    units = (
        tuple(str(item).strip() for item in _as_sequence(units_raw, "services.units"))
        if units_raw is not None
        else ServicesConfig().units
    )
    services = ServicesConfig(
        units=units,
        systemctl_bin=str(services_mapping.get("systemctl_bin", "systemctl")),
        timeout=_expect_positive_float(
            services_mapping.get("timeout"), "services.timeout", default=60.0
        ),
    )

    auto_mapping = _as_dict(raw.get("auto_backup"), "auto_backup")
    policy_value = auto_mapping.get("policy_file")
    schedule = str(auto_mapping.get("schedule", "0 2 * * *")).strip()
    if len(schedule.split()) != 5:
        raise ConfigError(
            f"auto_backup.schedule must have five cron fields. Got {schedule!r}."
        )
    auto_backup = AutoBackupConfig(
        policy_file=(
            _to_path(policy_value) if policy_value else config_root / "auto-backup.json"
        ),
        cron_file=_to_path(auto_mapping.get("cron_file", "/etc/cron.d/zivctl-backup")),
        schedule=schedule,
        command=str(auto_mapping.get("command", AutoBackupConfig.command)),
    )

    api_mapping = _as_dict(raw.get("api"), "api")
    port = _expect_int(api_mapping.get("port"), "api.port", default=8080)
    if not 0 < port < 65536:
        raise ConfigError(f"api.port must be between 1 and 65535. Got {port}.")
    api = ApiConfig(host=str(api_mapping.get("host", "0.0.0.0")), port=port)

    return AppConfig(
        config_file=config_file,
        config_root=config_root,
        runtime_dir=runtime_dir,
        logs_dir=logs_dir,
        lock_timeout=lock_timeout,
        paths=paths,
        remote=remote,
        backups=backups,
        services=services,
        auto_backup=auto_backup,
        api=api,
    )


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
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


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
    "ApiConfig",
    "AppConfig",
    "AutoBackupConfig",
    "BackupConfig",
    "ConfigError",
    "PathsConfig",
    "RemoteConfig",
    "ServicesConfig",
    "load_config",
]
