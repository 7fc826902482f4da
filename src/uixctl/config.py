"""Settings loader for uixctl.

Process settings are merged from several sources, lowest precedence first:

1. Built-in defaults.
2. ``/etc/uixctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``UIXCTL_``.
4. The bridge's own environment contract (``UIX_*`` and
   ``HOMEBRIDGE_CONFIG_UI*``), which deployments already set for the UI.
5. Explicit overrides supplied programmatically (CLI flags).

``UIXCTL_`` keys use double underscores to express nesting, e.g.::

    export UIXCTL_CONTAINER__LOG_PATH=/var/log/homebridge.log
    export UIXCTL_UPDATE__LOCK_FILE=.update.lock

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The bridge variables are taken verbatim as strings. The
result is exposed as immutable ``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load uixctl settings. Install with "
        "`pip install uixctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "UIXCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_RESTART_COMMAND = "killall -9 homebridge && killall -9 homebridge-config-ui-x"
ALLOWED_AUTH_MODES = {"form", "none"}


class ConfigError(RuntimeError):
    """Raised when settings parsing fails."""


@dataclass(frozen=True)
class ContainerSeeds:
    """Environment-provided UI values used only when the bridge config is silent."""

    port: int | None = None
    theme: str | None = None
    auth: str | None = None
    temp: str | None = None
    login_wallpaper: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "port": self.port,
            "theme": self.theme,
            "auth": self.auth,
            "temp": self.temp,
            "login_wallpaper": self.login_wallpaper,
        }


@dataclass(frozen=True)
class ContainerConfig:
    """Container deployment profile (the oznu/homebridge image)."""

    enabled: bool = False
    ui_version: str | None = None
    insecure: bool = False
    log_path: Path = Path("/homebridge/logs/homebridge.log")
    restart_command: str = DEFAULT_RESTART_COMMAND
    seeds: ContainerSeeds = ContainerSeeds()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "ui_version": self.ui_version,
            "insecure": self.insecure,
            "log_path": str(self.log_path),
            "restart_command": self.restart_command,
            "seeds": self.seeds.to_dict(),
        }


@dataclass(frozen=True)
class UpdateFilesConfig:
    """File names used by offline updates, relative to the storage path."""

    lock_file: str = ".uix-update.lock"
    log_file: str = ".uix-offline-update.log"
    launcher_file: str = ".uix-offline-update.py"

    def lock_path(self, storage_path: Path) -> Path:
        """Return the lock file location for *storage_path*."""
        return storage_path / self.lock_file

    def log_path(self, storage_path: Path) -> Path:
        """Return the update log location for *storage_path*."""
        return storage_path / self.log_file

    def launcher_path(self, storage_path: Path) -> Path:
        """Return the launcher artifact location for *storage_path*."""
        return storage_path / self.launcher_file

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "lock_file": self.lock_file,
            "log_file": self.log_file,
            "launcher_file": self.launcher_file,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved process settings for uixctl."""

    config_file: Path
    home_storage_path: Path
    multimode_root: Path | None
    config_path: Path
    storage_path: Path
    custom_plugin_path: Path | None
    insecure_mode: bool
    no_timestamps: bool
    logs_dir: Path
    terminal_access: bool
    branding: str | None
    container: ContainerConfig
    update: UpdateFilesConfig

    @property
    def multimode(self) -> bool:
        """Return True when a multimode root has been configured."""
        return self.multimode_root is not None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the settings."""
        return {
            "config_file": str(self.config_file),
            "home_storage_path": str(self.home_storage_path),
            "multimode_root": str(self.multimode_root) if self.multimode_root else None,
            "config_path": str(self.config_path),
            "storage_path": str(self.storage_path),
            "custom_plugin_path": (
                str(self.custom_plugin_path) if self.custom_plugin_path else None
            ),
            "insecure_mode": self.insecure_mode,
            "no_timestamps": self.no_timestamps,
            "logs_dir": str(self.logs_dir),
            "terminal_access": self.terminal_access,
            "branding": self.branding,
            "container": self.container.to_dict(),
            "update": self.update.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/uixctl/config.yml",
    "home_storage_path": "~/.homebridge",
    "multimode_root": None,
    "config_path": None,  # derived from storage_path when absent
    "storage_path": None,  # derived from home_storage_path when absent
    "custom_plugin_path": None,
    "insecure_mode": False,
    "no_timestamps": False,
    "logs_dir": "~/.uixctl/logs",
    "terminal_access": False,
    "branding": None,
    "container": {
        "enabled": False,
        "ui_version": None,
        "insecure": False,
        "log_path": "/homebridge/logs/homebridge.log",
        "restart_command": DEFAULT_RESTART_COMMAND,
        "seeds": {
            "port": None,
            "theme": None,
            "auth": None,
            "temp": None,
            "login_wallpaper": None,
        },
    },
    "update": {
        "lock_file": ".uix-update.lock",
        "log_file": ".uix-offline-update.log",
        "launcher_file": ".uix-offline-update.py",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_CONTAINER_KEYS = {"enabled", "ui_version", "insecure", "log_path", "restart_command", "seeds"}
_SEED_KEYS = {"port", "theme", "auth", "temp", "login_wallpaper"}
_UPDATE_KEYS = {"lock_file", "log_file", "launcher_file"}

# Bridge environment variables mapped onto settings paths.
_BRIDGE_PATH_VARS = {
    "UIX_MULTIMODE": ("multimode_root",),
    "UIX_CONFIG_PATH": ("config_path",),
    "UIX_STORAGE_PATH": ("storage_path",),
    "UIX_CUSTOM_PLUGIN_PATH": ("custom_plugin_path",),
    "CONFIG_UI_VERSION": ("container", "ui_version"),
    "CONFIG_UI_BRANDING": ("branding",),
    "HOMEBRIDGE_CONFIG_UI_THEME": ("container", "seeds", "theme"),
    "HOMEBRIDGE_CONFIG_UI_AUTH": ("container", "seeds", "auth"),
    "HOMEBRIDGE_CONFIG_UI_TEMP": ("container", "seeds", "temp"),
    "HOMEBRIDGE_CONFIG_UI_LOGIN_WALLPAPER": ("container", "seeds", "login_wallpaper"),
}
# Flags that are on whenever the variable is non-empty.
_BRIDGE_PRESENCE_FLAGS = {
    "UIX_INSECURE_MODE": ("insecure_mode",),
    "UIX_LOG_NO_TIMESTAMPS": ("no_timestamps",),
}
# Flags that are on only for the literal value "1".
_BRIDGE_ONE_FLAGS = {
    "HOMEBRIDGE_CONFIG_UI": ("container", "enabled"),
    "HOMEBRIDGE_CONFIG_UI_TERMINAL": ("terminal_access",),
    "HOMEBRIDGE_INSECURE": ("container", "insecure"),
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge settings sources into an :class:`AppConfig`."""
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

    bridge_values = _build_bridge_env_overrides(resolved_env)
    if bridge_values:
        _deep_merge(merged, bridge_values)

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
        raise ConfigError(f"Failed to parse settings file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Settings file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    container = raw.get("container")
    if container is not None:
        container_map = _as_dict(container, "container")
        unknown = set(container_map.keys()) - _CONTAINER_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown container configuration keys: {joined}.")

        seeds_map = _as_dict(container_map.get("seeds"), "container.seeds")
        unknown_seeds = set(seeds_map.keys()) - _SEED_KEYS
        if unknown_seeds:
            joined = ", ".join(sorted(unknown_seeds))
            raise ConfigError(f"Unknown container seed keys: {joined}.")

        auth = seeds_map.get("auth")
        if auth not in (None, "") and str(auth) not in ALLOWED_AUTH_MODES:
            allowed = ", ".join(sorted(ALLOWED_AUTH_MODES))
            raise ConfigError(
                f"Unsupported auth mode '{auth}' in container.seeds.auth. Allowed: {allowed}."
            )

    update = raw.get("update")
    if update is not None:
        update_map = _as_dict(update, "update")
        unknown = set(update_map.keys()) - _UPDATE_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown update configuration keys: {joined}.")
        for key, value in update_map.items():
            name = str(value or "").strip()
            if not name or "/" in name or "\\" in name:
                raise ConfigError(f"update.{key} must be a plain file name. Got {value!r}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    home_storage_path = _to_path(raw.get("home_storage_path"))
    multimode_root = _optional_path(raw.get("multimode_root"), "multimode_root")

    storage_value = _optional_path(raw.get("storage_path"), "storage_path")
    storage_path = storage_value or home_storage_path
    config_value = _optional_path(raw.get("config_path"), "config_path")
    config_path = config_value or storage_path / "config.json"

    container_mapping = _as_dict(raw.get("container"), "container")
    seeds_mapping = _as_dict(container_mapping.get("seeds"), "container.seeds")
    port_seed_raw = seeds_mapping.get("port")
    port_seed = (
        None
        if port_seed_raw in (None, "")
        else _expect_int(port_seed_raw, "container.seeds.port", default=0)
    )
    seeds = ContainerSeeds(
        port=port_seed or None,
        theme=_optional_str(seeds_mapping.get("theme")),
        auth=_optional_str(seeds_mapping.get("auth")),
        temp=_optional_str(seeds_mapping.get("temp")),
        login_wallpaper=_optional_str(seeds_mapping.get("login_wallpaper")),
    )
    container = ContainerConfig(
        enabled=_expect_bool(container_mapping.get("enabled"), "container.enabled"),
        ui_version=_optional_str(container_mapping.get("ui_version")),
        insecure=_expect_bool(container_mapping.get("insecure"), "container.insecure"),
        log_path=_to_path(container_mapping.get("log_path", "/homebridge/logs/homebridge.log")),
        restart_command=str(container_mapping.get("restart_command") or DEFAULT_RESTART_COMMAND),
        seeds=seeds,
    )

    update_mapping = _as_dict(raw.get("update"), "update")
    defaults = UpdateFilesConfig()
    update = UpdateFilesConfig(
        lock_file=str(update_mapping.get("lock_file", defaults.lock_file)),
        log_file=str(update_mapping.get("log_file", defaults.log_file)),
        launcher_file=str(update_mapping.get("launcher_file", defaults.launcher_file)),
    )

    return AppConfig(
        config_file=config_file,
        home_storage_path=home_storage_path,
        multimode_root=multimode_root,
        config_path=config_path,
        storage_path=storage_path,
        custom_plugin_path=_optional_path(raw.get("custom_plugin_path"), "custom_plugin_path"),
        insecure_mode=_expect_bool(raw.get("insecure_mode"), "insecure_mode"),
        no_timestamps=_expect_bool(raw.get("no_timestamps"), "no_timestamps"),
        logs_dir=_to_path(raw.get("logs_dir")),
        terminal_access=_expect_bool(raw.get("terminal_access"), "terminal_access"),
        branding=_optional_str(raw.get("branding")),
        container=container,
        update=update,
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


def _build_bridge_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, path in _BRIDGE_PATH_VARS.items():
        value = env.get(key)
        if value:
            _assign_nested(overrides, list(path), value)
    for key, path in _BRIDGE_PRESENCE_FLAGS.items():
        if key in env:
            _assign_nested(overrides, list(path), bool(env[key]))
    for key, path in _BRIDGE_ONE_FLAGS.items():
        if key in env:
            _assign_nested(overrides, list(path), env[key] == "1")

    port = env.get("HOMEBRIDGE_CONFIG_UI_PORT")
    if port:
        try:
            parsed = int(port, 10)
        except ValueError as exc:
            raise ConfigError(
                f"Invalid integer for HOMEBRIDGE_CONFIG_UI_PORT: {port!r}."
            ) from exc
        _assign_nested(overrides, ["container", "seeds", "port"], parsed)
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


def _optional_path(value: object, label: str) -> Path | None:
    if value is None or value == "":
        return None
    if isinstance(value, (str, Path)):
        return _to_path(value).resolve()
    raise ConfigError(f"{label} must be a string, Path, or null.")


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _expect_bool(value: object | None, label: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"", "0", "false", "no", "off"}:
            return False
    if isinstance(value, int):
        return value != 0
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


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
    "ConfigError",
    "ContainerConfig",
    "ContainerSeeds",
    "UpdateFilesConfig",
    "load_config",
]
