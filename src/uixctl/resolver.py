"""Resolve the active bridge instance's paths, identity and UI settings.

Resolution is a pure rebuild: every call reads the multimode registry
selection, the bridge configuration and the secrets file, and produces a new
immutable :class:`InstanceConfig`. :class:`InstanceConfigResolver` owns the
currently active value and swaps it wholesale on instance changes, so readers
holding the previous value never see a mix of two instances. Callers must
serialise instance switches themselves.
"""
from __future__ import annotations

import logging
import platform
import sys
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from packaging.version import InvalidVersion, Version

from . import PACKAGE_NAME, __version__
from .bridge_config import BridgeConfig, UiSettings, load_bridge_config, merge_ui_settings
from .config import AppConfig
from .identity import derive_identity
from .multimode import InstanceDescriptor, MultimodeRegistry, load_registry
from .secret_store import SECRETS_FILE, SecretRecord, get_or_create_secret

LOGGER = logging.getLogger(__name__)

AUTH_FILE = "auth.json"
DEFAULT_PLUGIN_NAME = "homebridge-config-ui-x"
MINIMUM_SELF_CONFIGURE_VERSION = Version("3.5.5")


class ResolverError(RuntimeError):
    """Raised when an instance cannot be resolved from the current settings."""


@dataclass(frozen=True)
class InstanceConfig:
    """Everything known about the active bridge instance."""

    multimode_instance: str | None
    config_path: Path
    storage_path: Path
    secret_path: Path
    auth_path: Path
    custom_plugin_path: Path | None
    accessory_layout_path: Path
    startup_script: Path
    docker_env_file: Path
    insecure_mode: bool
    no_timestamps: bool
    bridge_config: BridgeConfig
    ui: UiSettings
    secrets: SecretRecord
    instance_id: str

    @property
    def plugin_name(self) -> str:
        """Return the name the UI registers itself under."""
        return self.ui.name or DEFAULT_PLUGIN_NAME

    def paths(self) -> dict[str, Path | None]:
        """Return every filesystem location derived for the instance."""
        return {
            "config": self.config_path,
            "storage": self.storage_path,
            "secrets": self.secret_path,
            "auth": self.auth_path,
            "custom_plugins": self.custom_plugin_path,
            "accessory_layout": self.accessory_layout_path,
            "startup_script": self.startup_script,
            "docker_env": self.docker_env_file,
        }

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable summary (the secret itself is omitted)."""
        return {
            "multimode_instance": self.multimode_instance,
            "paths": {key: str(value) if value else None for key, value in self.paths().items()},
            "insecure_mode": self.insecure_mode,
            "no_timestamps": self.no_timestamps,
            "bridge_name": self.bridge_config.bridge.name,
            "plugin_name": self.plugin_name,
            "instance_id": self.instance_id,
            "ui": self.ui.to_dict(),
        }


@dataclass(frozen=True)
class _InstancePaths:
    name: str | None
    config_path: Path
    storage_path: Path
    secret_path: Path
    auth_path: Path
    custom_plugin_path: Path | None
    insecure_mode: bool
    no_timestamps: bool


def resolve(
    config: AppConfig,
    instance_name: str | None = None,
    *,
    registry: MultimodeRegistry | None = None,
) -> InstanceConfig:
    """Resolve the instance selected by *instance_name* under *config*.

    In multimode the registry is read from the configured root unless one is
    supplied; an omitted name selects the first instance and an unknown name
    raises :class:`~uixctl.multimode.RegistryError`.
    """
    if config.multimode_root is not None and registry is None:
        registry = load_registry(config.multimode_root)

    if registry is not None:
        descriptor = (
            registry.get(instance_name) if instance_name is not None else registry.default_instance
        )
        paths = _multimode_paths(registry, descriptor)
    else:
        if instance_name is not None:
            raise ResolverError(
                f"Cannot select instance {instance_name!r}: multimode is not configured."
            )
        paths = _single_paths(config)

    bridge_config = load_bridge_config(paths.config_path)
    ui = _resolve_ui(config, bridge_config, registry)

    insecure_mode = paths.insecure_mode
    if config.container.enabled:
        insecure_mode = config.container.insecure

    secrets = get_or_create_secret(paths.secret_path)
    storage = paths.storage_path
    LOGGER.debug("Resolved instance %s at %s", paths.name or "<default>", storage)
    return InstanceConfig(
        multimode_instance=paths.name,
        config_path=paths.config_path,
        storage_path=storage,
        secret_path=paths.secret_path,
        auth_path=paths.auth_path,
        custom_plugin_path=paths.custom_plugin_path,
        accessory_layout_path=storage / "accessories" / "uiAccessoriesLayout.json",
        startup_script=storage / "startup.sh",
        docker_env_file=storage / ".docker.env",
        insecure_mode=insecure_mode,
        no_timestamps=paths.no_timestamps,
        bridge_config=bridge_config,
        ui=ui,
        secrets=secrets,
        instance_id=derive_identity(secrets),
    )


def _single_paths(config: AppConfig) -> _InstancePaths:
    storage = config.storage_path
    return _InstancePaths(
        name=None,
        config_path=config.config_path,
        storage_path=storage,
        secret_path=storage / SECRETS_FILE,
        auth_path=storage / AUTH_FILE,
        custom_plugin_path=config.custom_plugin_path,
        insecure_mode=config.insecure_mode,
        no_timestamps=config.no_timestamps,
    )


def _multimode_paths(registry: MultimodeRegistry, descriptor: InstanceDescriptor) -> _InstancePaths:
    # secrets and logins belong to the control plane, not to one instance
    return _InstancePaths(
        name=descriptor.name,
        config_path=descriptor.path / "config.json",
        storage_path=descriptor.path,
        secret_path=registry.root / SECRETS_FILE,
        auth_path=registry.root / AUTH_FILE,
        custom_plugin_path=descriptor.custom_plugin_path,
        insecure_mode=descriptor.insecure,
        no_timestamps=descriptor.no_timestamps,
    )


def _resolve_ui(
    config: AppConfig,
    bridge_config: BridgeConfig,
    registry: MultimodeRegistry | None,
) -> UiSettings:
    platform_entry = bridge_config.config_platform
    base = dict(platform_entry.attributes) if platform_entry is not None else None

    layers: list[dict[str, object]] = []
    if registry is not None:
        layers.append(registry.ui_overrides())

    seeds: dict[str, object] = {}
    container = config.container
    if container.enabled:
        layers.append(
            {
                "restart": container.restart_command,
                "sudo": False,
                "log": {"method": "file", "path": str(container.log_path)},
            }
        )
        seeds = {
            "port": container.seeds.port,
            "theme": container.seeds.theme,
            "auth": container.seeds.auth,
            "temp": container.seeds.temp,
            "loginWallpaper": container.seeds.login_wallpaper,
        }

    return merge_ui_settings(base, *layers, seeds=seeds)


def able_to_configure_self(config: AppConfig) -> bool:
    """Return True when the UI may manage its own installation."""
    if not config.container.enabled:
        return True
    raw = (config.container.ui_version or "").strip().lstrip("v")
    if not raw:
        return False
    try:
        return Version(raw) >= MINIMUM_SELF_CONFIGURE_VERSION
    except InvalidVersion:
        LOGGER.debug("Ignoring unparsable container UI version %r", raw)
        return False


def settings_payload(
    instance: InstanceConfig,
    config: AppConfig,
    *,
    now: datetime | None = None,
) -> dict[str, object]:
    """Return the settings view-model consumed by the web UI."""
    running_in_docker = config.container.enabled
    timestamp = (now or datetime.now(tz=UTC)).isoformat(timespec="milliseconds")
    return {
        "env": {
            "ableToConfigureSelf": able_to_configure_self(config),
            "enableAccessories": instance.insecure_mode,
            "enableTerminalAccess": running_in_docker or config.terminal_access,
            "homebridgeInstanceName": instance.bridge_config.bridge.name,
            "pythonVersion": platform.python_version(),
            "packageName": PACKAGE_NAME,
            "packageVersion": __version__,
            "runningInDocker": running_in_docker,
            "runningInLinux": not running_in_docker and sys.platform.startswith("linux"),
            "temperatureUnits": instance.ui.temp_units or "c",
            "websocketCompatibilityMode": bool(instance.ui.websocket_compatibility_mode),
            "branding": config.branding or False,
            "instanceId": instance.instance_id,
            "multimodeInstance": instance.multimode_instance,
        },
        "formAuth": instance.ui.form_auth,
        "theme": instance.ui.theme,
        "serverTimestamp": timestamp.replace("+00:00", "Z"),
    }


class InstanceConfigResolver:
    """Owns the active :class:`InstanceConfig` for one process."""

    def __init__(
        self,
        config: AppConfig,
        *,
        registry: MultimodeRegistry | None = None,
    ) -> None:
        """Load the multimode registry (when configured); resolution is lazy."""
        self._config = config
        if registry is None and config.multimode_root is not None:
            registry = load_registry(config.multimode_root)
        self._registry = registry
        self._current: InstanceConfig | None = None

    @property
    def config(self) -> AppConfig:
        """Return the process settings the resolver was built from."""
        return self._config

    @property
    def registry(self) -> MultimodeRegistry | None:
        """Return the multimode registry, or None in single-instance mode."""
        return self._registry

    @property
    def current(self) -> InstanceConfig:
        """Return the active instance, resolving the default on first use."""
        if self._current is None:
            return self.resolve()
        return self._current

    def resolve(self, instance_name: str | None = None) -> InstanceConfig:
        """Resolve *instance_name* (or the current selection) and make it active."""
        if instance_name is None and self._current is not None:
            instance_name = self._current.multimode_instance
        resolved = resolve(self._config, instance_name, registry=self._registry)
        self._current = resolved
        return resolved

    def change_instance(self, instance_name: str) -> InstanceConfig:
        """Switch to *instance_name*; the previous value stays active on failure."""
        if self._registry is None:
            raise ResolverError("Instance switching requires multimode to be configured.")
        LOGGER.info("Switching active instance to %s", instance_name)
        return self.resolve(instance_name)

    def settings_payload(self, *, now: datetime | None = None) -> dict[str, object]:
        """Return the UI settings view-model for the active instance."""
        return settings_payload(self.current, self._config, now=now)


__all__ = [
    "InstanceConfig",
    "InstanceConfigResolver",
    "ResolverError",
    "able_to_configure_self",
    "resolve",
    "settings_payload",
]
