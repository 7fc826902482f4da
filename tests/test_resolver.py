"""Tests for instance resolution, switching and the settings payload."""
from __future__ import annotations

import hashlib
import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from uixctl import PACKAGE_NAME, __version__
from uixctl.bridge_config import BridgeConfigError
from uixctl.config import DEFAULT_RESTART_COMMAND, AppConfig, load_config
from uixctl.multimode import REGISTRY_FILE, RegistryError
from uixctl.resolver import (
    InstanceConfigResolver,
    ResolverError,
    able_to_configure_self,
    resolve,
    settings_payload,
)
from uixctl.secret_store import SECRETS_FILE


def _bridge_config(directory: Path, *, name: str, ui: dict[str, object] | None = None) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    platforms: list[dict[str, object]] = [{"platform": "HueBridge"}]
    if ui is not None:
        platforms.append({"platform": "config", **ui})
    path = directory / "config.json"
    path.write_text(
        json.dumps({"bridge": {"name": name}, "platforms": platforms}),
        encoding="utf-8",
    )
    return path


def _config(tmp_path: Path, env: dict[str, str]) -> AppConfig:
    return load_config(config_file=tmp_path / "uixctl.yml", env=env)


def _multimode(tmp_path: Path) -> tuple[AppConfig, Path]:
    root = tmp_path / "data"
    house = root / "house"
    cabin = root / "cabin"
    _bridge_config(house, name="House Bridge", ui={"name": "Config", "port": 9100})
    _bridge_config(cabin, name="Cabin Bridge", ui={"name": "Cabin UI", "theme": "dark-mode"})
    (root / REGISTRY_FILE).write_text(
        json.dumps(
            {
                "instances": [
                    {"name": "house", "path": str(house)},
                    {"name": "cabin", "path": str(cabin), "insecure": True},
                ],
                "port": 8581,
            }
        ),
        encoding="utf-8",
    )
    return _config(tmp_path, {"UIX_MULTIMODE": str(root)}), root.resolve()


def test_single_mode_resolution(tmp_path: Path) -> None:
    """Paths derive from the storage path and settings come from disk."""
    storage = tmp_path / "hb"
    _bridge_config(storage, name="Homebridge", ui={"name": "Config", "port": 8581})
    config = _config(tmp_path, {"UIX_STORAGE_PATH": str(storage)})

    instance = resolve(config)

    root = storage.resolve()
    assert instance.multimode_instance is None
    assert instance.storage_path == root
    assert instance.config_path == root / "config.json"
    assert instance.secret_path == root / SECRETS_FILE
    assert instance.auth_path == root / "auth.json"
    assert instance.accessory_layout_path == root / "accessories" / "uiAccessoriesLayout.json"
    assert instance.startup_script == root / "startup.sh"
    assert instance.docker_env_file == root / ".docker.env"
    assert instance.ui.port == 8581
    assert instance.bridge_config.bridge.name == "Homebridge"
    assert instance.plugin_name == "Config"
    assert instance.instance_id == hashlib.sha256(
        instance.secrets.secret_key.encode("utf-8")
    ).hexdigest()
    assert (root / SECRETS_FILE).exists()


def test_plugin_name_falls_back_when_config_platform_is_unnamed(tmp_path: Path) -> None:
    """A config platform without a name reports the package name."""
    storage = tmp_path / "hb"
    _bridge_config(storage, name="Homebridge", ui={"port": 8581})
    config = _config(tmp_path, {"UIX_STORAGE_PATH": str(storage)})

    instance = resolve(config)

    assert instance.ui.name is None
    assert instance.ui.port == 8581
    assert instance.plugin_name == "homebridge-config-ui-x"


def test_defaults_without_ui_platform(tmp_path: Path) -> None:
    """Without a config platform the documented defaults apply."""
    storage = tmp_path / "hb"
    _bridge_config(storage, name="Homebridge")
    config = _config(tmp_path, {"UIX_STORAGE_PATH": str(storage)})

    ui = resolve(config).ui

    assert (ui.name, ui.port, ui.session_timeout, ui.theme, ui.auth) == (
        "Config",
        8080,
        28800,
        "teal",
        "form",
    )


def test_identity_is_stable_across_resolutions(tmp_path: Path) -> None:
    """The secret is created once and reused."""
    storage = tmp_path / "hb"
    _bridge_config(storage, name="Homebridge")
    config = _config(tmp_path, {"UIX_STORAGE_PATH": str(storage)})

    assert resolve(config).instance_id == resolve(config).instance_id


def test_missing_bridge_config_is_fatal(tmp_path: Path) -> None:
    """Resolution fails when the bridge configuration is absent."""
    config = _config(tmp_path, {"UIX_STORAGE_PATH": str(tmp_path / "empty")})

    with pytest.raises(BridgeConfigError):
        resolve(config)


def test_selecting_instance_requires_multimode(tmp_path: Path) -> None:
    """Single-instance mode has no named instances."""
    storage = tmp_path / "hb"
    _bridge_config(storage, name="Homebridge")
    config = _config(tmp_path, {"UIX_STORAGE_PATH": str(storage)})

    with pytest.raises(ResolverError, match="multimode is not configured"):
        resolve(config, "house")


def test_multimode_selects_named_instance(tmp_path: Path) -> None:
    """Selecting cabin reads cabin's config; secrets stay at the registry root."""
    config, root = _multimode(tmp_path)

    instance = resolve(config, "cabin")

    assert instance.multimode_instance == "cabin"
    assert instance.config_path == root / "cabin" / "config.json"
    assert instance.storage_path == root / "cabin"
    assert instance.secret_path == root / SECRETS_FILE
    assert instance.auth_path == root / "auth.json"
    assert instance.insecure_mode is True
    assert instance.bridge_config.bridge.name == "Cabin Bridge"
    assert instance.ui.name == "Cabin UI"
    assert instance.ui.theme == "dark-mode"
    # the registry's listener settings are imposed on every instance
    assert instance.ui.port == 8581


def test_multimode_defaults_to_first_instance(tmp_path: Path) -> None:
    """Without a name the first registered instance is used."""
    config, root = _multimode(tmp_path)

    instance = resolve(config)

    assert instance.multimode_instance == "house"
    assert instance.config_path == root / "house" / "config.json"


def test_multimode_unknown_instance(tmp_path: Path) -> None:
    """An unregistered name fails resolution."""
    config, _ = _multimode(tmp_path)

    with pytest.raises(RegistryError, match="garage"):
        resolve(config, "garage")


def test_container_seeds_never_override_disk(tmp_path: Path) -> None:
    """Container seeds only fill values the bridge configuration leaves unset."""
    storage = tmp_path / "hb"
    _bridge_config(storage, name="Homebridge", ui={"name": "Config", "port": 9000})
    config = _config(
        tmp_path,
        {
            "UIX_STORAGE_PATH": str(storage),
            "UIX_INSECURE_MODE": "1",
            "HOMEBRIDGE_CONFIG_UI": "1",
            "HOMEBRIDGE_CONFIG_UI_PORT": "8581",
            "HOMEBRIDGE_CONFIG_UI_THEME": "dark-mode",
            "HOMEBRIDGE_INSECURE": "0",
        },
    )

    instance = resolve(config)

    assert instance.ui.port == 9000
    assert instance.ui.theme == "dark-mode"
    assert instance.ui.restart == DEFAULT_RESTART_COMMAND
    assert instance.ui.sudo is False
    assert instance.ui.log == {"method": "file", "path": "/homebridge/logs/homebridge.log"}
    # the container profile decides insecure mode on its own
    assert instance.insecure_mode is False


def test_resolver_switch_replaces_every_field(tmp_path: Path) -> None:
    """Switching instances swaps the whole value; old readers are unaffected."""
    config, root = _multimode(tmp_path)
    resolver = InstanceConfigResolver(config)

    house = resolver.current
    cabin = resolver.change_instance("cabin")

    assert resolver.current is cabin
    assert house.multimode_instance == "house"
    assert house.config_path == root / "house" / "config.json"
    assert cabin.multimode_instance == "cabin"
    assert cabin.config_path == root / "cabin" / "config.json"
    assert cabin.storage_path == root / "cabin"
    assert cabin.bridge_config.bridge.name == "Cabin Bridge"
    assert cabin.insecure_mode is True
    assert house.insecure_mode is False
    # shared secret, so the identity does not change with the instance
    assert cabin.instance_id == house.instance_id
    assert resolver.resolve().multimode_instance == "cabin"


def test_failed_switch_keeps_current(tmp_path: Path) -> None:
    """An unknown instance leaves the previous selection active."""
    config, _ = _multimode(tmp_path)
    resolver = InstanceConfigResolver(config)
    house = resolver.current

    with pytest.raises(RegistryError):
        resolver.change_instance("garage")

    assert resolver.current is house


def test_switch_requires_multimode(tmp_path: Path) -> None:
    """Single-instance resolvers refuse to switch."""
    storage = tmp_path / "hb"
    _bridge_config(storage, name="Homebridge")
    resolver = InstanceConfigResolver(_config(tmp_path, {"UIX_STORAGE_PATH": str(storage)}))

    assert resolver.registry is None
    with pytest.raises(ResolverError, match="requires multimode"):
        resolver.change_instance("house")


def test_settings_payload(tmp_path: Path) -> None:
    """The UI view-model carries environment flags and identity."""
    config, _ = _multimode(tmp_path)
    resolver = InstanceConfigResolver(config)
    resolver.change_instance("cabin")

    payload = resolver.settings_payload(now=datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC))

    env = payload["env"]
    assert isinstance(env, dict)
    assert env["homebridgeInstanceName"] == "Cabin Bridge"
    assert env["multimodeInstance"] == "cabin"
    assert env["instanceId"] == resolver.current.instance_id
    assert env["enableAccessories"] is True
    assert env["runningInDocker"] is False
    assert env["ableToConfigureSelf"] is True
    assert env["temperatureUnits"] == "c"
    assert env["packageName"] == PACKAGE_NAME
    assert env["packageVersion"] == __version__
    assert env["branding"] is False
    assert payload["formAuth"] is True
    assert payload["theme"] == "dark-mode"
    assert payload["serverTimestamp"] == "2024-01-02T03:04:05.000Z"


def test_settings_payload_in_container(tmp_path: Path) -> None:
    """Containers always get terminal access and are never reported as plain Linux."""
    storage = tmp_path / "hb"
    _bridge_config(storage, name="Homebridge", ui={"name": "Config", "auth": "none"})
    config = _config(
        tmp_path,
        {
            "UIX_STORAGE_PATH": str(storage),
            "HOMEBRIDGE_CONFIG_UI": "1",
            "CONFIG_UI_VERSION": "3.5.4",
            "CONFIG_UI_BRANDING": "acme",
        },
    )

    payload = settings_payload(resolve(config), config)

    env = payload["env"]
    assert isinstance(env, dict)
    assert env["runningInDocker"] is True
    assert env["runningInLinux"] is False
    assert env["enableTerminalAccess"] is True
    assert env["ableToConfigureSelf"] is False
    assert env["branding"] == "acme"
    assert payload["formAuth"] is False


@pytest.mark.parametrize(
    ("env", "expected"),
    [
        ({}, True),
        ({"HOMEBRIDGE_CONFIG_UI": "1", "CONFIG_UI_VERSION": "3.5.5"}, True),
        ({"HOMEBRIDGE_CONFIG_UI": "1", "CONFIG_UI_VERSION": "v4.0.0"}, True),
        ({"HOMEBRIDGE_CONFIG_UI": "1", "CONFIG_UI_VERSION": "3.5.4"}, False),
        ({"HOMEBRIDGE_CONFIG_UI": "1", "CONFIG_UI_VERSION": "latest"}, False),
        ({"HOMEBRIDGE_CONFIG_UI": "1"}, False),
    ],
)
def test_able_to_configure_self(tmp_path: Path, env: dict[str, str], expected: bool) -> None:
    """Containers need a recent enough image to manage themselves."""
    assert able_to_configure_self(_config(tmp_path, env)) is expected
