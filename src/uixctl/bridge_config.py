"""Typed view over the bridge's on-disk ``config.json``.

The bridge configuration is a loosely shaped JSON document: a ``bridge``
object, a heterogeneous ``platforms`` list and an ``accessories`` list. Only
the platform tagged ``"config"`` matters to the UI; every other platform is
kept as an opaque attribute bag. The file is read, never written.
"""
from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar

CONFIG_PLATFORM = "config"
DEFAULT_UI_NAME = "Config"

UI_DEFAULTS: dict[str, object] = {
    "port": 8080,
    "sessionTimeout": 28800,
    "theme": "teal",
    "auth": "form",
}

# camelCase on-disk key -> UiSettings attribute
_UI_FIELDS = {
    "name": "name",
    "port": "port",
    "host": "host",
    "auth": "auth",
    "theme": "theme",
    "sudo": "sudo",
    "restart": "restart",
    "log": "log",
    "ssl": "ssl",
    "temp": "temp",
    "tempUnits": "temp_units",
    "loginWallpaper": "login_wallpaper",
    "noFork": "no_fork",
    "linux": "linux",
    "debug": "debug",
    "proxyHost": "proxy_host",
    "sessionTimeout": "session_timeout",
    "websocketCompatibilityMode": "websocket_compatibility_mode",
    "homebridgePackagePath": "homebridge_package_path",
}


class BridgeConfigError(RuntimeError):
    """Raised when the bridge configuration cannot be read or interpreted."""


@dataclass(frozen=True)
class BridgeSection:
    """The ``bridge`` block identifying the HomeKit bridge."""

    name: str | None = None
    username: str | None = None
    pin: str | None = None
    port: int | None = None

    @classmethod
    def from_mapping(cls, raw: object) -> BridgeSection:
        """Build the section, tolerating absent or partial blocks."""
        if not isinstance(raw, Mapping):
            return cls()
        port = raw.get("port")
        return cls(
            name=_optional_str(raw.get("name")),
            username=_optional_str(raw.get("username")),
            pin=_optional_str(raw.get("pin")),
            port=port if isinstance(port, int) and not isinstance(port, bool) else None,
        )


@dataclass(frozen=True)
class ConfigPlatform:
    """The UI's own platform entry; its attributes are the UI settings."""

    kind: ClassVar[str] = CONFIG_PLATFORM
    attributes: Mapping[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class GenericPlatform:
    """Any other platform entry, kept verbatim."""

    platform: str | None
    attributes: Mapping[str, object] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        """Return the platform identifier (empty when untagged)."""
        return self.platform or ""


PlatformEntry = ConfigPlatform | GenericPlatform


def parse_platform(entry: Mapping[str, object]) -> PlatformEntry:
    """Classify a platform mapping into its tagged variant."""
    attributes = dict(entry)
    platform = entry.get("platform")
    if platform == CONFIG_PLATFORM:
        return ConfigPlatform(attributes=attributes)
    return GenericPlatform(
        platform=platform if isinstance(platform, str) else None,
        attributes=attributes,
    )


@dataclass(frozen=True)
class BridgeConfig:
    """Parsed bridge configuration."""

    path: Path
    bridge: BridgeSection
    platforms: tuple[PlatformEntry, ...]
    accessories: tuple[Mapping[str, object], ...]
    raw: Mapping[str, object]

    @property
    def config_platform(self) -> ConfigPlatform | None:
        """Return the first ``config`` platform entry, if any."""
        for entry in self.platforms:
            if isinstance(entry, ConfigPlatform):
                return entry
        return None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object], *, path: Path) -> BridgeConfig:
        """Build a :class:`BridgeConfig` from decoded JSON."""
        platforms_raw = raw.get("platforms")
        platforms: list[PlatformEntry] = []
        if isinstance(platforms_raw, list):
            platforms = [parse_platform(item) for item in platforms_raw if isinstance(item, Mapping)]
        accessories_raw = raw.get("accessories")
        accessories: list[Mapping[str, object]] = []
        if isinstance(accessories_raw, list):
            accessories = [dict(item) for item in accessories_raw if isinstance(item, Mapping)]
        return cls(
            path=path,
            bridge=BridgeSection.from_mapping(raw.get("bridge")),
            platforms=tuple(platforms),
            accessories=tuple(accessories),
            raw=dict(raw),
        )


def load_bridge_config(path: Path) -> BridgeConfig:
    """Read and parse the bridge configuration at *path*.

    A missing, unreadable or malformed file is fatal: the bridge itself could
    not start from it either.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise BridgeConfigError(f"Bridge configuration {path} does not exist.") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise BridgeConfigError(f"Unable to read bridge configuration {path}: {exc}") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise BridgeConfigError(
            f"Bridge configuration {path} is not valid JSON "
            f"(line {exc.lineno}, column {exc.colno}): {exc.msg}"
        ) from exc
    if not isinstance(data, Mapping):
        raise BridgeConfigError(f"Bridge configuration {path} must contain a JSON object.")
    return BridgeConfig.from_mapping(data, path=path)


@dataclass(frozen=True)
class TLSSettings:
    """TLS material references for the UI listener."""

    key: str | None = None
    cert: str | None = None
    pfx: str | None = None
    passphrase: str | None = None

    @property
    def configured(self) -> bool:
        """Return True when either a key/cert pair or a pfx bundle is set."""
        return bool(self.pfx or (self.key and self.cert))

    @classmethod
    def from_mapping(cls, raw: object) -> TLSSettings | None:
        """Return settings for *raw*, or None when it is not a mapping."""
        if not isinstance(raw, Mapping):
            return None
        return cls(
            key=_optional_str(raw.get("key")),
            cert=_optional_str(raw.get("cert")),
            pfx=_optional_str(raw.get("pfx")),
            passphrase=_optional_str(raw.get("passphrase")),
        )

    def to_dict(self) -> dict[str, object]:
        """Return the on-disk shape, omitting unset keys."""
        payload = {
            "key": self.key,
            "cert": self.cert,
            "pfx": self.pfx,
            "passphrase": self.passphrase,
        }
        return {key: value for key, value in payload.items() if value is not None}


@dataclass(frozen=True)
class UiSettings:
    """Effective UI settings after defaults and overrides are applied."""

    name: str | None = None
    port: int = 8080
    host: str | None = None
    auth: str = "form"
    theme: str = "teal"
    sudo: bool | None = None
    restart: str | None = None
    log: Mapping[str, object] | None = None
    ssl: TLSSettings | None = None
    temp: str | None = None
    temp_units: str | None = None
    login_wallpaper: str | None = None
    no_fork: bool | None = None
    linux: Mapping[str, object] | None = None
    debug: bool | None = None
    proxy_host: str | None = None
    session_timeout: int = 28800
    websocket_compatibility_mode: bool | None = None
    homebridge_package_path: str | None = None
    extra: Mapping[str, object] = field(default_factory=dict)

    @property
    def form_auth(self) -> bool:
        """Return True unless authentication is explicitly disabled."""
        return self.auth != "none"

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> UiSettings:
        """Build settings from a merged camelCase mapping."""
        values: dict[str, object] = {}
        extra: dict[str, object] = {}
        for key, value in raw.items():
            if key == "platform":
                continue
            attribute = _UI_FIELDS.get(key)
            if attribute is None:
                extra[key] = value
                continue
            if _is_unset(value):
                continue
            values[attribute] = value

        if "port" in values:
            values["port"] = _coerce_int(values["port"], "port")
        if "session_timeout" in values:
            values["session_timeout"] = _coerce_int(values["session_timeout"], "sessionTimeout")
        for attribute in ("name", "host", "auth", "theme", "restart", "temp", "temp_units",
                          "login_wallpaper", "proxy_host", "homebridge_package_path"):
            if attribute in values:
                values[attribute] = str(values[attribute])
        for attribute in ("log", "linux"):
            if attribute in values and not isinstance(values[attribute], Mapping):
                raise BridgeConfigError(f"UI setting '{attribute}' must be an object.")
        if "ssl" in values:
            values["ssl"] = TLSSettings.from_mapping(values["ssl"])
        return cls(extra=extra, **values)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, object]:
        """Return the camelCase representation, omitting unset optionals."""
        payload: dict[str, object] = dict(self.extra)
        for key, attribute in _UI_FIELDS.items():
            value = getattr(self, attribute)
            if value is None:
                continue
            if isinstance(value, TLSSettings):
                value = value.to_dict()
            elif isinstance(value, Mapping):
                value = dict(value)
            payload[key] = value
        return payload


def merge_ui_settings(
    base: Mapping[str, object] | None,
    *layers: Mapping[str, object],
    seeds: Mapping[str, object] | None = None,
    defaults: Mapping[str, object] | None = None,
) -> UiSettings:
    """Merge UI settings sources into one :class:`UiSettings`.

    ``base`` is the ``config`` platform entry (a name-only stub when absent).
    Each layer then replaces the keys it carries, including with ``None``.
    ``seeds`` fill keys that are still unset and ``defaults`` fill whatever
    remains, so neither can override an explicit setting.
    """
    merged: dict[str, object] = dict(base) if base is not None else {"name": DEFAULT_UI_NAME}
    for layer in layers:
        merged.update(layer)
    for source in (seeds or {}, UI_DEFAULTS if defaults is None else defaults):
        for key, value in source.items():
            if _is_unset(merged.get(key)) and not _is_unset(value):
                merged[key] = value
    return UiSettings.from_mapping(merged)


def _is_unset(value: object) -> bool:
    if value is None or value == "":
        return True
    return isinstance(value, int) and not isinstance(value, bool) and value == 0


def _coerce_int(value: object, label: str) -> int:
    if isinstance(value, bool):
        raise BridgeConfigError(f"UI setting '{label}' must be an integer. Got {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip(), 10)
        except ValueError as exc:
            raise BridgeConfigError(
                f"UI setting '{label}' must be an integer. Got {value!r}."
            ) from exc
    raise BridgeConfigError(f"UI setting '{label}' must be an integer. Got {value!r}.")


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


__all__ = [
    "BridgeConfig",
    "BridgeConfigError",
    "BridgeSection",
    "ConfigPlatform",
    "GenericPlatform",
    "PlatformEntry",
    "TLSSettings",
    "UI_DEFAULTS",
    "UiSettings",
    "load_bridge_config",
    "merge_ui_settings",
    "parse_platform",
]
