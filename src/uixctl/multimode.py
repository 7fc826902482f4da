"""Multimode registry: several bridge instances managed from one UI.

The registry lives at ``{root}/ui.json``::

    {
      "instances": [{"name": "house", "path": "/data/house"}, ...],
      "port": 8080, "host": "::", "auth": "form",
      "ssl": {...}, "proxyHost": "...", "debug": false
    }

Instance names are unique and ordered; the first instance is the default
selection.
"""
from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

REGISTRY_FILE = "ui.json"


class RegistryError(RuntimeError):
    """Raised when the multimode registry is missing, invalid or lacks an instance."""


@dataclass(frozen=True)
class InstanceDescriptor:
    """One bridge instance entry in the registry."""

    name: str
    path: Path
    insecure: bool = False
    no_timestamps: bool = False
    custom_plugin_path: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "path": str(self.path),
            "insecure": self.insecure,
            "noTimestamps": self.no_timestamps,
            "customPluginPath": (
                str(self.custom_plugin_path) if self.custom_plugin_path else None
            ),
        }


@dataclass(frozen=True)
class MultimodeRegistry:
    """Parsed ``ui.json`` contents."""

    root: Path
    instances: tuple[InstanceDescriptor, ...]
    port: int | None = None
    host: str | None = None
    auth: str | None = None
    ssl: Mapping[str, object] | None = None
    proxy_host: str | None = None
    debug: bool | None = None

    @property
    def path(self) -> Path:
        """Return the registry file location."""
        return self.root / REGISTRY_FILE

    @property
    def default_instance(self) -> InstanceDescriptor:
        """Return the first registered instance."""
        return self.instances[0]

    def names(self) -> list[str]:
        """Return instance names in registry order."""
        return [instance.name for instance in self.instances]

    def get(self, name: str) -> InstanceDescriptor:
        """Return the instance called *name*; unknown names are an error."""
        for instance in self.instances:
            if instance.name == name:
                return instance
        known = ", ".join(self.names())
        raise RegistryError(
            f"Could not find instance with name {name!r} in {self.path} (known: {known})."
        )

    def ui_overrides(self) -> dict[str, object]:
        """Return UI settings imposed on every instance, in camelCase."""
        return {
            "port": self.port or 8080,
            "auth": self.auth or "form",
            "host": self.host,
            "debug": self.debug,
            "proxyHost": self.proxy_host,
            "ssl": dict(self.ssl) if self.ssl is not None else None,
        }


def load_registry(root: Path) -> MultimodeRegistry:
    """Read and validate ``ui.json`` under *root*."""
    root = root.expanduser().resolve()
    path = root / REGISTRY_FILE
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise RegistryError(f"Multimode registry {path} does not exist.") from exc
    except json.JSONDecodeError as exc:
        raise RegistryError(f"Multimode registry {path} is not valid JSON: {exc.msg}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise RegistryError(f"Unable to read multimode registry {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise RegistryError(f"Multimode registry {path} must contain a JSON object.")
    return _build_registry(root, data)


def _build_registry(root: Path, data: Mapping[str, object]) -> MultimodeRegistry:
    path = root / REGISTRY_FILE
    raw_instances = data.get("instances")
    if not isinstance(raw_instances, list):
        raise RegistryError(f"{path}: 'instances' must be a list.")
    if not raw_instances:
        raise RegistryError(f"{path}: 'instances' must contain at least one instance.")

    instances: list[InstanceDescriptor] = []
    seen: set[str] = set()
    for index, entry in enumerate(raw_instances):
        label = f"{path}: instances[{index}]"
        if not isinstance(entry, Mapping):
            raise RegistryError(f"{label} must be an object.")
        name = entry.get("name")
        if not isinstance(name, str) or not name.strip():
            raise RegistryError(f"{label}.name must be a non-empty string.")
        if name in seen:
            raise RegistryError(f"{label}.name duplicates instance {name!r}.")
        seen.add(name)
        instance_path = entry.get("path")
        if not isinstance(instance_path, str) or not instance_path.strip():
            raise RegistryError(f"{label}.path must be a non-empty string.")
        plugin_path = entry.get("customPluginPath")
        if plugin_path is not None and not isinstance(plugin_path, str):
            raise RegistryError(f"{label}.customPluginPath must be a string.")
        # older registries spell this key "noTimstamps"
        no_timestamps = entry.get("noTimestamps", entry.get("noTimstamps"))
        instances.append(
            InstanceDescriptor(
                name=name,
                path=Path(instance_path).expanduser().resolve(),
                insecure=bool(entry.get("insecure")),
                no_timestamps=bool(no_timestamps),
                custom_plugin_path=(
                    Path(plugin_path).expanduser().resolve() if plugin_path else None
                ),
            )
        )

    port = data.get("port")
    if port is not None and (isinstance(port, bool) or not isinstance(port, int)):
        raise RegistryError(f"{path}: 'port' must be an integer.")
    auth = data.get("auth")
    if auth is not None and auth not in {"form", "none"}:
        raise RegistryError(f"{path}: 'auth' must be 'form' or 'none'.")
    ssl = data.get("ssl")
    if ssl is not None and not isinstance(ssl, Mapping):
        raise RegistryError(f"{path}: 'ssl' must be an object.")
    host = data.get("host")
    proxy_host = data.get("proxyHost")
    debug = data.get("debug")

    return MultimodeRegistry(
        root=root,
        instances=tuple(instances),
        port=port,
        host=str(host) if host is not None else None,
        auth=auth,
        ssl=dict(ssl) if ssl is not None else None,
        proxy_host=str(proxy_host) if proxy_host is not None else None,
        debug=bool(debug) if debug is not None else None,
    )


__all__ = [
    "InstanceDescriptor",
    "MultimodeRegistry",
    "REGISTRY_FILE",
    "RegistryError",
    "load_registry",
]
