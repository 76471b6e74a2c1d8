"""Connector class loading with lazy imports and entry point discovery.

Connector modules are imported only when a datasource names them, so
optional dependencies of one connector never load for another.

This module exposes:
- load_connector_class(type_name)
- discover_entry_points() - finds connectors registered via entry points
- register_connector(name, cls) - for runtime registration
"""

from __future__ import annotations

import importlib
import inspect
import logging
from importlib.metadata import entry_points
from typing import Dict

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "connhost.connectors"

# Registry for connectors registered at runtime
_connector_registry: Dict[str, type] = {}
# Track if entry points have been discovered
_entry_points_discovered = False


def _derive_class_name(name: str) -> str:
    # simple heuristic: last segment, capitalize first letter, append 'Connector'
    base = name.split(".")[-1]
    if not base:
        raise ValueError("invalid connector type name")
    return base.capitalize() + "Connector"


def discover_entry_points() -> Dict[str, type]:
    """Discover connectors registered via entry points.

    Returns a dict mapping connector names to their classes. Entry points
    should be registered in the 'connhost.connectors' group.
    """
    discovered = {}
    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            discovered[ep.name] = ep.load()
        except Exception:
            # a broken plugin must not prevent the others from loading
            logger.warning("failed to load connector plugin '%s'", ep.name, exc_info=True)
    return discovered


def register_connector(name: str, cls: type) -> None:
    """Register a connector class at runtime.

    Args:
        name: The connector type name (e.g., "jsonfile", "custom")
        cls: The connector class
    """
    _connector_registry[name] = cls


def unregister_connector(name: str) -> None:
    _connector_registry.pop(name, None)


def _require_class(obj, where: str) -> type:
    if not inspect.isclass(obj):
        raise ImportError(f"{where} is not a class")
    return obj


def load_connector_class(type_name: str) -> type:
    """Return the connector class for ``type_name``.

    Loading is dynamic. The function tries, in order:
    1. runtime-registered connectors (via register_connector)
    2. entry point plugins (via discover_entry_points)
    3. module:Class (explicit module and class separated by ':')
    4. module.Class (fully-qualified class path)
    5. module (module that exports a Connector class)
    6. fallback to connhost.connectors.<type_name>
    """
    global _entry_points_discovered

    if type_name in _connector_registry:
        return _connector_registry[type_name]

    if not _entry_points_discovered:
        _connector_registry.update(discover_entry_points())
        _entry_points_discovered = True

    if type_name in _connector_registry:
        return _connector_registry[type_name]

    last_exc = None

    if ":" in type_name:
        module_part, class_part = type_name.split(":", 1)
        try:
            mod = importlib.import_module(module_part)
        except Exception as e:
            raise ImportError(
                "could not import module '" + module_part + "': " + str(e)
            ) from e
        cls = getattr(mod, class_part, None)
        if cls is None:
            raise ImportError(
                "module '" + module_part + "' has no attribute '" + class_part + "'"
            ) from None
        return _require_class(cls, type_name)

    if "." in type_name and not type_name.startswith("connhost.connectors."):
        module_part, class_part = type_name.rsplit(".", 1)
        try:
            mod = importlib.import_module(module_part)
            cls = getattr(mod, class_part, None)
            if inspect.isclass(cls):
                return cls
        except Exception as e:
            last_exc = e

    candidates = [type_name, f"connhost.connectors.{type_name}"]
    for mod_name in candidates:
        try:
            mod = importlib.import_module(mod_name)
        except Exception as e:
            last_exc = e
            continue

        cls = getattr(mod, _derive_class_name(mod_name), None)
        if cls is None:
            # fallback: any class defined in the module whose name ends in 'Connector'
            for attr_name, value in vars(mod).items():
                if (
                    attr_name.lower().endswith("connector")
                    and inspect.isclass(value)
                    and value.__module__ == mod.__name__
                ):
                    cls = value
                    break

        if cls is None:
            raise ImportError(
                "module '" + mod_name + "' does not expose a Connector class"
            )
        return _require_class(cls, mod_name)

    if last_exc is not None:
        raise ImportError(
            f"could not import connector for type '{type_name}': {last_exc}"
        ) from last_exc
    raise ImportError(f"could not import connector for type '{type_name}'")


__all__ = [
    "discover_entry_points",
    "load_connector_class",
    "register_connector",
    "unregister_connector",
]
