from __future__ import annotations

import copy
import json
import os
from typing import Any, Dict, List, Optional

import yaml

DATA_TYPES = ("STRING", "PASSWORD", "BOOLEAN", "NUMBER", "LIST")


def load_yaml_files(paths: List[str]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    for p in paths:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        merged = deep_merge(merged, data)
    return merged


def deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge dict b into a and return the result (new dict)."""
    out = copy.deepcopy(a)
    for k, v in (b or {}).items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def get_datasources(cfg: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    return cfg.get("datasources", {}) or {}


def get_host_settings(cfg: Dict[str, Any]) -> Dict[str, Any]:
    return cfg.get("host", {}) or {}


class PropertyDeclaration:
    """One entry of a configuration descriptor's ``meta`` list."""

    name: str
    description: str
    section_name: Optional[str]
    default_value: Any
    data_type: str
    is_required: bool
    regex: Optional[str]

    def __init__(
        self,
        name: str,
        description: str = "",
        section_name: Optional[str] = None,
        default_value: Any = None,
        data_type: str = "STRING",
        is_required: bool = False,
        regex: Optional[str] = None,
    ):
        data_type = (data_type or "STRING").upper()
        if data_type not in DATA_TYPES:
            raise ValueError(f"property '{name}' has unknown dataType '{data_type}'")
        self.name = name
        self.description = description
        self.section_name = section_name
        self.default_value = default_value
        self.data_type = data_type
        self.is_required = bool(is_required)
        self.regex = regex

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PropertyDeclaration":
        if not isinstance(d.get("name"), str) or not d["name"]:
            raise ValueError(f"property declaration without a name: {d!r}")
        return cls(
            name=d["name"],
            description=d.get("description") or "",
            section_name=d.get("sectionName"),
            default_value=d.get("defaultValue"),
            data_type=d.get("dataType") or "STRING",
            is_required=d.get("isRequired", False),
            regex=d.get("regex"),
        )

    def __repr__(self) -> str:
        return f"PropertyDeclaration(name={self.name!r}, data_type={self.data_type!r})"


class ConfigurationDescriptor:
    name: str
    description: str
    properties: Dict[str, PropertyDeclaration]

    def __init__(self, name: str, description: str = "", properties=None):
        self.name = name
        self.description = description
        self.properties = {p.name: p for p in (properties or [])}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ConfigurationDescriptor":
        meta = d.get("meta") or []
        if not isinstance(meta, list):
            raise ValueError("configuration descriptor 'meta' must be a list")
        return cls(
            name=str(d.get("name") or ""),
            description=str(d.get("description") or ""),
            properties=[PropertyDeclaration.from_dict(m) for m in meta],
        )


def load_configuration_descriptor(
    path: str, search_dirs: Optional[List[str]] = None
) -> ConfigurationDescriptor:
    """Load a connector configuration descriptor from JSON or YAML.

    Relative paths are looked up in ``search_dirs`` first (typically the
    directory of the connector module), then the working directory.
    """
    candidates = [path]
    if not os.path.isabs(path):
        candidates = [os.path.join(d, path) for d in (search_dirs or [])] + [path]
    for c in candidates:
        if os.path.isfile(c):
            with open(c, "r", encoding="utf-8") as f:
                text = f.read()
            if c.endswith(".json"):
                data = json.loads(text)
            else:
                data = yaml.safe_load(text)
            return ConfigurationDescriptor.from_dict(data or {})
    raise FileNotFoundError(f"configuration descriptor not found: {path}")
