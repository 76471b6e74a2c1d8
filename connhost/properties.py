"""Property sets and the provider that resolves them by name."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any, Callable, Dict, Iterator, List, Optional

from jinja2 import TemplateError

from .config import ConfigurationDescriptor, PropertyDeclaration
from .errors import UnresolvableDependency
from .metadata import (
    CUSTOM_DATASOURCE_PROPERTIES,
    PRIMARY_KEY_ATTRIBUTES,
    SCHEMA_CATALOG,
    TARGET_SCHEMA_OBJECTS,
)
from .templating import default_context, render_dict_templates

logger = logging.getLogger(__name__)

_TRUE = ("true", "yes", "on", "1")
_FALSE = ("false", "no", "off", "0", "")


class MissingProperty(UnresolvableDependency, KeyError):
    def __init__(self, set_name: str, key: str):
        self.set_name = set_name
        self.key = key
        UnresolvableDependency.__init__(
            self, f"property '{key}' is not present in set '{set_name}'"
        )

    def __str__(self) -> str:
        return self.args[0]


class PropertySet(Mapping):
    """Read-only mapping of property name to typed value."""

    def __init__(
        self,
        name: str,
        values: Optional[Dict[str, Any]] = None,
        secret_keys: Optional[List[str]] = None,
    ):
        self._name = name
        self._values = dict(values or {})
        self._secret = frozenset(secret_keys or ())

    @property
    def name(self) -> str:
        return self._name

    def __getitem__(self, key: str) -> Any:
        try:
            return self._values[key]
        except KeyError:
            raise MissingProperty(self._name, key) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def redacted(self) -> Dict[str, Any]:
        return {
            k: ("<redacted>" if k in self._secret else v)
            for k, v in self._values.items()
        }

    def __repr__(self) -> str:
        return f"PropertySet({self._name!r}, {self.redacted()!r})"


def coerce_value(decl: PropertyDeclaration, value: Any) -> Any:
    """Convert a raw configured value to the declaration's data type."""
    dt = decl.data_type
    if value is None:
        return None
    if dt in ("STRING", "PASSWORD"):
        return str(value)
    if dt == "BOOLEAN":
        if isinstance(value, bool):
            return value
        s = str(value).strip().lower()
        if s in _TRUE:
            return True
        if s in _FALSE:
            return False
        raise ValueError(f"'{value}' is not a boolean")
    if dt == "NUMBER":
        if isinstance(value, bool):
            raise ValueError(f"'{value}' is not a number")
        if isinstance(value, (int, float)):
            return value
        s = str(value).strip()
        try:
            return int(s)
        except ValueError:
            return float(s)
    if dt == "LIST":
        if isinstance(value, (list, tuple)):
            return list(value)
        s = str(value)
        return [p.strip() for p in s.split(",") if p.strip()]
    raise ValueError(f"unsupported data type {dt}")


class PropertySourceProvider:
    """Resolves named property sets for one datasource deployment.

    Args:
        datasource_properties: raw values configured for the datasource
        descriptor: optional configuration descriptor declaring allowed keys
        schema: zero-argument callable returning the datasource's
            ``SchemaDefinition`` (or None when the datasource has no schema)
        primary_keys: explicit entity name -> key attribute overrides
        target_objects: entity names the datasource exposes
    """

    def __init__(
        self,
        datasource_properties: Optional[Dict[str, Any]] = None,
        descriptor: Optional[ConfigurationDescriptor] = None,
        schema: Optional[Callable[[], Any]] = None,
        primary_keys: Optional[Dict[str, str]] = None,
        target_objects: Optional[List[str]] = None,
        template_context: Optional[Dict[str, Any]] = None,
    ):
        self.datasource_properties = dict(datasource_properties or {})
        self.descriptor = descriptor
        self._schema = schema
        self.primary_keys = dict(primary_keys or {})
        self.target_objects = list(target_objects) if target_objects else None
        self.template_context = template_context
        self._resolvers: Dict[str, Callable[[], PropertySet]] = {
            CUSTOM_DATASOURCE_PROPERTIES: self._custom_properties,
            PRIMARY_KEY_ATTRIBUTES: self._primary_keys,
            TARGET_SCHEMA_OBJECTS: self._target_objects,
            SCHEMA_CATALOG: self._schema_catalog,
        }

    @property
    def set_names(self) -> List[str]:
        return sorted(self._resolvers)

    def __call__(self, set_name: str) -> PropertySet:
        return self.resolve(set_name)

    def resolve(self, set_name: str) -> PropertySet:
        resolver = self._resolvers.get(set_name)
        if resolver is None:
            raise UnresolvableDependency(f"unknown property set '{set_name}'")
        return resolver()

    def _custom_properties(self) -> PropertySet:
        ctx = self.template_context or default_context()
        try:
            raw = render_dict_templates(self.datasource_properties, ctx)
        except TemplateError as e:
            raise UnresolvableDependency(
                f"cannot render datasource properties: {e}"
            ) from e

        if self.descriptor is None:
            return PropertySet(CUSTOM_DATASOURCE_PROPERTIES, raw)

        values: Dict[str, Any] = {}
        secrets = []
        for key in raw:
            if key not in self.descriptor.properties:
                logger.warning("ignoring undeclared datasource property '%s'", key)
        for name, decl in self.descriptor.properties.items():
            value = raw.get(name)
            if value is None or value == "":
                value = decl.default_value
            if value is None or value == "":
                if decl.is_required:
                    raise UnresolvableDependency(
                        f"required property '{name}' is not set"
                    )
                continue
            try:
                value = coerce_value(decl, value)
            except ValueError as e:
                raise UnresolvableDependency(
                    f"property '{name}' ({decl.data_type}): {e}"
                ) from e
            if decl.regex:
                items = value if isinstance(value, list) else [value]
                for item in items:
                    if not re.fullmatch(decl.regex, str(item)):
                        raise UnresolvableDependency(
                            f"property '{name}' does not match /{decl.regex}/"
                        )
            if decl.data_type == "PASSWORD":
                secrets.append(name)
            values[name] = value
        return PropertySet(CUSTOM_DATASOURCE_PROPERTIES, values, secrets)

    def _schema_or_none(self):
        return self._schema() if self._schema is not None else None

    def _entities(self) -> list:
        schema = self._schema_or_none()
        if schema is None:
            return []
        entities = list(schema.entities)
        if self.target_objects is not None:
            wanted = {n.lower() for n in self.target_objects}
            entities = [e for e in entities if e.name.lower() in wanted]
        return entities

    def _primary_keys(self) -> PropertySet:
        values = {e.name: e.naming_attribute.name for e in self._entities()}
        values.update(self.primary_keys)
        return PropertySet(PRIMARY_KEY_ATTRIBUTES, values)

    def _target_objects(self) -> PropertySet:
        values = {e.name: [a.name for a in e.attributes] for e in self._entities()}
        return PropertySet(TARGET_SCHEMA_OBJECTS, values)

    def _schema_catalog(self) -> PropertySet:
        schema = self._schema_or_none()
        values = schema.as_dict() if schema is not None else {}
        return PropertySet(SCHEMA_CATALOG, values)
