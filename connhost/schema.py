"""Schema authoring: entity declarations, validation and entry mapping.

Entities are declared either on classes::

    @entity
    class User:
        username: str = attribute(naming=True)
        first_name: str = attribute(display_name="firstName")
        groups: list = attribute()

or as a declarative table (list of dicts, as loaded from YAML). Both forms
produce ``EntityDefinition`` values that ``build_schema`` validates.

Entity markers and attribute declarations are read from a class's own
namespace only. A subclass of an entity is not an entity unless decorated
itself, and it never inherits its parent's attributes.
"""

from __future__ import annotations

import inspect
import logging
import typing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .errors import SchemaAuthoringError
from .protocol import DN

logger = logging.getLogger(__name__)

_ENTITY_MARK = "__connhost_entity__"

RULE_ENTITY_CLASS = "entity-class"
RULE_ATTRIBUTE_COUNT = "attribute-count"
RULE_NAMING_ATTRIBUTE_COUNT = "naming-attribute-count"
RULE_UNIQUE_NAME = "unique-name"
RULE_ATTRIBUTE_TYPE = "attribute-type"


class AttributeType(Enum):
    STRING = "STRING"
    NUMBER = "NUMBER"
    BOOLEAN = "BOOLEAN"
    PASSWORD = "PASSWORD"
    LIST = "LIST"

    @property
    def is_numeric(self) -> bool:
        return self is AttributeType.NUMBER


_PY_TYPES = {
    str: AttributeType.STRING,
    int: AttributeType.NUMBER,
    float: AttributeType.NUMBER,
    bool: AttributeType.BOOLEAN,
    list: AttributeType.LIST,
    tuple: AttributeType.LIST,
    set: AttributeType.LIST,
    frozenset: AttributeType.LIST,
}

_STRING_TYPES = {
    "str": AttributeType.STRING,
    "int": AttributeType.NUMBER,
    "float": AttributeType.NUMBER,
    "bool": AttributeType.BOOLEAN,
    "list": AttributeType.LIST,
    "List": AttributeType.LIST,
    "tuple": AttributeType.LIST,
    "Tuple": AttributeType.LIST,
}


@dataclass(frozen=True)
class AttributeDefinition:
    name: str
    # None or an unrecognised value is rejected by build_schema
    type: Any = AttributeType.STRING
    nullable: bool = True
    naming: bool = False
    display_name: Optional[str] = None
    tags: Tuple[str, ...] = ()

    @property
    def label(self) -> str:
        return self.display_name or self.name

    def as_dict(self) -> Dict[str, Any]:
        t = self.type.value if isinstance(self.type, AttributeType) else self.type
        out: Dict[str, Any] = {
            "name": self.name,
            "type": t,
            "nullable": self.nullable,
            "isNamingAttribute": self.naming,
        }
        if self.display_name:
            out["displayName"] = self.display_name
        if self.tags:
            out["tags"] = list(self.tags)
        return out


@dataclass(frozen=True)
class EntityDefinition:
    name: str
    attributes: Tuple[AttributeDefinition, ...] = ()
    entity_class: Optional[type] = field(default=None, compare=False, repr=False)

    @property
    def naming_attribute(self) -> AttributeDefinition:
        naming = [a for a in self.attributes if a.naming]
        if len(naming) != 1:
            raise SchemaAuthoringError(
                RULE_NAMING_ATTRIBUTE_COUNT,
                f"expected exactly one naming attribute, found {len(naming)}",
                entity=self.name,
            )
        return naming[0]

    def attribute(self, name: str) -> Optional[AttributeDefinition]:
        lname = name.lower()
        for a in self.attributes:
            if a.name.lower() == lname or (a.display_name or "").lower() == lname:
                return a
        return None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "namingAttribute": self.naming_attribute.name,
            "attributes": [a.as_dict() for a in self.attributes],
        }


@dataclass(frozen=True)
class SchemaDefinition:
    entities: Tuple[EntityDefinition, ...] = ()

    def entity(self, name: str) -> Optional[EntityDefinition]:
        lname = name.lower()
        for e in self.entities:
            if e.name.lower() == lname:
                return e
        return None

    def entity_for_class(self, cls: type) -> Optional[EntityDefinition]:
        for e in self.entities:
            if e.entity_class is cls:
                return e
        return None

    def as_dict(self) -> Dict[str, Any]:
        return {e.name: e.as_dict() for e in self.entities}


class AttributeField:
    """Class-level attribute declaration; behaves as a plain instance field."""

    def __init__(
        self,
        type: Union[AttributeType, str, None] = None,
        naming: bool = False,
        nullable: bool = True,
        display_name: Optional[str] = None,
        tags: Iterable[str] = (),
        name: Optional[str] = None,
        default: Any = None,
    ):
        self.type = type
        self.naming = naming
        self.nullable = nullable
        self.display_name = display_name
        self.tags = tuple(tags)
        self.name = name
        self.default = default
        self.field_name: Optional[str] = None

    def __set_name__(self, owner, field_name):
        self.field_name = field_name

    def __get__(self, instance, owner=None):
        if instance is None:
            return self
        return instance.__dict__.get(self.field_name, self.default)

    def __set__(self, instance, value):
        instance.__dict__[self.field_name] = value


def attribute(
    type: Union[AttributeType, str, None] = None,
    naming: bool = False,
    nullable: bool = True,
    display_name: Optional[str] = None,
    tags: Iterable[str] = (),
    name: Optional[str] = None,
    default: Any = None,
) -> Any:
    return AttributeField(
        type=type,
        naming=naming,
        nullable=nullable,
        display_name=display_name,
        tags=tags,
        name=name,
        default=default,
    )


def entity(cls: Optional[type] = None, *, name: Optional[str] = None):
    """Mark a class as a schema entity."""

    def wrap(c: type) -> type:
        setattr(c, _ENTITY_MARK, {"name": name or c.__name__})
        return c

    if cls is not None:
        return wrap(cls)
    return wrap


def is_entity(obj: Any) -> bool:
    return inspect.isclass(obj) and _ENTITY_MARK in obj.__dict__


def scan_entities(module) -> List[type]:
    """Return entity classes defined at the top level of ``module``."""
    found = []
    for value in vars(module).values():
        if is_entity(value) and value.__module__ == module.__name__:
            found.append(value)
    return found


def _infer_type(hint: Any) -> Any:
    if hint is None:
        return None
    if isinstance(hint, str):
        base = hint.split("[", 1)[0].strip()
        return _STRING_TYPES.get(base)
    origin = typing.get_origin(hint)
    if origin is Union:
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        return _infer_type(args[0]) if len(args) == 1 else None
    if origin is not None:
        return _PY_TYPES.get(origin)
    return _PY_TYPES.get(hint)


def _coerce_type(value: Any) -> Any:
    if isinstance(value, AttributeType) or value is None:
        return value
    if isinstance(value, str):
        try:
            return AttributeType(value.upper())
        except ValueError:
            return value
    return _infer_type(value) or value


def definition_from_class(cls: type) -> EntityDefinition:
    """Read the entity declaration of ``cls`` without validating it."""
    meta = cls.__dict__.get(_ENTITY_MARK) or {"name": cls.__name__}
    own = cls.__dict__.get("__annotations__", {})
    try:
        hints = typing.get_type_hints(cls)
    except Exception:
        hints = {}

    attrs = []
    for field_name, value in cls.__dict__.items():
        if not isinstance(value, AttributeField):
            continue
        if value.type is not None:
            atype = _coerce_type(value.type)
        else:
            atype = _infer_type(hints.get(field_name, own.get(field_name)))
        attrs.append(
            AttributeDefinition(
                name=value.name or field_name,
                type=atype,
                nullable=value.nullable,
                naming=value.naming,
                display_name=value.display_name,
                tags=value.tags,
            )
        )
    return EntityDefinition(name=meta["name"], attributes=tuple(attrs), entity_class=cls)


def entities_from_table(rows: Iterable[Dict[str, Any]]) -> List[EntityDefinition]:
    """Build entity definitions from a declarative table."""
    out = []
    for row in rows or []:
        attrs = []
        for a in row.get("attributes") or []:
            naming = a.get("isNamingAttribute", a.get("naming", False))
            attrs.append(
                AttributeDefinition(
                    name=str(a.get("name") or ""),
                    type=_coerce_type(a.get("type", a.get("dataType", "STRING"))),
                    nullable=bool(a.get("nullable", True)),
                    naming=bool(naming),
                    display_name=a.get("displayName", a.get("display_name")),
                    tags=tuple(a.get("tags") or ()),
                )
            )
        out.append(EntityDefinition(name=str(row.get("name") or ""), attributes=tuple(attrs)))
    return out


def _check_entity_class(cls: type) -> None:
    if not inspect.isclass(cls):
        raise SchemaAuthoringError(RULE_ENTITY_CLASS, "not a class", entity=str(cls))
    name = cls.__name__
    if not is_entity(cls):
        raise SchemaAuthoringError(
            RULE_ENTITY_CLASS, "class is not marked with @entity", entity=name
        )
    if inspect.isabstract(cls):
        raise SchemaAuthoringError(RULE_ENTITY_CLASS, "class is abstract", entity=name)
    if "." in cls.__qualname__:
        raise SchemaAuthoringError(
            RULE_ENTITY_CLASS, "class is not defined at module top level", entity=name
        )
    try:
        sig = inspect.signature(cls)
    except (TypeError, ValueError):
        return
    required = [
        p.name
        for p in sig.parameters.values()
        if p.default is p.empty and p.kind not in (p.VAR_POSITIONAL, p.VAR_KEYWORD)
    ]
    if required:
        raise SchemaAuthoringError(
            RULE_ENTITY_CLASS,
            "constructor requires arguments: " + ", ".join(required),
            entity=name,
        )


def build_schema(entities: Iterable[Union[type, EntityDefinition]]) -> SchemaDefinition:
    """Validate entity declarations and build the schema.

    Rules run in order over every entity: entity class shape, attribute
    count, naming attribute count, name uniqueness, attribute types. The
    first violation raises ``SchemaAuthoringError``.
    """
    items = list(entities)
    for item in items:
        if not isinstance(item, EntityDefinition):
            _check_entity_class(item)
    defs = [
        item if isinstance(item, EntityDefinition) else definition_from_class(item)
        for item in items
    ]

    for d in defs:
        if not d.attributes:
            raise SchemaAuthoringError(
                RULE_ATTRIBUTE_COUNT, "entity declares no attributes", entity=d.name
            )

    for d in defs:
        naming = [a.name for a in d.attributes if a.naming]
        if len(naming) != 1:
            raise SchemaAuthoringError(
                RULE_NAMING_ATTRIBUTE_COUNT,
                f"expected exactly one naming attribute, found {len(naming)}"
                + (f" ({', '.join(naming)})" if naming else ""),
                entity=d.name,
            )

    seen_entities: Dict[str, str] = {}
    for d in defs:
        if not d.name:
            raise SchemaAuthoringError(RULE_UNIQUE_NAME, "entity has no name")
        if d.name.lower() in seen_entities:
            raise SchemaAuthoringError(
                RULE_UNIQUE_NAME, "duplicate entity name", entity=d.name
            )
        seen_entities[d.name.lower()] = d.name
        seen_attrs: Dict[str, str] = {}
        for a in d.attributes:
            key = a.name.lower()
            if not key:
                raise SchemaAuthoringError(
                    RULE_UNIQUE_NAME, "attribute has no name", entity=d.name
                )
            # entries are keyed by label, lookups match name or label
            for k in {key, a.label.lower()}:
                if k in seen_attrs:
                    raise SchemaAuthoringError(
                        RULE_UNIQUE_NAME,
                        f"attribute name or display name '{k}' already used by "
                        f"'{seen_attrs[k]}'",
                        entity=d.name,
                        attribute=a.name,
                    )
            for k in {key, a.label.lower()}:
                seen_attrs[k] = a.name

    for d in defs:
        for a in d.attributes:
            if not isinstance(a.type, AttributeType):
                raise SchemaAuthoringError(
                    RULE_ATTRIBUTE_TYPE,
                    f"unsupported or missing type {a.type!r}",
                    entity=d.name,
                    attribute=a.name,
                )
            if a.naming and a.type is AttributeType.LIST:
                raise SchemaAuthoringError(
                    RULE_ATTRIBUTE_TYPE,
                    "naming attribute cannot be multi-valued",
                    entity=d.name,
                    attribute=a.name,
                )

    schema = SchemaDefinition(entities=tuple(defs))
    logger.info("built schema with %d entities: %s", len(defs), [d.name for d in defs])
    return schema


def _entry_value(attr: AttributeDefinition, value: Any) -> Any:
    if attr.type is AttributeType.LIST:
        if isinstance(value, (list, tuple, set, frozenset)):
            return [v for v in value if v is not None]
        return [value]
    return value


def to_entry(instance: Any, definition: EntityDefinition, parent_dn: Any = "") -> Tuple[DN, Dict[str, Any]]:
    """Map an entity instance to a directory entry ``(dn, attributes)``.

    The naming attribute value becomes the RDN, every other non-null
    attribute becomes an entry attribute. List values become multi-valued.
    """
    naming = definition.naming_attribute
    attrs: Dict[str, Any] = {}
    rdn_value = None
    for a in definition.attributes:
        value = _read(instance, a)
        if a.naming:
            rdn_value = value
            attrs[a.label] = value
            continue
        if value is None:
            if not a.nullable:
                raise ValueError(
                    f"{definition.name}.{a.name} is not nullable but has no value"
                )
            continue
        attrs[a.label] = _entry_value(a, value)
    if rdn_value is None or rdn_value == "":
        raise ValueError(f"{definition.name}: naming attribute '{naming.name}' is empty")
    dn = DN.parse(parent_dn).child(naming.label, rdn_value)
    return dn, attrs


def _read(instance: Any, attr: AttributeDefinition) -> Any:
    if isinstance(instance, dict):
        for key in (attr.label, attr.name):
            if key in instance:
                return instance[key]
        return None
    cls = type(instance)
    for field_name, value in vars(cls).items():
        if isinstance(value, AttributeField) and (value.name or field_name) == attr.name:
            return getattr(instance, field_name)
    return getattr(instance, attr.name, None)


def from_entry(definition: EntityDefinition, attributes: Dict[str, Any]) -> Any:
    """Build an instance of the entity class from entry attributes."""
    if definition.entity_class is None:
        raise ValueError(f"entity '{definition.name}' has no backing class")
    obj = definition.entity_class()
    lowered = {k.lower(): v for k, v in (attributes or {}).items()}
    for field_name, value in vars(definition.entity_class).items():
        if not isinstance(value, AttributeField):
            continue
        adef = definition.attribute(value.name or field_name)
        if adef is None:
            continue
        raw = lowered.get(adef.label.lower(), lowered.get(adef.name.lower()))
        if raw is None:
            continue
        if adef.type is not AttributeType.LIST and isinstance(raw, (list, tuple)):
            raw = raw[0] if raw else None
        setattr(obj, field_name, raw)
    return obj
