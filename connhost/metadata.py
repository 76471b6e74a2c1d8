"""Connector metadata: capabilities, dependencies and descriptors.

Descriptors are built once, when a connector class is loaded, by inspecting
its constructor signature and the operation methods it defines. Everything
downstream (injection, dispatch) works from the descriptor only.

A constructor parameter is declarative when it is one of:

- ``Annotated[PropertySet, Property("<set name>")]``
- a parameter whose default is ``Property("<set name>")``
- a parameter annotated with a class decorated by ``@managed_component``
"""

from __future__ import annotations

import inspect
import logging
import typing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Tuple, Union

from .errors import CyclicDependency, UnresolvableDependency
from .protocol import Operation

logger = logging.getLogger(__name__)

# names of the property sets the host can inject
CUSTOM_DATASOURCE_PROPERTIES = "custom_datasource_properties"
PRIMARY_KEY_ATTRIBUTES = "primary_key_attributes"
TARGET_SCHEMA_OBJECTS = "target_schema_objects"
SCHEMA_CATALOG = "schema_catalog"

_CONNECTOR_MARK = "__connhost_connector__"
_COMPONENT_MARK = "__connhost_component__"
_CONSTRUCTOR_MARK = "__connhost_constructor__"


class Capability(Enum):
    SEARCH = "search"
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    AUTHENTICATE = "authenticate"
    TEST_CONNECTION = "test_connection"

    @property
    def handler_name(self) -> str:
        return self.value

    @property
    def operation(self) -> Operation:
        return Operation(self.value)

    @classmethod
    def for_operation(cls, operation: Operation) -> "Capability":
        return cls(operation.value)


@typing.runtime_checkable
class SearchOperations(typing.Protocol):
    def search(self, request): ...


@typing.runtime_checkable
class CreateOperations(typing.Protocol):
    def create(self, request): ...


@typing.runtime_checkable
class ModifyOperations(typing.Protocol):
    def modify(self, request): ...


@typing.runtime_checkable
class DeleteOperations(typing.Protocol):
    def delete(self, request): ...


@typing.runtime_checkable
class AuthenticateOperations(typing.Protocol):
    def authenticate(self, request): ...


@typing.runtime_checkable
class TestConnectionOperations(typing.Protocol):
    __test__ = False

    def test_connection(self, request): ...


@dataclass(frozen=True)
class Property:
    """Marks a constructor parameter as an injected property set.

    ``keys`` lists properties the constructor reads; injection fails if any
    of them is absent from the resolved set.
    """

    name: str
    keys: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PropertyRequest:
    set_name: str
    parameter: str
    keys: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ManagedComponentRequest:
    component_type: type
    parameter: str


Dependency = Union[PropertyRequest, ManagedComponentRequest]


@dataclass(frozen=True)
class ComponentDescriptor:
    component_type: type
    dependencies: Tuple[Dependency, ...]
    factory: Callable[..., Any]

    @property
    def name(self) -> str:
        return self.component_type.__qualname__


@dataclass(frozen=True)
class ConnectorDescriptor:
    name: str
    description: str
    connector_type: type
    capabilities: FrozenSet[Capability]
    dependencies: Tuple[Dependency, ...]
    factory: Callable[..., Any]
    configuration: Optional[str] = None
    # every managed component reachable from the connector constructor
    components: Mapping[type, ComponentDescriptor] = field(
        default_factory=dict, hash=False, compare=False
    )

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def as_dict(self) -> Dict[str, Any]:
        def dep(d: Dependency) -> Dict[str, Any]:
            if isinstance(d, PropertyRequest):
                return {"parameter": d.parameter, "property_set": d.set_name}
            return {"parameter": d.parameter, "component": d.component_type.__qualname__}

        return {
            "name": self.name,
            "description": self.description,
            "configuration": self.configuration,
            "capabilities": sorted(c.value for c in self.capabilities),
            "dependencies": [dep(d) for d in self.dependencies],
            "components": {
                c.name: [dep(d) for d in c.dependencies]
                for c in self.components.values()
            },
        }


def custom_connector(
    cls: Optional[type] = None,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    configuration: Optional[str] = None,
    capabilities: Optional[typing.Iterable[Capability]] = None,
):
    """Class decorator registering connector metadata.

    Can be used bare (``@custom_connector``) or with keyword arguments.
    ``capabilities`` narrows the structurally detected set; it cannot add
    operations the class does not implement.
    """

    def wrap(c: type) -> type:
        setattr(
            c,
            _CONNECTOR_MARK,
            {
                "name": name,
                "description": description,
                "configuration": configuration,
                "capabilities": (
                    frozenset(capabilities) if capabilities is not None else None
                ),
            },
        )
        return c

    if cls is not None:
        return wrap(cls)
    return wrap


def managed_component(cls: type) -> type:
    """Make a class eligible for constructor injection."""
    setattr(cls, _COMPONENT_MARK, cls)
    return cls


def constructor(func):
    """Mark a classmethod as the injection constructor of its class.

    Applied under ``@classmethod``. A class may mark at most one.
    """
    setattr(func, _CONSTRUCTOR_MARK, True)
    return func


def is_managed_component(obj: Any) -> bool:
    # the mark is compared against the class itself so subclasses of a
    # managed component are not implicitly managed
    return inspect.isclass(obj) and obj.__dict__.get(_COMPONENT_MARK) is obj


def detect_capabilities(cls: type) -> FrozenSet[Capability]:
    found = set()
    for cap in Capability:
        if callable(getattr(cls, cap.handler_name, None)):
            found.add(cap)
    return frozenset(found)


def _select_factory(cls: type) -> Tuple[Callable[..., Any], Callable[..., Any]]:
    """Return (callable used to build, callable whose signature is inspected)."""
    marked = []
    for attr, raw in cls.__dict__.items():
        target = raw.__func__ if isinstance(raw, (classmethod, staticmethod)) else raw
        if getattr(raw, _CONSTRUCTOR_MARK, False) or getattr(target, _CONSTRUCTOR_MARK, False):
            marked.append(attr)
    if len(marked) > 1:
        raise UnresolvableDependency(
            "multiple eligible constructors: " + ", ".join(sorted(marked)),
            owner=cls.__qualname__,
        )
    if marked:
        factory = getattr(cls, marked[0])
        return factory, factory
    return cls, cls


def _declared_dependencies(cls: type) -> Tuple[Callable[..., Any], Tuple[Dependency, ...]]:
    factory, inspected = _select_factory(cls)
    owner = cls.__qualname__
    try:
        sig = inspect.signature(inspected)
    except (TypeError, ValueError) as e:
        raise UnresolvableDependency(f"cannot inspect constructor: {e}", owner) from e
    if not sig.parameters:
        return factory, ()

    hint_target = cls.__init__ if inspected is cls else inspected
    try:
        hints = typing.get_type_hints(hint_target, include_extras=True)
    except Exception as e:
        raise UnresolvableDependency(
            f"cannot resolve constructor annotations: {e}", owner
        ) from e

    deps = []
    for pname, param in sig.parameters.items():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            raise UnresolvableDependency(
                f"parameter '{pname}' is variadic and cannot be injected", owner
            )
        dep = _dependency_for(pname, param, hints.get(pname))
        if dep is None:
            raise UnresolvableDependency(
                f"parameter '{pname}' is neither a property request "
                "nor a managed component",
                owner,
            )
        deps.append(dep)
    return factory, tuple(deps)


def _dependency_for(pname: str, param: inspect.Parameter, hint: Any) -> Optional[Dependency]:
    if isinstance(param.default, Property):
        return PropertyRequest(param.default.name, pname, tuple(param.default.keys))
    if hint is not None and typing.get_origin(hint) is typing.Annotated:
        for extra in typing.get_args(hint)[1:]:
            if isinstance(extra, Property):
                return PropertyRequest(extra.name, pname, tuple(extra.keys))
        hint = typing.get_args(hint)[0]
    if is_managed_component(hint):
        return ManagedComponentRequest(hint, pname)
    return None


def describe_component(
    cls: type,
    _stack: Optional[list] = None,
    _seen: Optional[Dict[type, ComponentDescriptor]] = None,
) -> Dict[type, ComponentDescriptor]:
    """Describe ``cls`` and every component it depends on.

    Returns a mapping of component type to descriptor covering the whole
    reachable graph. Raises ``CyclicDependency`` on a cycle and
    ``UnresolvableDependency`` for ineligible classes.
    """
    stack = _stack if _stack is not None else []
    seen = _seen if _seen is not None else {}
    if cls in stack:
        raise CyclicDependency(stack[stack.index(cls):] + [cls])
    if cls in seen:
        return seen
    if not is_managed_component(cls):
        raise UnresolvableDependency("class is not a managed component", cls.__qualname__)

    stack.append(cls)
    factory, deps = _declared_dependencies(cls)
    for d in deps:
        if isinstance(d, ManagedComponentRequest):
            describe_component(d.component_type, stack, seen)
    stack.pop()
    seen[cls] = ComponentDescriptor(component_type=cls, dependencies=deps, factory=factory)
    return seen


def describe_connector(cls: type) -> ConnectorDescriptor:
    """Build the immutable descriptor for a connector class."""
    if not inspect.isclass(cls):
        raise TypeError(f"connector must be a class, got {cls!r}")
    meta = cls.__dict__.get(_CONNECTOR_MARK) or {}

    detected = detect_capabilities(cls)
    declared = meta.get("capabilities")
    if declared is not None:
        missing = declared - detected
        if missing:
            raise UnresolvableDependency(
                "declared capabilities without a handler: "
                + ", ".join(sorted(c.value for c in missing)),
                cls.__qualname__,
            )
        capabilities = declared
    else:
        capabilities = detected

    factory, deps = _declared_dependencies(cls)
    stack: list = [cls]
    components: Dict[type, ComponentDescriptor] = {}
    for d in deps:
        if isinstance(d, ManagedComponentRequest):
            describe_component(d.component_type, stack, components)

    doc = inspect.getdoc(cls) or ""
    descriptor = ConnectorDescriptor(
        name=meta.get("name") or cls.__name__,
        description=meta.get("description") or (doc.splitlines()[0] if doc else ""),
        connector_type=cls,
        capabilities=frozenset(capabilities),
        dependencies=deps,
        factory=factory,
        configuration=meta.get("configuration"),
        components=components,
    )
    logger.debug(
        "described connector %s: capabilities=%s dependencies=%d components=%d",
        descriptor.name,
        sorted(c.value for c in descriptor.capabilities),
        len(deps),
        len(components),
    )
    return descriptor


__all__ = [
    "CUSTOM_DATASOURCE_PROPERTIES",
    "PRIMARY_KEY_ATTRIBUTES",
    "SCHEMA_CATALOG",
    "TARGET_SCHEMA_OBJECTS",
    "AuthenticateOperations",
    "Capability",
    "ComponentDescriptor",
    "ConnectorDescriptor",
    "CreateOperations",
    "DeleteOperations",
    "ManagedComponentRequest",
    "ModifyOperations",
    "Property",
    "PropertyRequest",
    "SearchOperations",
    "TestConnectionOperations",
    "constructor",
    "custom_connector",
    "describe_component",
    "describe_connector",
    "detect_capabilities",
    "is_managed_component",
    "managed_component",
]
