"""Host-side runtime for directory connector plugins."""

from .dispatch import Dispatcher, dispatch
from .errors import (
    CapabilityNotSupported,
    ConnhostError,
    CyclicDependency,
    DeploymentError,
    FilterSyntaxError,
    HandlerFault,
    HandlerTimeout,
    SchemaAuthoringError,
    UnresolvableDependency,
)
from .filters import evaluate, parse
from .host import ConnectorHost
from .injection import Injector
from .metadata import (
    CUSTOM_DATASOURCE_PROPERTIES,
    PRIMARY_KEY_ATTRIBUTES,
    SCHEMA_CATALOG,
    TARGET_SCHEMA_OBJECTS,
    Capability,
    Property,
    constructor,
    custom_connector,
    describe_connector,
    managed_component,
)
from .properties import PropertySet, PropertySourceProvider
from .schema import attribute, build_schema, entity

__all__ = [
    "CUSTOM_DATASOURCE_PROPERTIES",
    "PRIMARY_KEY_ATTRIBUTES",
    "SCHEMA_CATALOG",
    "TARGET_SCHEMA_OBJECTS",
    "Capability",
    "CapabilityNotSupported",
    "ConnectorHost",
    "ConnhostError",
    "CyclicDependency",
    "DeploymentError",
    "Dispatcher",
    "FilterSyntaxError",
    "HandlerFault",
    "HandlerTimeout",
    "Injector",
    "Property",
    "PropertySet",
    "PropertySourceProvider",
    "SchemaAuthoringError",
    "UnresolvableDependency",
    "attribute",
    "build_schema",
    "constructor",
    "custom_connector",
    "describe_connector",
    "dispatch",
    "entity",
    "evaluate",
    "managed_component",
    "parse",
]
