"""Constructor injection over connector and component descriptors.

The injector builds the object graph depth-first, in declaration order.
Managed components are memoized per injector, so one deployment shares a
single instance of each component type. Nothing is committed to the memo
until the whole graph has been built.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from .errors import ConnhostError, CyclicDependency, DeploymentError, UnresolvableDependency
from .metadata import (
    ComponentDescriptor,
    ConnectorDescriptor,
    ManagedComponentRequest,
    PropertyRequest,
    describe_component,
)

logger = logging.getLogger(__name__)

PropertySource = Callable[[str], Mapping[str, Any]]


class Injector:
    def __init__(self, property_source: PropertySource):
        self._property_source = property_source
        self._instances: Dict[type, Any] = {}

    @property
    def instances(self) -> Dict[type, Any]:
        return dict(self._instances)

    def build_connector(self, descriptor: ConnectorDescriptor) -> Any:
        """Construct the connector described by ``descriptor``.

        Raises:
            UnresolvableDependency: a property set or key cannot be supplied
            CyclicDependency: the component graph loops back on itself
            DeploymentError: a constructor raised an unrelated exception
        """
        pending: Dict[type, Any] = {}
        instance = self._construct(
            descriptor.name,
            descriptor.factory,
            descriptor.dependencies,
            descriptor.components,
            pending,
            [descriptor.connector_type],
        )
        self._instances.update(pending)
        logger.info(
            "constructed connector %s (%d managed components)",
            descriptor.name,
            len(pending),
        )
        return instance

    def build_component(
        self,
        component_type: type,
        components: Optional[Mapping[type, ComponentDescriptor]] = None,
    ) -> Any:
        if component_type in self._instances:
            return self._instances[component_type]
        if components is None or component_type not in components:
            components = describe_component(component_type)
        pending: Dict[type, Any] = {}
        instance = self._component(component_type, components, pending, [])
        self._instances.update(pending)
        return instance

    def _component(
        self,
        component_type: type,
        components: Mapping[type, ComponentDescriptor],
        pending: Dict[type, Any],
        stack: List[type],
    ) -> Any:
        if component_type in self._instances:
            return self._instances[component_type]
        if component_type in pending:
            return pending[component_type]
        if component_type in stack:
            raise CyclicDependency(stack[stack.index(component_type):] + [component_type])
        desc = components.get(component_type)
        if desc is None:
            raise UnresolvableDependency(
                "component was not described at load time", component_type.__qualname__
            )
        instance = self._construct(
            desc.name, desc.factory, desc.dependencies, components, pending,
            stack + [component_type],
        )
        pending[component_type] = instance
        return instance

    def _construct(
        self,
        owner: str,
        factory: Callable[..., Any],
        dependencies,
        components: Mapping[type, ComponentDescriptor],
        pending: Dict[type, Any],
        stack: List[type],
    ) -> Any:
        kwargs: Dict[str, Any] = {}
        for dep in dependencies:
            if isinstance(dep, PropertyRequest):
                kwargs[dep.parameter] = self._properties(owner, dep)
            elif isinstance(dep, ManagedComponentRequest):
                kwargs[dep.parameter] = self._component(
                    dep.component_type, components, pending, stack
                )
            else:
                raise UnresolvableDependency(f"unknown dependency {dep!r}", owner)

        try:
            return factory(**kwargs)
        except ConnhostError:
            raise
        except Exception as e:
            raise DeploymentError(f"{owner}: constructor failed: {e}") from e

    def _properties(self, owner: str, request: PropertyRequest) -> Mapping[str, Any]:
        try:
            props = self._property_source(request.set_name)
        except UnresolvableDependency as e:
            if e.owner is None:
                raise UnresolvableDependency(str(e), owner) from e
            raise
        missing = [k for k in request.keys if k not in props]
        if missing:
            raise UnresolvableDependency(
                f"property set '{request.set_name}' lacks required key(s): "
                + ", ".join(missing),
                owner,
            )
        return props


def build_connector(descriptor: ConnectorDescriptor, property_source: PropertySource) -> Any:
    """Construct a connector with a fresh injector."""
    return Injector(property_source).build_connector(descriptor)
