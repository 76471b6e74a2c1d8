import pytest

from connhost.errors import CyclicDependency, UnresolvableDependency
from connhost.metadata import (
    CUSTOM_DATASOURCE_PROPERTIES,
    Capability,
    ManagedComponentRequest,
    PropertyRequest,
    SearchOperations,
    describe_component,
    describe_connector,
    is_managed_component,
)
from mocks import directory_mocks as m


def test_capabilities_follow_implemented_operations():
    desc = describe_connector(m.StarterConnector)
    assert desc.capabilities == frozenset(
        {
            Capability.SEARCH,
            Capability.CREATE,
            Capability.MODIFY,
            Capability.DELETE,
            Capability.TEST_CONNECTION,
        }
    )
    assert not desc.supports(Capability.AUTHENTICATE)
    assert desc.name == "starter"
    assert desc.description == "In-memory starter connector"


def test_connector_without_operations_declares_nothing():
    class Empty:
        pass

    desc = describe_connector(Empty)
    assert desc.capabilities == frozenset()


def test_protocols_are_structural():
    assert isinstance(m.SearchOnlyConnector(), SearchOperations)


def test_declared_capabilities_narrow_detected_set():
    desc = describe_connector(m.NarrowedConnector)
    assert desc.capabilities == frozenset({Capability.SEARCH})


def test_declaring_capability_without_handler_fails():
    from connhost.metadata import custom_connector

    @custom_connector(capabilities=[Capability.DELETE])
    class Broken:
        def search(self, request):
            return None

    with pytest.raises(UnresolvableDependency) as exc_info:
        describe_connector(Broken)
    assert "delete" in str(exc_info.value)


def test_property_dependency_from_annotation():
    desc = describe_connector(m.PennAveConnector)
    assert desc.dependencies == (
        PropertyRequest(CUSTOM_DATASOURCE_PROPERTIES, "properties"),
    )
    assert desc.configuration == "pennave_connector.yaml"
    assert desc.description == "Looks up presidents in the PennAve IAM service."


def test_property_dependency_from_default_marker():
    desc = describe_connector(m.DefaultMarkerConnector)
    (dep,) = desc.dependencies
    assert dep.set_name == CUSTOM_DATASOURCE_PROPERTIES
    assert dep.keys == ("host", "username")


def test_component_graph_is_described_once_per_type():
    desc = describe_connector(m.SharedConnector)
    assert desc.dependencies == (
        ManagedComponentRequest(m.LeftComponent, "left"),
        ManagedComponentRequest(m.RightComponent, "right"),
    )
    assert set(desc.components) == {m.LeftComponent, m.RightComponent, m.SharedCounter}


def test_plain_parameter_rejected_at_discovery():
    with pytest.raises(UnresolvableDependency) as exc_info:
        describe_connector(m.PlainParamConnector)
    assert "PlainParamComponent" in str(exc_info.value)
    assert "value" in str(exc_info.value)


def test_cycle_is_a_load_time_fault():
    with pytest.raises(CyclicDependency) as exc_info:
        describe_connector(m.CycleConnector)
    assert exc_info.value.path[0] is m.CycleA
    assert exc_info.value.path[-1] is m.CycleA


def test_multiple_constructors_rejected():
    with pytest.raises(UnresolvableDependency) as exc_info:
        describe_component(m.TwoConstructors)
    assert "multiple eligible constructors" in str(exc_info.value)


def test_marked_factory_replaces_init():
    components = describe_component(m.FactoryBuilt)
    desc = components[m.FactoryBuilt]
    assert desc.dependencies == (
        PropertyRequest(CUSTOM_DATASOURCE_PROPERTIES, "properties"),
    )


def test_subclass_of_managed_component_is_not_managed():
    assert is_managed_component(m.SharedCounter)
    assert not is_managed_component(m.NotManaged)
    with pytest.raises(UnresolvableDependency):
        describe_connector(m.NotManagedConnector)


def test_descriptor_as_dict():
    d = describe_connector(m.SharedConnector).as_dict()
    assert d["capabilities"] == ["search"]
    assert d["dependencies"][0] == {"parameter": "left", "component": "LeftComponent"}
    assert d["components"]["RightComponent"][1] == {
        "parameter": "keys",
        "property_set": "primary_key_attributes",
    }
