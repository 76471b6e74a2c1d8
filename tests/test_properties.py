import pytest

from connhost.config import ConfigurationDescriptor, PropertyDeclaration
from connhost.errors import UnresolvableDependency
from connhost.metadata import (
    CUSTOM_DATASOURCE_PROPERTIES,
    PRIMARY_KEY_ATTRIBUTES,
    SCHEMA_CATALOG,
    TARGET_SCHEMA_OBJECTS,
)
from connhost.properties import MissingProperty, PropertySet, PropertySourceProvider
from connhost.schema import build_schema, entities_from_table


def _descriptor():
    return ConfigurationDescriptor.from_dict(
        {
            "name": "demo",
            "meta": [
                {"name": "host", "dataType": "STRING", "isRequired": True},
                {"name": "password", "dataType": "PASSWORD", "isRequired": True},
                {"name": "port", "dataType": "NUMBER", "defaultValue": 389, "regex": "[0-9]+"},
                {"name": "tls", "dataType": "BOOLEAN", "defaultValue": "false"},
                {"name": "groups", "dataType": "LIST"},
            ],
        }
    )


def test_values_coerced_to_declared_types():
    provider = PropertySourceProvider(
        {"host": "ldap.local", "password": "s3cret", "port": "636", "tls": "yes", "groups": "a, b"},
        _descriptor(),
    )
    props = provider(CUSTOM_DATASOURCE_PROPERTIES)
    assert props["host"] == "ldap.local"
    assert props["port"] == 636
    assert props["tls"] is True
    assert props["groups"] == ["a", "b"]


def test_defaults_applied():
    props = PropertySourceProvider({"host": "h", "password": "p"}, _descriptor()).resolve(
        CUSTOM_DATASOURCE_PROPERTIES
    )
    assert props["port"] == 389
    assert props["tls"] is False
    assert "groups" not in props


def test_required_property_missing():
    provider = PropertySourceProvider({"host": "h"}, _descriptor())
    with pytest.raises(UnresolvableDependency) as exc_info:
        provider(CUSTOM_DATASOURCE_PROPERTIES)
    assert "password" in str(exc_info.value)


def test_regex_and_type_violations():
    with pytest.raises(UnresolvableDependency):
        PropertySourceProvider(
            {"host": "h", "password": "p", "port": "-1"}, _descriptor()
        )(CUSTOM_DATASOURCE_PROPERTIES)
    with pytest.raises(UnresolvableDependency):
        PropertySourceProvider(
            {"host": "h", "password": "p", "tls": "maybe"}, _descriptor()
        )(CUSTOM_DATASOURCE_PROPERTIES)


def test_undeclared_keys_dropped(caplog):
    props = PropertySourceProvider(
        {"host": "h", "password": "p", "extra": "x"}, _descriptor()
    )(CUSTOM_DATASOURCE_PROPERTIES)
    assert "extra" not in props
    assert "undeclared datasource property 'extra'" in caplog.text


def test_templates_rendered_from_environment(monkeypatch):
    monkeypatch.setenv("DIR_PASSWORD", "from-env")
    props = PropertySourceProvider(
        {"host": "h", "password": "{{ env.DIR_PASSWORD }}"}, _descriptor()
    )(CUSTOM_DATASOURCE_PROPERTIES)
    assert props["password"] == "from-env"


def test_undefined_template_variable_is_unresolvable(monkeypatch):
    monkeypatch.delenv("NOPE_NOT_SET", raising=False)
    provider = PropertySourceProvider({"host": "{{ env.NOPE_NOT_SET }}"})
    with pytest.raises(UnresolvableDependency):
        provider(CUSTOM_DATASOURCE_PROPERTIES)


def test_without_descriptor_values_pass_through():
    props = PropertySourceProvider({"anything": 1})(CUSTOM_DATASOURCE_PROPERTIES)
    assert dict(props) == {"anything": 1}


def test_property_set_is_read_only_and_fresh():
    provider = PropertySourceProvider({"host": "h", "password": "p"}, _descriptor())
    first = provider(CUSTOM_DATASOURCE_PROPERTIES)
    second = provider(CUSTOM_DATASOURCE_PROPERTIES)
    assert first is not second
    with pytest.raises(TypeError):
        first["host"] = "other"


def test_missing_key_is_both_keyerror_and_unresolvable():
    props = PropertySet("s", {"a": 1})
    with pytest.raises(KeyError):
        props["b"]
    with pytest.raises(UnresolvableDependency):
        props["b"]
    assert props.get("b", 2) == 2
    assert isinstance(MissingProperty("s", "b"), KeyError)


def test_passwords_redacted_in_repr():
    props = PropertySourceProvider({"host": "h", "password": "s3cret"}, _descriptor())(
        CUSTOM_DATASOURCE_PROPERTIES
    )
    assert "s3cret" not in repr(props)
    assert props["password"] == "s3cret"


def test_unknown_data_type_rejected():
    with pytest.raises(ValueError):
        PropertyDeclaration.from_dict({"name": "x", "dataType": "DATE"})


def test_schema_backed_sets():
    schema = build_schema(
        entities_from_table(
            [
                {
                    "name": "User",
                    "attributes": [
                        {"name": "uid", "type": "STRING", "isNamingAttribute": True},
                        {"name": "mail", "type": "STRING"},
                    ],
                },
                {
                    "name": "Group",
                    "attributes": [{"name": "cn", "type": "STRING", "isNamingAttribute": True}],
                },
            ]
        )
    )
    provider = PropertySourceProvider(schema=lambda: schema, target_objects=["user"])
    assert dict(provider(PRIMARY_KEY_ATTRIBUTES)) == {"User": "uid"}
    assert dict(provider(TARGET_SCHEMA_OBJECTS)) == {"User": ["uid", "mail"]}
    catalog = provider(SCHEMA_CATALOG)
    assert set(catalog) == {"User", "Group"}
    assert catalog["Group"]["namingAttribute"] == "cn"


def test_primary_key_overrides():
    provider = PropertySourceProvider(primary_keys={"User": "employeeNumber"})
    assert provider(PRIMARY_KEY_ATTRIBUTES)["User"] == "employeeNumber"
