import abc
import types

import pytest

from connhost.errors import SchemaAuthoringError
from connhost.schema import (
    RULE_ATTRIBUTE_COUNT,
    RULE_ATTRIBUTE_TYPE,
    RULE_ENTITY_CLASS,
    RULE_NAMING_ATTRIBUTE_COUNT,
    RULE_UNIQUE_NAME,
    AttributeType,
    attribute,
    build_schema,
    entities_from_table,
    entity,
    from_entry,
    is_entity,
    scan_entities,
    to_entry,
)
from mocks.directory_mocks import President


def _table(*attrs, name="User"):
    return entities_from_table([{"name": name, "attributes": list(attrs)}])


FIRST_NAME = {"name": "firstName", "type": "STRING"}
USERNAME = {"name": "username", "type": "STRING", "isNamingAttribute": True}


@entity
class Account:
    login: str = attribute(naming=True)
    groups: list = attribute()
    active: bool = attribute(nullable=False, default=True)


@entity
class Admin(Account):
    level: int = attribute()


class NotAnEntity(Account):
    nickname: str = attribute(naming=True)


@entity
class NeedsArgs:
    name: str = attribute(naming=True)

    def __init__(self, name):
        self.name = name


@entity
class AbstractEntity(abc.ABC):
    name: str = attribute(naming=True)

    @abc.abstractmethod
    def render(self):
        ...


@entity
class BadType:
    name: str = attribute(naming=True)
    born: object = attribute()


@entity(name="account")
class DuplicateAccount:
    other: str = attribute(naming=True)


def test_table_entity_builds():
    schema = build_schema(_table(FIRST_NAME, USERNAME))
    user = schema.entity("user")
    assert user.naming_attribute.name == "username"
    assert [a.name for a in user.attributes] == ["firstName", "username"]


def test_second_naming_attribute_rejected():
    with pytest.raises(SchemaAuthoringError) as exc_info:
        build_schema(_table(dict(FIRST_NAME, isNamingAttribute=True), USERNAME))
    assert exc_info.value.rule == RULE_NAMING_ATTRIBUTE_COUNT
    assert exc_info.value.entity == "User"


def test_zero_attributes_rejected():
    with pytest.raises(SchemaAuthoringError) as exc_info:
        build_schema(_table())
    assert exc_info.value.rule == RULE_ATTRIBUTE_COUNT


def test_zero_naming_attributes_rejected():
    with pytest.raises(SchemaAuthoringError) as exc_info:
        build_schema(_table(FIRST_NAME))
    assert exc_info.value.rule == RULE_NAMING_ATTRIBUTE_COUNT


def test_building_twice_gives_equal_schemas():
    assert build_schema([President, Account]) == build_schema([President, Account])


def test_class_entity_types_inferred():
    schema = build_schema([Account])
    account = schema.entity("Account")
    types_ = {a.name: a.type for a in account.attributes}
    assert types_ == {
        "login": AttributeType.STRING,
        "groups": AttributeType.LIST,
        "active": AttributeType.BOOLEAN,
    }
    assert account.attribute("ACTIVE").nullable is False
    assert schema.entity_for_class(Account) is account


def test_attributes_not_inherited():
    with pytest.raises(SchemaAuthoringError) as exc_info:
        build_schema([Admin])
    # Admin declares only "level" and no naming attribute of its own
    assert exc_info.value.rule == RULE_NAMING_ATTRIBUTE_COUNT
    assert is_entity(Account)
    assert not is_entity(NotAnEntity)


def test_unmarked_subclass_rejected():
    with pytest.raises(SchemaAuthoringError) as exc_info:
        build_schema([NotAnEntity])
    assert exc_info.value.rule == RULE_ENTITY_CLASS
    assert exc_info.value.entity == "NotAnEntity"


def test_class_shape_rules():
    def local():
        @entity
        class Nested:
            name: str = attribute(naming=True)

        return Nested

    for cls in (local(), NeedsArgs, AbstractEntity):
        with pytest.raises(SchemaAuthoringError) as exc_info:
            build_schema([cls])
        assert exc_info.value.rule == RULE_ENTITY_CLASS


def test_duplicate_entity_names_rejected():
    with pytest.raises(SchemaAuthoringError) as exc_info:
        build_schema([Account, DuplicateAccount])
    assert exc_info.value.rule == RULE_UNIQUE_NAME


def test_duplicate_attribute_names_rejected():
    with pytest.raises(SchemaAuthoringError) as exc_info:
        build_schema(_table(USERNAME, {"name": "USERNAME", "type": "STRING"}))
    assert exc_info.value.rule == RULE_UNIQUE_NAME
    assert exc_info.value.attribute == "USERNAME"


def test_display_names_must_not_collide():
    with pytest.raises(SchemaAuthoringError) as exc_info:
        build_schema(
            _table(
                {"name": "uid", "type": "STRING", "isNamingAttribute": True},
                {"name": "first_name", "type": "STRING", "displayName": "cn"},
                {"name": "cn", "type": "STRING"},
            )
        )
    assert exc_info.value.rule == RULE_UNIQUE_NAME
    assert exc_info.value.attribute == "cn"

    with pytest.raises(SchemaAuthoringError) as exc_info:
        build_schema(
            _table(
                USERNAME,
                {"name": "given", "type": "STRING", "displayName": "Name"},
                {"name": "family", "type": "STRING", "displayName": "name"},
            )
        )
    assert exc_info.value.rule == RULE_UNIQUE_NAME
    assert exc_info.value.attribute == "family"


def test_unsupported_attribute_type_rejected():
    with pytest.raises(SchemaAuthoringError) as exc_info:
        build_schema([BadType])
    assert exc_info.value.rule == RULE_ATTRIBUTE_TYPE
    assert exc_info.value.attribute == "born"

    with pytest.raises(SchemaAuthoringError) as exc_info:
        build_schema(_table(USERNAME, {"name": "born", "type": "DATE"}))
    assert exc_info.value.rule == RULE_ATTRIBUTE_TYPE


def test_list_naming_attribute_rejected():
    with pytest.raises(SchemaAuthoringError) as exc_info:
        build_schema(_table(dict(USERNAME, type="LIST")))
    assert exc_info.value.rule == RULE_ATTRIBUTE_TYPE


def test_rules_applied_in_order_across_entities():
    # the second entity breaks an earlier rule than the first one does
    rows = [
        {"name": "A", "attributes": [FIRST_NAME]},
        {"name": "B", "attributes": []},
    ]
    with pytest.raises(SchemaAuthoringError) as exc_info:
        build_schema(entities_from_table(rows))
    assert exc_info.value.rule == RULE_ATTRIBUTE_COUNT
    assert exc_info.value.entity == "B"


def test_scan_entities_only_finds_own_top_level_classes():
    module = types.ModuleType("fake_entities")
    module.President = President

    @entity
    class Local:
        name: str = attribute(naming=True)

    Local.__module__ = "fake_entities"
    module.Local = Local
    assert scan_entities(module) == [Local]


def test_to_entry_from_instance():
    schema = build_schema([President])
    definition = schema.entity("President")
    p = President()
    p.username = "washington"
    p.first_name = "George"
    p.terms_served = 2
    dn, attrs = to_entry(p, definition, "ou=presidents,o=gov")
    assert str(dn) == "username=washington,ou=presidents,o=gov"
    assert attrs == {"username": "washington", "firstName": "George", "termsServed": 2}


def test_to_entry_lists_and_nullability():
    definition = build_schema([Account]).entity("Account")
    dn, attrs = to_entry(
        {"login": "alice", "groups": "staff", "active": True}, definition, "o=x"
    )
    assert str(dn) == "login=alice,o=x"
    assert attrs["groups"] == ["staff"]

    with pytest.raises(ValueError):
        to_entry({"login": "a", "active": None}, definition)
    with pytest.raises(ValueError):
        to_entry({"groups": ["x"], "active": True}, definition)


def test_from_entry_round_trip():
    definition = build_schema([President]).entity("President")
    p = from_entry(definition, {"USERNAME": ["adams"], "firstname": "John", "termsServed": 1})
    assert isinstance(p, President)
    assert (p.username, p.first_name, p.terms_served) == ("adams", "John", 1)


def test_as_dict():
    catalog = build_schema([President]).as_dict()
    assert catalog["President"]["namingAttribute"] == "username"
    first = catalog["President"]["attributes"][1]
    assert first == {
        "name": "first_name",
        "type": "STRING",
        "nullable": True,
        "isNamingAttribute": False,
        "displayName": "firstName",
    }
