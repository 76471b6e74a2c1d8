"""Directory protocol requests, responses and distinguished names.

Requests are immutable value objects; the dispatcher never mutates them.
Responses carry a result code and an optional tree-shaped payload.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple

from ldap3.core.exceptions import LDAPInvalidDnError
from ldap3.utils.dn import escape_rdn, parse_dn


class ResultCode(IntEnum):
    SUCCESS = 0
    OPERATIONS_ERROR = 1
    NO_SUCH_OBJECT = 32
    INVALID_CREDENTIALS = 49
    UNAVAILABLE = 52
    UNWILLING_TO_PERFORM = 53
    OTHER = 80


class SearchScope(Enum):
    BASE = "base"
    ONE_LEVEL = "one"
    SUBTREE = "sub"

    @classmethod
    def parse(cls, value: Any) -> "SearchScope":
        if isinstance(value, SearchScope):
            return value
        key = str(value or "").strip().lower()
        aliases = {
            "base": cls.BASE,
            "baseobject": cls.BASE,
            "one": cls.ONE_LEVEL,
            "onelevel": cls.ONE_LEVEL,
            "one_level": cls.ONE_LEVEL,
            "sub": cls.SUBTREE,
            "subtree": cls.SUBTREE,
            "wholesubtree": cls.SUBTREE,
        }
        if key not in aliases:
            raise ValueError(f"unknown search scope: {value!r}")
        return aliases[key]


_HEX_ESCAPE = re.compile(r"\\([0-9A-Fa-f]{2})|\\(.)")


def _unescape_dn_value(value: str) -> str:
    # RFC 4514 escapes: backslash + hex pair, or backslash + special char
    raw = bytearray()
    pos = 0
    for m in _HEX_ESCAPE.finditer(value):
        raw.extend(value[pos : m.start()].encode("utf-8"))
        if m.group(1) is not None:
            raw.append(int(m.group(1), 16))
        else:
            raw.extend(m.group(2).encode("utf-8"))
        pos = m.end()
    raw.extend(value[pos:].encode("utf-8"))
    return raw.decode("utf-8", errors="surrogateescape")


@dataclass(frozen=True)
class RDN:
    """One relative distinguished name; multi-valued RDNs keep every AVA."""

    avas: Tuple[Tuple[str, str], ...]

    @property
    def attribute(self) -> str:
        return self.avas[0][0]

    @property
    def value(self) -> str:
        return self.avas[0][1]

    def get(self, attribute: str) -> Optional[str]:
        for name, value in self.avas:
            if name.lower() == attribute.lower():
                return value
        return None

    def __str__(self) -> str:
        return "+".join(f"{a}={v}" for a, v in self.avas)


@dataclass(frozen=True)
class DN:
    text: str
    rdns: Tuple[RDN, ...] = field(default=(), compare=False)

    @classmethod
    def parse(cls, text: Any) -> "DN":
        if isinstance(text, DN):
            return text
        text = "" if text is None else str(text)
        if not text.strip():
            return cls(text="", rdns=())
        try:
            parts = parse_dn(text, escape=False, strip=True)
        except LDAPInvalidDnError as e:
            raise ValueError(f"invalid DN {text!r}: {e}") from e

        rdns: List[RDN] = []
        current: List[Tuple[str, str]] = []
        for attr, value, sep in parts:
            current.append((attr, _unescape_dn_value(value)))
            if sep != "+":
                rdns.append(RDN(tuple(current)))
                current = []
        if current:
            rdns.append(RDN(tuple(current)))
        return cls(text=text, rdns=tuple(rdns))

    @property
    def leftmost(self) -> Optional[RDN]:
        return self.rdns[0] if self.rdns else None

    @property
    def parent(self) -> "DN":
        rest = self.rdns[1:]
        return DN(text=",".join(str(r) for r in rest), rdns=rest)

    def _normalized(self) -> Tuple[Tuple[Tuple[str, str], ...], ...]:
        return tuple(
            tuple(sorted((a.lower(), v.lower()) for a, v in r.avas)) for r in self.rdns
        )

    def is_descendant_of(self, other: "DN", direct: bool = False) -> bool:
        mine = self._normalized()
        theirs = other._normalized()
        if len(mine) <= len(theirs):
            return False
        if direct and len(mine) != len(theirs) + 1:
            return False
        return mine[len(mine) - len(theirs) :] == theirs

    def matches(self, other: "DN") -> bool:
        return self._normalized() == other._normalized()

    def child(self, attribute: str, value: Any) -> "DN":
        rdn = f"{attribute}={escape_rdn(str(value))}"
        return DN.parse(rdn + ("," + self.text if self.text else ""))

    def __str__(self) -> str:
        return self.text


class Operation(Enum):
    SEARCH = "search"
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    AUTHENTICATE = "authenticate"
    TEST_CONNECTION = "test_connection"


class ModificationType(Enum):
    ADD = "add"
    DELETE = "delete"
    REPLACE = "replace"


@dataclass(frozen=True)
class Modification:
    type: ModificationType
    attribute: str
    values: Tuple[Any, ...] = ()


def _as_dn(value: Any) -> DN:
    return value if isinstance(value, DN) else DN.parse(value)


@dataclass(frozen=True)
class SearchRequest:
    base_dn: DN
    scope: SearchScope = SearchScope.SUBTREE
    filter: str = "(objectClass=*)"
    attributes: Tuple[str, ...] = ()
    size_limit: int = 0
    # filled in by the dispatcher once the filter text has been parsed
    parsed_filter: Any = field(default=None, compare=False)

    operation = Operation.SEARCH

    @classmethod
    def of(cls, base_dn: Any, scope: Any = SearchScope.SUBTREE,
           filter: str = "(objectClass=*)", attributes=(), size_limit: int = 0):
        return cls(
            base_dn=_as_dn(base_dn),
            scope=SearchScope.parse(scope),
            filter=filter,
            attributes=tuple(attributes or ()),
            size_limit=int(size_limit or 0),
        )

    @property
    def target(self) -> DN:
        return self.base_dn


@dataclass(frozen=True)
class AddRequest:
    dn: DN
    attributes: Dict[str, Any] = field(default_factory=dict, hash=False)

    operation = Operation.CREATE

    @classmethod
    def of(cls, dn: Any, attributes: Optional[Dict[str, Any]] = None):
        return cls(dn=_as_dn(dn), attributes=dict(attributes or {}))

    @property
    def target(self) -> DN:
        return self.dn


@dataclass(frozen=True)
class ModifyRequest:
    dn: DN
    modifications: Tuple[Modification, ...] = ()

    operation = Operation.MODIFY

    @classmethod
    def of(cls, dn: Any, modifications=()):
        return cls(dn=_as_dn(dn), modifications=tuple(modifications))

    @property
    def target(self) -> DN:
        return self.dn


@dataclass(frozen=True)
class DeleteRequest:
    dn: DN

    operation = Operation.DELETE

    @classmethod
    def of(cls, dn: Any):
        return cls(dn=_as_dn(dn))

    @property
    def target(self) -> DN:
        return self.dn


@dataclass(frozen=True)
class BindRequest:
    dn: DN
    password: str = field(default="", repr=False)

    operation = Operation.AUTHENTICATE

    @classmethod
    def of(cls, dn: Any, password: str = ""):
        return cls(dn=_as_dn(dn), password=password)

    @property
    def target(self) -> DN:
        return self.dn


@dataclass(frozen=True)
class TestConnectionRequest:
    target: str = ""

    operation = Operation.TEST_CONNECTION

    # keep pytest from collecting this class
    __test__ = False


@dataclass(frozen=True)
class LdapResponse:
    result_code: ResultCode
    payload: Any = None
    message: Optional[str] = None
    # set only on the fixed response produced for undeclared capabilities
    unsupported: bool = False

    @property
    def succeeded(self) -> bool:
        return self.result_code == ResultCode.SUCCESS


@dataclass(frozen=True)
class TestConnectionResponse:
    target: str
    succeeded: bool
    message: Optional[str] = None
    # set only on the fixed response produced for undeclared capabilities
    unsupported: bool = False

    __test__ = False


NOT_SUPPORTED_MESSAGE = "operation not supported by this connector"


def not_supported(operation: Operation, target: str = ""):
    """The fixed response returned when a connector lacks a capability."""
    if operation is Operation.TEST_CONNECTION:
        return TestConnectionResponse(
            target=target,
            succeeded=False,
            message=NOT_SUPPORTED_MESSAGE,
            unsupported=True,
        )
    return LdapResponse(
        ResultCode.UNWILLING_TO_PERFORM,
        message=NOT_SUPPORTED_MESSAGE,
        unsupported=True,
    )


def generic_failure(operation: Operation, message: str, target: str = ""):
    if operation is Operation.TEST_CONNECTION:
        return TestConnectionResponse(target=target, succeeded=False, message=message)
    return LdapResponse(ResultCode.OTHER, message=message)


__all__ = [
    "AddRequest",
    "BindRequest",
    "DN",
    "DeleteRequest",
    "LdapResponse",
    "Modification",
    "ModificationType",
    "ModifyRequest",
    "Operation",
    "RDN",
    "ResultCode",
    "SearchRequest",
    "SearchScope",
    "TestConnectionRequest",
    "TestConnectionResponse",
    "generic_failure",
    "not_supported",
]
