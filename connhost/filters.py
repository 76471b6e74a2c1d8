"""RFC 4515 search filters: parsing, evaluation and serialization.

Every comparison node keeps two views of its value:

- ``assertion_value``: the value exactly as written in the filter text,
  escapes included. ``to_string`` uses it, so re-serializing a parsed
  filter reproduces the client's text.
- ``value``: the decoded value (escapes resolved) that ``evaluate``
  compares against entry values.

Escapes decode to bytes and then to text with ``surrogateescape``, so
values that are not valid UTF-8 survive untouched (see ``value_bytes``).
"""

from __future__ import annotations

import math
import re
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from ldap3.utils.conv import escape_filter_chars

from .errors import FilterSyntaxError
from .schema import AttributeType, EntityDefinition

_KEYSTRING = re.compile(r"[A-Za-z][A-Za-z0-9-]*")
_NUMERICOID = re.compile(r"[0-9]+(?:\.[0-9]+)+|[0-9]+")
_OPTION = re.compile(r"[A-Za-z0-9-]+")
_HEX = "0123456789abcdefABCDEF"


def decode_value(text: str) -> bytes:
    """Resolve ``\\XX`` escapes in an assertion value.

    A backslash not followed by two hex digits is kept literally (older
    clients escape specials as ``\\*``); malformed values never raise.
    """
    out = bytearray()
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c == "\\":
            if i + 2 < n and text[i + 1] in _HEX and text[i + 2] in _HEX:
                out.append(int(text[i + 1 : i + 3], 16))
                i += 3
                continue
            if i + 1 < n:
                out.extend(text[i + 1].encode("utf-8", "surrogateescape"))
                i += 2
                continue
        out.extend(c.encode("utf-8", "surrogateescape"))
        i += 1
    return bytes(out)


def _as_text(raw: bytes) -> str:
    return raw.decode("utf-8", "surrogateescape")


class FilterExpression:
    kind: str = ""

    def to_string(self) -> str:
        raise NotImplementedError

    def __str__(self) -> str:
        return self.to_string()

    def __eq__(self, other: Any) -> bool:
        return type(self) is type(other) and self._key() == other._key()

    def __hash__(self) -> int:
        return hash((type(self).__name__, self._key()))

    def _key(self) -> Tuple:
        raise NotImplementedError


class _AttributeNode(FilterExpression):
    def __init__(self, attribute: str):
        self.attribute = attribute

    @property
    def attribute_type(self) -> str:
        # attribute description without options, e.g. "cn" for "cn;lang-en"
        return self.attribute.split(";", 1)[0]


class _Comparison(_AttributeNode):
    operator = "="

    def __init__(self, attribute: str, assertion_value: str):
        super().__init__(attribute)
        self.assertion_value = assertion_value

    @classmethod
    def of(cls, attribute: str, value: Any):
        """Build a node from an unescaped value."""
        return cls(attribute, escape_filter_chars(str(value)))

    @property
    def value_bytes(self) -> bytes:
        return decode_value(self.assertion_value)

    @property
    def value(self) -> str:
        return _as_text(self.value_bytes)

    def to_string(self) -> str:
        return f"({self.attribute}{self.operator}{self.assertion_value})"

    def _key(self) -> Tuple:
        return (self.attribute.lower(), self.assertion_value)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.attribute!r}, {self.assertion_value!r})"


class Equality(_Comparison):
    kind = "equality"
    operator = "="


class GreaterOrEqual(_Comparison):
    kind = "greater_or_equal"
    operator = ">="


class LessOrEqual(_Comparison):
    kind = "less_or_equal"
    operator = "<="


class ApproxMatch(_Comparison):
    kind = "approx"
    operator = "~="


class Presence(_AttributeNode):
    kind = "presence"

    def to_string(self) -> str:
        return f"({self.attribute}=*)"

    def _key(self) -> Tuple:
        return (self.attribute.lower(),)

    def __repr__(self) -> str:
        return f"Presence({self.attribute!r})"


class Substring(_AttributeNode):
    kind = "substring"

    def __init__(self, attribute: str, assertion_value: str):
        super().__init__(attribute)
        self.assertion_value = assertion_value
        parts = _split_unescaped_stars(assertion_value)
        self._initial = parts[0]
        self._any = tuple(p for p in parts[1:-1] if p)
        self._final = parts[-1]

    @classmethod
    def of(cls, attribute: str, initial: Optional[str] = None,
           any: Iterable[str] = (), final: Optional[str] = None):
        pieces = [escape_filter_chars(initial or "")]
        pieces.extend(escape_filter_chars(a) for a in any)
        pieces.append(escape_filter_chars(final or ""))
        return cls(attribute, "*".join(pieces))

    @property
    def initial(self) -> Optional[str]:
        return _as_text(decode_value(self._initial)) if self._initial else None

    @property
    def any(self) -> Tuple[str, ...]:
        return tuple(_as_text(decode_value(a)) for a in self._any)

    @property
    def final(self) -> Optional[str]:
        return _as_text(decode_value(self._final)) if self._final else None

    def to_string(self) -> str:
        return f"({self.attribute}={self.assertion_value})"

    def _key(self) -> Tuple:
        return (self.attribute.lower(), self.assertion_value)

    def __repr__(self) -> str:
        return f"Substring({self.attribute!r}, {self.assertion_value!r})"


class And(FilterExpression):
    kind = "and"
    operator = "&"

    def __init__(self, children: Iterable[FilterExpression]):
        self.children = tuple(children)

    def to_string(self) -> str:
        return "(" + self.operator + "".join(c.to_string() for c in self.children) + ")"

    def _key(self) -> Tuple:
        return self.children

    def __repr__(self) -> str:
        return f"{type(self).__name__}({list(self.children)!r})"


class Or(And):
    kind = "or"
    operator = "|"


class Not(FilterExpression):
    kind = "not"

    def __init__(self, child: FilterExpression):
        self.child = child

    def to_string(self) -> str:
        return "(!" + self.child.to_string() + ")"

    def _key(self) -> Tuple:
        return (self.child,)

    def __repr__(self) -> str:
        return f"Not({self.child!r})"


def _split_unescaped_stars(value: str) -> List[str]:
    parts = []
    cur = []
    i = 0
    while i < len(value):
        c = value[i]
        if c == "\\" and i + 1 < len(value):
            cur.append(value[i : i + 2])
            i += 2
            continue
        if c == "*":
            parts.append("".join(cur))
            cur = []
        else:
            cur.append(c)
        i += 1
    parts.append("".join(cur))
    return parts


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def error(self, message: str, pos: Optional[int] = None) -> FilterSyntaxError:
        return FilterSyntaxError(message, self.text, self.pos if pos is None else pos)

    def peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def expect(self, ch: str) -> None:
        if self.peek() != ch:
            found = self.peek() or "end of filter"
            raise self.error(f"expected '{ch}', found '{found}'")
        self.pos += 1

    def parse(self) -> FilterExpression:
        if not self.text.strip():
            raise FilterSyntaxError("empty filter", self.text)
        node = self.filter()
        if self.pos != len(self.text):
            if self.peek() == ")":
                raise self.error("unbalanced parentheses")
            raise self.error("unexpected text after filter")
        return node

    def filter(self) -> FilterExpression:
        if self.peek() != "(":
            if not self.peek():
                raise self.error("unbalanced parentheses")
            raise self.error("filter must start with '('")
        self.pos += 1
        c = self.peek()
        if c == ")":
            raise self.error("empty filter expression")
        if c in ("&", "|"):
            self.pos += 1
            children = []
            while self.peek() == "(":
                children.append(self.filter())
            node: FilterExpression = And(children) if c == "&" else Or(children)
        elif c == "!":
            self.pos += 1
            if self.peek() != "(":
                raise self.error("'!' requires exactly one nested filter")
            node = Not(self.filter())
        else:
            node = self.item()
        if not self.peek():
            raise self.error("unbalanced parentheses")
        self.expect(")")
        return node

    def attribute_description(self) -> str:
        start = self.pos
        m = _KEYSTRING.match(self.text, self.pos) or _NUMERICOID.match(self.text, self.pos)
        if m is None:
            raise self.error("malformed attribute description")
        self.pos = m.end()
        while self.peek() == ";":
            self.pos += 1
            opt = _OPTION.match(self.text, self.pos)
            if opt is None:
                raise self.error("malformed attribute option")
            self.pos = opt.end()
        return self.text[start : self.pos]

    def item(self) -> FilterExpression:
        attr = self.attribute_description()
        c = self.peek()
        if c == ":":
            raise self.error("extensible match filters are not supported")
        if c in ("~", ">", "<"):
            self.pos += 1
            self.expect("=")
            value = self.value()
            cls = {"~": ApproxMatch, ">": GreaterOrEqual, "<": LessOrEqual}[c]
            return cls(attr, value)
        if c != "=":
            raise self.error("malformed attribute description")
        self.pos += 1
        value = self.value()
        if value == "*":
            return Presence(attr)
        if len(_split_unescaped_stars(value)) > 1:
            return Substring(attr, value)
        return Equality(attr, value)

    def value(self) -> str:
        start = self.pos
        n = len(self.text)
        while self.pos < n and self.text[self.pos] != ")":
            if self.text[self.pos] == "\\" and self.pos + 1 < n:
                self.pos += 2
                continue
            self.pos += 1
        return self.text[start : self.pos]


def parse(text: str) -> FilterExpression:
    """Parse an RFC 4515 filter string.

    Raises:
        FilterSyntaxError: unbalanced parentheses, empty expressions,
            malformed attribute descriptions or unsupported filter kinds
    """
    if not isinstance(text, str):
        raise FilterSyntaxError(f"filter must be a string, got {type(text).__name__}")
    return _Parser(text).parse()


def to_string(expr: FilterExpression) -> str:
    return expr.to_string()


def _values(entry: Mapping[str, Any], attribute: str) -> List[Any]:
    wanted = [attribute.lower()]
    base = attribute.split(";", 1)[0].lower()
    if base != wanted[0]:
        wanted.append(base)
    for w in wanted:
        for key, value in entry.items():
            if key.lower() != w:
                continue
            if value is None:
                return []
            if isinstance(value, (list, tuple, set, frozenset)):
                return [v for v in value if v is not None]
            return [value]
    return []


def _to_number(v: Any) -> Optional[float]:
    if isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        return v if math.isfinite(v) else None
    if isinstance(v, bytes):
        v = v.decode("utf-8", "surrogateescape")
    try:
        s = str(v).strip()
        if re.fullmatch(r"[+-]?\d+", s):
            return int(s)
        n = float(s)
    except (TypeError, ValueError, OverflowError):
        return None
    # nan and inf never compare meaningfully
    return n if math.isfinite(n) else None


def _to_bool(v: Any) -> Optional[bool]:
    if isinstance(v, bool):
        return v
    s = _to_text(v).strip().upper()
    if s == "TRUE":
        return True
    if s == "FALSE":
        return False
    return None


def _to_text(v: Any) -> str:
    if isinstance(v, bytes):
        return v.decode("utf-8", "surrogateescape")
    if isinstance(v, bool):
        return "TRUE" if v else "FALSE"
    return str(v)


def _syntax(entity: Optional[EntityDefinition], attribute: str, sample: Any) -> str:
    adef = entity.attribute(attribute.split(";", 1)[0]) if entity is not None else None
    if adef is not None and adef.type is not AttributeType.LIST:
        if adef.type is AttributeType.NUMBER:
            return "number"
        if adef.type is AttributeType.BOOLEAN:
            return "boolean"
        if adef.type is AttributeType.PASSWORD:
            return "exact"
        return "string"
    if isinstance(sample, bool):
        return "boolean"
    if isinstance(sample, (int, float)):
        return "number"
    return "string"


def _compare(syntax: str, value: Any, assertion: str) -> Optional[int]:
    """Three-way compare of an entry value with an assertion; None if incomparable."""
    if syntax == "number":
        a, b = _to_number(value), _to_number(assertion)
    elif syntax == "boolean":
        a, b = _to_bool(value), _to_bool(assertion)
    elif syntax == "exact":
        a, b = _to_text(value), assertion
    else:
        a, b = _to_text(value).casefold(), assertion.casefold()
    if a is None or b is None:
        return None
    return (a > b) - (a < b)


def _substring_match(text: str, node: Substring) -> bool:
    s = text.casefold()
    initial = (node.initial or "").casefold()
    final = (node.final or "").casefold()
    if not s.startswith(initial) or not s.endswith(final):
        return False
    pos = len(initial)
    end = len(s) - len(final)
    if end < pos:
        return False
    for part in node.any:
        part = part.casefold()
        idx = s.find(part, pos, end)
        if idx < 0:
            return False
        pos = idx + len(part)
    return True


_APPROX_STRIP = re.compile(r"[\W_]+", re.UNICODE)


def _approx(value: Any, assertion: str) -> bool:
    try:
        a, b = _to_number(value), _to_number(assertion)
        if a is not None and b is not None:
            return a == b
        left = _APPROX_STRIP.sub("", _to_text(value)).casefold()
        right = _APPROX_STRIP.sub("", assertion).casefold()
        return left == right
    except (TypeError, ValueError, UnicodeError):
        return False


def evaluate(
    expr: FilterExpression,
    entry: Mapping[str, Any],
    entity: Optional[EntityDefinition] = None,
) -> bool:
    """Evaluate ``expr`` against an entry mapping attribute -> value(s).

    Attribute names match case-insensitively. Multi-valued attributes match
    if any value matches. ``entity`` supplies declared attribute types;
    without it the type is taken from the entry value.
    """
    if isinstance(expr, And) and not isinstance(expr, Or):
        return all(evaluate(c, entry, entity) for c in expr.children)
    if isinstance(expr, Or):
        return any(evaluate(c, entry, entity) for c in expr.children)
    if isinstance(expr, Not):
        return not evaluate(expr.child, entry, entity)
    if isinstance(expr, Presence):
        return bool(_values(entry, expr.attribute))
    if isinstance(expr, Substring):
        return any(
            _substring_match(_to_text(v), expr) for v in _values(entry, expr.attribute)
        )
    if isinstance(expr, ApproxMatch):
        assertion = expr.value
        return any(_approx(v, assertion) for v in _values(entry, expr.attribute))
    if isinstance(expr, _Comparison):
        assertion = expr.value
        for v in _values(entry, expr.attribute):
            cmp = _compare(_syntax(entity, expr.attribute, v), v, assertion)
            if cmp is None:
                continue
            if isinstance(expr, Equality) and cmp == 0:
                return True
            if isinstance(expr, GreaterOrEqual) and cmp >= 0:
                return True
            if isinstance(expr, LessOrEqual) and cmp <= 0:
                return True
        return False
    raise TypeError(f"not a filter expression: {expr!r}")


def matches(text: str, entry: Mapping[str, Any], entity: Optional[EntityDefinition] = None) -> bool:
    return evaluate(parse(text), entry, entity)


__all__ = [
    "And",
    "ApproxMatch",
    "Equality",
    "FilterExpression",
    "GreaterOrEqual",
    "LessOrEqual",
    "Not",
    "Or",
    "Presence",
    "Substring",
    "decode_value",
    "evaluate",
    "matches",
    "parse",
    "to_string",
]
