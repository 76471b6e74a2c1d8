from __future__ import annotations

from typing import Any, Optional


class ConnhostError(Exception):
    """Base class for every error raised by the connector host."""


class UnresolvableDependency(ConnhostError):
    """A constructor dependency cannot be satisfied.

    Raised for unknown property-set names, missing required properties,
    non-declarative constructor parameters and classes with more than one
    eligible constructor.
    """

    def __init__(self, message: str, owner: Optional[str] = None):
        super().__init__(message if owner is None else f"{owner}: {message}")
        self.owner = owner


class CyclicDependency(ConnhostError):
    def __init__(self, path: list):
        self.path = list(path)
        super().__init__(
            "cyclic dependency: " + " -> ".join(_type_name(p) for p in self.path)
        )


class SchemaAuthoringError(ConnhostError):
    """Schema definition rejected; no partial schema is produced."""

    def __init__(
        self,
        rule: str,
        detail: str,
        entity: Optional[str] = None,
        attribute: Optional[str] = None,
    ):
        self.rule = rule
        self.detail = detail
        self.entity = entity
        self.attribute = attribute
        where = entity or "<schema>"
        if attribute:
            where += "." + attribute
        super().__init__(f"[{rule}] {where}: {detail}")


class FilterSyntaxError(ConnhostError):
    def __init__(self, message: str, text: str = "", position: Optional[int] = None):
        self.text = text
        self.position = position
        if position is not None:
            message = f"{message} at position {position}"
        super().__init__(message)


class CapabilityNotSupported(ConnhostError):
    def __init__(self, capability: Any):
        self.capability = capability
        super().__init__(f"operation not supported: {capability}")


class HandlerFault(ConnhostError):
    """A connector handler raised or returned something unusable."""


class HandlerTimeout(HandlerFault):
    pass


class DeploymentError(ConnhostError):
    pass


def _type_name(obj: Any) -> str:
    return getattr(obj, "__qualname__", None) or str(obj)
