"""Capability-based request dispatch with a bounded handler timeout.

The dispatcher is stateless per call and takes no locks; connectors that
keep internal state are responsible for their own synchronization. Nothing
raised by a handler escapes ``dispatch``: faults and timeouts become
generic-failure responses and are logged with the request context.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Dict, Optional

from . import filters
from .errors import CapabilityNotSupported, FilterSyntaxError, HandlerFault, HandlerTimeout
from .metadata import Capability, ConnectorDescriptor, describe_connector
from .protocol import (
    LdapResponse,
    Operation,
    ResultCode,
    SearchRequest,
    TestConnectionResponse,
    generic_failure,
    not_supported,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
_PRIMITIVES = (str, int, float, bool, type(None))
_MAX_DEPTH = 64


def validate_payload(payload: Any, _depth: int = 0) -> None:
    """Check that ``payload`` is a tree of maps, sequences and primitives."""
    if _depth > _MAX_DEPTH:
        raise HandlerFault("payload is nested too deeply (or cyclic)")
    if isinstance(payload, _PRIMITIVES):
        return
    if isinstance(payload, dict):
        for k, v in payload.items():
            if not isinstance(k, str):
                raise HandlerFault(f"payload map key {k!r} is not a string")
            validate_payload(v, _depth + 1)
        return
    if isinstance(payload, (list, tuple)):
        for v in payload:
            validate_payload(v, _depth + 1)
        return
    raise HandlerFault(f"payload contains unsupported type {type(payload).__name__}")


class Dispatcher:
    """Routes protocol requests to one deployed connector.

    Args:
        descriptor: descriptor of the connector the requests go to
        timeout: seconds a handler may run; ``None`` disables the bound and
            runs handlers in the caller's thread
        max_workers: size of the pool used to bound handler time
    """

    def __init__(
        self,
        descriptor: ConnectorDescriptor,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        max_workers: Optional[int] = None,
    ):
        self.descriptor = descriptor
        self.timeout = timeout
        self._max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()

    def _pool(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers,
                    thread_name_prefix=f"connhost-{self.descriptor.name}",
                )
            return self._executor

    def shutdown(self) -> None:
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=False)
                self._executor = None

    def require(self, capability: Capability) -> None:
        if not self.descriptor.supports(capability):
            raise CapabilityNotSupported(capability.value)

    def _context(self, request: Any, operation: Optional[Operation]) -> Dict[str, Any]:
        return {
            "connector": self.descriptor.name,
            "operation": operation.value if operation else None,
            "target": str(getattr(request, "target", "") or ""),
        }

    def dispatch(self, connector: Any, request: Any):
        operation = getattr(request, "operation", None)
        if not isinstance(operation, Operation):
            logger.error(
                "cannot dispatch %s: not a protocol request",
                type(request).__name__,
                extra=self._context(request, None),
            )
            return LdapResponse(ResultCode.OTHER, message="unrecognised request")

        target = str(getattr(request, "target", "") or "")
        capability = Capability.for_operation(operation)
        try:
            self.require(capability)
        except CapabilityNotSupported as e:
            logger.debug("%s: %s", self.descriptor.name, e)
            return not_supported(operation, target)

        if isinstance(request, SearchRequest) and request.parsed_filter is None:
            try:
                parsed = filters.parse(request.filter)
            except FilterSyntaxError as e:
                logger.info(
                    "rejected search filter %r: %s",
                    request.filter,
                    e,
                    extra=self._context(request, operation),
                )
                return LdapResponse(ResultCode.OPERATIONS_ERROR, message=str(e))
            request = dataclasses.replace(request, parsed_filter=parsed)

        handler = getattr(connector, capability.handler_name)
        try:
            response = self._invoke(handler, request)
            self._check_response(operation, response)
        except HandlerTimeout as e:
            logger.error("%s", e, extra=self._context(request, operation))
            return generic_failure(operation, str(e), target)
        except Exception as e:
            logger.exception(
                "%s handler of %s failed",
                capability.value,
                self.descriptor.name,
                extra=self._context(request, operation),
            )
            return generic_failure(operation, f"connector fault: {e}", target)
        return response

    def _invoke(self, handler, request):
        if self.timeout is None:
            return handler(request)
        future = self._pool().submit(handler, request)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            raise HandlerTimeout(
                f"{self.descriptor.name}.{handler.__name__} did not complete "
                f"within {self.timeout:g}s"
            ) from None

    def _check_response(self, operation: Operation, response: Any) -> None:
        if operation is Operation.TEST_CONNECTION:
            if not isinstance(response, TestConnectionResponse):
                raise HandlerFault(
                    f"test_connection returned {type(response).__name__}, "
                    "expected TestConnectionResponse"
                )
            return
        if not isinstance(response, LdapResponse):
            raise HandlerFault(
                f"{operation.value} returned {type(response).__name__}, "
                "expected LdapResponse"
            )
        validate_payload(response.payload)


def dispatch(connector: Any, request: Any, descriptor: Optional[ConnectorDescriptor] = None,
             timeout: Optional[float] = None):
    """One-off dispatch; describes the connector class when no descriptor is given."""
    desc = descriptor or describe_connector(type(connector))
    return Dispatcher(desc, timeout=timeout).dispatch(connector, request)
