import logging
import threading

from connhost.dispatch import Dispatcher, dispatch
from connhost.filters import Equality
from connhost.metadata import describe_connector
from connhost.protocol import (
    NOT_SUPPORTED_MESSAGE,
    AddRequest,
    DeleteRequest,
    LdapResponse,
    ModifyRequest,
    ResultCode,
    SearchRequest,
    TestConnectionRequest,
    TestConnectionResponse,
)
from mocks import directory_mocks as m


def _dispatcher(cls, **kwargs):
    return Dispatcher(describe_connector(cls), **kwargs)


def test_unsupported_operation_returns_fixed_response():
    connector = m.SearchOnlyConnector()
    resp = _dispatcher(m.SearchOnlyConnector).dispatch(connector, DeleteRequest.of("uid=a,o=x"))
    assert resp.result_code == ResultCode.UNWILLING_TO_PERFORM
    assert resp.unsupported is True
    assert resp.message == NOT_SUPPORTED_MESSAGE
    assert connector.calls == 0


def test_unsupported_test_connection_reports_failure():
    resp = dispatch(m.SearchOnlyConnector(), TestConnectionRequest("ldap://x"))
    assert isinstance(resp, TestConnectionResponse)
    assert resp.succeeded is False
    assert resp.target == "ldap://x"
    assert resp.unsupported is True

    class ReportsFailure:
        def test_connection(self, request):
            return TestConnectionResponse(request.target, False, NOT_SUPPORTED_MESSAGE)

    reported = dispatch(ReportsFailure(), TestConnectionRequest("ldap://x"))
    assert reported.succeeded is False
    assert reported.unsupported is False
    assert reported != resp


def test_narrowed_capability_is_not_dispatched():
    resp = dispatch(m.NarrowedConnector(), DeleteRequest.of("uid=a,o=x"))
    assert resp.unsupported is True


def test_unsupported_distinguishable_from_unavailable():
    unavailable = dispatch(m.UnavailableConnector(), SearchRequest.of("o=x"))
    unsupported = dispatch(m.UnavailableConnector(), DeleteRequest.of("o=x"))
    assert unavailable.result_code == ResultCode.UNAVAILABLE
    assert unavailable.unsupported is False
    assert unsupported.result_code != unavailable.result_code
    assert unsupported.unsupported is True


def test_handler_exception_becomes_generic_failure(caplog):
    connector = m.FaultyConnector()
    with caplog.at_level(logging.ERROR, logger="connhost.dispatch"):
        resp = dispatch(connector, SearchRequest.of("uid=adams,o=x"))
    assert resp.result_code == ResultCode.OTHER
    assert "backend exploded" in resp.message
    assert connector.calls == 1
    records = [r for r in caplog.records if r.name == "connhost.dispatch"]
    assert records
    assert records[0].operation == "search"
    assert records[0].target == "uid=adams,o=x"
    assert records[0].connector == "FaultyConnector"


def test_handler_timeout_becomes_generic_failure():
    d = _dispatcher(m.FaultyConnector, timeout=0.1)
    try:
        resp = d.dispatch(m.FaultyConnector(), AddRequest.of("uid=new,o=x", {"cn": ["new"]}))
    finally:
        d.shutdown()
    assert resp.result_code == ResultCode.OTHER
    assert "did not complete" in resp.message


def test_payload_with_unsupported_type_is_a_fault():
    resp = dispatch(m.FaultyConnector(), ModifyRequest.of("uid=a,o=x"))
    assert resp.result_code == ResultCode.OTHER
    assert "set" in resp.message


def test_wrong_response_type_is_a_fault():
    resp = dispatch(m.FaultyConnector(), DeleteRequest.of("uid=a,o=x"))
    assert resp.result_code == ResultCode.OTHER
    assert "expected LdapResponse" in resp.message

    resp = dispatch(m.FaultyConnector(), TestConnectionRequest("x"))
    assert isinstance(resp, TestConnectionResponse)
    assert resp.succeeded is False
    assert resp.unsupported is False


def test_filter_syntax_error_rejected_before_handler():
    connector = m.SearchOnlyConnector()
    resp = dispatch(connector, SearchRequest.of("o=x", filter="(uid=a"))
    assert resp.result_code == ResultCode.OPERATIONS_ERROR
    assert "unbalanced" in resp.message
    assert connector.calls == 0


def test_parsed_filter_attached_without_mutating_request():
    seen = []

    class Recording:
        def search(self, request):
            seen.append(request)
            return LdapResponse(ResultCode.SUCCESS, [])

    request = SearchRequest.of("o=x", filter="(uid=adams)")
    dispatch(Recording(), request)
    assert request.parsed_filter is None
    assert seen[0].parsed_filter == Equality("uid", "adams")
    assert seen[0] == request


def test_each_dispatch_calls_handler_once():
    connector = m.SearchOnlyConnector()
    d = _dispatcher(m.SearchOnlyConnector, timeout=None)
    d.dispatch(connector, SearchRequest.of("o=x"))
    d.dispatch(connector, SearchRequest.of("o=x"))
    assert connector.calls == 2


def test_non_protocol_request():
    resp = dispatch(m.SearchOnlyConnector(), {"op": "search"})
    assert resp.result_code == ResultCode.OTHER


def test_concurrent_dispatch_against_stateful_connector():
    client = m.ExternalDatasourceClient({"host": "h"})
    connector = m.StarterConnector(client)
    d = _dispatcher(m.StarterConnector, timeout=5.0, max_workers=8)
    errors = []

    def worker(i):
        dn = f"uid=user{i},o=starter"
        for req in (
            AddRequest.of(dn, {"uid": [f"user{i}"]}),
            SearchRequest.of(dn),
            DeleteRequest.of(dn),
        ):
            resp = d.dispatch(connector, req)
            if resp.result_code != ResultCode.SUCCESS:
                errors.append((i, req.operation, resp))

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    d.shutdown()

    assert errors == []
    assert client.entries == {}
