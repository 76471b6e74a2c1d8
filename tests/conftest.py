import json
from typing import Any, Dict

import pytest

from connhost.host import ConnectorHost
from mocks.directory_mocks import PRESIDENTS

PENNAVE_PROPERTIES = {
    "host": "api.pennaveiam.local",
    "username": "admin",
    "password": "Password1",
}


@pytest.fixture
def make_host():
    """Return a factory that constructs a ConnectorHost from datasource configs.

    Usage in tests:
        h = make_host({"people": {"connector": "jsonfile", ...}})
        h.deploy()
    """

    def _make(
        datasources: Dict[str, Any], host_conf: Dict[str, Any] | None = None
    ) -> ConnectorHost:
        cfg: Dict[str, Any] = {"datasources": datasources}
        if host_conf is not None:
            cfg["host"] = host_conf
        return ConnectorHost(cfg)

    return _make


@pytest.fixture
def presidents_file(tmp_path):
    """Write a JSON document with the sample presidents and return its path."""
    records = []
    for p in PRESIDENTS:
        r = {"uid": p["username"], **p, "userPassword": p["username"] + "-pw"}
        records.append(r)
    path = tmp_path / "presidents.json"
    path.write_text(json.dumps({"data": {"presidents": records}}))
    return str(path)


@pytest.fixture
def pennave_properties():
    return dict(PENNAVE_PROPERTIES)
