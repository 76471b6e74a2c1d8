from __future__ import annotations

import json
import logging
import threading
from typing import Annotated, Any, Dict, List, Optional

import yaml

from ..filters import evaluate
from ..metadata import (
    CUSTOM_DATASOURCE_PROPERTIES,
    Property,
    custom_connector,
    managed_component,
)
from ..properties import PropertySet
from ..protocol import (
    DN,
    BindRequest,
    LdapResponse,
    ResultCode,
    SearchRequest,
    SearchScope,
    TestConnectionRequest,
    TestConnectionResponse,
)
from ..templating import extract_jmespath

logger = logging.getLogger(__name__)

DEFAULT_OBJECT_CLASSES = ["top", "extensibleObject"]

DatasourceProperties = Annotated[
    PropertySet, Property(CUSTOM_DATASOURCE_PROPERTIES, keys=("path",))
]


@managed_component
class JsonDocumentClient:
    """Reads records from a JSON or YAML document, once, on first use."""

    def __init__(self, properties: DatasourceProperties):
        self.path = properties["path"]
        self.records_expr = properties.get("records") or "@"
        self._lock = threading.Lock()
        self._records: Optional[List[Dict[str, Any]]] = None

    def load(self) -> List[Dict[str, Any]]:
        with self._lock:
            if self._records is None:
                with open(self.path, "r", encoding="utf-8") as f:
                    if self.path.endswith(".json"):
                        doc = json.load(f)
                    else:
                        doc = yaml.safe_load(f)
                records = extract_jmespath(self.records_expr, doc)
                if not isinstance(records, list):
                    raise ValueError(
                        f"'{self.records_expr}' does not select a list in {self.path}"
                    )
                self._records = [r for r in records if isinstance(r, dict)]
                logger.info("loaded %d records from %s", len(self._records), self.path)
            return self._records

    def find(self, attribute: str, value: str) -> Optional[Dict[str, Any]]:
        for record in self.load():
            for k, v in record.items():
                if k.lower() == attribute.lower() and str(v).lower() == value.lower():
                    return record
        return None


@custom_connector(
    name="jsonfile",
    description="Serves directory entries from a JSON or YAML document",
    configuration="jsonfile_connector.json",
)
class JsonfileConnector:
    def __init__(self, client: JsonDocumentClient, properties: DatasourceProperties):
        self.client = client
        self.base_dn = DN.parse(properties.get("base_dn") or "")
        self.naming_attribute = properties.get("naming_attribute") or "uid"
        self.password_attribute = properties.get("password_attribute") or "userPassword"
        hidden = properties.get("hidden_attributes") or []
        self.hidden = {h.lower() for h in hidden} | {self.password_attribute.lower()}

    def _view(self, record: Dict[str, Any]) -> Dict[str, Any]:
        # records without objectClass still answer "(objectClass=*)"
        if any(k.lower() == "objectclass" for k in record):
            return record
        return {"objectClass": list(DEFAULT_OBJECT_CLASSES), **record}

    def _entry(self, record: Dict[str, Any], attributes=()) -> Dict[str, Any]:
        wanted = {a.lower() for a in attributes if a != "*"}
        attrs = {
            k: v
            for k, v in record.items()
            if k.lower() not in self.hidden and (not wanted or k.lower() in wanted)
        }
        dn = self.base_dn.child(self.naming_attribute, record.get(self.naming_attribute))
        return {"dn": str(dn), "attributes": attrs}

    def _naming_value(self, dn: DN) -> Optional[str]:
        rdn = dn.leftmost
        if rdn is None:
            return None
        return rdn.get(self.naming_attribute)

    def _candidates(self, base: DN, scope: SearchScope) -> Optional[List[Dict[str, Any]]]:
        """Records in scope of ``base``, or None when ``base`` names no entry.

        Records are leaf entries directly below the suffix. The suffix and
        its ancestors are not entries themselves.
        """
        if base.matches(self.base_dn):
            return [] if scope is SearchScope.BASE else self.client.load()
        if base.is_descendant_of(self.base_dn, direct=True):
            value = self._naming_value(base)
            record = self.client.find(self.naming_attribute, value) if value else None
            if record is None:
                return None
            return [] if scope is SearchScope.ONE_LEVEL else [record]
        if self.base_dn.is_descendant_of(base):
            return self.client.load() if scope is SearchScope.SUBTREE else []
        return None

    def search(self, request: SearchRequest) -> LdapResponse:
        candidates = self._candidates(request.base_dn, request.scope)
        if candidates is None:
            return LdapResponse(ResultCode.NO_SUCH_OBJECT)

        results = []
        for record in candidates:
            view = self._view(record)
            if request.parsed_filter is not None and not evaluate(request.parsed_filter, view):
                continue
            results.append(self._entry(view, request.attributes))
            if request.size_limit and len(results) >= request.size_limit:
                break
        return LdapResponse(ResultCode.SUCCESS, results)

    def authenticate(self, request: BindRequest) -> LdapResponse:
        value = self._naming_value(request.dn)
        record = self.client.find(self.naming_attribute, value) if value else None
        if record is None or record.get(self.password_attribute) != request.password:
            return LdapResponse(ResultCode.INVALID_CREDENTIALS)
        return LdapResponse(ResultCode.SUCCESS)

    def test_connection(self, request: TestConnectionRequest) -> TestConnectionResponse:
        try:
            count = len(self.client.load())
        except (OSError, ValueError, yaml.YAMLError) as e:
            return TestConnectionResponse(request.target, False, str(e))
        return TestConnectionResponse(request.target, True, f"{count} records")
