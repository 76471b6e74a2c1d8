from __future__ import annotations

import importlib
import logging
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import wait as cf_wait
from typing import Any, Callable, Dict, List, Optional

from .config import (
    ConfigurationDescriptor,
    get_datasources,
    get_host_settings,
    load_configuration_descriptor,
)
from .connectors import load_connector_class
from .dispatch import DEFAULT_TIMEOUT, Dispatcher
from .errors import DeploymentError
from .injection import Injector
from .metadata import ConnectorDescriptor, describe_connector
from .properties import PropertySourceProvider
from .schema import SchemaDefinition, build_schema, entities_from_table, scan_entities

logger = logging.getLogger(__name__)


class DeploymentStatus:
    name: str
    state: str
    started_at: Optional[float]
    ended_at: Optional[float]
    error: Optional[str]

    def __init__(self, name: str):
        self.name = name
        self.state = "pending"
        self.started_at = None
        self.ended_at = None
        self.error = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "notes": [self.error] if self.error else [],
        }


class HostStatus:
    datasources: Dict[str, DeploymentStatus]
    started_at: Optional[float]
    ended_at: Optional[float]
    run_id: int

    def __init__(self):
        self.datasources = {}
        self.started_at = None
        self.ended_at = None
        self.run_id = int(time.time() * 1000)


class Datasource:
    """A deployed connector: instance, descriptor, schema and dispatcher."""

    def __init__(
        self,
        name: str,
        descriptor: ConnectorDescriptor,
        connector: Any,
        schema: Optional[SchemaDefinition],
        dispatcher: Dispatcher,
        properties: PropertySourceProvider,
        components: Optional[Dict[type, Any]] = None,
    ):
        self.name = name
        self.descriptor = descriptor
        self.connector = connector
        self.schema = schema
        self.dispatcher = dispatcher
        self.properties = properties
        self.components = components or {}

    def dispatch(self, request: Any):
        return self.dispatcher.dispatch(self.connector, request)


def _module_dir(cls: type) -> List[str]:
    mod = sys.modules.get(cls.__module__)
    path = getattr(mod, "__file__", None)
    return [os.path.dirname(path)] if path else []


def _memoized(fn: Callable[[], Any]) -> Callable[[], Any]:
    cache: Dict[str, Any] = {}

    def wrapper():
        if "value" not in cache:
            cache["value"] = fn()
        return cache["value"]

    return wrapper


class ConnectorHost:
    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.datasource_configs = get_datasources(config)
        self.settings = get_host_settings(config)
        self.datasources: Dict[str, Datasource] = {}
        self.status = HostStatus()
        # lock to protect self.datasources and status updates during deployment
        self._lock = threading.RLock()
        max_workers = self.settings.get("max_workers")
        self._max_workers = max_workers if isinstance(max_workers, int) else None

    def _update_status(self, name: str, state: Optional[str] = None, **kwargs) -> None:
        """Atomically update deployment status fields under lock."""
        with self._lock:
            st = self.status.datasources.get(name)
            if st:
                if state is not None:
                    st.state = state
                for k, v in kwargs.items():
                    setattr(st, k, v)

    def _schema_source(self, name: str, ds_cfg: Dict[str, Any], cls: type):
        schema_cfg = ds_cfg.get("schema") or {}

        def build() -> Optional[SchemaDefinition]:
            items: List[Any] = []
            modules = schema_cfg.get("modules")
            if modules is None:
                modules = [cls.__module__]
            elif isinstance(modules, str):
                modules = [modules]
            for mod_name in modules:
                items.extend(scan_entities(importlib.import_module(mod_name)))
            items.extend(entities_from_table(schema_cfg.get("entities") or []))
            if not items:
                return None
            return build_schema(items)

        return _memoized(build)

    def _configuration(
        self, ds_cfg: Dict[str, Any], descriptor: ConnectorDescriptor
    ) -> Optional[ConfigurationDescriptor]:
        path = ds_cfg.get("configuration") or descriptor.configuration
        if not path:
            return None
        return load_configuration_descriptor(
            path, search_dirs=_module_dir(descriptor.connector_type)
        )

    def deploy_datasource(self, name: str, ds_cfg: Dict[str, Any]) -> Datasource:
        """Deploy one datasource; fatal errors propagate to the caller."""
        type_name = ds_cfg.get("connector")
        if not isinstance(type_name, str) or not type_name:
            raise DeploymentError(f"datasource '{name}' has no connector type")
        cls = load_connector_class(type_name)
        descriptor = describe_connector(cls)
        schema_fn = self._schema_source(name, ds_cfg, cls)
        provider = PropertySourceProvider(
            datasource_properties=ds_cfg.get("properties") or {},
            descriptor=self._configuration(ds_cfg, descriptor),
            schema=schema_fn,
            primary_keys=ds_cfg.get("primary_keys"),
            target_objects=ds_cfg.get("target_objects"),
        )
        injector = Injector(provider)
        connector = injector.build_connector(descriptor)
        schema = schema_fn()

        timeout = ds_cfg.get("timeout", self.settings.get("timeout", DEFAULT_TIMEOUT))
        dispatcher = Dispatcher(
            descriptor,
            timeout=float(timeout) if timeout is not None else None,
            max_workers=ds_cfg.get("max_workers"),
        )
        return Datasource(
            name, descriptor, connector, schema, dispatcher, provider, injector.instances
        )

    def deploy(self) -> Dict[str, Datasource]:
        with self._lock:
            self.status.started_at = time.time()
            for name in self.datasource_configs:
                self.status.datasources[name] = DeploymentStatus(name)

        logger.info(
            "deploying %d datasources: %s",
            len(self.datasource_configs),
            list(self.datasource_configs),
        )

        def task(name: str, ds_cfg: Dict[str, Any]) -> None:
            self._update_status(name, state="deploying", started_at=time.time())
            try:
                ds = self.deploy_datasource(name, ds_cfg or {})
            except Exception as e:
                self._update_status(name, state="failed", error=str(e), ended_at=time.time())
                logger.exception("deployment failed: %s", name)
                return
            with self._lock:
                self.datasources[name] = ds
            self._update_status(name, state="deployed", ended_at=time.time())
            logger.info(
                "deployed %s (%s, capabilities: %s)",
                name,
                ds.descriptor.name,
                sorted(c.value for c in ds.descriptor.capabilities),
            )

        max_workers = self._max_workers or min(4, max(1, len(self.datasource_configs)))
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [
                executor.submit(task, name, ds_cfg)
                for name, ds_cfg in self.datasource_configs.items()
            ]
            cf_wait(futures)

        with self._lock:
            self.status.ended_at = time.time()
        return dict(self.datasources)

    def get(self, name: str) -> Datasource:
        with self._lock:
            ds = self.datasources.get(name)
        if ds is None:
            raise KeyError(f"datasource '{name}' is not deployed")
        return ds

    def dispatch(self, name: str, request: Any):
        return self.get(name).dispatch(request)

    def shutdown(self) -> None:
        with self._lock:
            for ds in self.datasources.values():
                ds.dispatcher.shutdown()
