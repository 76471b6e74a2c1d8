from __future__ import annotations

import logging
import threading
from typing import Any

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


def create_app_for_host(host: Any) -> FastAPI:
    app = FastAPI()

    @app.get("/status")
    def status():
        if host is None:
            return JSONResponse({"status": "no-host"})
        with host._lock:
            items = {k: v.as_dict() for k, v in host.status.datasources.items()}
            started_at = host.status.started_at
            ended_at = host.status.ended_at
            run_id = host.status.run_id

        deployed = sum(1 for s in items.values() if s["state"] == "deployed")
        failed = sum(1 for s in items.values() if s["state"] == "failed")
        return {
            "run_id": run_id,
            "started_at": started_at,
            "ended_at": ended_at,
            "total_datasources": len(items),
            "deployed_datasources": deployed,
            "failed_datasources": failed,
            "datasources": items,
        }

    @app.get("/datasources/{name}")
    def datasource(name: str):
        try:
            ds = host.get(name)
        except KeyError as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        return ds.descriptor.as_dict()

    @app.get("/datasources/{name}/schema")
    def schema(name: str):
        try:
            ds = host.get(name)
        except KeyError as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        return ds.schema.as_dict() if ds.schema is not None else {}

    return app


def serve_host_api_in_thread(
    host: Any,
    bind: str = "127.0.0.1",
    port: int = 0,
    log_level: str = "info",
) -> threading.Thread:
    """Start a uvicorn server for the given host in a daemon thread.

    Args:
        host: The ConnectorHost whose state is exposed
        bind: Address to bind to (default: 127.0.0.1)
        port: Port to bind to; prefer an explicit port, the one picked for
          0 cannot be retrieved here
        log_level: Uvicorn log level

    Returns the Thread object.
    """
    app = create_app_for_host(host)

    def _serve():
        uvicorn.run(app, host=bind, port=port, log_level=log_level)

    t = threading.Thread(target=_serve, daemon=True)
    t.start()
    logger.info("status API listening on http://%s:%d", bind, port)
    return t
