"""
worker/health/__init__.py

Flask application factory for the worker's liveness and readiness checks.

The deployment polls:
    GET /worker/health  -> 200 while the process is alive
    GET /worker/ready   -> 200 when consuming, 503 otherwise

Status comes from an injected ``status_fn`` so tests (and the worker) decide
what "ready" means without the app knowing about pika.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from flask import Flask
from werkzeug.serving import BaseWSGIServer, make_server

logger = logging.getLogger(__name__)

StatusFn = Callable[[], dict]


def _default_status() -> dict:
    return {"ready": False, "broker": "absent", "in_flight": 0, "uptime_seconds": 0.0}


def create_app(test_config: dict | None = None, deps: dict | None = None) -> Flask:
    """
    Create the health-check app.

    Args:
        test_config: Configuration overrides, e.g. ``{"TESTING": True}``.
        deps: May provide ``status_fn() -> dict`` with at least a ``ready``
            key; extra keys are echoed in responses.
    """
    app = Flask(__name__)
    if test_config:
        app.config.update(test_config)

    deps = deps or {}
    app.extensions["deps"] = {
        "status_fn": deps.get("status_fn") or _default_status,
    }

    from worker.health.routes import health_bp  # pylint: disable=import-outside-toplevel
    app.register_blueprint(health_bp)

    return app


def serve_in_background(app: Flask, host: str = "0.0.0.0", port: int = 8001) -> BaseWSGIServer:
    """Serve ``app`` from a daemon thread; call ``shutdown()`` on the result to stop."""
    server = make_server(host, port, app, threaded=True)
    thread = threading.Thread(target=server.serve_forever, name="worker-health", daemon=True)
    thread.start()
    logger.info("Worker health endpoints listening on %s:%s", host, server.server_port)
    return server
