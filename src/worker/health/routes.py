"""Liveness and readiness routes."""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify

health_bp = Blueprint("health", __name__, url_prefix="/worker")


def _status() -> dict:
    status_fn = current_app.extensions["deps"]["status_fn"]
    return dict(status_fn())


@health_bp.route("/health")
def health():
    status = _status()
    return jsonify({"status": "ok", **status}), 200


@health_bp.route("/ready")
def ready():
    status = _status()
    if status.get("ready"):
        return jsonify({"status": "ready", **status}), 200
    return jsonify({"status": "not-ready", **status}), 503
