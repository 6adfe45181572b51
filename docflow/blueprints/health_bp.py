"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — dependency status (database, workflow engine)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from docflow.models import db
from docflow.services.workflow_events import WorkflowEventType

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe, always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    # ── Workflow engine ──────────────────────────────────────────────
    engine = current_app.extensions.get("workflow")
    if engine is not None:
        checks["workflow_engine"] = {
            "status": "ok",
            "listeners": {et.value: engine.events.listener_count(et) for et in WorkflowEventType},
        }
    else:
        checks["workflow_engine"] = {"status": "error", "detail": "not initialised"}
        overall = False

    checks["app"] = {
        "name": "docflow",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
