"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/live   — simple 200 while the process is up
    GET /api/v1/health/ready  — dependency status (database, AWS, LLM)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from app.models import db
from app.services.review_service import get_orchestrator

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Readiness check with dependency status."""
    checks = {}
    overall = True
    orchestrator = get_orchestrator()

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)
        db.session.rollback()

    # ── AWS credentials ──────────────────────────────────────────────
    test_connection = getattr(orchestrator.environment_provider, "test_connection", None)
    if test_connection is None:
        checks["aws"] = {"status": "skipped", "detail": "provider has no connection test"}
    else:
        result = test_connection()
        if result.get("ok"):
            checks["aws"] = {"status": "ok", "account": result.get("account"),
                             "region": result.get("region")}
        else:
            checks["aws"] = {"status": "error", "detail": result.get("error")}
            overall = False
            logger.error("Health check — AWS failed: %s", result.get("error"))

    # ── LLM configuration ────────────────────────────────────────────
    gateway = getattr(orchestrator.narrative_engine, "gateway", None)
    if gateway is not None:
        checks["llm"] = {"status": "ok", **gateway.describe()}
    else:
        checks["llm"] = {"status": "skipped"}

    # ── App info ─────────────────────────────────────────────────────
    checks["app"] = {
        "name": "Well-Architected Review Service",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
