"""
Well-Architected Review Service
Review Blueprint.

HTTP boundary for the review session lifecycle. Service layer owns all
business logic and commits.

Routes:
    POST   /api/v1/reviews/start
    POST   /api/v1/reviews/<session_id>/answer
    GET    /api/v1/reviews/<session_id>/status
    GET    /api/v1/reviews/<session_id>/unanswered
    GET    /api/v1/reviews/<session_id>/report
    POST   /api/v1/reviews/<session_id>/refresh-analysis
    GET    /api/v1/reviews/aws-analysis
    GET    /api/v1/reviews/aws-analysis/<collector>
    GET    /api/v1/reviews/aws-analysis/cost/trends              ?days=
    GET    /api/v1/reviews/aws-analysis/iam/recommendations
"""

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

from app.core.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    NotReadyError,
    UpstreamFatalError,
    ValidationError,
)
from app.services.review_service import get_orchestrator
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

review_bp = Blueprint("reviews", __name__, url_prefix="/api/v1/reviews")


# ── Error handlers ────────────────────────────────────────────────────────────


@review_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@review_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@review_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_STATE, str(error), details={"status": error.value})


@review_bp.errorhandler(InvalidStateError)
def _handle_invalid_state(error: InvalidStateError):
    return api_error(E.CONFLICT_STATE, str(error), details={"status": error.current_status})


@review_bp.errorhandler(NotReadyError)
def _handle_not_ready(error: NotReadyError):
    return api_error(E.NOT_READY, str(error), details={"status": error.status})


@review_bp.errorhandler(UpstreamFatalError)
def _handle_upstream(error: UpstreamFatalError):
    logger.error("Upstream failure in reviews endpoint=%s: %s", request.endpoint, error)
    return api_error(E.UPSTREAM, str(error))


@review_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in reviews endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Session lifecycle
# ═════════════════════════════════════════════════════════════════════════


@review_bp.route("/start", methods=["POST"])
def start_review():
    """Start a review. Returns 202 at once; poll /status for progress."""
    result = get_orchestrator().start_review()
    return jsonify(result), 202


@review_bp.route("/<session_id>/status", methods=["GET"])
def review_status(session_id: str):
    """Status, counts, next question and progress descriptor."""
    return jsonify(get_orchestrator().get_review_status(session_id)), 200


@review_bp.route("/<session_id>/unanswered", methods=["GET"])
def unanswered_questions(session_id: str):
    items = get_orchestrator().get_unanswered_questions(session_id)
    return jsonify({"items": items, "total": len(items)}), 200


@review_bp.route("/<session_id>/answer", methods=["POST"])
def submit_answer(session_id: str):
    """Submit a user answer.

    Body: {question_key, answer}
    Returns: {is_complete, additional_answers_count, next_question,
              total_questions, answered_questions, primary_assessment}
    """
    data = request.get_json(silent=True) or {}
    question_key = str(data.get("question_key") or data.get("questionKey") or "").strip()
    if not question_key:
        return api_error(E.VALIDATION_REQUIRED, "question_key is required")
    answer = data.get("answer")
    if answer is not None and not isinstance(answer, str):
        return api_error(E.VALIDATION_INVALID, "answer must be a string")

    result = get_orchestrator().submit_user_answer(session_id, question_key, answer or "")
    return jsonify(result), 200


@review_bp.route("/<session_id>/report", methods=["GET"])
def final_report(session_id: str):
    """Final report with every answer. 409 until the review is completed."""
    return jsonify(get_orchestrator().get_final_report(session_id)), 200


@review_bp.route("/<session_id>/refresh-analysis", methods=["POST"])
def refresh_analysis(session_id: str):
    """Re-run environment collectors for an in-progress session.

    Body (optional): {collectors: ["cost", "iam", ...]}; all collectors when omitted.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    collectors = data.get("collectors") or data.get("analysisTypes")
    if collectors is not None and not isinstance(collectors, list):
        return api_error(E.VALIDATION_INVALID, "collectors must be a list")
    return jsonify(get_orchestrator().refresh_environment(session_id, collectors)), 200


# ═════════════════════════════════════════════════════════════════════════
# Environment analysis
# ═════════════════════════════════════════════════════════════════════════


@review_bp.route("/aws-analysis", methods=["GET"])
def aws_analysis():
    """Run a fresh environment collection and return the raw snapshot."""
    return jsonify(get_orchestrator().get_environment_analysis()), 200


@review_bp.route("/aws-analysis/cost/trends", methods=["GET"])
def cost_trends():
    """Daily cost series and trend. Query params: days (default 30)."""
    try:
        days = int(request.args.get("days", 30))
    except ValueError:
        return api_error(E.VALIDATION_INVALID, "days must be an integer")
    return jsonify(get_orchestrator().get_cost_trends(days)), 200


@review_bp.route("/aws-analysis/iam/recommendations", methods=["GET"])
def security_recommendations():
    return jsonify(get_orchestrator().get_security_recommendations()), 200


@review_bp.route("/aws-analysis/<collector>", methods=["GET"])
def collector_analysis(collector: str):
    """Single collector payload (cost, iam, compute, cloudwatch, config, trusted_advisor)."""
    return jsonify(get_orchestrator().get_collector_analysis(collector)), 200
