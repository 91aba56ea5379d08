"""
Well-Architected Review Service
Question Catalog Blueprint.

Browsing of pillars, questions and the answers recorded in a review
session, plus bulk answer import.

Routes:
    GET    /api/v1/questions                         ?pillar=&category=
    GET    /api/v1/questions/pillars
    GET    /api/v1/questions/<question_key>
    GET    /api/v1/questions/session/<session_id>/answers
    GET    /api/v1/questions/session/<session_id>/next
    GET    /api/v1/questions/session/<session_id>/progress
    POST   /api/v1/questions/bulk-answer
"""

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

import app.services.question_catalog as catalog
from app.core.exceptions import ConflictError, NotFoundError
from app.services.review_service import get_orchestrator
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

questions_bp = Blueprint("questions", __name__, url_prefix="/api/v1/questions")

MAX_BULK_ANSWERS = 100


@questions_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@questions_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_STATE, str(error), details={"status": error.value})


@questions_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in questions endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


@questions_bp.route("", methods=["GET"])
def list_questions():
    """List questions ordered by pillar, category and priority.

    Query params: pillar (pillar name), category
    """
    items = catalog.list_questions(
        pillar=request.args.get("pillar") or None,
        category=request.args.get("category") or None,
    )
    return jsonify({"items": items, "total": len(items)}), 200


@questions_bp.route("/pillars", methods=["GET"])
def list_pillars():
    items = catalog.list_pillars()
    return jsonify({"items": items, "total": len(items)}), 200


@questions_bp.route("/<question_key>", methods=["GET"])
def get_question(question_key: str):
    return jsonify(catalog.get_question_by_key(question_key).to_dict()), 200


@questions_bp.route("/session/<session_id>/answers", methods=["GET"])
def session_answers(session_id: str):
    """All answers recorded in a session, any source."""
    items = catalog.list_session_answers(session_id)
    return jsonify({"items": items, "total": len(items)}), 200


@questions_bp.route("/session/<session_id>/next", methods=["GET"])
def next_question(session_id: str):
    """Highest-priority unanswered question, or completed=true."""
    return jsonify(get_orchestrator().get_next_question(session_id)), 200


@questions_bp.route("/session/<session_id>/progress", methods=["GET"])
def session_progress(session_id: str):
    """Answer coverage overall, per pillar and per answer source."""
    return jsonify(get_orchestrator().get_session_progress(session_id)), 200


@questions_bp.route("/bulk-answer", methods=["POST"])
def bulk_answer():
    """Record several answers for one session.

    Body: {session_id, answers: [{question_key, answer, confidence?, source?}]}
    Returns per-item results; invalid items do not fail the request.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    session_id = str(data.get("session_id") or data.get("sessionId") or "").strip()
    answers = data.get("answers")
    if not session_id or not isinstance(answers, list):
        return api_error(E.VALIDATION_REQUIRED, "session_id and an answers list are required")
    if len(answers) > MAX_BULK_ANSWERS:
        return api_error(E.VALIDATION_INVALID, f"At most {MAX_BULK_ANSWERS} answers per request")

    return jsonify(get_orchestrator().submit_bulk_answers(session_id, answers)), 200
