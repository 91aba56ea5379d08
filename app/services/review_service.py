"""
Well-Architected Review Service
Review Session Orchestrator.

Drives a review session from start to report:

    start_review()  → session row in "processing", background run submitted
    run_review()    → six steps: initialize, collect environment, auto-answer,
                      persist, prepare questions, ready ("in_progress")
    submit_user_answer() → user answer + AI-derived answers for other questions;
                      the answer that closes the last open question triggers
                      report synthesis
    generate_final_report() → runs at most once per session ("completed")
    submit_bulk_answers() → several answers in one call, no derivation;
                      per-item results, same completion rule
    refresh_environment() → re-run some collectors and merge them into the
                      stored snapshot (in_progress sessions only)
    get_collector_analysis() → one collector on demand, failures raised

Architecture:
    Collaborators are injected (environment provider, narrative engine,
    task runner) so tests can substitute fakes. Narrative output is only
    ever seen through app.ai.interpreter result types.

    No in-process lock is held across an external call. Every step reads the
    session, does its I/O, then writes back a delta and commits. The answer
    unique constraint (INSERT ... ON CONFLICT) and the conditional UPDATE on
    report_started_at are the only serialization points.

    Two concurrent submissions for the same question race last-write-wins.

Failure policy:
    - single collector failure   → recorded in the snapshot, never raised
    - whole collection failure   → UpstreamFatalError → session "failed"
    - refresh or single-collector failure → UpstreamFatalError, snapshot kept
    - auto-answer/derivation failure → zero results
    - report synthesis failure   → placeholder report, session still completes
"""

import contextvars
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import and_, func, select, update

from app.ai.interpreter import (
    AutoAnswerResult,
    ReportResult,
    interpret_auto_answers,
    interpret_derivation,
    interpret_report,
)
from app.core.exceptions import (
    ConflictError,
    NotFoundError,
    NotReadyError,
    UpstreamFatalError,
    ValidationError,
)
from app.middleware.logging_config import review_context
from app.models import db
from app.models.review import (
    ANSWER_SOURCES,
    REVIEW_STEPS,
    Answer,
    Pillar,
    Question,
    ReviewSession,
    build_progress,
    upsert_answer,
)
from app.services.question_catalog import (
    count_questions,
    get_question_by_key,
    list_session_answers,
)

logger = logging.getLogger(__name__)

EXTENSION_KEY = "review_orchestrator"

_MAX_ERROR_LENGTH = 2000

MAX_COST_TREND_DAYS = 365


def _question_payload(q: Question) -> dict:
    return {
        "question_key": q.question_key,
        "question_text": q.question_text,
        "pillar": q.pillar.name if q.pillar else None,
        "category": q.category,
    }


class ReviewOrchestrator:
    """Owns the review session state machine.

    Args:
        environment_provider: object with ``collect() -> dict``.
        narrative_engine: object with ``invoke(prompt_name, context, mode=None, *, session_id=None) -> str``.
        task_runner: TaskRunner used by start_review(); None runs reviews inline.
        user_confidence: Confidence stored for direct user answers.
        default_agent_confidence: Used when the model omits a confidence.
        collection_timeout: Upper bound (seconds) on the whole environment collection.
    """

    def __init__(
        self,
        environment_provider,
        narrative_engine,
        task_runner=None,
        *,
        user_confidence: float = 0.9,
        default_agent_confidence: float = 0.8,
        collection_timeout: float = 180.0,
    ):
        self.environment_provider = environment_provider
        self.narrative_engine = narrative_engine
        self.task_runner = task_runner
        self.user_confidence = user_confidence
        self.default_agent_confidence = default_agent_confidence
        self.collection_timeout = collection_timeout

    # ═════════════════════════════════════════════════════════════════════
    # Session lifecycle
    # ═════════════════════════════════════════════════════════════════════

    def start_review(self) -> dict:
        """Create a session and hand the review run to the background runner.

        Returns at once; callers poll get_review_status(). Every call creates
        a new session, so a review is never started twice for one id.
        """
        session = ReviewSession(
            status="processing",
            progress=build_progress(0, "Review queued", percentage=0),
        )
        db.session.add(session)
        db.session.commit()
        session_id = session.id
        logger.info("Review session created", extra={"session_id": session_id})

        if self.task_runner is not None:
            self.task_runner.submit(session_id, self.run_review, session_id,
                                    on_error=self._handle_task_error)
        else:
            try:
                self.run_review(session_id)
            except Exception as e:
                logger.exception("Inline review run failed", extra={"session_id": session_id})
                db.session.rollback()
                self._handle_task_error(session_id, e)

        return {"session_id": session_id, "status": "processing"}

    def run_review(self, session_id: str) -> None:
        """Run the six review steps for a session in ``processing``.

        Progress is recorded when each step starts and again when it finishes.
        """
        with review_context(session_id):
            self._run_steps(session_id)

    def _run_steps(self, session_id: str) -> None:
        session = db.session.get(ReviewSession, session_id)
        if session is None:
            raise NotFoundError(resource="ReviewSession", resource_id=session_id)
        if session.status != "processing":
            logger.warning("run_review skipped: session is %s", session.status,
                           extra={"session_id": session_id})
            return

        # 1. Initialize
        self.update_progress(session_id, 1, "Initializing Well-Architected review")
        total = count_questions()
        self.update_progress(session_id, 1, f"Review initialized with {total} questions", done=True)

        # 2. Collect environment data
        self.update_progress(session_id, 2, "Collecting AWS environment data")
        try:
            snapshot = self._collect_environment()
        except UpstreamFatalError as e:
            logger.error("Environment collection failed: %s", e,
                         extra={"session_id": session_id, "step": 2})
            self.mark_failed(session_id, str(e))
            return
        service_status = snapshot.get("service_status") or {}
        self.update_progress(
            session_id, 2,
            f"Environment data collected: {service_status.get('successful_services', 0)}"
            f"/{service_status.get('total_services', 0)} services available",
            done=True,
        )

        # 3. Auto-answer
        self.update_progress(session_id, 3, "Analyzing environment data with AI")
        raw_output, auto_result = self._auto_answer(session_id, snapshot)
        auto_count = self._store_auto_answers(session_id, auto_result)
        self.update_progress(session_id, 3, f"AI analysis answered {auto_count} questions", done=True)

        # 4. Persist & summarize
        self.update_progress(session_id, 4, "Storing analysis results")
        session = db.session.get(ReviewSession, session_id)
        session.environment_snapshot = snapshot
        session.narrative_output = {
            "raw": raw_output,
            "auto_answer": auto_result.to_dict(),
            "auto_answered_count": auto_count,
        }
        db.session.commit()
        self.update_progress(session_id, 4, "Analysis results stored", done=True)

        # 5. Prepare questions
        self.update_progress(session_id, 5, "Preparing questions")
        unanswered = self._unanswered_questions(session_id)
        next_key = unanswered[0].question_key if unanswered else None
        self.update_progress(session_id, 5, f"{len(unanswered)} questions left for the user", done=True)

        # 6. Ready
        self.update_progress(session_id, 6, "Opening the review for answers")
        session = db.session.get(ReviewSession, session_id)
        session.transition_to("in_progress")
        db.session.commit()
        self.update_progress(
            session_id, 6,
            f"Review ready: {auto_count} questions answered automatically, "
            f"{len(unanswered)} remaining",
            done=True,
        )
        logger.info("Review ready: auto_answered=%d remaining=%d next=%s",
                    auto_count, len(unanswered), next_key,
                    extra={"session_id": session_id, "step": 6})

        if not unanswered:
            self.generate_final_report(session_id)

    def update_progress(self, session_id: str, step: int, message: str,
                        percentage: int | None = None, *, done: bool = False) -> None:
        """Store the progress descriptor for ``step``. Never raises."""
        try:
            session = db.session.get(ReviewSession, session_id)
            if session is None:
                logger.warning("Progress update for unknown session", extra={"session_id": session_id})
                return
            session.progress = build_progress(step, message, percentage, done=done)
            db.session.commit()
            logger.info("Progress %s%%: %s", session.progress["percentage"], message,
                        extra={"session_id": session_id, "step": step})
        except Exception as e:
            logger.error("Progress update failed: %s", e, extra={"session_id": session_id, "step": step})
            db.session.rollback()

    def mark_failed(self, session_id: str, error) -> bool:
        """Move a session to ``failed`` with the error attached.

        Returns False when the session is unknown or already past processing.
        """
        session = db.session.get(ReviewSession, session_id)
        if session is None:
            logger.warning("mark_failed: unknown session", extra={"session_id": session_id})
            return False
        if not session.can_transition_to("failed"):
            logger.warning("mark_failed ignored: session is %s (%s)", session.status, error,
                           extra={"session_id": session_id})
            return False

        message = str(error)[:_MAX_ERROR_LENGTH]
        current = session.progress or {}
        session.transition_to("failed")
        session.error_message = message
        session.progress = build_progress(
            current.get("current_step", 0),
            f"Review failed: {message}",
            percentage=current.get("percentage", 0),
            done=False,
        )
        db.session.commit()
        logger.error("Review session failed: %s", message, extra={"session_id": session_id})
        return True

    def _handle_task_error(self, session_id: str, exc: Exception) -> None:
        self.mark_failed(session_id, f"{type(exc).__name__}: {exc}")

    # ═════════════════════════════════════════════════════════════════════
    # Queries
    # ═════════════════════════════════════════════════════════════════════

    def _get_session(self, session_id: str) -> ReviewSession:
        session = db.session.get(ReviewSession, session_id)
        if session is None:
            raise NotFoundError(resource="ReviewSession", resource_id=session_id)
        return session

    def _unanswered_questions(self, session_id: str) -> list[Question]:
        answered = select(Answer.question_id).where(Answer.session_id == session_id)
        stmt = (
            select(Question)
            .join(Pillar, Question.pillar_id == Pillar.id)
            .where(Question.id.not_in(answered))
            .order_by(Question.priority.desc(), Pillar.name, Question.category, Question.id)
        )
        return list(db.session.execute(stmt).scalars())

    def _answered_count(self, session_id: str) -> int:
        return db.session.execute(
            select(func.count(Answer.id)).where(Answer.session_id == session_id)
        ).scalar_one()

    def get_unanswered_questions(self, session_id: str) -> list[dict]:
        """Unanswered questions: priority desc, then pillar name, category, id."""
        self._get_session(session_id)
        return [q.to_dict() for q in self._unanswered_questions(session_id)]

    def get_review_status(self, session_id: str) -> dict:
        session = self._get_session(session_id)
        total = count_questions()
        answered = self._answered_count(session_id)
        unanswered = self._unanswered_questions(session_id)

        return {
            "session_id": session.id,
            "status": session.status,
            "total_questions": total,
            "answered_questions": answered,
            "remaining_questions": len(unanswered),
            "next_question": unanswered[0].to_dict() if unanswered else None,
            "is_complete": not unanswered,
            "progress": round(100 * answered / total) if total else 0,
            "progress_details": session.progress,
            "error": session.error_message if session.status == "failed" else None,
            "created_at": session.created_at.isoformat() if session.created_at else None,
            "updated_at": session.updated_at.isoformat() if session.updated_at else None,
        }

    def get_next_question(self, session_id: str) -> dict:
        status = self.get_review_status(session_id)
        question = status["next_question"]
        return {
            "session_id": session_id,
            "status": status["status"],
            "completed": question is None,
            "question": question,
            "progress": {
                "answered": status["answered_questions"],
                "total": status["total_questions"],
                "percentage": status["progress"],
            },
        }

    def get_session_progress(self, session_id: str) -> dict:
        """Answer coverage per pillar and per answer source."""
        self._get_session(session_id)
        rows = db.session.execute(
            select(Pillar.name, func.count(Question.id), func.count(Answer.id))
            .select_from(Pillar)
            .join(Question, Question.pillar_id == Pillar.id)
            .outerjoin(Answer, and_(Answer.question_id == Question.id, Answer.session_id == session_id))
            .group_by(Pillar.id, Pillar.name)
            .order_by(Pillar.name)
        ).all()
        by_pillar = [
            {
                "pillar_name": name,
                "total_questions": total,
                "answered_questions": answered,
                "completion_percentage": round(100 * answered / total, 2) if total else 0,
            }
            for name, total, answered in rows
        ]
        by_source = dict.fromkeys(sorted(ANSWER_SOURCES), 0)
        for source, count in db.session.execute(
            select(Answer.source, func.count(Answer.id))
            .where(Answer.session_id == session_id)
            .group_by(Answer.source)
        ).all():
            by_source[source] = count

        total = sum(p["total_questions"] for p in by_pillar)
        answered = sum(p["answered_questions"] for p in by_pillar)
        return {
            "session_id": session_id,
            "overall": round(100 * answered / total) if total else 0,
            "total_questions": total,
            "answered_questions": answered,
            "by_pillar": by_pillar,
            "by_source": by_source,
        }

    def get_final_report(self, session_id: str) -> dict:
        """Report, every answer (pillar, category, question order) and the snapshot.

        Raises:
            NotFoundError: unknown session.
            NotReadyError: session is not completed.
        """
        session = self._get_session(session_id)
        if session.status != "completed":
            raise NotReadyError(session_id, session.status)
        return {
            "session_id": session.id,
            "status": session.status,
            "report": session.report,
            "answers": list_session_answers(session_id),
            "environment_snapshot": session.environment_snapshot,
            "completed_at": session.updated_at.isoformat() if session.updated_at else None,
        }

    def get_environment_analysis(self) -> dict:
        """Run a fresh environment collection without a session (debug route)."""
        return self._collect_environment()

    def get_collector_analysis(self, collector: str, **options) -> dict:
        """Run one collector on its own.

        Raises:
            NotFoundError: unknown collector name.
            UpstreamFatalError: the collector failed or the bound expired.
        """
        if collector not in self.environment_provider.COLLECTORS:
            raise NotFoundError(resource="Collector", resource_id=collector)
        data = self._bounded(f"{collector} analysis", self.environment_provider.analyze,
                             collector, **options)
        return {
            "collector": collector,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def get_cost_trends(self, days: int = 30) -> dict:
        if not 1 <= days <= MAX_COST_TREND_DAYS:
            raise ValidationError(f"days must be between 1 and {MAX_COST_TREND_DAYS}",
                                  details={"days": days})
        data = self.get_collector_analysis("cost", days=days)["data"]
        return {
            "period_days": days,
            "total_cost": data.get("total_cost"),
            "cost_trend": data.get("cost_trend"),
            "daily_costs": data.get("daily_costs", []),
            "top_services": data.get("top_services", []),
        }

    def get_security_recommendations(self) -> dict:
        data = self.get_collector_analysis("iam")["data"]
        items = data.get("finding_recommendations", [])
        return {
            "items": items,
            "total": len(items),
            "findings_count": len(data.get("security_findings", [])),
        }

    def refresh_environment(self, session_id: str, collectors: list[str] | None = None) -> dict:
        """Re-run some or all collectors and store the merged snapshot on the session.

        Raises:
            NotFoundError: unknown session.
            ValidationError: unknown collector names.
            ConflictError: session is not in_progress.
            UpstreamFatalError: the refresh failed; the stored snapshot is kept.
        """
        session = self._get_session(session_id)
        known = self.environment_provider.COLLECTORS
        names = list(collectors) if collectors else list(known)
        unknown = [n for n in names if n not in known]
        if unknown:
            raise ValidationError(f"Unknown collectors: {', '.join(map(str, unknown))}",
                                  details={"collectors": unknown})
        if session.status != "in_progress":
            raise ConflictError("ReviewSession", "status", session.status)

        previous = session.environment_snapshot
        db.session.commit()
        snapshot = self._bounded("Environment refresh", self.environment_provider.refresh,
                                 previous, names)

        session = self._get_session(session_id)
        if session.status != "in_progress":
            raise ConflictError("ReviewSession", "status", session.status)
        session.environment_snapshot = snapshot
        db.session.commit()
        logger.info("Environment snapshot refreshed: %s", ", ".join(names),
                    extra={"session_id": session_id})
        return {
            "session_id": session_id,
            "refreshed": names,
            "service_status": snapshot.get("service_status"),
            "timestamp": snapshot.get("timestamp"),
        }

    # ═════════════════════════════════════════════════════════════════════
    # Answers
    # ═════════════════════════════════════════════════════════════════════

    def submit_user_answer(self, session_id: str, question_key: str, answer_text: str) -> dict:
        """Record a user answer, derive answers for other open questions,
        and synthesize the report when nothing is left open.

        Raises:
            NotFoundError: unknown session or question key.
            ValidationError: empty answer text.
            ConflictError: session is not accepting answers.
        """
        session = self._get_session(session_id)
        if not answer_text or not str(answer_text).strip():
            raise ValidationError("Answer text is required", details={"answer": "required"})
        question = get_question_by_key(question_key)
        if session.status != "in_progress":
            raise ConflictError("ReviewSession", "status", session.status)

        answer_text = str(answer_text).strip()
        upsert_answer(
            question_id=question.id,
            session_id=session_id,
            answer_text=answer_text,
            confidence=self.user_confidence,
            source="user",
        )
        session.transition_to("in_progress")
        db.session.commit()
        logger.info("User answer recorded for %s", question.question_key,
                    extra={"session_id": session_id})

        derived_count, assessment = self.resolve_derived_answers(session_id, question, answer_text)

        unanswered = self._unanswered_questions(session_id)
        if not unanswered:
            self.generate_final_report(session_id)

        return {
            "session_id": session_id,
            "is_complete": not unanswered,
            "additional_answers_count": derived_count,
            "next_question": unanswered[0].to_dict() if unanswered else None,
            "total_questions": count_questions(),
            "answered_questions": self._answered_count(session_id),
            "primary_assessment": assessment,
        }

    def submit_bulk_answers(self, session_id: str, items: list) -> dict:
        """Record several answers at once, without answer derivation.

        Invalid items are reported per item and do not stop the others. Each
        valid item is upserted (last write wins). When nothing is left open
        the report is synthesized.

        Raises:
            NotFoundError: unknown session.
            ConflictError: session is not accepting answers.
        """
        session = self._get_session(session_id)
        if session.status != "in_progress":
            raise ConflictError("ReviewSession", "status", session.status)

        results = []
        for item in items:
            if not isinstance(item, dict):
                results.append({"question_key": None, "success": False, "error": "Item must be an object"})
                continue
            key = str(item.get("question_key") or item.get("questionKey") or "").strip()
            error, question, confidence = self._validate_bulk_item(key, item)
            if error:
                results.append({"question_key": key or None, "success": False, "error": error})
                continue
            upsert_answer(
                question_id=question.id,
                session_id=session_id,
                answer_text=item["answer"].strip(),
                confidence=confidence,
                source=item.get("source") or "user",
                justification=item.get("justification"),
            )
            results.append({"question_key": question.question_key, "success": True})

        session.transition_to("in_progress")
        db.session.commit()
        succeeded = sum(1 for r in results if r["success"])
        logger.info("Bulk answers recorded: %d ok, %d rejected", succeeded, len(results) - succeeded,
                    extra={"session_id": session_id})

        unanswered = self._unanswered_questions(session_id)
        if not unanswered:
            self.generate_final_report(session_id)

        return {
            "session_id": session_id,
            "results": results,
            "successful": succeeded,
            "failed": len(results) - succeeded,
            "is_complete": not unanswered,
            "next_question": unanswered[0].to_dict() if unanswered else None,
            "total_questions": count_questions(),
            "answered_questions": self._answered_count(session_id),
        }

    def _validate_bulk_item(self, key: str, item: dict):
        """Return (error, question, confidence); error is None for a valid item."""
        answer = item.get("answer")
        if not key or not isinstance(answer, str) or not answer.strip():
            return "question_key and answer are required", None, None
        source = item.get("source") or "user"
        if not isinstance(source, str) or source not in ANSWER_SOURCES:
            return f"Unknown source: {source}", None, None

        confidence = item.get("confidence")
        if confidence is None:
            confidence = self.user_confidence if source == "user" else self.default_agent_confidence
        elif (isinstance(confidence, bool) or not isinstance(confidence, (int, float))
              or not 0.0 <= confidence <= 1.0):
            return "confidence must be a number between 0 and 1", None, None

        try:
            question = get_question_by_key(key)
        except NotFoundError:
            return "Question not found", None, None
        return None, question, float(confidence)

    def resolve_derived_answers(self, session_id: str, question: Question,
                                answer_text: str) -> tuple[int, dict | None]:
        """Ask the engine which other open questions ``answer_text`` also answers.

        Candidates are the session's unanswered questions minus the primary one.
        Derived answers are inserted only where no answer exists yet.

        Returns:
            (number of answers inserted, primary answer assessment or None)
        """
        candidates = [q for q in self._unanswered_questions(session_id) if q.id != question.id]
        if not candidates:
            return 0, None

        try:
            raw = self.narrative_engine.invoke(
                "derive_answers",
                {
                    "question_key": question.question_key,
                    "question_text": question.question_text,
                    "answer_text": answer_text,
                    "candidates": [_question_payload(q) for q in candidates],
                },
                session_id=session_id,
            )
        except Exception as e:
            logger.warning("Answer derivation unavailable: %s", e, extra={"session_id": session_id})
            db.session.commit()
            return 0, None

        result = interpret_derivation(raw, default_confidence=self.default_agent_confidence)
        by_key = {q.question_key.upper(): q for q in candidates}

        inserted = 0
        for derived in result.derived:
            target = by_key.get(derived.question_key.upper())
            if target is None:
                logger.debug("Ignoring derived answer for non-candidate %s", derived.question_key,
                             extra={"session_id": session_id})
                continue
            if upsert_answer(
                question_id=target.id,
                session_id=session_id,
                answer_text=derived.answer,
                confidence=derived.confidence,
                source="agent_derived",
                justification=derived.justification,
                overwrite=False,
            ):
                inserted += 1
        db.session.commit()

        if inserted:
            logger.info("Derived %d additional answers from %s", inserted, question.question_key,
                        extra={"session_id": session_id})
        return inserted, result.primary_assessment

    # ═════════════════════════════════════════════════════════════════════
    # Report synthesis
    # ═════════════════════════════════════════════════════════════════════

    def _claim_report(self, session_id: str) -> bool:
        result = db.session.execute(
            update(ReviewSession)
            .where(ReviewSession.id == session_id, ReviewSession.report_started_at.is_(None))
            .values(report_started_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount == 1

    def generate_final_report(self, session_id: str) -> bool:
        """Synthesize the final report and complete the session.

        Only the first caller per session runs synthesis; the rest return False.
        """
        if not self._claim_report(session_id):
            logger.info("Report synthesis already claimed", extra={"session_id": session_id})
            return False

        session = self._get_session(session_id)
        answers = list_session_answers(session_id)
        context = {
            "answers": [
                {
                    "question_key": a["question_key"],
                    "question_text": a["question_text"],
                    "pillar": a["pillar_name"],
                    "category": a["category"],
                    "answer": a["answer_text"],
                    "confidence": a["confidence_score"],
                    "source": a["source"],
                }
                for a in answers
            ],
            "environment_data": session.environment_snapshot or {},
        }

        try:
            raw = self.narrative_engine.invoke("final_report", context, session_id=session_id)
            report = interpret_report(raw)
        except Exception as e:
            logger.error("Report synthesis failed, storing placeholder report: %s", e,
                         extra={"session_id": session_id})
            db.session.commit()
            report = ReportResult.fallback(reason=f"Report synthesis failed: {e}")

        session = self._get_session(session_id)
        session.report = {
            **report.to_dict(),
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "answer_count": len(answers),
        }
        session.transition_to("completed")
        session.progress = build_progress(len(REVIEW_STEPS), "Review completed")
        db.session.commit()
        logger.info("Review completed (report parsed=%s)", report.parsed,
                    extra={"session_id": session_id})
        return True

    # ═════════════════════════════════════════════════════════════════════
    # Internal steps
    # ═════════════════════════════════════════════════════════════════════

    def _collect_environment(self) -> dict:
        """Run ``collect()`` with an upper bound on the whole call.

        Raises:
            UpstreamFatalError: the provider raised, or the bound expired.
        """
        return self._bounded("Environment collection", self.environment_provider.collect)

    def _bounded(self, label: str, fn, *args, **kwargs):
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="env-collect")
        future = executor.submit(contextvars.copy_context().run, fn, *args, **kwargs)
        try:
            return future.result(timeout=self.collection_timeout)
        except FuturesTimeout as e:
            raise UpstreamFatalError(
                f"{label} timed out after {self.collection_timeout:g}s", cause=e,
            ) from e
        except Exception as e:
            raise UpstreamFatalError(f"{label} failed: {e}", cause=e) from e
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _auto_answer(self, session_id: str, snapshot: dict) -> tuple[str | None, AutoAnswerResult]:
        questions = db.session.execute(
            select(Question).order_by(Question.id)
        ).scalars().all()
        context = {
            "environment_data": snapshot,
            "questions": [_question_payload(q) for q in questions],
        }
        try:
            raw = self.narrative_engine.invoke("auto_answer", context, session_id=session_id)
        except Exception as e:
            logger.warning("Auto-answer unavailable, continuing with zero answers: %s", e,
                           extra={"session_id": session_id, "step": 3})
            db.session.commit()
            return None, AutoAnswerResult.fallback(summary=f"AI analysis unavailable: {e}")
        return raw, interpret_auto_answers(raw, default_confidence=self.default_agent_confidence)

    def _store_auto_answers(self, session_id: str, result: AutoAnswerResult) -> int:
        by_key = {
            key.upper(): qid
            for qid, key in db.session.execute(select(Question.id, Question.question_key)).all()
        }
        stored = 0
        for auto in result.answers:
            question_id = by_key.get(auto.question_key.upper())
            if question_id is None:
                logger.debug("Ignoring auto-answer for unknown question %s", auto.question_key,
                             extra={"session_id": session_id})
                continue
            upsert_answer(
                question_id=question_id,
                session_id=session_id,
                answer_text=auto.answer,
                confidence=auto.confidence,
                source="agent",
                justification=auto.justification,
            )
            stored += 1
        db.session.commit()
        return stored


# ── App wiring ───────────────────────────────────────────────────────────────

def init_review_services(app, *, environment_provider=None, narrative_engine=None, task_runner=None):
    """Build the orchestrator and its collaborators from app config.

    Stored on ``app.extensions["review_orchestrator"]``.
    """
    from app.ai.gateway import LLMGateway
    from app.ai.narrative_engine import NarrativeEngine
    from app.ai.prompt_registry import PromptRegistry
    from app.ai.task_runner import TaskRunner
    from app.integrations.aws_environment import AWSEnvironmentProvider

    cfg = app.config
    if environment_provider is None:
        environment_provider = AWSEnvironmentProvider.from_app(app)
    if narrative_engine is None:
        gateway = LLMGateway(app=app)
        narrative_engine = NarrativeEngine(gateway, PromptRegistry(cfg.get("PROMPTS_DIR") or None))
    if task_runner is None and cfg.get("RUN_REVIEWS_IN_BACKGROUND", True):
        task_runner = TaskRunner(app)

    orchestrator = ReviewOrchestrator(
        environment_provider,
        narrative_engine,
        task_runner,
        user_confidence=cfg.get("REVIEW_USER_CONFIDENCE", 0.9),
        default_agent_confidence=cfg.get("REVIEW_DEFAULT_AGENT_CONFIDENCE", 0.8),
        collection_timeout=cfg.get("COLLECTION_TIMEOUT_SECONDS", 180.0),
    )
    app.extensions[EXTENSION_KEY] = orchestrator
    return orchestrator


def get_orchestrator() -> ReviewOrchestrator:
    return current_app.extensions[EXTENSION_KEY]
