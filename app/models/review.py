"""
Well-Architected Review Service
Review domain models.

Models:
    - Pillar: Well-Architected pillar (grouping of questions)
    - Question: Static framework question, seeded once, read-only at runtime
    - ReviewSession: One guided review run (status, progress, snapshot, report)
    - Answer: Session-scoped answer to one question, unique per (question, session)

Session state machine (SESSION_TRANSITIONS):
    processing  -> in_progress | failed
    in_progress -> in_progress | completed
    completed   -> (terminal)
    failed      -> (terminal)
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import select

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

SESSION_STATUSES = {"processing", "in_progress", "completed", "failed"}

SESSION_TRANSITIONS = {
    "processing": {"in_progress", "failed"},
    "in_progress": {"in_progress", "completed"},
    "completed": set(),
    "failed": set(),
}

ANSWER_SOURCES = {"user", "agent", "agent_derived"}

# (step id, display name, progress percentage) — order matters
REVIEW_STEPS = [
    ("initializing", "Initializing Review", 10),
    ("aws_analysis", "Analyzing AWS Environment", 30),
    ("ai_analysis", "AI Analysis of Environment Data", 60),
    ("storing_results", "Storing Analysis Results", 80),
    ("preparing_questions", "Preparing Questions", 90),
    ("complete", "Review Ready", 100),
]


def _utcnow():
    return datetime.now(timezone.utc)


def build_progress(step: int, message: str, percentage: int | None = None, *, done: bool = True) -> dict:
    """Build the progress descriptor stored on a session for a given step (1-based).

    ``done`` is False while the step is still running; the step then does not
    count as completed in ``steps``.
    """
    if percentage is None and 1 <= step <= len(REVIEW_STEPS):
        percentage = REVIEW_STEPS[step - 1][2]
    return {
        "current_step": step,
        "step_done": done,
        "message": message,
        "percentage": percentage,
        "timestamp": _utcnow().isoformat(),
        "steps": [
            {"id": step_id, "name": name, "completed": idx < step or (idx == step and done)}
            for idx, (step_id, name, _pct) in enumerate(REVIEW_STEPS, start=1)
        ],
    }


# ── Pillar ───────────────────────────────────────────────────────────────────

class Pillar(db.Model):
    """Well-Architected pillar (e.g. Security, Reliability)."""

    __tablename__ = "pillars"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, unique=True)
    description = db.Column(db.Text, default="")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    questions = db.relationship("Question", back_populates="pillar", lazy="select")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
        }

    def __repr__(self):
        return f"<Pillar {self.name}>"


# ── Question ─────────────────────────────────────────────────────────────────

class Question(db.Model):
    """Framework question. Identity for callers is ``question_key`` (e.g. SEC02)."""

    __tablename__ = "questions"

    id = db.Column(db.Integer, primary_key=True)
    pillar_id = db.Column(
        db.Integer, db.ForeignKey("pillars.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    question_key = db.Column(db.String(20), nullable=False, unique=True)
    question_text = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(150), default="")
    priority = db.Column(db.Integer, nullable=False, default=1, comment="Higher is asked first")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    pillar = db.relationship("Pillar", back_populates="questions")

    def to_dict(self):
        return {
            "id": self.id,
            "question_key": self.question_key,
            "question_text": self.question_text,
            "category": self.category,
            "priority": self.priority,
            "pillar_name": self.pillar.name if self.pillar else None,
        }

    def __repr__(self):
        return f"<Question {self.question_key}>"


# ── ReviewSession ────────────────────────────────────────────────────────────

class ReviewSession(db.Model):
    """One guided Well-Architected review run."""

    __tablename__ = "review_sessions"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    status = db.Column(db.String(20), nullable=False, default="processing", index=True)

    environment_snapshot = db.Column(db.JSON, nullable=True, comment="Aggregated collector output, may be partial")
    narrative_output = db.Column(db.JSON, nullable=True, comment="Raw + parsed auto-answer analysis")
    report = db.Column(db.JSON, nullable=True, comment="Final report, present once completed")
    progress = db.Column(db.JSON, nullable=True)
    error_message = db.Column(db.Text, nullable=True)

    # Set by the single caller that wins the report-synthesis claim
    report_started_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    answers = db.relationship(
        "Answer", back_populates="session", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('processing','in_progress','completed','failed')",
            name="ck_review_session_status",
        ),
    )

    def can_transition_to(self, new_status: str) -> bool:
        return new_status in SESSION_TRANSITIONS.get(self.status, set())

    def transition_to(self, new_status: str):
        """Move to ``new_status`` or raise InvalidStateError for an illegal edge."""
        from app.core.exceptions import InvalidStateError

        if new_status not in SESSION_STATUSES:
            raise ValueError(f"Unknown review session status: {new_status}")
        if not self.can_transition_to(new_status):
            raise InvalidStateError(
                f"Review session cannot move from '{self.status}' to '{new_status}'",
                current_status=self.status,
            )
        self.status = new_status
        self.updated_at = _utcnow()

    def to_dict(self):
        return {
            "session_id": self.id,
            "status": self.status,
            "progress": self.progress,
            "error": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<ReviewSession {self.id} status={self.status}>"


# ── Answer ───────────────────────────────────────────────────────────────────

class Answer(db.Model):
    """Answer to one question within one review session."""

    __tablename__ = "answers"

    id = db.Column(db.Integer, primary_key=True)
    question_id = db.Column(
        db.Integer, db.ForeignKey("questions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    session_id = db.Column(
        db.String(36), db.ForeignKey("review_sessions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    answer_text = db.Column(db.Text, nullable=False)
    confidence_score = db.Column(db.Float, default=0.0)
    source = db.Column(db.String(20), nullable=False, default="user")
    justification = db.Column(db.Text, nullable=True, comment="Why the AI inferred this answer")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    question = db.relationship("Question")
    session = db.relationship("ReviewSession", back_populates="answers")

    __table_args__ = (
        db.UniqueConstraint("question_id", "session_id", name="uq_answer_question_session"),
        db.CheckConstraint(
            "source IN ('user','agent','agent_derived')",
            name="ck_answer_source",
        ),
    )

    def to_dict(self):
        q = self.question
        return {
            "id": self.id,
            "question_key": q.question_key if q else None,
            "question_text": q.question_text if q else None,
            "category": q.category if q else None,
            "pillar_name": q.pillar.name if q and q.pillar else None,
            "answer_text": self.answer_text,
            "confidence_score": self.confidence_score,
            "source": self.source,
            "justification": self.justification,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Answer q={self.question_id} s={self.session_id} src={self.source}>"


# ── Store helpers ────────────────────────────────────────────────────────────

def upsert_answer(
    *,
    question_id: int,
    session_id: str,
    answer_text: str,
    confidence: float,
    source: str,
    justification: str | None = None,
    overwrite: bool = True,
) -> bool:
    """Atomically write the answer for (question_id, session_id).

    overwrite=True  → last-write-wins upsert (user / agent answers).
    overwrite=False → insert only if no answer exists yet (derived answers).

    Uses INSERT ... ON CONFLICT on SQLite and PostgreSQL so the uniqueness
    check and the write happen in one statement. Other dialects fall back to
    select-then-write.

    Returns:
        True if a row was inserted or updated, False if an existing answer was kept.
    """
    if source not in ANSWER_SOURCES:
        raise ValueError(f"Unknown answer source: {source}")

    now = _utcnow()
    values = {
        "question_id": question_id,
        "session_id": session_id,
        "answer_text": answer_text,
        "confidence_score": confidence,
        "source": source,
        "justification": justification,
        "created_at": now,
        "updated_at": now,
    }

    dialect = db.session.get_bind().dialect.name
    if dialect in ("sqlite", "postgresql"):
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            from sqlalchemy.dialects.postgresql import insert

        stmt = insert(Answer).values(**values)
        conflict_cols = ["question_id", "session_id"]
        if overwrite:
            stmt = stmt.on_conflict_do_update(
                index_elements=conflict_cols,
                set_={
                    "answer_text": stmt.excluded.answer_text,
                    "confidence_score": stmt.excluded.confidence_score,
                    "source": stmt.excluded.source,
                    "justification": stmt.excluded.justification,
                    "updated_at": now,
                },
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=conflict_cols)
        result = db.session.execute(stmt)
        return (result.rowcount or 0) > 0

    existing = db.session.execute(
        select(Answer).where(
            Answer.question_id == question_id,
            Answer.session_id == session_id,
        )
    ).scalars().first()
    if existing is not None:
        if not overwrite:
            return False
        existing.answer_text = answer_text
        existing.confidence_score = confidence
        existing.source = source
        existing.justification = justification
        existing.updated_at = now
    else:
        db.session.add(Answer(**values))
    db.session.flush()
    return True
