"""
Question catalog — pillars, questions and session answer listing.

The catalog is seeded once (``flask seed-questions`` or
``scripts/seed_questions.py``) and read-only at runtime.

db.session.commit() is called only by seed_default_questions().
"""

import logging

from sqlalchemy import func, select

from app.core.exceptions import NotFoundError
from app.models import db
from app.models.review import Answer, Pillar, Question, ReviewSession

logger = logging.getLogger(__name__)


# ── Seed data ────────────────────────────────────────────────────────────────

DEFAULT_PILLARS = [
    ("Operational Excellence", "The ability to support development and run workloads effectively"),
    ("Security", "The ability to protect data, systems, and assets"),
    ("Reliability", "The ability to recover from infrastructure or service disruptions"),
    ("Performance Efficiency", "The ability to use computing resources efficiently"),
    ("Cost Optimization", "The ability to run systems to deliver business value at the lowest price point"),
    ("Sustainability", "The ability to continually improve sustainability impacts"),
]

# (pillar, key, text, category, priority)
DEFAULT_QUESTIONS = [
    ("Operational Excellence", "OPS01", "How do you determine what your priorities are?", "Organization", 1),
    ("Operational Excellence", "OPS02", "How do you structure your organization to support your business outcomes?", "Organization", 1),
    ("Operational Excellence", "OPS03", "How does your organizational culture support your business outcomes?", "Organization", 1),
    ("Operational Excellence", "OPS04", "How do you design your workload so that you can understand its state?", "Prepare", 1),
    ("Operational Excellence", "OPS05", "How do you reduce defects, ease remediation, and improve flow into production?", "Prepare", 1),

    ("Security", "SEC01", "How do you securely operate your workload?", "Security Foundations", 1),
    ("Security", "SEC02", "How do you manage identities for people and machines?", "Identity and Access Management", 1),
    ("Security", "SEC03", "How do you manage permissions for people and machines?", "Identity and Access Management", 1),
    ("Security", "SEC04", "How do you detect and investigate security events?", "Detection", 1),
    ("Security", "SEC05", "How do you protect your network resources?", "Infrastructure Protection", 1),

    ("Reliability", "REL01", "How do you manage service quotas and constraints?", "Foundations", 1),
    ("Reliability", "REL02", "How do you plan your network topology?", "Foundations", 1),
    ("Reliability", "REL03", "How do you design your workload service architecture?", "Workload Architecture", 1),
    ("Reliability", "REL04", "How do you design interactions in a distributed system to prevent failures?", "Workload Architecture", 1),
    ("Reliability", "REL05", "How do you design interactions in a distributed system to mitigate or withstand failures?", "Workload Architecture", 1),

    ("Performance Efficiency", "PERF01", "How do you select the best performing architecture?", "Selection", 1),
    ("Performance Efficiency", "PERF02", "How do you select your compute solution?", "Selection", 1),
    ("Performance Efficiency", "PERF03", "How do you select your storage solution?", "Selection", 1),
    ("Performance Efficiency", "PERF04", "How do you select your database solution?", "Selection", 1),
    ("Performance Efficiency", "PERF05", "How do you configure your networking solution?", "Selection", 1),

    ("Cost Optimization", "COST01", "How do you implement cloud financial management?", "Practice Cloud Financial Management", 1),
    ("Cost Optimization", "COST02", "How do you govern usage?", "Expenditure and Usage Awareness", 1),
    ("Cost Optimization", "COST03", "How do you monitor usage and cost?", "Expenditure and Usage Awareness", 1),
    ("Cost Optimization", "COST04", "How do you decommission resources?", "Expenditure and Usage Awareness", 1),
    ("Cost Optimization", "COST05", "How do you evaluate cost when you select services?", "Cost-Effective Resources", 1),

    ("Sustainability", "SUS01", "How do you select AWS Regions for your workload?", "Region Selection", 1),
    ("Sustainability", "SUS02", "How do you take advantage of user behavior patterns?", "User Behavior Patterns", 1),
    ("Sustainability", "SUS03", "How do you take advantage of software and architecture patterns?", "Software and Architecture Patterns", 1),
    ("Sustainability", "SUS04", "How do you take advantage of data patterns?", "Data Patterns", 1),
    ("Sustainability", "SUS05", "How do you select and use hardware patterns for your workload?", "Hardware Patterns", 1),
]


def seed_default_questions() -> dict:
    """Insert the default pillars and questions. Idempotent.

    Returns:
        {"pillars_created": int, "questions_created": int}
    """
    pillars_created = 0
    pillars = {p.name: p for p in db.session.execute(select(Pillar)).scalars()}
    for name, description in DEFAULT_PILLARS:
        if name not in pillars:
            pillar = Pillar(name=name, description=description)
            db.session.add(pillar)
            pillars[name] = pillar
            pillars_created += 1
    db.session.flush()

    questions_created = 0
    existing = set(db.session.execute(select(Question.question_key)).scalars())
    for pillar_name, key, text, category, priority in DEFAULT_QUESTIONS:
        if key in existing:
            continue
        db.session.add(Question(
            pillar_id=pillars[pillar_name].id,
            question_key=key,
            question_text=text,
            category=category,
            priority=priority,
        ))
        questions_created += 1

    db.session.commit()
    logger.info("Question catalog seeded: %d pillars, %d questions created",
                pillars_created, questions_created)
    return {"pillars_created": pillars_created, "questions_created": questions_created}


# ── Reads ────────────────────────────────────────────────────────────────────

def list_pillars() -> list[dict]:
    """Return all pillars ordered by name, with their question counts."""
    stmt = (
        select(Pillar, func.count(Question.id))
        .outerjoin(Question, Question.pillar_id == Pillar.id)
        .group_by(Pillar.id)
        .order_by(Pillar.name)
    )
    return [
        {**pillar.to_dict(), "question_count": count}
        for pillar, count in db.session.execute(stmt).all()
    ]


def list_questions(pillar: str | None = None, category: str | None = None) -> list[dict]:
    """Return questions ordered by pillar name, category, priority (desc) and id."""
    stmt = select(Question).join(Pillar, Question.pillar_id == Pillar.id)
    if pillar:
        stmt = stmt.where(Pillar.name == pillar)
    if category:
        stmt = stmt.where(Question.category == category)
    stmt = stmt.order_by(Pillar.name, Question.category, Question.priority.desc(), Question.id)
    return [q.to_dict() for q in db.session.execute(stmt).scalars()]


def get_question_by_key(question_key: str) -> Question:
    """Return the Question for ``question_key`` (case-insensitive) or raise NotFoundError."""
    question = db.session.execute(
        select(Question).where(func.upper(Question.question_key) == (question_key or "").strip().upper())
    ).scalars().first()
    if question is None:
        raise NotFoundError(resource="Question", resource_id=question_key)
    return question


def count_questions() -> int:
    return db.session.execute(select(func.count(Question.id))).scalar_one()


def list_session_answers(session_id: str) -> list[dict]:
    """Return every answer in a session ordered by pillar, category and question id."""
    if db.session.get(ReviewSession, session_id) is None:
        raise NotFoundError(resource="ReviewSession", resource_id=session_id)
    stmt = (
        select(Answer)
        .join(Question, Answer.question_id == Question.id)
        .join(Pillar, Question.pillar_id == Pillar.id)
        .where(Answer.session_id == session_id)
        .order_by(Pillar.name, Question.category, Question.id)
    )
    return [a.to_dict() for a in db.session.execute(stmt).scalars()]
