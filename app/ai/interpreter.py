"""
Well-Architected Review Service
Response Interpreter.

Turns free-form narrative-engine output into typed results. Every result
type has a fallback literal used when the text cannot be interpreted, so
callers never see raw text or parse errors:

    AutoAnswerResult.fallback()  → no auto-answers
    DerivationResult.fallback()  → no derived answers
    ReportResult.fallback()      → placeholder report with the six pillars

Models answer in snake_case as the prompts ask, but camelCase keys
(``questionKey``, ``autoAnswers`` ...) are accepted too.
"""

import json
import logging
import math
import re
from dataclasses import asdict, dataclass, field

logger = logging.getLogger(__name__)

PILLAR_NAMES = (
    "Operational Excellence",
    "Security",
    "Reliability",
    "Performance Efficiency",
    "Cost Optimization",
    "Sustainability",
)


# ── JSON extraction ──────────────────────────────────────────────────────────

def extract_json(content: str | None) -> dict | None:
    """Return the first JSON object found in ``content``, or None.

    Handles fenced code blocks and prose around the object.
    """
    if not content:
        return None
    cleaned = content.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r'^```\w*\n?', '', cleaned)
        cleaned = re.sub(r'\n?```$', '', cleaned)

    try:
        data = json.loads(cleaned)
        return data if isinstance(data, dict) else None
    except json.JSONDecodeError:
        pass

    start = cleaned.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i, ch in enumerate(cleaned[start:], start):
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    try:
                        data = json.loads(cleaned[start:i + 1])
                        if isinstance(data, dict):
                            return data
                    except json.JSONDecodeError:
                        pass
                    break
        start = cleaned.find("{", start + 1)
    return None


def _pick(data: dict, *keys, default=None):
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _confidence(value, default: float) -> float:
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(conf):
        return default
    return min(max(conf, 0.0), 1.0)


def _dict_list(value) -> list[dict]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, dict)]


def _str_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) if not isinstance(v, dict) else json.dumps(v) for v in value]


# ── Auto-answer ──────────────────────────────────────────────────────────────

@dataclass
class AutoAnswer:
    question_key: str
    answer: str
    confidence: float
    justification: str | None = None


@dataclass
class AutoAnswerResult:
    answers: list[AutoAnswer] = field(default_factory=list)
    unanswered: list[dict] = field(default_factory=list)
    summary: str = ""
    parsed: bool = True

    @classmethod
    def fallback(cls, summary: str = "") -> "AutoAnswerResult":
        return cls(answers=[], unanswered=[], summary=summary, parsed=False)

    def to_dict(self) -> dict:
        return asdict(self)


def interpret_auto_answers(content: str | None, *, default_confidence: float = 0.8) -> AutoAnswerResult:
    data = extract_json(content)
    if data is None:
        logger.warning("Auto-answer response could not be interpreted; using empty result")
        return AutoAnswerResult.fallback(summary=(content or "")[:500])

    answers = []
    for item in _dict_list(_pick(data, "auto_answers", "autoAnswers")):
        key = _pick(item, "question_key", "questionKey")
        text = _pick(item, "answer", "answer_text")
        if not key or not text:
            continue
        answers.append(AutoAnswer(
            question_key=str(key).strip(),
            answer=str(text),
            confidence=_confidence(item.get("confidence"), default_confidence),
            justification=_pick(item, "justification", "reasoning"),
        ))

    unanswered = [
        {
            "question_key": _pick(item, "question_key", "questionKey"),
            "reason": _pick(item, "reason", default=""),
        }
        for item in _dict_list(_pick(data, "unanswered_questions", "unansweredQuestions"))
    ]

    return AutoAnswerResult(
        answers=answers,
        unanswered=unanswered,
        summary=str(_pick(data, "summary", "overallAssessment", default="")),
    )


# ── Derivation ───────────────────────────────────────────────────────────────

@dataclass
class DerivedAnswer:
    question_key: str
    answer: str
    confidence: float
    justification: str | None = None


@dataclass
class DerivationResult:
    derived: list[DerivedAnswer] = field(default_factory=list)
    primary_assessment: dict | None = None
    parsed: bool = True

    @classmethod
    def fallback(cls) -> "DerivationResult":
        return cls(derived=[], primary_assessment=None, parsed=False)


def interpret_derivation(content: str | None, *, default_confidence: float = 0.8) -> DerivationResult:
    data = extract_json(content)
    if data is None:
        logger.warning("Derivation response could not be interpreted; no derived answers")
        return DerivationResult.fallback()

    derived = []
    for item in _dict_list(_pick(data, "additional_answers", "additionalAnswers")):
        key = _pick(item, "question_key", "questionKey")
        text = _pick(item, "answer", "answer_text")
        if not key or not text:
            continue
        derived.append(DerivedAnswer(
            question_key=str(key).strip(),
            answer=str(text),
            confidence=_confidence(item.get("confidence"), default_confidence),
            justification=_pick(item, "justification", "reasoning"),
        ))

    assessment = _pick(data, "primary_answer_assessment", "primaryAnswerAssessment")
    if not isinstance(assessment, dict):
        assessment = None

    return DerivationResult(derived=derived, primary_assessment=assessment)


# ── Report ───────────────────────────────────────────────────────────────────

@dataclass
class PillarReport:
    score: float | None = None
    status: str = "Not Assessed"
    strengths: list[str] = field(default_factory=list)
    weaknesses: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


@dataclass
class ReportResult:
    overall_score: float | None = None
    pillars: dict[str, PillarReport] = field(default_factory=dict)
    critical_issues: list[str] = field(default_factory=list)
    quick_wins: list[str] = field(default_factory=list)
    action_plan: dict[str, list[str]] = field(
        default_factory=lambda: {"immediate": [], "short_term": [], "long_term": []}
    )
    estimated_cost_impact: str = ""
    parsed: bool = True

    @classmethod
    def fallback(cls, reason: str = "Automated report synthesis was unavailable") -> "ReportResult":
        return cls(
            overall_score=None,
            pillars={
                name: PillarReport(
                    status="Not Assessed",
                    recommendations=["Review the recorded answers for this pillar manually"],
                )
                for name in PILLAR_NAMES
            },
            critical_issues=[],
            quick_wins=[],
            estimated_cost_impact=reason,
            parsed=False,
        )

    def to_dict(self) -> dict:
        return asdict(self)


def _score(value) -> float | None:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    return score if math.isfinite(score) else None


def interpret_report(content: str | None) -> ReportResult:
    data = extract_json(content)
    if data is None:
        logger.warning("Report response could not be interpreted; using placeholder report")
        return ReportResult.fallback()

    pillars = {}
    raw_pillars = data.get("pillars") or {}
    if isinstance(raw_pillars, dict):
        for name, p in raw_pillars.items():
            if not isinstance(p, dict):
                continue
            pillars[str(name)] = PillarReport(
                score=_score(p.get("score")),
                status=str(p.get("status") or "Not Assessed"),
                strengths=_str_list(p.get("strengths")),
                weaknesses=_str_list(p.get("weaknesses")),
                recommendations=_str_list(p.get("recommendations")),
            )

    raw_plan = _pick(data, "action_plan", "actionPlan", default={})
    if not isinstance(raw_plan, dict):
        raw_plan = {}
    action_plan = {
        "immediate": _str_list(raw_plan.get("immediate")),
        "short_term": _str_list(_pick(raw_plan, "short_term", "shortTerm", default=[])),
        "long_term": _str_list(_pick(raw_plan, "long_term", "longTerm", default=[])),
    }

    return ReportResult(
        overall_score=_score(_pick(data, "overall_score", "overallScore")),
        pillars=pillars,
        critical_issues=_str_list(_pick(data, "critical_issues", "criticalIssues", default=[])),
        quick_wins=_str_list(_pick(data, "quick_wins", "quickWins", default=[])),
        action_plan=action_plan,
        estimated_cost_impact=str(_pick(data, "estimated_cost_impact", "estimatedCostImpact", default="")),
    )
