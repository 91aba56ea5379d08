"""
Well-Architected Review Service
LLM call accounting models.

Models:
    - AIUsageLog: Token/cost tracking per LLM call
    - AIAuditLog: Audit trail for every narrative-engine invocation
"""

import hashlib
from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

# Token costs per 1M tokens (input/output)
TOKEN_COSTS = {
    "anthropic.claude-3-sonnet-20240229-v1:0":   {"input": 3.00, "output": 15.00},
    "anthropic.claude-3-haiku-20240307-v1:0":    {"input": 0.25, "output": 1.25},
    "anthropic.claude-3-5-sonnet-20240620-v1:0": {"input": 3.00, "output": 15.00},
    "claude-3-5-haiku-20241022":                 {"input": 1.00, "output": 5.00},
    "claude-3-5-sonnet-20241022":                {"input": 3.00, "output": 15.00},
    "gpt-4o-mini":                               {"input": 0.15, "output": 0.60},
    "gpt-4o":                                    {"input": 2.50, "output": 10.00},
    # Agent invocations are billed through the underlying model; not metered here
    "bedrock-agent":                             {"input": 0.00, "output": 0.00},
    "local-stub":                                {"input": 0.00, "output": 0.00},
}


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Calculate USD cost for a given model + token counts."""
    costs = TOKEN_COSTS.get(model, {"input": 0.0, "output": 0.0})
    return (prompt_tokens * costs["input"] + completion_tokens * costs["output"]) / 1_000_000


def hash_prompt(prompt: str) -> str:
    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()


# ── AIUsageLog ────────────────────────────────────────────────────────────────

class AIUsageLog(db.Model):
    """
    Tracks token usage and cost for every LLM API call.
    """

    __tablename__ = "ai_usage_logs"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(30), nullable=False, comment="bedrock / anthropic / openai / local")
    model = db.Column(db.String(120), nullable=False)
    prompt_tokens = db.Column(db.Integer, default=0)
    completion_tokens = db.Column(db.Integer, default=0)
    total_tokens = db.Column(db.Integer, default=0)
    cost_usd = db.Column(db.Float, default=0.0)
    latency_ms = db.Column(db.Integer, default=0, comment="End-to-end latency in milliseconds")

    # Context
    purpose = db.Column(db.String(100), default="", comment="Prompt name, e.g. auto_answer")
    session_id = db.Column(db.String(36), nullable=True, index=True)

    # Status
    success = db.Column(db.Boolean, default=True)
    error_message = db.Column(db.Text, nullable=True)
    fallback_provider = db.Column(db.String(30), nullable=True, comment="Provider used if primary failed")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "provider": self.provider,
            "model": self.model,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "cost_usd": round(self.cost_usd, 6),
            "latency_ms": self.latency_ms,
            "purpose": self.purpose,
            "session_id": self.session_id,
            "success": self.success,
            "error_message": self.error_message,
            "fallback_provider": self.fallback_provider,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ── AIAuditLog ────────────────────────────────────────────────────────────────

class AIAuditLog(db.Model):
    """Audit trail for every narrative-engine invocation."""

    __tablename__ = "ai_audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(50), nullable=False, comment="llm_call, agent_call")
    provider = db.Column(db.String(30), default="")
    model = db.Column(db.String(120), default="")

    # Request info
    session_id = db.Column(db.String(36), nullable=True, index=True)
    prompt_name = db.Column(db.String(100), default="")
    prompt_hash = db.Column(db.String(64), default="", comment="SHA-256 of prompt for dedup")
    prompt_summary = db.Column(db.String(500), default="", comment="First 500 chars of prompt")

    # Response info
    tokens_used = db.Column(db.Integer, default=0)
    cost_usd = db.Column(db.Float, default=0.0)
    latency_ms = db.Column(db.Integer, default=0)
    response_summary = db.Column(db.String(500), default="", comment="First 500 chars of response")

    # Outcome
    success = db.Column(db.Boolean, default=True)
    error_message = db.Column(db.Text, nullable=True)
    fallback_used = db.Column(db.Boolean, default=False)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "action": self.action,
            "provider": self.provider,
            "model": self.model,
            "session_id": self.session_id,
            "prompt_name": self.prompt_name,
            "prompt_summary": self.prompt_summary,
            "tokens_used": self.tokens_used,
            "cost_usd": round(self.cost_usd, 6),
            "latency_ms": self.latency_ms,
            "response_summary": self.response_summary,
            "success": self.success,
            "error_message": self.error_message,
            "fallback_used": self.fallback_used,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
