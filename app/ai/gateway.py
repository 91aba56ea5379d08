"""
Well-Architected Review Service
LLM Gateway.

Provider-agnostic LLM router with:
    - Multi-provider support (Bedrock model, Bedrock agent, Anthropic, OpenAI, local stub)
    - Auto-retry with exponential backoff
    - Fallback chain (agent -> direct model) on failure
    - Token tracking & cost logging
    - Audit logging

Usage:
    from app.ai.gateway import LLMGateway
    gw = LLMGateway(app=flask_app)
    result = gw.chat(
        [{"role": "user", "content": "Summarise this environment"}],
        model="anthropic.claude-3-sonnet-20240229-v1:0",
        purpose="auto_answer",
    )
"""

import json
import logging
import os
import threading
import time
import uuid
from abc import ABC, abstractmethod

from app.models import db
from app.models.ai import AIAuditLog, AIUsageLog, calculate_cost, hash_prompt

logger = logging.getLogger(__name__)

AGENT_MODEL = "bedrock-agent"
STUB_MODEL = "local-stub"

# First segment of a Bedrock model id, e.g. "anthropic.claude-3-sonnet-..."
_BEDROCK_VENDORS = ("anthropic.", "amazon.", "meta.", "mistral.", "cohere.", "ai21.")


# ── Provider Abstract Base ────────────────────────────────────────────────────

class LLMProvider(ABC):
    """Abstract interface for LLM providers."""

    @abstractmethod
    def chat(self, messages: list, model: str, **kwargs) -> dict:
        """
        Send a chat completion request.

        Args:
            messages: List of {"role": "...", "content": "..."} dicts.
            model: Model identifier string.
            **kwargs: temperature, max_tokens, etc.

        Returns:
            dict with keys: content, prompt_tokens, completion_tokens, model
        """
        ...


def _split_system(messages: list) -> tuple[str, list]:
    system_msg = ""
    chat_messages = []
    for m in messages:
        if m["role"] == "system":
            system_msg = m["content"]
        else:
            chat_messages.append(m)
    return system_msg, chat_messages


def _estimate_tokens(text: str) -> int:
    return len(text.split()) * 2  # rough estimate


def _bedrock_client(service: str, region: str, timeout: float, max_attempts: int):
    import boto3
    from botocore.config import Config as BotoConfig

    # Own session: the boto3 default session is not thread-safe for client creation
    return boto3.session.Session().client(
        service,
        region_name=region,
        config=BotoConfig(
            connect_timeout=10,
            read_timeout=timeout,
            retries={"max_attempts": max_attempts, "mode": "standard"},
        ),
    )


# ── Bedrock Provider (single-shot model invocation) ──────────────────────────

class BedrockProvider(LLMProvider):
    """Amazon Bedrock runtime ``invoke_model`` with the Anthropic messages body."""

    def __init__(self, region: str, *, timeout: float = 120, max_attempts: int = 2, client=None):
        self.region = region
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._client = client
        self._client_lock = threading.Lock()

    def _get_client(self):
        with self._client_lock:
            if self._client is None:
                self._client = _bedrock_client(
                    "bedrock-runtime", self.region, self.timeout, self.max_attempts,
                )
            return self._client

    def chat(self, messages: list, model: str, **kwargs) -> dict:
        client = self._get_client()
        system_msg, chat_messages = _split_system(messages)

        body = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": kwargs.get("max_tokens", 4000),
            "temperature": kwargs.get("temperature", 0.1),
            "messages": chat_messages,
        }
        if system_msg:
            body["system"] = system_msg

        response = client.invoke_model(
            modelId=model,
            contentType="application/json",
            accept="application/json",
            body=json.dumps(body),
        )
        payload = json.loads(response["body"].read())
        content = "".join(
            part.get("text", "") for part in payload.get("content", [])
            if part.get("type", "text") == "text"
        )
        usage = payload.get("usage", {})
        return {
            "content": content,
            "prompt_tokens": usage.get("input_tokens", 0),
            "completion_tokens": usage.get("output_tokens", 0),
            "model": model,
        }


# ── Bedrock Agent Provider ───────────────────────────────────────────────────

class BedrockAgentProvider(LLMProvider):
    """
    Amazon Bedrock Agents ``invoke_agent``.

    The agent takes a single input text; system and user messages are joined.
    The completion arrives as an event stream of byte chunks.
    """

    def __init__(self, agent_id: str, agent_alias_id: str, region: str, *,
                 timeout: float = 120, client=None):
        self.agent_id = agent_id
        self.agent_alias_id = agent_alias_id
        self.region = region
        self.timeout = timeout
        self._client = client
        self._client_lock = threading.Lock()

    def _get_client(self):
        with self._client_lock:
            if self._client is None:
                self._client = _bedrock_client("bedrock-agent-runtime", self.region, self.timeout, 2)
            return self._client

    def chat(self, messages: list, model: str = AGENT_MODEL, **kwargs) -> dict:
        client = self._get_client()
        input_text = "\n\n".join(m["content"] for m in messages if m.get("content"))
        agent_session = kwargs.get("agent_session_id") or f"session-{uuid.uuid4().hex}"

        response = client.invoke_agent(
            agentId=self.agent_id,
            agentAliasId=self.agent_alias_id,
            sessionId=agent_session,
            inputText=input_text,
        )

        parts = []
        for event in response.get("completion", []):
            chunk = event.get("chunk")
            if chunk and chunk.get("bytes"):
                parts.append(chunk["bytes"].decode("utf-8"))
        content = "".join(parts)

        return {
            "content": content,
            "prompt_tokens": _estimate_tokens(input_text),
            "completion_tokens": _estimate_tokens(content),
            "model": AGENT_MODEL,
        }


# ── Anthropic Provider ────────────────────────────────────────────────────────

class AnthropicProvider(LLMProvider):
    """Claude API (Anthropic) provider."""

    def __init__(self, *, timeout: float = 120):
        self.api_key = os.getenv("ANTHROPIC_API_KEY", "")
        self.timeout = timeout
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                import anthropic
                self._client = anthropic.Anthropic(api_key=self.api_key, timeout=self.timeout)
            except ImportError:
                raise RuntimeError("anthropic package not installed. Run: pip install anthropic")
        return self._client

    def chat(self, messages: list, model: str = "claude-3-5-sonnet-20241022", **kwargs) -> dict:
        client = self._get_client()
        system_msg, chat_messages = _split_system(messages)

        params = {
            "model": model,
            "messages": chat_messages,
            "max_tokens": kwargs.get("max_tokens", 4000),
            "temperature": kwargs.get("temperature", 0.1),
        }
        if system_msg:
            params["system"] = system_msg

        response = client.messages.create(**params)

        return {
            "content": response.content[0].text,
            "prompt_tokens": response.usage.input_tokens,
            "completion_tokens": response.usage.output_tokens,
            "model": model,
        }


# ── OpenAI Provider ───────────────────────────────────────────────────────────

class OpenAIProvider(LLMProvider):
    """OpenAI GPT provider."""

    def __init__(self, *, timeout: float = 120):
        self.api_key = os.getenv("OPENAI_API_KEY", "")
        self.timeout = timeout
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                import openai
                self._client = openai.OpenAI(api_key=self.api_key, timeout=self.timeout)
            except ImportError:
                raise RuntimeError("openai package not installed. Run: pip install openai")
        return self._client

    def chat(self, messages: list, model: str = "gpt-4o-mini", **kwargs) -> dict:
        client = self._get_client()
        response = client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=kwargs.get("max_tokens", 4000),
            temperature=kwargs.get("temperature", 0.1),
        )
        choice = response.choices[0]
        return {
            "content": choice.message.content,
            "prompt_tokens": response.usage.prompt_tokens,
            "completion_tokens": response.usage.completion_tokens,
            "model": model,
        }


# ── Local Stub Provider (for dev/test without credentials) ───────────────────

class LocalStubProvider(LLMProvider):
    """
    Local stub that returns deterministic responses for dev/testing.
    No credentials required.
    """

    def chat(self, messages: list, model: str = STUB_MODEL, **kwargs) -> dict:
        prompt_text = "\n".join(m["content"] for m in messages)
        content = self._generate_stub_response(prompt_text)

        return {
            "content": content,
            "prompt_tokens": _estimate_tokens(prompt_text),
            "completion_tokens": _estimate_tokens(content),
            "model": STUB_MODEL,
        }

    @staticmethod
    def _generate_stub_response(prompt_text: str) -> str:
        """Pick a canned response by the task marker in the prompt."""
        lower = prompt_text.lower()

        if "task: final_report" in lower:
            return json.dumps({
                "overall_score": 3,
                "pillars": {
                    name: {
                        "score": 3,
                        "status": "Needs Improvement",
                        "strengths": ["Baseline practices documented"],
                        "weaknesses": ["Limited automated evidence"],
                        "recommendations": ["Review the answers for this pillar with the workload owner"],
                    }
                    for name in (
                        "Operational Excellence", "Security", "Reliability",
                        "Performance Efficiency", "Cost Optimization", "Sustainability",
                    )
                },
                "critical_issues": [],
                "quick_wins": ["Enable MFA for all IAM users"],
                "action_plan": {
                    "immediate": ["Address any critical security findings"],
                    "short_term": ["Right-size underutilized instances"],
                    "long_term": ["Adopt infrastructure as code across workloads"],
                },
                "estimated_cost_impact": "Unknown (stub provider)",
            })

        if "task: derive_answers" in lower:
            return json.dumps({
                "primary_answer_assessment": {
                    "quality": "adequate",
                    "completeness": 0.7,
                    "notes": "Stub assessment",
                },
                "additional_answers": [],
            })

        if "task: auto_answer" in lower:
            return json.dumps({
                "auto_answers": [],
                "unanswered_questions": [],
                "summary": "Stub analysis: no questions could be answered from environment data.",
            })

        return json.dumps({"response": "Analysis complete.", "confidence": 0.5})


# ── LLM Gateway (Main Interface) ─────────────────────────────────────────────

class LLMGateway:
    """
    Central gateway for all LLM calls.

    Features:
        - Provider routing based on model name
        - Auto-retry with exponential backoff
        - Fallback models tried after the primary is exhausted
        - Token/cost tracking and audit logging (persisted to DB)
    """

    # Non-Bedrock model → provider mapping
    PROVIDER_MAP = {
        "claude-3-5-haiku-20241022": "anthropic",
        "claude-3-5-sonnet-20241022": "anthropic",
        "gpt-4o-mini": "openai",
        "gpt-4o": "openai",
        AGENT_MODEL: "bedrock-agent",
        STUB_MODEL: "local",
    }

    def __init__(self, app=None, providers: dict | None = None):
        cfg = app.config if app is not None else {}
        self._max_retries = int(cfg.get("LLM_MAX_RETRIES", 3))
        self._timeout = float(cfg.get("LLM_TIMEOUT_SECONDS", 120))
        self._max_tokens = int(cfg.get("LLM_MAX_TOKENS", 4000))
        self._allow_stub_fallback = bool(cfg.get("DEBUG") or cfg.get("TESTING"))

        self.bedrock_model_id = cfg.get("BEDROCK_MODEL_ID", "anthropic.claude-3-sonnet-20240229-v1:0")
        self.agent_only = bool(cfg.get("BEDROCK_AGENT_ONLY", False))
        self.default_chat_model = cfg.get("LLM_DEFAULT_CHAT_MODEL") or self.bedrock_model_id

        self._providers: dict[str, LLMProvider] = {}
        if providers is not None:
            self._providers.update(providers)
        else:
            self._init_providers(cfg)

    def _init_providers(self, cfg):
        """Initialize available providers based on configuration."""
        self._providers["local"] = LocalStubProvider()

        region = cfg.get("BEDROCK_REGION", "us-east-1")
        if not self.agent_only:
            self._providers["bedrock"] = BedrockProvider(region, timeout=self._timeout)
        if cfg.get("BEDROCK_AGENT_ID"):
            self._providers["bedrock-agent"] = BedrockAgentProvider(
                cfg["BEDROCK_AGENT_ID"],
                cfg.get("BEDROCK_AGENT_ALIAS_ID", "TSTALIASID"),
                region,
                timeout=self._timeout,
            )
        if os.getenv("ANTHROPIC_API_KEY"):
            self._providers["anthropic"] = AnthropicProvider(timeout=self._timeout)
        if os.getenv("OPENAI_API_KEY"):
            self._providers["openai"] = OpenAIProvider(timeout=self._timeout)

    @property
    def agent_available(self) -> bool:
        return "bedrock-agent" in self._providers

    @property
    def provider_names(self) -> list[str]:
        return sorted(self._providers)

    def describe(self) -> dict:
        """Configuration summary for health checks."""
        if self.agent_only:
            mode = "agent-only"
        elif self.agent_available:
            mode = "hybrid"
        else:
            mode = "model-only"
        return {
            "mode": mode,
            "default_model": self.default_chat_model,
            "bedrock_model_id": self.bedrock_model_id,
            "agent_enabled": self.agent_available,
            "providers": self.provider_names,
        }

    def resolve_provider_name(self, model: str) -> str:
        if model in self.PROVIDER_MAP:
            return self.PROVIDER_MAP[model]
        if model.startswith(_BEDROCK_VENDORS):
            return "bedrock"
        return "local"

    def _get_provider(self, model: str) -> tuple[LLMProvider, str]:
        """
        Resolve model to provider. Falls back to the local stub only in
        development and testing.
        Returns (provider, provider_name).
        """
        provider_name = self.resolve_provider_name(model)

        if provider_name in self._providers:
            return self._providers[provider_name], provider_name

        if self._allow_stub_fallback and "local" in self._providers:
            logger.warning(
                "Provider '%s' not available. Falling back to local stub for model '%s'.",
                provider_name, model,
            )
            return self._providers["local"], "local"

        raise RuntimeError(f"LLM provider '{provider_name}' is not configured for model '{model}'")

    def chat(
        self,
        messages: list,
        model: str | None = None,
        *,
        purpose: str = "",
        session_id: str | None = None,
        max_retries: int | None = None,
        fallback_models: list[str] | None = None,
        **kwargs,
    ) -> dict:
        """
        Send a chat completion request with retry & fallback.

        Args:
            messages: Chat messages.
            model: Model identifier (defaults to the configured chat model).
            purpose: What the call is for (prompt name, e.g. "auto_answer").
            session_id: Review session the call belongs to, for accounting.
            max_retries: Attempts on the primary model (defaults to LLM_MAX_RETRIES).
            fallback_models: Models tried once each after the primary is exhausted.
            **kwargs: temperature, max_tokens passed to provider.

        Returns:
            dict: {content, prompt_tokens, completion_tokens, model, cost_usd, latency_ms,
                   provider, fallback_provider}

        Raises:
            RuntimeError: when the primary and every fallback failed.
        """
        model = model or self.default_chat_model
        max_retries = max_retries or self._max_retries
        kwargs.setdefault("max_tokens", self._max_tokens)

        prompt_hash = hash_prompt(json.dumps(messages))
        prompt_summary = messages[-1]["content"][:500] if messages else ""

        # ── Primary attempt with retries ──────────────────────────────────
        last_error = None
        provider_name = self.resolve_provider_name(model)
        try:
            provider, provider_name = self._get_provider(model)
        except RuntimeError as e:
            provider = None
            last_error = e
            logger.warning("LLM primary model unavailable: %s", e)

        if provider is not None:
            for attempt in range(1, max_retries + 1):
                start_time = time.time()
                try:
                    result = provider.chat(messages, model, **kwargs)
                    return self._finish(
                        result, model=model, provider_name=provider_name,
                        start_time=start_time, purpose=purpose, session_id=session_id,
                        prompt_hash=prompt_hash, prompt_summary=prompt_summary,
                        fallback_provider=None,
                    )
                except Exception as e:
                    last_error = e
                    logger.warning("LLM call attempt %d/%d failed: %s", attempt, max_retries, e,
                                   extra={"model": model, "prompt_name": purpose, "session_id": session_id})
                    if attempt < max_retries:
                        backoff = min(2 ** (attempt - 1), 4)
                        threading.Event().wait(backoff)

        # ── Fallback chain after primary exhausted ────────────────────────
        for fb_model in fallback_models or []:
            try:
                fb_provider, fb_prov_name = self._get_provider(fb_model)
            except RuntimeError as e:
                last_error = e
                continue
            logger.info("Trying fallback: model=%s provider=%s", fb_model, fb_prov_name)
            start_time = time.time()
            try:
                result = fb_provider.chat(messages, fb_model, **kwargs)
                return self._finish(
                    result, model=fb_model, provider_name=fb_prov_name,
                    start_time=start_time, purpose=purpose, session_id=session_id,
                    prompt_hash=prompt_hash, prompt_summary=prompt_summary,
                    fallback_provider=fb_prov_name,
                )
            except Exception as fb_err:
                logger.warning("Fallback %s/%s failed: %s", fb_prov_name, fb_model, fb_err)
                last_error = fb_err

        # All retries + fallbacks exhausted
        self._log_usage(
            provider=provider_name, model=model,
            prompt_tokens=0, completion_tokens=0,
            cost_usd=0.0, latency_ms=0,
            purpose=purpose, session_id=session_id,
            success=False, error_message=str(last_error),
        )
        self._log_audit(
            provider=provider_name, model=model,
            session_id=session_id, prompt_name=purpose,
            prompt_hash=prompt_hash, prompt_summary=prompt_summary,
            tokens_used=0, cost_usd=0.0, latency_ms=0,
            response_summary="", success=False, error_message=str(last_error),
            fallback_used=bool(fallback_models),
        )
        raise RuntimeError(f"LLM call failed after {max_retries} retries: {last_error}")

    def _finish(self, result, *, model, provider_name, start_time, purpose, session_id,
                prompt_hash, prompt_summary, fallback_provider):
        latency_ms = int((time.time() - start_time) * 1000)
        cost = calculate_cost(result.get("model", model),
                              result["prompt_tokens"], result["completion_tokens"])
        result["cost_usd"] = cost
        result["latency_ms"] = latency_ms
        result["provider"] = provider_name
        result["fallback_provider"] = fallback_provider

        self._log_usage(
            provider=provider_name, model=result.get("model", model),
            prompt_tokens=result["prompt_tokens"],
            completion_tokens=result["completion_tokens"],
            cost_usd=cost, latency_ms=latency_ms,
            purpose=purpose, session_id=session_id,
            success=True, fallback_provider=fallback_provider,
        )
        self._log_audit(
            provider=provider_name, model=result.get("model", model),
            session_id=session_id, prompt_name=purpose,
            prompt_hash=prompt_hash, prompt_summary=prompt_summary,
            tokens_used=result["prompt_tokens"] + result["completion_tokens"],
            cost_usd=cost, latency_ms=latency_ms,
            response_summary=(result["content"] or "")[:500],
            success=True, fallback_used=fallback_provider is not None,
        )
        return result

    # ── Internal Logging ──────────────────────────────────────────────────

    @staticmethod
    def _log_usage(*, provider, model, prompt_tokens, completion_tokens,
                   cost_usd, latency_ms, purpose, session_id,
                   success, error_message=None, fallback_provider=None):
        """Persist a usage log record (flush only; the caller owns the transaction)."""
        try:
            log = AIUsageLog(
                provider=provider, model=model,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
                cost_usd=cost_usd, latency_ms=latency_ms,
                purpose=purpose, session_id=session_id,
                success=success, error_message=error_message,
                fallback_provider=fallback_provider,
            )
            db.session.add(log)
            db.session.flush()
        except Exception as e:
            logger.error("Failed to log AI usage: %s", e)
            db.session.rollback()

    @staticmethod
    def _log_audit(*, provider, model, session_id, prompt_name,
                   prompt_hash, prompt_summary, tokens_used, cost_usd,
                   latency_ms, response_summary, success, error_message=None,
                   fallback_used=False):
        """Persist an audit log record (flush only; the caller owns the transaction)."""
        try:
            log = AIAuditLog(
                action="agent_call" if provider == "bedrock-agent" else "llm_call",
                provider=provider, model=model,
                session_id=session_id, prompt_name=prompt_name,
                prompt_hash=prompt_hash, prompt_summary=prompt_summary,
                tokens_used=tokens_used, cost_usd=cost_usd,
                latency_ms=latency_ms, response_summary=response_summary,
                success=success, error_message=error_message,
                fallback_used=fallback_used,
            )
            db.session.add(log)
            db.session.flush()
        except Exception as e:
            logger.error("Failed to log AI audit: %s", e)
            db.session.rollback()
