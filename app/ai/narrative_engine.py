"""
Well-Architected Review Service
Narrative Analysis Engine.

Thin facade over the LLM gateway: renders a named prompt template with the
given context and returns the raw response text. Interpretation of that text
belongs to app.ai.interpreter.

Modes:
    - "agent": Bedrock agent; falls back to the direct model unless agent-only
    - "model": direct single-shot model invocation
    - None:    agent when one is configured, otherwise model
"""

import json
import logging

from app.ai.gateway import AGENT_MODEL, LLMGateway
from app.ai.prompt_registry import PromptRegistry

logger = logging.getLogger(__name__)

MODES = ("agent", "model")


class NarrativeEngine:
    def __init__(self, gateway: LLMGateway, registry: PromptRegistry | None = None):
        self.gateway = gateway
        self.registry = registry or PromptRegistry()

    def invoke(self, prompt_name: str, context: dict, mode: str | None = None,
               *, session_id: str | None = None) -> str:
        """Render ``prompt_name`` with ``context`` and return the model's raw text.

        Raises:
            KeyError: unknown prompt name.
            ValueError: unknown mode.
            RuntimeError: every configured model failed.
        """
        if mode is not None and mode not in MODES:
            raise ValueError(f"Unknown narrative engine mode: {mode}")

        variables = {
            key: value if isinstance(value, str) else json.dumps(value, indent=2, default=str)
            for key, value in context.items()
        }
        messages = self.registry.render(prompt_name, **variables)

        model, fallbacks = self._route(mode)
        logger.info("Invoking narrative engine: prompt=%s model=%s", prompt_name, model,
                    extra={"session_id": session_id, "prompt_name": prompt_name, "model": model})
        result = self.gateway.chat(
            messages,
            model=model,
            purpose=prompt_name,
            session_id=session_id,
            fallback_models=fallbacks,
        )
        return result["content"] or ""

    def _route(self, mode: str | None) -> tuple[str, list[str]]:
        gw = self.gateway
        use_agent = mode == "agent" or (mode is None and (gw.agent_available or gw.agent_only))
        if gw.agent_only and mode == "model":
            raise RuntimeError("Direct model invocation is disabled in agent-only mode")
        if use_agent:
            fallbacks = [] if gw.agent_only else [gw.default_chat_model]
            return AGENT_MODEL, fallbacks
        return gw.default_chat_model, []
