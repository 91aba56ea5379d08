"""
Well-Architected Review Service
Prompt Registry.

YAML-based prompt template management with:
    - Built-in default templates for every narrative-engine task
    - Optional overrides loaded from a prompts directory (PROMPTS_DIR)
    - {{variable}} rendering
    - Version tracking

Usage:
    from app.ai.prompt_registry import PromptRegistry
    registry = PromptRegistry()
    messages = registry.render("auto_answer", environment_data="{...}", questions="[...]")
"""

import logging
import re
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)


class PromptTemplate:
    """A single prompt template with metadata."""

    def __init__(self, name: str, version: str, system: str, user: str,
                 description: str = "", metadata: dict | None = None):
        self.name = name
        self.version = version
        self.system = system
        self.user = user
        self.description = description
        self.metadata = metadata or {}

    def render(self, **variables) -> list[dict]:
        """
        Render template with variables, returning chat messages.

        Variables are replaced using {{variable_name}} syntax.

        Returns:
            List of message dicts: [{"role": "system", "content": "..."}, ...]
        """
        system_rendered = self._substitute(self.system, variables)
        user_rendered = self._substitute(self.user, variables)

        messages = []
        if system_rendered.strip():
            messages.append({"role": "system", "content": system_rendered})
        if user_rendered.strip():
            messages.append({"role": "user", "content": user_rendered})
        return messages

    @staticmethod
    def _substitute(template: str, variables: dict) -> str:
        """Replace {{var}} placeholders with values."""
        def replacer(match):
            key = match.group(1).strip()
            return str(variables.get(key, f"{{{{{key}}}}}"))
        return re.sub(r'\{\{(\s*\w+\s*)\}\}', replacer, template)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "system_preview": self.system[:200],
            "user_preview": self.user[:200],
        }


class PromptRegistry:
    """
    Registry for loading and managing prompt templates.

    Built-in defaults are always registered; YAML files in ``prompts_dir``
    (if given and present) override them by (name, version).
    """

    def __init__(self, prompts_dir: str | None = None):
        self._prompts_dir = prompts_dir
        self._templates: dict[str, dict[str, PromptTemplate]] = {}  # name → {version → template}
        self._load_defaults()
        if prompts_dir:
            self._load_from_dir()

    def _load_defaults(self):
        for tpl in _DEFAULT_TEMPLATES:
            self._register(tpl)

    def _load_from_dir(self):
        """Load prompt templates from YAML files."""
        prompts_path = Path(self._prompts_dir)
        if not prompts_path.exists():
            logger.info("Prompts directory not found: %s. Using defaults only.", self._prompts_dir)
            return

        for yaml_file in sorted(prompts_path.glob("*.yaml")):
            try:
                with open(yaml_file, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f)
            except (OSError, yaml.YAMLError) as e:
                logger.error("Failed to load prompt %s: %s", yaml_file.name, e)
                continue
            if not data or not isinstance(data, dict):
                continue

            tpl = PromptTemplate(
                name=data.get("name", yaml_file.stem),
                version=str(data.get("version", "v1")),
                system=data.get("system", ""),
                user=data.get("user", ""),
                description=data.get("description", ""),
                metadata=data.get("metadata", {}),
            )
            self._register(tpl)
            logger.info("Loaded prompt template: %s (%s) from %s",
                        tpl.name, tpl.version, yaml_file.name)

    def _register(self, template: PromptTemplate):
        if template.name not in self._templates:
            self._templates[template.name] = {}
        self._templates[template.name][template.version] = template

    def get(self, name: str, version: str = "v1") -> PromptTemplate | None:
        """Get a prompt template by name and version."""
        versions = self._templates.get(name, {})
        return versions.get(version)

    def render(self, name: str, version: str = "v1", **variables) -> list[dict]:
        """
        Render a prompt template with variables.

        Raises:
            KeyError: If template not found.
        """
        tpl = self.get(name, version)
        if not tpl:
            raise KeyError(f"Prompt template not found: {name} {version}")
        return tpl.render(**variables)

    def list_templates(self) -> list[dict]:
        """List all registered templates."""
        return [tpl.to_dict() for versions in self._templates.values() for tpl in versions.values()]


# ── Built-in Default Templates ────────────────────────────────────────────────

_SYSTEM_BASE = (
    "You are an expert AWS Well-Architected Framework reviewer. You assess AWS "
    "environments against the six pillars: Operational Excellence, Security, "
    "Reliability, Performance Efficiency, Cost Optimization and Sustainability.\n\n"
    "Key principles:\n"
    "- Only state what the provided data supports\n"
    "- Give a confidence score between 0.0 and 1.0 for every inferred answer\n"
    "- Always return a single JSON object and nothing else"
)

_DEFAULT_TEMPLATES = [
    PromptTemplate(
        name="auto_answer",
        version="v1",
        description="Answer Well-Architected questions directly from collected environment data",
        system=_SYSTEM_BASE,
        user=(
            "TASK: auto_answer\n\n"
            "Answer as many of the Well-Architected questions below as the AWS "
            "environment data justifies. Skip questions the data does not cover "
            "and say why.\n\n"
            "AWS ENVIRONMENT DATA:\n{{environment_data}}\n\n"
            "QUESTIONS:\n{{questions}}\n\n"
            "Respond with JSON:\n"
            "{\n"
            '  "auto_answers": [\n'
            '    {"question_key": "SEC01", "answer": "...", "confidence": 0.0, "justification": "..."}\n'
            "  ],\n"
            '  "unanswered_questions": [{"question_key": "OPS01", "reason": "..."}],\n'
            '  "summary": "short overall assessment"\n'
            "}"
        ),
    ),
    PromptTemplate(
        name="derive_answers",
        version="v1",
        description="Assess a user answer and infer answers to other unanswered questions",
        system=_SYSTEM_BASE,
        user=(
            "TASK: derive_answers\n\n"
            "A reviewer answered one Well-Architected question. Assess the answer's "
            "quality and completeness, then identify which of the CANDIDATE questions "
            "can reasonably be answered from the same text. Only use question keys "
            "from the candidate list.\n\n"
            "ANSWERED QUESTION ({{question_key}}): {{question_text}}\n"
            "REVIEWER ANSWER:\n{{answer_text}}\n\n"
            "CANDIDATE QUESTIONS:\n{{candidates}}\n\n"
            "Respond with JSON:\n"
            "{\n"
            '  "primary_answer_assessment": {"quality": "good|adequate|poor", "completeness": 0.0, "notes": "..."},\n'
            '  "additional_answers": [\n'
            '    {"question_key": "REL02", "answer": "...", "confidence": 0.0, "justification": "..."}\n'
            "  ]\n"
            "}"
        ),
    ),
    PromptTemplate(
        name="final_report",
        version="v1",
        description="Synthesize the final Well-Architected report from all answers",
        system=_SYSTEM_BASE,
        user=(
            "TASK: final_report\n\n"
            "Produce the final Well-Architected review report from the answers and "
            "the AWS environment data. Scores run from 1 (poor) to 5 (excellent).\n\n"
            "ANSWERS:\n{{answers}}\n\n"
            "AWS ENVIRONMENT DATA:\n{{environment_data}}\n\n"
            "Respond with JSON:\n"
            "{\n"
            '  "overall_score": 0,\n'
            '  "pillars": {\n'
            '    "Security": {"score": 0, "status": "Good|Needs Improvement|Critical",\n'
            '                 "strengths": [], "weaknesses": [], "recommendations": []}\n'
            "  },\n"
            '  "critical_issues": [],\n'
            '  "quick_wins": [],\n'
            '  "action_plan": {"immediate": [], "short_term": [], "long_term": []},\n'
            '  "estimated_cost_impact": "..."\n'
            "}"
        ),
    ),
]
