"""
Well-Architected Review Service
AI module.

Submodules:
    - gateway: LLM Gateway (provider routing, retry, cost tracking)
    - prompt_registry: prompt templates (built-in defaults, YAML overrides)
    - narrative_engine: render a prompt and invoke the model or Bedrock agent
    - interpreter: typed results with fallbacks from free-form model output
    - task_runner: background review runs
"""
