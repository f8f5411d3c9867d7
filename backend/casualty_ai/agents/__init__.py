"""Evidence analysis and conversation prompts."""

from casualty_ai.agents.prompts import (
    CASUALTY_ANALYSIS_PROMPT,
    DEFAULT_PROMPTS,
    build_conversation_prompt,
    build_conversation_summary_prompt,
    build_conversation_system_prompt,
    build_incident_summary_prompt,
    get_default_prompt,
)

__all__ = [
    "CASUALTY_ANALYSIS_PROMPT",
    "DEFAULT_PROMPTS",
    "build_conversation_prompt",
    "build_conversation_summary_prompt",
    "build_conversation_system_prompt",
    "build_incident_summary_prompt",
    "get_default_prompt",
]
