"""
Story segment generation: data model, prompts, providers, and choice parsing.
"""

from .choice_parser import ChoiceParser, ParsingStats, generate_contextual_fallbacks
from .models import (
    CHOICES_PER_SEGMENT,
    AIResponse,
    Character,
    Choice,
    NewSegment,
    Segment,
    Story,
    TemplateContext,
)
from .prompting import PromptBuilder, PromptValidation, validate_prompt
from .providers import ProviderOrchestrator, ProviderStatus, parse_provider_response

__all__ = [
    "CHOICES_PER_SEGMENT",
    "AIResponse",
    "Character",
    "Choice",
    "NewSegment",
    "Segment",
    "Story",
    "TemplateContext",
    "ChoiceParser",
    "ParsingStats",
    "generate_contextual_fallbacks",
    "PromptBuilder",
    "PromptValidation",
    "validate_prompt",
    "ProviderOrchestrator",
    "ProviderStatus",
    "parse_provider_response",
]
