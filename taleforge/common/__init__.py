"""
Common utilities shared across TaleForge modules.
"""

from .config import (
    JSON_STRUCTURE_OVERHEAD,
    ProviderConfig,
    Settings,
    art_style_for,
    base_token_budget,
    token_budget,
    validate_provider_config,
)
from .errors import (
    ConfigurationError,
    PersistenceError,
    PromptBuildError,
    ProviderError,
    ProviderResponseError,
    RequestValidationError,
    SegmentNotFoundError,
    StoryNotFoundError,
    TaleForgeError,
)
from .llm import ChatResult, CompletionCallable, call_chat_completion

__all__ = [
    "ChatResult",
    "CompletionCallable",
    "call_chat_completion",
    "JSON_STRUCTURE_OVERHEAD",
    "ProviderConfig",
    "Settings",
    "art_style_for",
    "base_token_budget",
    "token_budget",
    "validate_provider_config",
    "ConfigurationError",
    "PersistenceError",
    "PromptBuildError",
    "ProviderError",
    "ProviderResponseError",
    "RequestValidationError",
    "SegmentNotFoundError",
    "StoryNotFoundError",
    "TaleForgeError",
]
