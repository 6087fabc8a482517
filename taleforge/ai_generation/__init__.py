"""
Illustration support: image prompts, character consistency, and rendering.
"""

from .character_reference import CharacterReference, CharacterReferenceManager
from .prompting import IllustrationPrompt, ImagePromptBuilder
from .replicate_service import ReplicateImageGenerator, normalize_image_outputs
from .trigger import ImageGenerationTrigger

__all__ = [
    "CharacterReference",
    "CharacterReferenceManager",
    "IllustrationPrompt",
    "ImagePromptBuilder",
    "ReplicateImageGenerator",
    "normalize_image_outputs",
    "ImageGenerationTrigger",
]
