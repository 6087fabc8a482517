"""
TaleForge package exposing story segment generation and its pipeline.
"""

from .pipeline import InboundRequest, PipelineResponse, StorySegmentPipeline
from .story_generation import ChoiceParser, PromptBuilder, ProviderOrchestrator

__all__ = [
    "InboundRequest",
    "PipelineResponse",
    "StorySegmentPipeline",
    "ChoiceParser",
    "PromptBuilder",
    "ProviderOrchestrator",
]
