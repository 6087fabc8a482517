"""
End-to-end orchestration for TaleForge segment generation.
"""

from .gateway import InMemoryStoryGateway, SegmentGateway, YamlStoryGateway
from .pipeline import (
    CORS_HEADERS,
    PhaseTimer,
    PipelineResponse,
    PipelineStage,
    StoryContext,
    StorySegmentPipeline,
)
from .validation import InboundRequest, ValidationGate, ValidationReport

__all__ = [
    "InMemoryStoryGateway",
    "SegmentGateway",
    "YamlStoryGateway",
    "CORS_HEADERS",
    "PhaseTimer",
    "PipelineResponse",
    "PipelineStage",
    "StoryContext",
    "StorySegmentPipeline",
    "InboundRequest",
    "ValidationGate",
    "ValidationReport",
]
