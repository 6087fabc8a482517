"""
Orchestrates one story-segment request from validation to response.
"""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping

from taleforge.ai_generation import (
    CharacterReferenceManager,
    ImageGenerationTrigger,
    ImagePromptBuilder,
    ReplicateImageGenerator,
    normalize_image_outputs,
)
from taleforge.common import CompletionCallable
from taleforge.common.config import Settings
from taleforge.common.errors import (
    ConfigurationError,
    ProviderError,
    RequestValidationError,
    StoryNotFoundError,
    TaleForgeError,
)
from taleforge.story_generation import (
    Character,
    ChoiceParser,
    NewSegment,
    PromptBuilder,
    ProviderOrchestrator,
    Segment,
    Story,
    TemplateContext,
)

from .gateway import SegmentGateway
from .validation import STORY_ID_ERROR, InboundRequest, ValidationGate

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, dict[str, Any]], None]

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, GET, OPTIONS",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}

SUCCESS_MESSAGE = "Story segment generated successfully"
IMAGE_SUCCESS_MESSAGE = "Image generated successfully"


class PipelineStage(str, Enum):
    VALIDATING = "validating"
    FETCHING_CONTEXT = "fetching_context"
    BUILDING_PROMPT = "building_prompt"
    GENERATING_TEXT = "generating_text"
    PARSING_CHOICES = "parsing_choices"
    BUILDING_IMAGE_PROMPT = "building_image_prompt"
    PERSISTING = "persisting"
    TRIGGERING_IMAGE_GENERATION = "triggering_image_generation"
    RESPONDING = "responding"
    FAILED = "failed"


class PhaseTimer:
    """
    Wall-clock duration of each pipeline stage for one request, in milliseconds.

    Starting a stage closes the one before it.
    """

    def __init__(self, request_id: str | None = None) -> None:
        self.request_id = request_id or uuid.uuid4().hex[:12]
        self.phases: dict[str, float] = {}
        self._current: str | None = None
        self._started = 0.0

    def start(self, stage: PipelineStage) -> None:
        self.stop()
        self._current = stage.value
        self._started = time.perf_counter()

    def stop(self) -> None:
        if self._current is None:
            return
        elapsed = (time.perf_counter() - self._started) * 1000
        self.phases[self._current] = round(max(elapsed, 0.0), 3)
        self._current = None

    @property
    def total_ms(self) -> float:
        return round(sum(self.phases.values()), 3)


@dataclass(frozen=True)
class PipelineResponse:
    status: int
    body: dict[str, Any] | None
    headers: Mapping[str, str] = field(default_factory=lambda: dict(CORS_HEADERS))


@dataclass(frozen=True)
class StoryContext:
    """Everything read from persistence before the prompt is built."""

    story: Story
    previous_segment: Segment | None
    characters: tuple[Character, ...]
    user_choice: str | None


class StorySegmentPipeline:
    """
    High-level coordinator for the generate-story-segment request.

    Every collaborator can be injected; anything omitted is built from ``settings``.
    """

    def __init__(
        self,
        *,
        gateway: SegmentGateway,
        settings: Settings | None = None,
        validation_gate: ValidationGate | None = None,
        prompt_builder: PromptBuilder | None = None,
        orchestrator: ProviderOrchestrator | None = None,
        choice_parser: ChoiceParser | None = None,
        image_prompt_builder: ImagePromptBuilder | None = None,
        character_manager: CharacterReferenceManager | None = None,
        image_trigger: ImageGenerationTrigger | None = None,
        image_generator: ReplicateImageGenerator | None = None,
        completion_fn: CompletionCallable | None = None,
    ) -> None:
        self._settings = settings or Settings.from_env()
        self._gateway = gateway
        self._validation_gate = validation_gate or ValidationGate(self._settings)
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._choice_parser = choice_parser or ChoiceParser()
        self._orchestrator = orchestrator or ProviderOrchestrator(
            primary=self._settings.primary,
            fallback=self._settings.fallback,
            completion_fn=completion_fn,
            choice_parser=self._choice_parser,
            timeout=self._settings.provider_timeout,
        )
        self._image_prompt_builder = image_prompt_builder or ImagePromptBuilder()
        self._character_manager = character_manager or CharacterReferenceManager()
        self._image_trigger = image_trigger or ImageGenerationTrigger(
            function_url=self._settings.image_function_url,
            timeout=self._settings.image_trigger_timeout,
        )
        self._image_generator = image_generator

    @property
    def validation_gate(self) -> ValidationGate:
        return self._validation_gate

    def handle(
        self,
        request: InboundRequest,
        *,
        progress_callback: ProgressCallback | None = None,
    ) -> PipelineResponse:
        """
        Run the full request and always return a response; errors become status codes.
        """
        if request.method.upper() == "OPTIONS":
            return PipelineResponse(status=200, body=None)

        timer = PhaseTimer()
        try:
            body = self._generate(request, progress_callback, timer)
        except TaleForgeError as exc:
            timer.stop()
            logger.error(
                "Request %s failed (%s) after %s: %s",
                timer.request_id,
                exc.code,
                timer.phases,
                exc.message,
            )
            self._notify(progress_callback, PipelineStage.FAILED, code=exc.code)
            return PipelineResponse(status=exc.status_code, body=exc.as_dict())
        except Exception as exc:
            timer.stop()
            logger.exception("Unexpected error in request %s", timer.request_id)
            self._notify(progress_callback, PipelineStage.FAILED, code="INTERNAL_ERROR")
            return PipelineResponse(
                status=500,
                body={"error": str(exc) or "Internal server error", "code": "INTERNAL_ERROR"},
            )
        logger.info(
            "Request %s finished in %.1f ms: %s",
            timer.request_id,
            timer.total_ms,
            timer.phases,
        )
        return PipelineResponse(status=200, body=body)

    def handle_image_request(self, request: InboundRequest) -> PipelineResponse:
        """
        Render and attach the illustration for an existing segment.
        """
        if request.method.upper() == "OPTIONS":
            return PipelineResponse(status=200, body=None)

        try:
            body = self._render_image(request)
        except TaleForgeError as exc:
            logger.error("Image generation failed (%s): %s", exc.code, exc.message)
            return PipelineResponse(status=exc.status_code, body=exc.as_dict())
        except Exception as exc:
            logger.exception("Unexpected error in image generation")
            return PipelineResponse(
                status=500,
                body={"error": str(exc) or "Internal server error", "code": "INTERNAL_ERROR"},
            )
        return PipelineResponse(status=200, body=body)

    def _generate(
        self,
        request: InboundRequest,
        progress_callback: ProgressCallback | None,
        timer: PhaseTimer,
    ) -> dict[str, Any]:
        self._enter(timer, progress_callback, PipelineStage.VALIDATING)
        report = self._validation_gate.validate_all_requirements(request)
        report.raise_for_status()
        validated = report.request
        if validated.story_id is None:
            raise RequestValidationError([STORY_ID_ERROR])

        self._enter(
            timer,
            progress_callback,
            PipelineStage.FETCHING_CONTEXT,
            story_id=validated.story_id,
            choice_index=validated.choice_index,
        )
        context = self.fetch_context(validated.story_id, validated.choice_index)
        story = context.story
        template_context = TemplateContext.from_mapping(validated.template_context)

        self._enter(timer, progress_callback, PipelineStage.BUILDING_PROMPT)
        prompt = self._prompt_builder.build_prompt(
            story,
            previous_segment=context.previous_segment,
            user_choice=context.user_choice,
            characters=context.characters,
            template_context=template_context,
        )

        self._enter(
            timer, progress_callback, PipelineStage.GENERATING_TEXT, prompt_length=len(prompt)
        )
        ai_response = self._orchestrator.generate_story_segment(prompt, story)

        self._enter(
            timer, progress_callback, PipelineStage.PARSING_CHOICES, provider=ai_response.provider
        )
        choices = self._choice_parser.choices_for(ai_response)

        self._enter(timer, progress_callback, PipelineStage.BUILDING_IMAGE_PROMPT)
        previous_segments = (context.previous_segment,) if context.previous_segment else ()
        image_characters = (
            template_context.characters
            if template_context and template_context.characters
            else context.characters
        )
        image_prompt = self._image_prompt_builder.build_image_prompt(
            story,
            ai_response.segment_text,
            previous_segments,
            image_characters,
        )
        needs_consistency = self._character_manager.needs_character_consistency(
            ai_response.segment_text, image_prompt
        )
        main_character = self._character_manager.extract_main_character(ai_response.segment_text)

        self._enter(timer, progress_callback, PipelineStage.PERSISTING)
        # Read the position right before writing so it stays strictly increasing.
        position = self._gateway.next_position(story.id)
        segment = self._gateway.insert_segment(
            NewSegment(
                story_id=story.id,
                content=ai_response.segment_text,
                choices=tuple(choices),
                position=position,
                image_prompt=image_prompt,
                parent_segment_id=(
                    context.previous_segment.id if context.previous_segment else None
                ),
                created_at=datetime.now(timezone.utc).isoformat(),
            )
        )

        self._enter(
            timer,
            progress_callback,
            PipelineStage.TRIGGERING_IMAGE_GENERATION,
            segment_id=segment.id,
        )
        self._image_trigger.trigger(segment.id, image_prompt, validated.auth_header)

        self._enter(
            timer,
            progress_callback,
            PipelineStage.RESPONDING,
            segment_id=segment.id,
            provider=ai_response.provider,
            fallback_triggered=ai_response.fallback_triggered,
        )
        timer.stop()
        return {
            "success": True,
            "requestId": timer.request_id,
            "segment": segment.as_dict(),
            "imagePrompt": image_prompt,
            "message": SUCCESS_MESSAGE,
            "aiMetrics": {
                "provider": ai_response.provider,
                "method": ai_response.method,
                "api_calls_made": ai_response.api_calls_made,
                "fallback_triggered": ai_response.fallback_triggered,
                "story_length": len(ai_response.segment_text),
                "choices_count": len(choices),
            },
            "characterConsistency": {
                "needed": needs_consistency,
                "mainCharacter": main_character,
            },
            "phases": dict(timer.phases),
        }

    def fetch_context(self, story_id: str, choice_index: int | None) -> StoryContext:
        """
        Read the story, the latest segment, and the owner's characters.

        Only the story is required; the other two reads degrade to empty.
        """
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="context") as executor:
            story_future = executor.submit(self._gateway.fetch_story, story_id)
            previous_future: Future[Segment | None] | None = None
            if choice_index is not None:
                previous_future = executor.submit(self._gateway.fetch_latest_segment, story_id)

            try:
                story = story_future.result()
            except StoryNotFoundError:
                raise
            except Exception as exc:
                raise StoryNotFoundError(f"Story not found: {story_id}") from exc

            characters = self._fetch_characters(story)
            previous_segment = self._previous_segment(previous_future, story_id)

        user_choice = previous_segment.choice_text(choice_index) if previous_segment else None
        if previous_segment is not None and user_choice is None:
            logger.warning(
                "Choice index %s is out of range for segment %s",
                choice_index,
                previous_segment.id,
            )
        return StoryContext(
            story=story,
            previous_segment=previous_segment,
            characters=characters,
            user_choice=user_choice,
        )

    def _fetch_characters(self, story: Story) -> tuple[Character, ...]:
        try:
            return tuple(self._gateway.fetch_characters(story.id, story.user_id))
        except Exception:
            logger.warning(
                "Could not fetch characters for story %s; continuing without them.",
                story.id,
                exc_info=True,
            )
            return ()

    @staticmethod
    def _previous_segment(
        future: Future[Segment | None] | None,
        story_id: str,
    ) -> Segment | None:
        if future is None:
            return None
        try:
            return future.result()
        except Exception:
            logger.warning(
                "Could not fetch previous segment for story %s; continuing without it.",
                story_id,
                exc_info=True,
            )
            return None

    def _render_image(self, request: InboundRequest) -> dict[str, Any]:
        segment_id, image_prompt, _ = self._validation_gate.validate_image_request(request)
        generator = self._require_image_generator()
        segment = self._gateway.fetch_segment(segment_id)

        logger.info("Generating image for segment %s", segment_id)
        outputs = normalize_image_outputs(generator.generate_image(image_prompt=image_prompt))
        if not outputs:
            raise ProviderError("Image generation returned no outputs", provider="Replicate")

        image_url = outputs[0]
        updated = self._gateway.attach_image_url(segment_id, image_url)
        body: dict[str, Any] = {
            "success": True,
            "segmentId": updated.id,
            "imageUrl": image_url,
            "prompt": image_prompt,
            "message": IMAGE_SUCCESS_MESSAGE,
        }

        if segment.position == 1 and self._character_manager.needs_character_consistency(
            segment.content, image_prompt
        ):
            reference = self._character_manager.build_reference(
                story_id=segment.story_id,
                segment_id=segment.id,
                image_url=image_url,
                character_name=self._character_manager.extract_main_character(segment.content),
            )
            body["characterReference"] = reference.as_dict()
        return body

    def _require_image_generator(self) -> ReplicateImageGenerator:
        if self._image_generator is None:
            try:
                self._image_generator = ReplicateImageGenerator()
            except ValueError as exc:
                raise ConfigurationError(
                    "Image generation not available",
                    code="MISSING_IMAGE_API_KEY",
                ) from exc
        return self._image_generator

    @staticmethod
    def _notify(
        callback: ProgressCallback | None,
        stage: PipelineStage,
        **payload: Any,
    ) -> None:
        if callback is not None:
            callback(stage.value, payload)

    def _enter(
        self,
        timer: PhaseTimer,
        callback: ProgressCallback | None,
        stage: PipelineStage,
        **payload: Any,
    ) -> None:
        timer.start(stage)
        self._notify(callback, stage, **payload)
