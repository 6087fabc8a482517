"""
Two-tier language-model orchestration for story segment generation.

The primary provider is tried once; only after it definitively fails is the
fallback provider tried, also once. There is no retry loop.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Sequence

from taleforge.common import ChatResult, CompletionCallable, call_chat_completion
from taleforge.common.config import ProviderConfig, token_budget
from taleforge.common.errors import ConfigurationError, ProviderError, ProviderResponseError

from .choice_parser import ChoiceParser
from .models import CHOICES_PER_SEGMENT, AIResponse, Story
from .prompting import system_prompt_for

logger = logging.getLogger(__name__)

JSON_REQUIREMENTS = """CRITICAL REQUIREMENTS:
- Always respond with valid JSON in the exact format requested
- Write story segments that lead naturally to the 3 choices you provide
- Make sure choices directly relate to what happens in your story segment
- Keep choices short (4-8 words) and easy for children to understand
- Each choice must offer a different story direction

Your job is to advance the story in an engaging way and provide meaningful choices that children can understand and that relate directly to your story content."""

RESPONSE_FORMAT_EXAMPLE = """IMPORTANT: Respond with valid JSON in this exact format:
{
  "story_text": "Your story segment here (2-3 short paragraphs)",
  "choices": [
    "Choice 1 (4-8 words)",
    "Choice 2 (4-8 words)",
    "Choice 3 (4-8 words)"
  ]
}

Make sure the story_text is engaging and age-appropriate, and the 3 choices continue the story in different directions."""

STORY_SEGMENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "story_text": {
            "type": "string",
            "description": "The story segment, 2-3 short paragraphs",
        },
        "choices": {
            "type": "array",
            "description": "Three choices that directly relate to the story segment",
            "items": {"type": "string"},
            "minItems": CHOICES_PER_SEGMENT,
            "maxItems": CHOICES_PER_SEGMENT,
        },
    },
    "required": ["story_text", "choices"],
    "additionalProperties": False,
}

METHOD_CHAT = "chat_completions"
METHOD_STRUCTURED = "structured_output"

_CODE_FENCE = re.compile(r"^```(?:json|JSON)?\s*|\s*```$")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


@dataclass(frozen=True)
class ParsedSegment:
    story_text: str
    choices: tuple[str, ...]


@dataclass(frozen=True)
class ProviderStatus:
    has_primary: bool
    has_fallback: bool
    primary_provider: str

    @property
    def has_any(self) -> bool:
        return self.has_primary or self.has_fallback


def parse_provider_response(raw: str) -> ParsedSegment:
    """
    Parse a provider's message content into story text and choices.

    Raises ``ProviderResponseError`` when the content is not a JSON object with a
    non-empty ``story_text`` string and a ``choices`` list.
    """
    text = (raw or "").strip()
    if not text:
        raise ProviderResponseError("Provider returned an empty response.")

    text = _CODE_FENCE.sub("", text).strip()
    match = _JSON_OBJECT.search(text)
    if match is None:
        raise ProviderResponseError("Provider response did not contain a JSON object.")

    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise ProviderResponseError(f"Invalid JSON from provider: {exc.msg}") from exc

    if not isinstance(payload, dict):
        raise ProviderResponseError("Provider JSON must be an object.")

    story_text = payload.get("story_text")
    choices = payload.get("choices")
    if not isinstance(story_text, str) or not story_text.strip():
        raise ProviderResponseError("Invalid JSON structure - missing story_text")
    if not isinstance(choices, list):
        raise ProviderResponseError("Invalid JSON structure - missing choices")

    cleaned = tuple(
        str(choice).strip() for choice in choices if choice is not None and str(choice).strip()
    )
    return ParsedSegment(story_text=story_text.strip(), choices=cleaned)


class ProviderOrchestrator:
    """
    Generates a story segment with the primary provider, falling back once.
    """

    def __init__(
        self,
        *,
        primary: ProviderConfig,
        fallback: ProviderConfig,
        completion_fn: CompletionCallable | None = None,
        choice_parser: ChoiceParser | None = None,
        timeout: float | None = None,
    ) -> None:
        if primary.kind != "primary" or fallback.kind != "fallback":
            raise ValueError("Provider configs must be tagged 'primary' and 'fallback'.")
        self._primary = primary
        self._fallback = fallback
        self._completion_fn: CompletionCallable = completion_fn or call_chat_completion
        self._choice_parser = choice_parser or ChoiceParser()
        self._timeout = timeout

    @property
    def providers(self) -> tuple[ProviderConfig, ProviderConfig]:
        return (self._primary, self._fallback)

    def provider_status(self) -> ProviderStatus:
        has_primary = self._primary.is_usable()
        has_fallback = self._fallback.is_usable()
        if has_primary:
            primary_name = self._primary.name
        elif has_fallback:
            primary_name = self._fallback.name
        else:
            primary_name = "None"
        return ProviderStatus(has_primary, has_fallback, primary_name)

    def health_check(self) -> dict[str, bool]:
        return {config.name: config.is_usable() for config in self.providers}

    def generate_story_segment(self, prompt: str, story: Story) -> AIResponse:
        """
        Produce story text and exactly three choices.
        """
        status = self.provider_status()
        if not status.has_any:
            raise ConfigurationError("No valid AI providers available")

        primary_error: ProviderError | None = None
        calls = 0

        if status.has_primary:
            calls += 1
            try:
                logger.info("Attempting primary provider %s", self._primary.name)
                return self._call_provider(self._primary, prompt, story, api_calls=calls)
            except ProviderError as exc:
                logger.warning("Primary provider %s failed: %s", self._primary.name, exc)
                primary_error = exc
        else:
            logger.warning("Primary provider %s is not configured; skipping.", self._primary.name)

        if status.has_fallback:
            calls += 1
            try:
                logger.info("Attempting fallback provider %s", self._fallback.name)
                return self._call_provider(
                    self._fallback,
                    prompt,
                    story,
                    api_calls=calls,
                    fallback_triggered=True,
                )
            except ProviderError as exc:
                logger.error("Fallback provider %s failed: %s", self._fallback.name, exc)
                if primary_error is None:
                    raise
        logger.error("All AI providers failed.")
        if primary_error is None:
            raise ConfigurationError("No valid AI providers available")
        raise primary_error

    def _call_provider(
        self,
        config: ProviderConfig,
        prompt: str,
        story: Story,
        *,
        api_calls: int,
        fallback_triggered: bool = False,
    ) -> AIResponse:
        messages = [
            {
                "role": "system",
                "content": f"{system_prompt_for(story.target_age)}\n\n{JSON_REQUIREMENTS}",
            },
            {"role": "user", "content": f"{prompt}\n\n{RESPONSE_FORMAT_EXAMPLE}"},
        ]
        extra: dict[str, Any] = {}
        method = METHOD_CHAT
        if config.structured_output:
            method = METHOD_STRUCTURED
            extra["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": "story_segment_response",
                    "description": "A story segment with exactly 3 choices",
                    "schema": STORY_SEGMENT_SCHEMA,
                    "strict": True,
                },
            }

        max_tokens = min(token_budget(story.target_age), config.max_tokens)
        try:
            result: ChatResult = self._completion_fn(
                model=config.litellm_model(),
                messages=messages,
                temperature=config.temperature,
                max_tokens=max_tokens,
                api_key=config.credential,
                api_base=config.base_url,
                timeout=self._timeout,
                **extra,
            )
        except ProviderError as exc:
            exc.provider = exc.provider or config.name
            raise
        except Exception as exc:
            raise ProviderError(
                f"{config.name} API error: {exc}", provider=config.name
            ) from exc

        logger.debug("%s raw response: %.200s", config.name, result.text)
        try:
            parsed = parse_provider_response(result.text)
        except ProviderResponseError as exc:
            raise ProviderResponseError(
                f"{config.name} returned an unusable response: {exc.message}",
                provider=config.name,
            ) from exc

        choices: Sequence[str] = parsed.choices
        if len(choices) != CHOICES_PER_SEGMENT:
            logger.warning(
                "%s returned %d choices; normalizing to %d.",
                config.name,
                len(choices),
                CHOICES_PER_SEGMENT,
            )
            choices = self._choice_parser.pad_choices(choices, parsed.story_text)

        logger.info("%s generated the story segment and choices.", config.name)
        return AIResponse(
            segment_text=parsed.story_text,
            choices_text="\n".join(choices),
            choices=tuple(choices),
            provider=config.name,
            method=method,
            api_calls_made=api_calls,
            fallback_triggered=fallback_triggered,
        )
