"""
Prompt construction utilities for story segment generation.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Sequence

from taleforge.common.errors import PromptBuildError

from .models import Character, Segment, Story, TemplateContext

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{[^{}]+\}")

DEFAULT_THEME = "an adventure"
DEFAULT_SETTING = "a magical place"
DEFAULT_CHARACTERS = "a brave main character"

BASE_TEMPLATE = """Write the next segment of an engaging children's story for ages {age}. The story should be {genre}-themed and focus on {{theme}} in {{setting}}. Include the main characters: {{characters}}.

WRITING REQUIREMENTS:
- Write exactly {word_limit} words (count carefully)
- Complexity: {complexity}
- Language: {vocabulary}
- End with an engaging moment that leads to choices
- Make it age-appropriate and educational"""

_LEVEL_BANDS: tuple[tuple[int, str, str], ...] = (
    (
        3,
        "very simple concepts, basic emotions, clear cause and effect",
        "simple words, short sentences, repetitive structure",
    ),
    (
        6,
        "moderate concepts, problem-solving, character development",
        "age-appropriate vocabulary, varied sentence length, descriptive language",
    ),
    (
        10,
        "advanced themes, complex problem-solving, deeper character arcs",
        "rich vocabulary, complex sentences, literary devices",
    ),
)

_STORY_TYPE_WORDS = {"short": 60, "medium": 125, "long": 180}

_STORY_TYPE_COMPLEXITY = {
    # Ages 3-6
    "short": (
        "very simple concepts, basic emotions like happy/sad, simple problems with clear solutions",
        "simple everyday words, short sentences, repetitive phrases, familiar concepts",
    ),
    # Ages 6-9
    "medium": (
        "moderate concepts, friendship themes, basic problem-solving, simple moral lessons",
        "age-appropriate vocabulary, varied sentence structure, descriptive but accessible language",
    ),
    # Ages 8-12
    "long": (
        "more advanced themes, character growth, complex problem-solving, deeper moral lessons",
        "richer vocabulary, complex sentence structures, metaphors and descriptive language",
    ),
}

# genre -> (young guidance, older guidance); middle ages share the older text.
_GENRE_GUIDANCE: dict[str, tuple[str, str]] = {
    "adventure": (
        "Focus on safe, exciting discoveries and simple problem-solving. Include themes of courage and friendship.",
        "Include exciting challenges, exploration, and character growth. Balance action with learning moments.",
    ),
    "fantasy": (
        "Include gentle magic, friendly magical creatures, and wonder. Keep magic safe and positive.",
        "Incorporate magical elements, mythical creatures, and enchanting environments. Balance fantasy with relatable emotions.",
    ),
    "educational": (
        "Weave in simple learning concepts naturally. Focus on basic skills, colors, numbers, or letters.",
        "Incorporate age-appropriate educational elements like science, history, or problem-solving in an engaging way.",
    ),
    "bedtime": (
        "Create a calming, peaceful atmosphere. Use gentle language and soothing imagery. End with a sense of comfort and security.",
        "Create a calming, peaceful atmosphere. Use gentle language and soothing imagery. End with a sense of comfort and security.",
    ),
    "humorous": (
        "Include gentle humor, silly situations, and playful characters. Keep comedy light and age-appropriate.",
        "Use age-appropriate humor, funny situations, and amusing character interactions. Include wordplay if suitable for age group.",
    ),
    "mystery": (
        "Create simple, non-scary mysteries. Focus on curiosity and gentle problem-solving.",
        "Include age-appropriate mysteries with clues and logical problem-solving. Keep suspense engaging but not frightening.",
    ),
    "sci-fi": (
        "Introduce simple technology concepts and space themes in an accessible way.",
        "Incorporate age-appropriate science fiction elements, technology, and futuristic concepts with educational value.",
    ),
}

_DEFAULT_GUIDANCE = (
    "Keep the story simple, positive, and engaging with clear moral lessons.",
    "Include character development, positive values, and age-appropriate challenges.",
)

_GENRE_KEYS = {"science fiction": "sci-fi", "scifi": "sci-fi", "funny": "humorous"}

BASE_SYSTEM_PROMPT = (
    "You are an expert children's story writer who creates engaging, age-appropriate stories "
    "with positive messages. Always respond with valid JSON in the specified format."
)

_SYSTEM_PROMPT_BY_AGE = {
    "young": " Keep language very simple, use basic vocabulary, and focus on fundamental concepts like friendship, kindness, and basic learning.",
    "middle": " Use moderately complex vocabulary, include educational elements, and focus on problem-solving and character development.",
    "older": " Use age-appropriate complex vocabulary, include deeper themes like responsibility and empathy, and create engaging character arcs.",
}


def categorize_age(target_age: str | None) -> str:
    """Map an age band onto the young/middle/older guidance categories."""
    age = (target_age or "").strip()
    if age in {"3-4", "4-6"}:
        return "young"
    if age == "7-9":
        return "middle"
    return "older"


@dataclass(frozen=True)
class WritingConstraints:
    word_limit: int
    complexity: str
    vocabulary: str


@dataclass(frozen=True)
class PromptValidation:
    is_valid: bool
    length: int
    leftover_placeholders: tuple[str, ...]

    @property
    def has_placeholders(self) -> bool:
        return bool(self.leftover_placeholders)


def writing_constraints(story: Story) -> WritingConstraints:
    """
    Derive target word count and complexity from the story's level or length.
    """
    level = story.level
    if level is not None:
        word_limit = round(30 + (level - 1) * (200 - 30) / 9)
        for ceiling, complexity, vocabulary in _LEVEL_BANDS:
            if level <= ceiling:
                return WritingConstraints(word_limit, complexity, vocabulary)

    story_type = story.story_type or "medium"
    complexity, vocabulary = _STORY_TYPE_COMPLEXITY[story_type]
    return WritingConstraints(_STORY_TYPE_WORDS[story_type], complexity, vocabulary)


def genre_guidance(genre: str, target_age: str | None) -> str:
    key = genre.strip().lower()
    key = _GENRE_KEYS.get(key, key)
    young, older = _GENRE_GUIDANCE.get(key, _DEFAULT_GUIDANCE)
    return young if categorize_age(target_age) == "young" else older


def validate_prompt(prompt: str) -> PromptValidation:
    leftovers = tuple(PLACEHOLDER_PATTERN.findall(prompt))
    return PromptValidation(
        is_valid=len(prompt) > 50 and not leftovers,
        length=len(prompt),
        leftover_placeholders=leftovers,
    )


def system_prompt_for(target_age: str | None) -> str:
    return BASE_SYSTEM_PROMPT + _SYSTEM_PROMPT_BY_AGE[categorize_age(target_age)]


class PromptBuilder:
    """
    Assembles the instruction sent to the language model for the next segment.
    """

    def template_for(self, story: Story) -> str:
        genre = story.effective_genre
        constraints = writing_constraints(story)
        logger.debug(
            "Selecting template for genre=%s age=%s words=%d",
            genre,
            story.target_age,
            constraints.word_limit,
        )
        base = BASE_TEMPLATE.format(
            age=_literal(story.target_age),
            genre=_literal(genre),
            word_limit=constraints.word_limit,
            complexity=constraints.complexity,
            vocabulary=constraints.vocabulary,
        )
        return f"{base}\n\n{genre_guidance(genre, story.target_age)}"

    def build_prompt(
        self,
        story: Story,
        previous_segment: Segment | None = None,
        user_choice: str | None = None,
        characters: Sequence[Character] | None = None,
        template_context: TemplateContext | None = None,
    ) -> str:
        """
        Build the complete generation prompt, raising ``PromptBuildError`` on leftover placeholders.
        """
        prompt = self.template_for(story)

        theme = _first_present(
            template_context.theme if template_context else None,
            story.theme,
            story.title,
            story.description,
            DEFAULT_THEME,
        )
        setting = _first_present(
            template_context.setting if template_context else None,
            story.setting,
            story.story_mode,
            DEFAULT_SETTING,
        )
        template_characters = template_context.characters if template_context else ()
        characters_text = self._characters_text(template_characters, characters or ())

        # Values are user-supplied; substitute placeholders in a single pass so
        # braces inside them are never re-expanded.
        values = {
            "theme": _literal(theme),
            "setting": _literal(setting),
            "characters": _literal(characters_text),
        }
        prompt = PLACEHOLDER_PATTERN.sub(
            lambda match: values.get(match.group(0)[1:-1], match.group(0)),
            prompt,
        )

        prompt += self._story_direction(story, template_context)

        if previous_segment is not None and previous_segment.content:
            prompt += f"\n\nPrevious story segment: {_literal(previous_segment.content)}"
        if user_choice:
            prompt += f"\n\nUser chose: {_literal(user_choice)}"

        validation = validate_prompt(prompt)
        if validation.has_placeholders:
            raise PromptBuildError(
                "Prompt still contains unresolved placeholders: "
                + ", ".join(validation.leftover_placeholders)
            )

        logger.info("Prompt built for story %s (%d characters)", story.id, validation.length)
        return prompt

    @staticmethod
    def _characters_text(
        template_characters: Sequence[Character],
        characters: Sequence[Character],
    ) -> str:
        if template_characters:
            return ", ".join(character.prompt_label() for character in template_characters)
        if characters:
            return ", ".join(character.prompt_label() for character in characters)
        return DEFAULT_CHARACTERS

    @staticmethod
    def _story_direction(story: Story, template_context: TemplateContext | None) -> str:
        context = template_context or TemplateContext()
        lines: list[str] = []
        for label, value in (
            ("Story Conflict", context.conflict or story.conflict),
            ("Main Quest", context.quest or story.quest),
            ("Moral Lesson", context.moral_lesson or story.moral_lesson),
            ("Atmosphere", context.atmosphere or story.atmosphere),
        ):
            if value:
                lines.append(f"{label}: {_literal(value)}")
        if not lines:
            return ""
        return "\n\n" + "\n".join(lines)


def _first_present(*values: str | None) -> str:
    for value in values:
        if value and value.strip():
            return value.strip()
    return ""


def _literal(text: str) -> str:
    """Neutralize brace pairs in user text so they never read as placeholders."""
    return text.replace("{", "(").replace("}", ")")
