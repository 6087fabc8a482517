"""
Prompt construction utilities for segment illustrations.

Everything here is pure text composition: the segment text is scanned against
ordered keyword tables and the findings are folded into a single scene
sentence followed by style, age, and quality modifiers.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from taleforge.common.config import DEFAULT_TARGET_AGE, art_style_for
from taleforge.story_generation.models import Character, Segment, Story, segment_texts

logger = logging.getLogger(__name__)

DEFAULT_SETTING = "mysterious place"
DEFAULT_ATMOSPHERE = "warm and inviting"
DEFAULT_CHARACTER_DESCRIPTION = "a brave young protagonist"

NEGATIVE_PROMPT = (
    "scary, violent, inappropriate, adult content, ugly, blurry, low quality, "
    "distorted, nsfw, dark, frightening"
)

# Ordered, first match wins. Specific indoor scenes precede broad outdoor ones.
SETTING_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("bedroom", ("bedroom", "bed room", "his room", "her room", "slept", "pillow", "bedside")),
    ("classroom", ("classroom", "class room", "teacher", "students", "school", "desk", "blackboard")),
    ("laboratory", ("laboratory", "lab", "experiment", "beaker", "microscope", "test tube")),
    ("library", ("library", "books", "shelves", "reading", "librarian")),
    ("computer room", ("computer", "typed", "keyboard", "screen", "internet", "website")),
    ("space", ("space", "galaxy", "stars", "planet", "nebula", "spacecraft", "universe", "cosmic")),
    ("city", ("city", "skyline", "buildings", "street", "urban", "downtown")),
    ("forest", ("forest", "woods", "trees", "woodland", "grove")),
    ("ocean", ("ocean", "sea", "beach", "shore", "waves", "underwater")),
    ("castle", ("castle", "palace", "tower", "throne room", "courtyard")),
    ("village", ("village", "town", "cottage", "marketplace")),
    ("mountain", ("mountain", "peak", "cliff", "valley", "cave")),
    ("magical realm", ("magical", "enchanted", "mystical", "glowing", "shimmering", "portal")),
)

ATMOSPHERE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("mysterious and enchanting", ("mysterious", "secret", "hidden", "whispered")),
    ("bright and cheerful", ("bright", "sunny", "cheerful", "happy", "joyful")),
    ("magical and wondrous", ("magical", "glowing", "shimmering", "sparkling")),
    ("adventurous and exciting", ("adventure", "exciting", "thrilling", "brave")),
    ("peaceful and serene", ("peaceful", "calm", "gentle", "quiet", "serene")),
    ("dramatic and epic", ("dramatic", "epic", "grand", "magnificent")),
)

ACTION_WORDS = (
    "running", "jumping", "flying", "swimming", "climbing", "dancing",
    "exploring", "discovering", "searching", "fighting", "protecting",
    "laughing", "singing", "playing", "reading", "writing", "drawing",
    "standing", "sitting", "walking", "looking", "pointing", "reaching",
)

OBJECT_WORDS = (
    "sword", "book", "crystal", "crown", "staff", "wand", "scroll",
    "treasure", "map", "key", "door", "bridge", "boat", "horse",
    "flower", "tree", "stone", "gem", "mirror", "lantern", "candle",
)

CAPITALIZED_STOPWORDS = frozenset(
    {
        "The", "And", "But", "Or", "As", "In", "On", "At", "To", "For", "With", "By",
        "This", "That", "These", "Those", "He", "She", "It", "They", "We", "You",
        "His", "Her", "Its", "Their", "Our", "Your", "One", "Two", "Three",
        "First", "Second", "Third", "Next", "Last", "New", "Old", "Good", "Great",
        "Then", "When", "Suddenly", "Once", "What", "Where", "Who", "Why", "How",
    }
)

AGE_MODIFIERS = {
    "4-6": "simple shapes, thick bold lines, very bright happy colors, cute characters",
    "7-9": "detailed illustration, vibrant colors, engaging characters, clear composition",
    "10-12": "sophisticated artwork, rich detailed colors, complex composition, realistic proportions",
}

QUALITY_MODIFIERS = (
    "children's book illustration, storybook art, picture book style",
    "high quality, detailed, professional illustration",
    "warm lighting, inviting atmosphere, child-friendly",
)

_PROPER_NOUN_RUN = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b")


@dataclass(frozen=True)
class IllustrationPrompt:
    """Container for the positive and negative prompts passed to the image model."""

    positive: str
    negative: str = NEGATIVE_PROMPT

    def render(self) -> str:
        return f"{self.positive}. NEGATIVE: {self.negative}"


@dataclass(frozen=True)
class VisualElements:
    setting: str
    atmosphere: str
    characters: tuple[str, ...]
    actions: tuple[str, ...]
    objects: tuple[str, ...]


def _mentions(text: str, phrase: str) -> bool:
    return re.search(r"\b" + re.escape(phrase) + r"\b", text) is not None


def _first_table_match(
    text: str,
    table: Sequence[tuple[str, Sequence[str]]],
) -> str | None:
    lowered = text.lower()
    for label, keywords in table:
        if any(_mentions(lowered, keyword) for keyword in keywords):
            return label
    return None


def extract_setting(text: str) -> str:
    return _first_table_match(text, SETTING_KEYWORDS) or DEFAULT_SETTING


def extract_atmosphere(text: str) -> str:
    return _first_table_match(text, ATMOSPHERE_KEYWORDS) or DEFAULT_ATMOSPHERE


def extract_character_mentions(text: str) -> list[str]:
    """
    Find capitalized names, multi-word names first, skipping common capitalized words.
    """
    mentions: list[str] = []
    for match in _PROPER_NOUN_RUN.finditer(text):
        words = match.group(0).split()
        while words and words[0] in CAPITALIZED_STOPWORDS:
            words.pop(0)
        if len(words) > 1:
            name = " ".join(words)
            if name not in mentions:
                mentions.append(name)

    for match in re.finditer(r"\b[A-Z][a-z]+\b", text):
        word = match.group(0)
        if word in CAPITALIZED_STOPWORDS or len(word) <= 2:
            continue
        if any(word in existing.split() for existing in mentions):
            continue
        mentions.append(word)
    return mentions


def extract_actions(text: str) -> list[str]:
    lowered = text.lower()
    return [action for action in ACTION_WORDS if _mentions(lowered, action)]


def extract_objects(text: str) -> list[str]:
    lowered = text.lower()
    return [item for item in OBJECT_WORDS if _mentions(lowered, item)]


def extract_visual_elements(text: str) -> VisualElements:
    return VisualElements(
        setting=extract_setting(text),
        atmosphere=extract_atmosphere(text),
        characters=tuple(extract_character_mentions(text)),
        actions=tuple(extract_actions(text)),
        objects=tuple(extract_objects(text)),
    )


def compose_scene(elements: VisualElements) -> str:
    composition = f"A {elements.atmosphere} scene in a {elements.setting}"
    if elements.characters:
        composition += f" featuring {elements.characters[0]}"
        if len(elements.characters) > 1:
            composition += " with " + " and ".join(elements.characters[1:3])
    if elements.actions:
        composition += f" {elements.actions[0]}"
    if elements.objects:
        composition += " with " + " and ".join(elements.objects[:2])
    return composition


class ImagePromptBuilder:
    """
    Derives an illustration prompt from a segment, independent of the text providers.
    """

    def build_illustration_prompt(
        self,
        story: Story,
        segment_text: str,
        previous_segments: Iterable[Segment] = (),
        characters: Sequence[Character] = (),
    ) -> IllustrationPrompt:
        elements = extract_visual_elements(segment_text)

        if elements.setting == DEFAULT_SETTING:
            # Scenes often continue where the last segment left off.
            for earlier in reversed(segment_texts(previous_segments)):
                setting = extract_setting(earlier)
                if setting != DEFAULT_SETTING:
                    elements = VisualElements(
                        setting=setting,
                        atmosphere=elements.atmosphere,
                        characters=elements.characters,
                        actions=elements.actions,
                        objects=elements.objects,
                    )
                    break

        parts = [compose_scene(elements)]
        if characters:
            parts[0] += ", featuring " + ", ".join(
                f"{character.name} ({character.description or DEFAULT_CHARACTER_DESCRIPTION})"
                for character in characters
            )

        target_age = story.target_age or DEFAULT_TARGET_AGE
        parts.append(art_style_for(story.effective_genre, target_age))
        parts.append(AGE_MODIFIERS.get(target_age, AGE_MODIFIERS[DEFAULT_TARGET_AGE]))
        parts.extend(QUALITY_MODIFIERS)

        prompt = IllustrationPrompt(positive=", ".join(parts))
        logger.info("Built illustration prompt: %.100s...", prompt.positive)
        return prompt

    def build_image_prompt(
        self,
        story: Story,
        segment_text: str,
        previous_segments: Iterable[Segment] = (),
        characters: Sequence[Character] = (),
    ) -> str:
        """Return the single-string prompt with the negative clause appended."""
        return self.build_illustration_prompt(
            story, segment_text, previous_segments, characters
        ).render()
