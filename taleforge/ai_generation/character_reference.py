"""
Heuristics for keeping a story's main character visually consistent.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

DEFAULT_CHARACTER_NAME = "Main Character"

CHARACTER_INDICATORS = (
    "protagonist", "hero", "main character",
    "he", "she", "his", "her",
    "stood", "walked", "looked", "smiled", "spoke", "thought",
    "gazed", "rushed", "decided", "realized", "felt",
)

CHARACTER_SCENES = ("bedroom", "classroom", "computer room", "laboratory")

_INDICATOR_PATTERN = re.compile(
    r"\b(?:" + "|".join(re.escape(indicator) for indicator in CHARACTER_INDICATORS) + r")\b"
)

_NAME_STOPWORDS = frozenset(
    {
        "The", "And", "But", "Or", "As", "In", "On", "At", "To", "For",
        "This", "That", "He", "She", "It", "They", "One", "Two", "First",
    }
)


@dataclass(frozen=True)
class CharacterReference:
    id: str
    story_id: str
    character_name: str
    reference_image_url: str
    first_segment_id: str
    created_at: str

    def as_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "story_id": self.story_id,
            "character_name": self.character_name,
            "reference_image_url": self.reference_image_url,
            "first_segment_id": self.first_segment_id,
            "created_at": self.created_at,
        }


class CharacterReferenceManager:
    def needs_character_consistency(self, segment_text: str, image_prompt: str) -> bool:
        """
        Return True when either text is character-focused or shows a character-centric scene.
        """
        text = segment_text.lower()
        prompt = image_prompt.lower()
        combined = (text, prompt)

        has_focus = any(_INDICATOR_PATTERN.search(candidate) for candidate in combined)
        is_scene = any(scene in candidate for scene in CHARACTER_SCENES for candidate in combined)
        if has_focus or is_scene:
            logger.debug("Character consistency needed for this segment.")
            return True
        return False

    def extract_main_character(self, text: str) -> str:
        for match in re.finditer(r"\b[A-Z][a-z]+\b", text):
            word = match.group(0)
            if word not in _NAME_STOPWORDS and len(word) > 2:
                return word
        return DEFAULT_CHARACTER_NAME

    def build_reference(
        self,
        story_id: str,
        segment_id: str,
        image_url: str,
        character_name: str = DEFAULT_CHARACTER_NAME,
    ) -> CharacterReference:
        reference = CharacterReference(
            id=f"char-ref-{uuid.uuid4().hex[:12]}",
            story_id=story_id,
            character_name=character_name,
            reference_image_url=image_url,
            first_segment_id=segment_id,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        logger.info("Created character reference for %s in story %s", character_name, story_id)
        return reference
