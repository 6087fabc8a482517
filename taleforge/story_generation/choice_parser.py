"""
Robust extraction of exactly three story choices from free-form model output.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Callable, Sequence

from .models import CHOICES_PER_SEGMENT, AIResponse, Choice

logger = logging.getLogger(__name__)

Predicate = Callable[[str], bool]

_NUMBERING = re.compile(r"^\d+[.):]?\s*")
_LETTERING = re.compile(r"^[A-Za-z][.):]\s+")
_BULLET = re.compile(r"^[-•*.+]\s*")
_QUOTED = re.compile(r"""^["'`](.*)["'`]$""")
_PURE_NUMBER = re.compile(r"^\d+\.?\s*$")
_LINE_BREAKS = re.compile(r"[\n\r]+")
_SENTENCE_END = re.compile(r"[.!?]+")
_DELIMITERS = re.compile(r"[,;\n\r\-|]+")


def _contains_any(*keywords: str) -> Predicate:
    def predicate(text: str) -> bool:
        return any(keyword in text for keyword in keywords)

    return predicate


def _has_word(*words: str) -> Predicate:
    pattern = re.compile(r"\b(?:" + "|".join(re.escape(word) for word in words) + r")\b")

    def predicate(text: str) -> bool:
        return bool(pattern.search(text))

    return predicate


# Ordered, first match wins. Predicates receive lower-cased segment text.
SCENARIO_FALLBACKS: tuple[tuple[Predicate, tuple[str, str, str]], ...] = (
    (
        _contains_any("door", "locked"),
        ("Try to open the door", "Look for a key", "Find another way around"),
    ),
    (
        _contains_any("magic", "spell"),
        ("Use the magic to help", "Be careful with the magic", "Ask about the magic"),
    ),
    (
        _contains_any("forest", "woods"),
        ("Follow the forest path", "Look for hidden trails", "Call out for help"),
    ),
    (
        _contains_any("castle", "tower"),
        ("Explore the castle halls", "Find another entrance", "Look for a way up"),
    ),
    (
        _contains_any("dragon", "monster", "creature"),
        ("Approach the creature carefully", "Try to make friends", "Find a safe hiding spot"),
    ),
    (
        _contains_any("treasure", "chest"),
        ("Open the treasure chest", "Check for traps first", "Look around for clues"),
    ),
    (
        _contains_any("friend"),
        ("Help your friend", "Ask a friend for help", "Work together as a team"),
    ),
    (
        _has_word("water", "river", "rivers", "lake", "lakes", "ocean", "sea", "pond"),
        ("Swim across the water", "Look for a boat", "Walk along the shore"),
    ),
    (
        _contains_any("mountain", "cliff"),
        ("Climb to the top", "Look for a hidden cave", "Take the winding path"),
    ),
    (
        _contains_any("book", "scroll"),
        ("Read the next page", "Look for hidden clues", "Share it with a friend"),
    ),
    (
        _contains_any("lost", "confused"),
        ("Look for clues nearby", "Ask someone for directions", "Stay calm and think"),
    ),
)

ACTION_FALLBACKS: tuple[tuple[Predicate, tuple[str, str, str]], ...] = (
    (
        _has_word("walk", "walked", "walking", "go", "goes", "going", "went"),
        ("Keep walking ahead", "Take a different path", "Stop and look around"),
    ),
    (
        _has_word("see", "saw", "seen", "look", "looked", "looking"),
        ("Take a closer look", "Point it out to others", "Walk over to investigate"),
    ),
    (
        _has_word("hear", "heard", "hearing", "sound", "sounds", "noise"),
        ("Follow the sound", "Listen more carefully", "Call out hello"),
    ),
)

GENERIC_FALLBACKS = ("Continue the adventure", "Be brave and explore", "Think carefully first")


@dataclass(frozen=True)
class ParsingStats:
    response_length: int
    has_newlines: bool
    has_numbering: bool
    has_bullets: bool
    estimated_method: str


def _strip_decorations(text: str) -> str:
    text = text.strip()
    text = _NUMBERING.sub("", text)
    text = _LETTERING.sub("", text)
    text = _BULLET.sub("", text)
    text = _QUOTED.sub(r"\1", text)
    return text.strip()


def split_lines(text: str) -> list[str]:
    """Strategy 1: numbered, lettered, bulleted, or quoted lines."""
    cleaned = (_strip_decorations(line) for line in _LINE_BREAKS.split(text))
    return [
        line for line in cleaned if len(line) > 5 and not _PURE_NUMBER.match(line)
    ][:CHOICES_PER_SEGMENT]


def extract_sentences(text: str) -> list[str]:
    """Strategy 2: natural-language answers with one choice per sentence."""
    joined = _LINE_BREAKS.sub(" ", text)
    fragments = (fragment.strip() for fragment in _SENTENCE_END.split(joined))
    return [fragment for fragment in fragments if 5 < len(fragment) < 100][:CHOICES_PER_SEGMENT]


def split_delimiters(text: str) -> list[str]:
    """Strategy 3: comma, semicolon, hyphen, or pipe separated answers."""
    fragments = (
        _LETTERING.sub("", _NUMBERING.sub("", fragment.strip())).strip()
        for fragment in _DELIMITERS.split(text)
    )
    return [fragment for fragment in fragments if 3 < len(fragment) < 50][:CHOICES_PER_SEGMENT]


PARSING_STRATEGIES: tuple[tuple[str, Callable[[str], list[str]]], ...] = (
    ("enhanced-splitting", split_lines),
    ("sentence-extraction", extract_sentences),
    ("delimiter-extraction", split_delimiters),
)


def generate_contextual_fallbacks(segment_text: str) -> list[str]:
    """
    Return three pre-authored choices matched against the segment's keywords.
    """
    lowered = segment_text.lower()
    for table in (SCENARIO_FALLBACKS, ACTION_FALLBACKS):
        for predicate, choices in table:
            if predicate(lowered):
                return list(choices)
    logger.info("No contextual keywords matched; using generic fallback choices.")
    return list(GENERIC_FALLBACKS)


def pad_choices(choices: Sequence[str], segment_text: str) -> list[str]:
    """
    Fill a short choice list up to three entries, keeping the originals first.
    """
    result = [choice.strip() for choice in choices if choice and choice.strip()]
    result = result[:CHOICES_PER_SEGMENT]
    if len(result) == CHOICES_PER_SEGMENT:
        return result

    seen = {choice.lower() for choice in result}
    for candidate in [*generate_contextual_fallbacks(segment_text), *GENERIC_FALLBACKS]:
        if len(result) == CHOICES_PER_SEGMENT:
            break
        if candidate.lower() not in seen:
            result.append(candidate)
            seen.add(candidate.lower())
    return result


def choice_id(segment_text: str, text: str, index: int) -> str:
    digest = hashlib.sha1(f"{segment_text}\x00{text}".encode("utf-8")).hexdigest()[:12]
    return f"choice-{digest}-{index}"


class ChoiceParser:
    """
    Turns imperfect provider output into exactly three ``Choice`` objects.
    """

    def choices_for(self, response: AIResponse) -> list[Choice]:
        """
        Choices for a provider result. Three already-validated choices are kept
        verbatim; anything else goes through the text cascade.
        """
        if len(response.choices) == CHOICES_PER_SEGMENT:
            return self.build_choices(response.choices, response.segment_text)
        return self.parse_choices(response.choices_text, response.segment_text)

    def parse_choices(self, choices_text: str, segment_text: str) -> list[Choice]:
        raw_choices = self.parse_raw(choices_text or "")

        if len(raw_choices) < CHOICES_PER_SEGMENT:
            logger.warning(
                "Only %d usable choices parsed; filling with contextual fallbacks.",
                len(raw_choices),
            )
            raw_choices = pad_choices(raw_choices, segment_text)
        return self.build_choices(raw_choices, segment_text)

    def build_choices(self, raw_choices: Sequence[str], segment_text: str) -> list[Choice]:
        choices = [
            Choice(id=choice_id(segment_text, text, index), text=text, next_segment_id=None)
            for index, text in enumerate(raw_choices)
        ]
        logger.info("Final choices: %s", " | ".join(choice.text for choice in choices))
        return choices

    def parse_raw(self, choices_text: str) -> list[str]:
        """
        Run the parsing cascade; a later strategy only replaces a shorter result.
        """
        best: list[str] = []
        for name, strategy in PARSING_STRATEGIES:
            candidates = strategy(choices_text)
            logger.debug("Strategy %s found %d choices", name, len(candidates))
            if len(candidates) > len(best):
                best = candidates
            if len(best) >= CHOICES_PER_SEGMENT:
                break
        return best

    def generate_contextual_fallbacks(self, segment_text: str) -> list[str]:
        return generate_contextual_fallbacks(segment_text)

    def pad_choices(self, choices: Sequence[str], segment_text: str) -> list[str]:
        return pad_choices(choices, segment_text)

    def parsing_stats(self, response: str) -> ParsingStats:
        return ParsingStats(
            response_length=len(response),
            has_newlines=bool(_LINE_BREAKS.search(response)),
            has_numbering=bool(re.search(r"\d+[.):]", response)),
            has_bullets=bool(re.search(r"[-•*]", response)),
            estimated_method=_estimate_method(response),
        )


def _estimate_method(response: str) -> str:
    if re.search(r"\d+[.):]", response):
        return "enhanced-splitting-numbered"
    if re.search(r"[-•*]", response):
        return "enhanced-splitting-bullets"
    if re.search(r"[.!?]", response):
        return "sentence-extraction"
    return "delimiter-extraction"
