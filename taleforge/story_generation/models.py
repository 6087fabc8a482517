"""
Structured representations of stories, segments, choices, and characters.

Rows arrive from the persistence layer and the inbound request in loosely
typed shapes; the ``from_mapping`` constructors normalize them once so the
rest of the pipeline can rely on plain attributes.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Mapping, Sequence

logger = logging.getLogger(__name__)

CHOICES_PER_SEGMENT = 3


def _coerce_optional_str(value: Any) -> str | None:
    if value is None:
        return None

    text = str(value).strip()
    return text or None


def _coerce_optional_level(value: Any) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return None

    try:
        level = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected an integer-compatible level, got {value!r}") from exc

    return level if 1 <= level <= 10 else None


def _coerce_story_type(value: Any) -> str | None:
    text = _coerce_optional_str(value)
    if text is None:
        return None
    text = text.lower()
    return text if text in {"short", "medium", "long"} else None


@dataclass(frozen=True)
class Character:
    """
    A user-defined or template-defined persona.

    Attributes
    ----------
    name:
        Display name used in prompts and illustration briefs.
    description:
        Short free-text description.
    role:
        Narrative role: protagonist, antagonist, supporting, or mentor.
    personality, appearance:
        Optional extra detail for prompts and character consistency.
    """

    name: str
    description: str = ""
    role: str = "supporting"
    personality: str | None = None
    appearance: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Character":
        # Join rows arrive nested as {"user_characters": {...}}.
        nested = data.get("user_characters")
        if isinstance(nested, Mapping):
            data = nested

        name = _coerce_optional_str(data.get("name"))
        if not name:
            raise ValueError("Character data must include a non-empty 'name' field.")

        return cls(
            name=name,
            description=_coerce_optional_str(data.get("description")) or "",
            role=_coerce_optional_str(data.get("role")) or "supporting",
            personality=_coerce_optional_str(data.get("personality")),
            appearance=_coerce_optional_str(data.get("appearance")),
        )

    def prompt_label(self) -> str:
        return f"{self.name}: {self.description} ({self.role})"

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "role": self.role,
            "personality": self.personality,
            "appearance": self.appearance,
        }


def normalize_characters(value: Any) -> tuple[Character, ...]:
    """
    Convert a sequence of character rows into ``Character`` objects, skipping bad rows.
    """
    if value is None:
        return ()

    if isinstance(value, Mapping) or isinstance(value, (str, bytes)):
        raise TypeError("characters must be a sequence of mappings.")

    characters: list[Character] = []
    for item in value:
        if isinstance(item, Character):
            characters.append(item)
            continue
        if not isinstance(item, Mapping):
            logger.warning("Skipping character entry that is not a mapping: %r", item)
            continue
        try:
            characters.append(Character.from_mapping(item))
        except ValueError:
            logger.warning("Skipping character entry without a name: %r", item)
    return tuple(characters)


@dataclass(frozen=True)
class TemplateContext:
    """Structured overrides supplied when a story was created from a template."""

    theme: str | None = None
    setting: str | None = None
    conflict: str | None = None
    quest: str | None = None
    moral_lesson: str | None = None
    atmosphere: str | None = None
    characters: tuple[Character, ...] = ()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "TemplateContext | None":
        if not data:
            return None

        raw_characters = data.get("characters")
        try:
            characters = normalize_characters(raw_characters)
        except TypeError:
            logger.warning("Ignoring malformed template characters: %r", raw_characters)
            characters = ()

        return cls(
            theme=_coerce_optional_str(data.get("theme")),
            setting=_coerce_optional_str(
                data.get("setting") or data.get("setting_description")
            ),
            conflict=_coerce_optional_str(data.get("conflict")),
            quest=_coerce_optional_str(data.get("quest")),
            moral_lesson=_coerce_optional_str(
                data.get("moral_lesson") or data.get("moralLesson")
            ),
            atmosphere=_coerce_optional_str(data.get("atmosphere")),
            characters=characters,
        )


@dataclass(frozen=True)
class Story:
    """
    A single branching narrative. Read-only input to the pipeline.
    """

    id: str
    title: str = ""
    description: str = ""
    user_id: str | None = None
    genre: str | None = None
    story_mode: str | None = None
    target_age: str = "7-9"
    story_type: str | None = None
    theme: str | None = None
    setting: str | None = None
    conflict: str | None = None
    quest: str | None = None
    moral_lesson: str | None = None
    atmosphere: str | None = None
    template_level: int | None = None
    difficulty_level: int | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Story":
        story_id = _coerce_optional_str(data.get("id"))
        if not story_id:
            raise ValueError("Story data must include a non-empty 'id' field.")

        return cls(
            id=story_id,
            title=_coerce_optional_str(data.get("title")) or "",
            description=_coerce_optional_str(data.get("description")) or "",
            user_id=_coerce_optional_str(data.get("user_id")),
            genre=_coerce_optional_str(data.get("genre")),
            story_mode=_coerce_optional_str(data.get("story_mode")),
            target_age=_coerce_optional_str(data.get("target_age") or data.get("age_group"))
            or "7-9",
            story_type=_coerce_story_type(data.get("story_type") or data.get("story_length")),
            theme=_coerce_optional_str(data.get("theme")),
            setting=_coerce_optional_str(data.get("setting")),
            conflict=_coerce_optional_str(data.get("conflict")),
            quest=_coerce_optional_str(data.get("quest")),
            moral_lesson=_coerce_optional_str(data.get("moral_lesson")),
            atmosphere=_coerce_optional_str(data.get("atmosphere")),
            template_level=_coerce_optional_level(data.get("template_level")),
            difficulty_level=_coerce_optional_level(data.get("difficulty_level")),
        )

    @property
    def level(self) -> int | None:
        return self.template_level or self.difficulty_level

    @property
    def effective_genre(self) -> str:
        return self.story_mode or self.genre or "fantasy"

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Choice:
    """A short selectable continuation option."""

    id: str
    text: str
    next_segment_id: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | str, index: int = 0) -> "Choice":
        if isinstance(data, str):
            return cls(id=f"choice-{index}", text=data.strip())
        return cls(
            id=_coerce_optional_str(data.get("id")) or f"choice-{index}",
            text=_coerce_optional_str(data.get("text")) or "",
            next_segment_id=_coerce_optional_str(data.get("next_segment_id")),
        )

    def as_dict(self) -> dict[str, Any]:
        return {"id": self.id, "text": self.text, "next_segment_id": self.next_segment_id}


def _normalize_choices(value: Any) -> tuple[Choice, ...]:
    if not value:
        return ()
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise TypeError("choices must be a sequence.")
    return tuple(
        item if isinstance(item, Choice) else Choice.from_mapping(item, index)
        for index, item in enumerate(value)
    )


@dataclass(frozen=True)
class NewSegment:
    """Insert payload for a segment that has not been persisted yet."""

    story_id: str
    content: str
    choices: tuple[Choice, ...]
    position: int
    image_prompt: str | None = None
    parent_segment_id: str | None = None
    created_at: str | None = None

    @property
    def word_count(self) -> int:
        return len(self.content.split())

    @property
    def is_end(self) -> bool:
        return not self.choices

    def as_dict(self) -> dict[str, Any]:
        return {
            "story_id": self.story_id,
            "content": self.content,
            "choices": [choice.as_dict() for choice in self.choices],
            "position": self.position,
            "segment_number": self.position,
            "image_prompt": self.image_prompt,
            "parent_segment_id": self.parent_segment_id,
            "is_end": self.is_end,
            "word_count": self.word_count,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class Segment:
    """
    One persisted node in the branching story tree.

    Only ``image_url`` is ever filled in after creation.
    """

    id: str
    story_id: str
    content: str
    position: int
    choices: tuple[Choice, ...] = ()
    image_prompt: str | None = None
    image_url: str | None = None
    parent_segment_id: str | None = None
    created_at: str | None = None
    word_count: int = field(default=0)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Segment":
        segment_id = _coerce_optional_str(data.get("id"))
        story_id = _coerce_optional_str(data.get("story_id"))
        if not segment_id or not story_id:
            raise ValueError("Segment data must include non-empty 'id' and 'story_id' fields.")

        content = str(data.get("content") or data.get("segment_text") or "").strip()
        try:
            position = int(data.get("position") or data.get("segment_number") or 0)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid segment position: {data.get('position')!r}") from exc

        segment = cls(
            id=segment_id,
            story_id=story_id,
            content=content,
            position=position,
            choices=_normalize_choices(data.get("choices")),
            image_prompt=_coerce_optional_str(data.get("image_prompt")),
            image_url=_coerce_optional_str(data.get("image_url")),
            parent_segment_id=_coerce_optional_str(data.get("parent_segment_id")),
            created_at=_coerce_optional_str(data.get("created_at")),
            word_count=int(data.get("word_count") or len(content.split())),
        )
        if not segment.has_valid_choice_count:
            logger.warning(
                "Segment %s has %d choices; expected %d or none.",
                segment.id,
                len(segment.choices),
                CHOICES_PER_SEGMENT,
            )
        return segment

    @property
    def is_end(self) -> bool:
        return not self.choices

    @property
    def has_valid_choice_count(self) -> bool:
        return len(self.choices) in (0, CHOICES_PER_SEGMENT)

    def choice_text(self, index: int | None) -> str | None:
        if index is None or not 0 <= index < len(self.choices):
            return None
        return self.choices[index].text or None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "story_id": self.story_id,
            "content": self.content,
            "position": self.position,
            "choices": [choice.as_dict() for choice in self.choices],
            "image_prompt": self.image_prompt,
            "image_url": self.image_url,
            "parent_segment_id": self.parent_segment_id,
            "is_end": self.is_end,
            "word_count": self.word_count,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class AIResponse:
    """
    Transient result of a provider call. Never persisted.
    """

    segment_text: str
    choices_text: str
    provider: str
    method: str = "chat_completions"
    api_calls_made: int = 1
    fallback_triggered: bool = False
    # Choices already validated by the provider parser; empty for raw-text output.
    choices: tuple[str, ...] = ()


def segment_texts(segments: Iterable[Segment]) -> list[str]:
    return [segment.content for segment in segments if segment.content]
