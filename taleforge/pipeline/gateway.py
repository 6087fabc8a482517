"""
Persistence boundary for stories, segments, and characters.

The pipeline only talks to the ``SegmentGateway`` protocol. The in-memory
store backs tests, the YAML store backs local CLI runs, and the Supabase
store (``supabase_gateway``) backs production.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol, Sequence

import yaml

from taleforge.common.errors import PersistenceError, SegmentNotFoundError, StoryNotFoundError
from taleforge.story_generation.models import (
    Character,
    NewSegment,
    Segment,
    Story,
    normalize_characters,
)

logger = logging.getLogger(__name__)


class SegmentGateway(Protocol):
    def fetch_story(self, story_id: str) -> Story:
        """Return the story or raise ``StoryNotFoundError``."""

    def fetch_latest_segment(self, story_id: str) -> Segment | None:
        ...

    def fetch_characters(self, story_id: str, user_id: str | None) -> list[Character]:
        ...

    def next_position(self, story_id: str) -> int:
        ...

    def insert_segment(self, segment: NewSegment) -> Segment:
        """Persist the segment or raise ``PersistenceError``."""

    def fetch_segment(self, segment_id: str) -> Segment:
        ...

    def attach_image_url(self, segment_id: str, image_url: str) -> Segment:
        ...


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryStoryGateway:
    """
    Dictionary-backed gateway. Safe to share across the pipeline's reader threads.
    """

    def __init__(
        self,
        *,
        stories: Iterable[Story | Mapping[str, Any]] = (),
        segments: Iterable[Segment | Mapping[str, Any]] = (),
        characters: Mapping[str, Sequence[Character | Mapping[str, Any]]] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._stories: dict[str, Story] = {}
        for story in stories:
            parsed = story if isinstance(story, Story) else Story.from_mapping(story)
            self._stories[parsed.id] = parsed
        self._segments: dict[str, Segment] = {}
        for segment in segments:
            parsed_segment = segment if isinstance(segment, Segment) else Segment.from_mapping(segment)
            self._segments[parsed_segment.id] = parsed_segment
        self._characters: dict[str, tuple[Character, ...]] = {
            story_id: normalize_characters(rows) for story_id, rows in (characters or {}).items()
        }
        self.insert_calls = 0

    @property
    def segments(self) -> list[Segment]:
        with self._lock:
            return sorted(self._segments.values(), key=lambda item: (item.story_id, item.position))

    def add_story(self, story: Story) -> None:
        with self._lock:
            self._stories[story.id] = story

    def fetch_story(self, story_id: str) -> Story:
        with self._lock:
            story = self._stories.get(story_id)
        if story is None:
            raise StoryNotFoundError(f"Story not found: {story_id}")
        return story

    def fetch_latest_segment(self, story_id: str) -> Segment | None:
        story_segments = self._story_segments(story_id)
        return story_segments[-1] if story_segments else None

    def fetch_characters(self, story_id: str, user_id: str | None) -> list[Character]:
        with self._lock:
            return list(self._characters.get(story_id, ()))

    def next_position(self, story_id: str) -> int:
        story_segments = self._story_segments(story_id)
        return story_segments[-1].position + 1 if story_segments else 1

    def insert_segment(self, segment: NewSegment) -> Segment:
        with self._lock:
            self.insert_calls += 1
            if segment.story_id not in self._stories:
                raise PersistenceError(
                    f"Failed to save story segment: unknown story {segment.story_id}"
                )
            if any(
                existing.story_id == segment.story_id and existing.position == segment.position
                for existing in self._segments.values()
            ):
                raise PersistenceError(
                    f"Failed to save story segment: position {segment.position} already taken"
                )
            stored = Segment(
                id=str(uuid.uuid4()),
                story_id=segment.story_id,
                content=segment.content,
                position=segment.position,
                choices=segment.choices,
                image_prompt=segment.image_prompt,
                parent_segment_id=segment.parent_segment_id,
                created_at=segment.created_at or _utc_now(),
                word_count=segment.word_count,
            )
            self._segments[stored.id] = stored
        logger.info("Saved segment %s at position %d", stored.id, stored.position)
        self._after_write()
        return stored

    def fetch_segment(self, segment_id: str) -> Segment:
        with self._lock:
            segment = self._segments.get(segment_id)
        if segment is None:
            raise SegmentNotFoundError(f"Segment not found: {segment_id}")
        return segment

    def attach_image_url(self, segment_id: str, image_url: str) -> Segment:
        with self._lock:
            segment = self._segments.get(segment_id)
            if segment is None:
                raise SegmentNotFoundError(f"Segment not found: {segment_id}")
            updated = Segment(
                id=segment.id,
                story_id=segment.story_id,
                content=segment.content,
                position=segment.position,
                choices=segment.choices,
                image_prompt=segment.image_prompt,
                image_url=image_url,
                parent_segment_id=segment.parent_segment_id,
                created_at=segment.created_at,
                word_count=segment.word_count,
            )
            self._segments[segment_id] = updated
        self._after_write()
        return updated

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "stories": [story.as_dict() for story in self._stories.values()],
                "segments": [segment.as_dict() for segment in self._segments.values()],
                "characters": {
                    story_id: [character.as_dict() for character in rows]
                    for story_id, rows in self._characters.items()
                },
            }

    def _story_segments(self, story_id: str) -> list[Segment]:
        with self._lock:
            return sorted(
                (segment for segment in self._segments.values() if segment.story_id == story_id),
                key=lambda item: item.position,
            )

    def _after_write(self) -> None:
        """Hook for stores that mirror writes elsewhere."""


class YamlStoryGateway(InMemoryStoryGateway):
    """
    In-memory gateway mirrored to a YAML file after every write.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        data: Mapping[str, Any] = {}
        if self._path.exists():
            loaded = yaml.safe_load(self._path.read_text(encoding="utf-8"))
            if loaded is not None and not isinstance(loaded, Mapping):
                raise ValueError("Story store YAML must deserialize to a mapping.")
            data = loaded or {}
        super().__init__(
            stories=data.get("stories") or (),
            segments=data.get("segments") or (),
            characters=data.get("characters") or {},
        )

    @property
    def path(self) -> Path:
        return self._path

    def _after_write(self) -> None:
        try:
            self._path.write_text(
                yaml.safe_dump(self.snapshot(), sort_keys=False, allow_unicode=True),
                encoding="utf-8",
            )
        except OSError as exc:
            raise PersistenceError(f"Failed to write story store {self._path}: {exc}") from exc

