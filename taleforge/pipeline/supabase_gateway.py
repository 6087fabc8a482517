"""
Supabase-backed implementation of the segment gateway.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from supabase import Client, create_client

from taleforge.common.errors import (
    ConfigurationError,
    PersistenceError,
    SegmentNotFoundError,
    StoryNotFoundError,
)
from taleforge.story_generation.models import (
    Character,
    NewSegment,
    Segment,
    Story,
    normalize_characters,
)

logger = logging.getLogger(__name__)

STORIES_TABLE = "stories"
SEGMENTS_TABLE = "story_segments"
STORY_CHARACTERS_TABLE = "story_characters"
CHARACTER_COLUMNS = "user_characters(name, description, role, personality, appearance)"


class SupabaseStoryGateway:
    """
    Reads and writes story rows through the Supabase service-role client.

    Parameters
    ----------
    url, key:
        Project URL and service-role key. Fall back to ``SUPABASE_URL`` and
        ``SUPABASE_SERVICE_ROLE_KEY``.
    client:
        Optional pre-configured :class:`supabase.Client`. Mainly useful for testing.
    """

    def __init__(
        self,
        *,
        url: str | None = None,
        key: str | None = None,
        client: Client | None = None,
    ) -> None:
        if client is None:
            url = url or os.getenv("SUPABASE_URL")
            key = key or os.getenv("SUPABASE_SERVICE_ROLE_KEY")
            if not url or not key:
                raise ConfigurationError("Missing required Supabase environment variables")
            client = create_client(url, key)
        self._client = client

    def fetch_story(self, story_id: str) -> Story:
        logger.info("Fetching story %s", story_id)
        try:
            response = (
                self._client.table(STORIES_TABLE)
                .select("*")
                .eq("id", story_id)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise PersistenceError(f"Failed to fetch story: {exc}") from exc

        if not response.data:
            raise StoryNotFoundError(f"Story not found: {story_id}")
        return Story.from_mapping(response.data[0])

    def fetch_latest_segment(self, story_id: str) -> Segment | None:
        try:
            response = (
                self._client.table(SEGMENTS_TABLE)
                .select("*")
                .eq("story_id", story_id)
                .order("position", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise PersistenceError(f"Failed to fetch previous segment: {exc}") from exc

        if not response.data:
            return None
        return Segment.from_mapping(response.data[0])

    def fetch_characters(self, story_id: str, user_id: str | None) -> list[Character]:
        query = (
            self._client.table(STORY_CHARACTERS_TABLE)
            .select(CHARACTER_COLUMNS)
            .eq("story_id", story_id)
        )
        if user_id:
            query = query.eq("user_characters.user_id", user_id)
        try:
            response = query.execute()
        except Exception as exc:
            raise PersistenceError(f"Failed to fetch user characters: {exc}") from exc

        characters = list(normalize_characters(response.data or []))
        logger.info("Found %d user characters for story %s", len(characters), story_id)
        return characters

    def next_position(self, story_id: str) -> int:
        try:
            response = (
                self._client.table(SEGMENTS_TABLE)
                .select("position")
                .eq("story_id", story_id)
                .order("position", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise PersistenceError(f"Failed to read segment positions: {exc}") from exc

        if not response.data:
            return 1
        return int(response.data[0].get("position") or 0) + 1

    def insert_segment(self, segment: NewSegment) -> Segment:
        logger.info(
            "Saving segment for story %s at position %d (%d choices)",
            segment.story_id,
            segment.position,
            len(segment.choices),
        )
        try:
            response = self._client.table(SEGMENTS_TABLE).insert(segment.as_dict()).execute()
        except Exception as exc:
            raise PersistenceError(f"Failed to save story segment: {exc}") from exc

        if not response.data:
            raise PersistenceError("Failed to create story segment - no data returned")
        return Segment.from_mapping(response.data[0])

    def fetch_segment(self, segment_id: str) -> Segment:
        try:
            response = (
                self._client.table(SEGMENTS_TABLE)
                .select("*")
                .eq("id", segment_id)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise PersistenceError(f"Failed to fetch segment: {exc}") from exc

        if not response.data:
            raise SegmentNotFoundError(f"Segment not found: {segment_id}")
        return Segment.from_mapping(response.data[0])

    def attach_image_url(self, segment_id: str, image_url: str) -> Segment:
        updates: dict[str, Any] = {"image_url": image_url}
        try:
            response = (
                self._client.table(SEGMENTS_TABLE)
                .update(updates)
                .eq("id", segment_id)
                .execute()
            )
        except Exception as exc:
            raise PersistenceError(f"Segment update error: {exc}") from exc

        if not response.data:
            raise SegmentNotFoundError(f"Segment not found: {segment_id}")
        return Segment.from_mapping(response.data[0])
