"""
Fire-and-forget request to the sibling illustration endpoint.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Any, Callable

import requests

logger = logging.getLogger(__name__)

PostCallable = Callable[..., Any]


class ImageGenerationTrigger:
    """
    Posts ``{segmentId, imagePrompt}`` to the illustration endpoint on a daemon thread.

    Parameters
    ----------
    function_url:
        Endpoint URL. Falls back to ``TALEFORGE_IMAGE_FUNCTION_URL``; without one the
        trigger is disabled and only logs.
    timeout:
        Seconds before the detached request gives up.
    post:
        Optional replacement for :func:`requests.post`. Mainly useful for testing.
    """

    def __init__(
        self,
        *,
        function_url: str | None = None,
        timeout: float = 30.0,
        post: PostCallable | None = None,
    ) -> None:
        self._function_url = function_url or os.getenv("TALEFORGE_IMAGE_FUNCTION_URL")
        self._timeout = timeout
        self._post = post or requests.post

    @property
    def enabled(self) -> bool:
        return bool(self._function_url)

    def trigger(self, segment_id: str, image_prompt: str, auth_header: str | None) -> None:
        """Start the request and return immediately; the outcome is only logged."""
        if not self.enabled:
            logger.info("No image function URL configured; skipping image generation.")
            return

        worker = threading.Thread(
            target=self.send,
            args=(segment_id, image_prompt, auth_header),
            name=f"image-trigger-{segment_id}",
            daemon=True,
        )
        worker.start()
        logger.info("Image generation triggered for segment %s", segment_id)

    def send(self, segment_id: str, image_prompt: str, auth_header: str | None) -> bool:
        headers = {"Content-Type": "application/json"}
        if auth_header:
            headers["Authorization"] = auth_header

        try:
            response = self._post(
                self._function_url,
                json={"segmentId": segment_id, "imagePrompt": image_prompt},
                headers=headers,
                timeout=self._timeout,
            )
            response.raise_for_status()
        except requests.RequestException:
            logger.exception("Image generation request failed for segment %s", segment_id)
            return False

        logger.info("Image generation accepted for segment %s", segment_id)
        return True
