import threading
from unittest.mock import MagicMock

import requests

from taleforge.ai_generation import ImageGenerationTrigger

FUNCTION_URL = "https://functions.test/generate-story-image"


def test_send_posts_segment_and_prompt_with_auth():
    post = MagicMock()
    trigger = ImageGenerationTrigger(function_url=FUNCTION_URL, timeout=5.0, post=post)

    assert trigger.send("seg-1", "A forest scene", "Bearer abc") is True

    post.assert_called_once_with(
        FUNCTION_URL,
        json={"segmentId": "seg-1", "imagePrompt": "A forest scene"},
        headers={"Content-Type": "application/json", "Authorization": "Bearer abc"},
        timeout=5.0,
    )
    post.return_value.raise_for_status.assert_called_once_with()


def test_send_logs_and_swallows_transport_errors(caplog):
    post = MagicMock(side_effect=requests.ConnectionError("refused"))
    trigger = ImageGenerationTrigger(function_url=FUNCTION_URL, post=post)

    assert trigger.send("seg-1", "prompt", None) is False
    assert "Image generation request failed for segment seg-1" in caplog.text


def test_send_treats_error_status_as_failure():
    post = MagicMock()
    post.return_value.raise_for_status.side_effect = requests.HTTPError("502 Bad Gateway")
    trigger = ImageGenerationTrigger(function_url=FUNCTION_URL, post=post)

    assert trigger.send("seg-1", "prompt", "Bearer abc") is False


def test_trigger_without_url_is_disabled(monkeypatch):
    monkeypatch.delenv("TALEFORGE_IMAGE_FUNCTION_URL", raising=False)
    post = MagicMock()
    trigger = ImageGenerationTrigger(post=post)

    assert trigger.enabled is False
    assert trigger.trigger("seg-1", "prompt", "Bearer abc") is None
    post.assert_not_called()


def test_trigger_returns_before_request_completes():
    release = threading.Event()
    finished = threading.Event()

    def slow_post(*args, **kwargs):
        release.wait(timeout=5)
        finished.set()
        return MagicMock()

    trigger = ImageGenerationTrigger(function_url=FUNCTION_URL, post=slow_post)

    trigger.trigger("seg-1", "prompt", "Bearer abc")

    assert not finished.is_set()
    release.set()
    assert finished.wait(timeout=5)
