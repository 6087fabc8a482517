from __future__ import annotations

import json
from typing import Any, Callable, Mapping

import pytest

from taleforge.common import ChatResult
from taleforge.common.config import ProviderConfig, Settings
from taleforge.pipeline import InboundRequest, InMemoryStoryGateway, StorySegmentPipeline
from taleforge.story_generation import Story

PRIMARY_BASE = "https://primary.test/v1"
FALLBACK_BASE = "https://fallback.test/v1"


def provider_payload(story_text: str, choices: list[str]) -> str:
    return json.dumps({"story_text": story_text, "choices": choices})


VALID_RESPONSE = provider_payload(
    "Luna the fox followed a glowing path through the meadow. At the end she found a sleepy owl.",
    ["Wake the sleepy owl", "Follow the path further", "Pick some meadow flowers"],
)


class FakeCompletion:
    """
    Stand-in for ``call_chat_completion`` keyed by provider base URL.

    Each outcome is either response text or an exception instance to raise.
    """

    def __init__(self, outcomes: Mapping[str, str | Exception]) -> None:
        self.outcomes = dict(outcomes)
        self.calls: list[dict[str, Any]] = []

    def __call__(self, **kwargs: Any) -> ChatResult:
        self.calls.append(kwargs)
        outcome = self.outcomes[kwargs["api_base"]]
        if isinstance(outcome, Exception):
            raise outcome
        return ChatResult(text=outcome, raw={"api_base": kwargs["api_base"]})

    def calls_to(self, api_base: str) -> list[dict[str, Any]]:
        return [call for call in self.calls if call["api_base"] == api_base]


class RecordingTrigger:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str | None]] = []

    def trigger(self, segment_id: str, image_prompt: str, auth_header: str | None) -> None:
        self.calls.append((segment_id, image_prompt, auth_header))


def make_provider(kind: str, **overrides: Any) -> ProviderConfig:
    defaults: dict[str, Any] = (
        {"name": "OpenAI", "base_url": PRIMARY_BASE, "credential": "sk-test", "model": "gpt-4o"}
        if kind == "primary"
        else {
            "name": "OVH",
            "base_url": FALLBACK_BASE,
            "credential": "ovh-test-token",
            "model": "Meta-Llama-3_3-70B-Instruct",
        }
    )
    defaults.update(overrides)
    return ProviderConfig(kind=kind, **defaults)


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "persistence_url": "https://db.test",
        "persistence_key": "service-role-key",
        "primary": make_provider("primary"),
        "fallback": make_provider("fallback"),
        "image_function_url": None,
    }
    values.update(overrides)
    return Settings(**values)


def segment_request(body: Any, *, auth: str | None = "Bearer user-token") -> InboundRequest:
    headers = {"Authorization": auth} if auth is not None else {}
    raw = body if isinstance(body, (bytes, str)) else json.dumps(body)
    return InboundRequest(method="POST", headers=headers, body=raw)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def fantasy_story() -> Story:
    return Story(
        id="s1",
        title="The Moonlit Meadow",
        user_id="user-1",
        genre="fantasy",
        target_age="7-9",
    )


@pytest.fixture
def gateway(fantasy_story: Story) -> InMemoryStoryGateway:
    return InMemoryStoryGateway(stories=[fantasy_story])


@pytest.fixture
def trigger() -> RecordingTrigger:
    return RecordingTrigger()


@pytest.fixture
def build_pipeline(
    settings: Settings,
    gateway: InMemoryStoryGateway,
    trigger: RecordingTrigger,
) -> Callable[..., StorySegmentPipeline]:
    def factory(completion: FakeCompletion, **overrides: Any) -> StorySegmentPipeline:
        kwargs: dict[str, Any] = {
            "gateway": gateway,
            "settings": settings,
            "completion_fn": completion,
            "image_trigger": trigger,
        }
        kwargs.update(overrides)
        return StorySegmentPipeline(**kwargs)

    return factory
