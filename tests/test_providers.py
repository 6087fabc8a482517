import pytest

from taleforge.common.errors import ConfigurationError, ProviderError, ProviderResponseError
from taleforge.story_generation import ProviderOrchestrator, Story, parse_provider_response
from taleforge.story_generation.providers import JSON_REQUIREMENTS, STORY_SEGMENT_SCHEMA

from conftest import (
    FALLBACK_BASE,
    PRIMARY_BASE,
    VALID_RESPONSE,
    FakeCompletion,
    make_provider,
    provider_payload,
)

FALLBACK_RESPONSE = provider_payload(
    "The owl opened one eye and hooted softly.",
    ["Say hello to the owl", "Tiptoe away quietly", "Offer the owl a berry"],
)


@pytest.fixture
def story():
    return Story(id="s1", genre="fantasy", target_age="7-9")


def orchestrator(completion, **overrides):
    return ProviderOrchestrator(
        primary=overrides.pop("primary", make_provider("primary")),
        fallback=overrides.pop("fallback", make_provider("fallback")),
        completion_fn=completion,
        **overrides,
    )


class TestParseProviderResponse:
    def test_plain_json(self):
        parsed = parse_provider_response(VALID_RESPONSE)

        assert parsed.story_text.startswith("Luna the fox")
        assert parsed.choices == ("Wake the sleepy owl", "Follow the path further", "Pick some meadow flowers")

    def test_code_fences_and_surrounding_prose(self):
        raw = f"Here you go!\n```json\n{VALID_RESPONSE}\n```\nEnjoy."

        assert len(parse_provider_response(raw).choices) == 3

    def test_choices_are_trimmed_and_blanks_dropped(self):
        parsed = parse_provider_response(
            provider_payload("  Some text.  ", ["  Go left ", "", None, "Go right"])
        )

        assert parsed.story_text == "Some text."
        assert parsed.choices == ("Go left", "Go right")

    @pytest.mark.parametrize(
        "raw, message",
        [
            ("", "empty"),
            ("no json here", "did not contain"),
            ("{not: valid}", "Invalid JSON"),
            ('{"choices": ["a", "b", "c"]}', "story_text"),
            ('{"story_text": "   ", "choices": []}', "story_text"),
            ('{"story_text": "Text", "choices": "a, b, c"}', "choices"),
        ],
    )
    def test_rejects_malformed_payloads(self, raw, message):
        with pytest.raises(ProviderResponseError, match=message):
            parse_provider_response(raw)


def test_primary_success_never_calls_fallback(story):
    completion = FakeCompletion({PRIMARY_BASE: VALID_RESPONSE, FALLBACK_BASE: FALLBACK_RESPONSE})

    response = orchestrator(completion).generate_story_segment("Write a story.", story)

    assert len(completion.calls_to(PRIMARY_BASE)) == 1
    assert completion.calls_to(FALLBACK_BASE) == []
    assert response.provider == "OpenAI"
    assert response.method == "chat_completions"
    assert response.api_calls_made == 1
    assert response.fallback_triggered is False
    assert response.choices_text.split("\n") == [
        "Wake the sleepy owl",
        "Follow the path further",
        "Pick some meadow flowers",
    ]


@pytest.mark.parametrize(
    "primary_outcome",
    [RuntimeError("HTTP 500 Internal Server Error"), "Sorry, I cannot help.", '{"story_text": ""}'],
)
def test_primary_failure_calls_fallback_exactly_once(story, primary_outcome):
    completion = FakeCompletion({PRIMARY_BASE: primary_outcome, FALLBACK_BASE: FALLBACK_RESPONSE})

    response = orchestrator(completion).generate_story_segment("Write a story.", story)

    assert len(completion.calls_to(PRIMARY_BASE)) == 1
    assert len(completion.calls_to(FALLBACK_BASE)) == 1
    assert response.provider == "OVH"
    assert response.fallback_triggered is True
    assert response.api_calls_made == 2
    assert response.segment_text == "The owl opened one eye and hooted softly."


def test_both_failing_reraises_primary_error(story):
    completion = FakeCompletion(
        {PRIMARY_BASE: RuntimeError("primary exploded"), FALLBACK_BASE: RuntimeError("fallback exploded")}
    )

    with pytest.raises(ProviderError, match="OpenAI API error: primary exploded") as excinfo:
        orchestrator(completion).generate_story_segment("Write a story.", story)

    assert excinfo.value.provider == "OpenAI"
    assert excinfo.value.status_code == 500
    assert len(completion.calls) == 2


def test_primary_failure_with_unusable_fallback_raises_primary_error(story):
    completion = FakeCompletion({PRIMARY_BASE: RuntimeError("HTTP 502")})

    with pytest.raises(ProviderError, match="OpenAI API error: HTTP 502"):
        orchestrator(
            completion, fallback=make_provider("fallback", credential=None)
        ).generate_story_segment("Write a story.", story)

    assert completion.calls_to(FALLBACK_BASE) == []


def test_unusable_primary_is_skipped(story):
    completion = FakeCompletion({FALLBACK_BASE: FALLBACK_RESPONSE})

    response = orchestrator(
        completion,
        primary=make_provider("primary", credential="placeholder-key"),
    ).generate_story_segment("Write a story.", story)

    assert completion.calls_to(PRIMARY_BASE) == []
    assert response.provider == "OVH"
    assert response.fallback_triggered is True
    assert response.api_calls_made == 1


def test_only_fallback_failing_raises_its_error(story):
    completion = FakeCompletion({FALLBACK_BASE: RuntimeError("timeout")})

    with pytest.raises(ProviderError, match="OVH API error: timeout"):
        orchestrator(
            completion,
            primary=make_provider("primary", credential=None),
        ).generate_story_segment("Write a story.", story)


def test_no_usable_provider_is_a_configuration_error(story):
    completion = FakeCompletion({})

    with pytest.raises(ConfigurationError):
        orchestrator(
            completion,
            primary=make_provider("primary", credential=None),
            fallback=make_provider("fallback", credential=""),
        ).generate_story_segment("Write a story.", story)

    assert completion.calls == []


def test_short_choice_lists_are_padded(story):
    completion = FakeCompletion(
        {PRIMARY_BASE: provider_payload("Mia found a treasure chest.", ["Go left", "Go right"])}
    )

    response = orchestrator(completion).generate_story_segment("Write a story.", story)

    assert response.choices_text.split("\n") == ["Go left", "Go right", "Open the treasure chest"]


def test_long_choice_lists_are_truncated(story):
    completion = FakeCompletion(
        {PRIMARY_BASE: provider_payload("Text.", ["One way", "Two ways", "Three ways", "Four ways"])}
    )

    response = orchestrator(completion).generate_story_segment("Write a story.", story)

    assert response.choices_text.split("\n") == ["One way", "Two ways", "Three ways"]


def test_request_shape(story):
    completion = FakeCompletion({PRIMARY_BASE: VALID_RESPONSE})

    orchestrator(completion, timeout=12.5).generate_story_segment("Write about Luna.", story)

    call = completion.calls[0]
    system, user = call["messages"]
    assert call["model"] == "openai/gpt-4o"
    assert call["api_key"] == "sk-test"
    assert call["temperature"] == 0.7
    assert call["timeout"] == 12.5
    assert call["max_tokens"] == 600
    assert system["role"] == "system" and JSON_REQUIREMENTS in system["content"]
    assert user["content"].startswith("Write about Luna.")
    assert '"story_text"' in user["content"]
    assert "response_format" not in call


@pytest.mark.parametrize(
    "age, configured, expected",
    [("4-6", 1000, 500), ("10-12", 1000, 700), ("10-12", 550, 550)],
)
def test_max_tokens_is_capped_by_provider(age, configured, expected):
    completion = FakeCompletion({PRIMARY_BASE: VALID_RESPONSE})

    orchestrator(
        completion,
        primary=make_provider("primary", max_tokens=configured),
    ).generate_story_segment("Write.", Story(id="s1", target_age=age))

    assert completion.calls[0]["max_tokens"] == expected


def test_structured_output_sends_json_schema(story):
    completion = FakeCompletion({PRIMARY_BASE: VALID_RESPONSE})

    response = orchestrator(
        completion,
        primary=make_provider("primary", structured_output=True),
    ).generate_story_segment("Write.", story)

    response_format = completion.calls[0]["response_format"]
    assert response_format["type"] == "json_schema"
    assert response_format["json_schema"]["schema"] is STORY_SEGMENT_SCHEMA
    assert response.method == "structured_output"


def test_provider_kinds_are_enforced():
    with pytest.raises(ValueError):
        ProviderOrchestrator(primary=make_provider("fallback"), fallback=make_provider("fallback"))


def test_provider_status_and_health_check():
    orch = orchestrator(FakeCompletion({}), primary=make_provider("primary", credential=None))

    status = orch.provider_status()
    assert (status.has_primary, status.has_fallback, status.primary_provider) == (False, True, "OVH")
    assert orch.health_check() == {"OpenAI": False, "OVH": True}
