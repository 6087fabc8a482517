import pytest

from taleforge.story_generation import AIResponse, ChoiceParser, generate_contextual_fallbacks
from taleforge.story_generation.choice_parser import (
    ACTION_FALLBACKS,
    GENERIC_FALLBACKS,
    SCENARIO_FALLBACKS,
    pad_choices,
)


@pytest.fixture
def parser():
    return ChoiceParser()


def texts(choices):
    return [choice.text for choice in choices]


def test_three_clean_choices_are_kept_verbatim(parser):
    choices = parser.parse_choices(
        "  Wake the sleepy owl \nFollow the path further\nPick some meadow flowers  ",
        "Luna found an owl.",
    )

    assert texts(choices) == ["Wake the sleepy owl", "Follow the path further", "Pick some meadow flowers"]
    assert all(choice.next_segment_id is None for choice in choices)


@pytest.mark.parametrize(
    "raw",
    [
        "1. Climb the tall tree\n2) Ask the wise owl\n3: Dig under the roots",
        "A. Climb the tall tree\nB) Ask the wise owl\nC. Dig under the roots",
        '- "Climb the tall tree"\n• Ask the wise owl\n* Dig under the roots',
    ],
)
def test_line_splitting_strips_decorations(parser, raw):
    assert texts(parser.parse_choices(raw, "")) == [
        "Climb the tall tree",
        "Ask the wise owl",
        "Dig under the roots",
    ]


def test_sentence_extraction_when_lines_fall_short(parser):
    choices = parser.parse_choices("Follow the rabbit. Build a raft! Wait for dawn?", "")

    assert texts(choices) == ["Follow the rabbit", "Build a raft", "Wait for dawn"]


def test_delimiter_extraction_when_sentences_fall_short(parser):
    choices = parser.parse_choices("Run home, Hide inside; Call mom", "")

    assert texts(choices) == ["Run home", "Hide inside", "Call mom"]


def test_parsing_is_idempotent(parser):
    raw = "1. Open the gate\n2. Wait for help"
    segment = "A locked door blocked the way."

    assert parser.parse_choices(raw, segment) == parser.parse_choices(raw, segment)


def test_shortfall_keeps_parsed_choices_and_pads_from_treasure_table(parser):
    choices = parser.parse_choices("Go left\nGo right", "Mia found a treasure chest under the old oak.")

    assert texts(choices) == ["Go left", "Go right", "Open the treasure chest"]


@pytest.mark.parametrize("raw", ["", "   ", "ok", "\n\n"])
def test_empty_output_yields_three_usable_choices(parser, raw):
    choices = parser.parse_choices(raw, "Nothing much happened.")

    assert len(choices) == 3
    assert all(len(choice.text) > 3 for choice in choices)
    assert len({choice.id for choice in choices}) == 3


def test_locked_door_fallbacks():
    assert generate_contextual_fallbacks("The DOOR was Locked tight.") == [
        "Try to open the door",
        "Look for a key",
        "Find another way around",
    ]


def test_fallback_tables_are_first_match_wins():
    # Both "forest" and "treasure" appear; forest is listed first.
    assert generate_contextual_fallbacks("Deep in the forest lay a treasure.") == list(
        SCENARIO_FALLBACKS[2][1]
    )


def test_every_scenario_entry_is_reachable():
    samples = [
        "a locked gate",
        "a spell glowed",
        "the woods were dark",
        "a tall tower",
        "a friendly dragon",
        "a shiny chest",
        "her best friend waved",
        "the river ran fast",
        "a steep cliff",
        "an old scroll",
        "she felt confused",
    ]
    for sample, (_, expected) in zip(samples, SCENARIO_FALLBACKS):
        assert generate_contextual_fallbacks(sample) == list(expected)


def test_action_and_generic_fallbacks():
    assert generate_contextual_fallbacks("They went up the hill") == list(ACTION_FALLBACKS[0][1])
    assert generate_contextual_fallbacks("A strange noise echoed") == list(ACTION_FALLBACKS[2][1])
    assert generate_contextual_fallbacks("The waterfall sparkled.") == list(GENERIC_FALLBACKS)


def test_pad_choices_skips_duplicates():
    padded = pad_choices(["open the treasure chest"], "A treasure chest sat there.")

    assert padded == ["open the treasure chest", "Check for traps first", "Look around for clues"]


def test_pad_choices_truncates_extra_choices():
    assert pad_choices(["One way", "Two ways", "Three ways", "Four ways"], "") == [
        "One way",
        "Two ways",
        "Three ways",
    ]


def test_parsing_stats(parser):
    assert parser.parsing_stats("1. Go\n2. Stay").estimated_method == "enhanced-splitting-numbered"
    assert parser.parsing_stats("- Go\n- Stay").estimated_method == "enhanced-splitting-bullets"
    assert parser.parsing_stats("Go now. Stay here.").estimated_method == "sentence-extraction"

    stats = parser.parsing_stats("Go, Stay")
    assert stats.estimated_method == "delimiter-extraction"
    assert stats.has_newlines is False
    assert stats.response_length == 8


@pytest.mark.parametrize(
    "provided",
    [
        ("3 wishes for the fox", "Ask the wise owl", "Follow the moonlit path"),
        ("Go up", "Ask the wise owl", "Follow the well-lit path"),
    ],
)
def test_validated_provider_choices_skip_the_text_cascade(parser, provided):
    response = AIResponse(
        segment_text="Luna met a wise owl.",
        choices_text="\n".join(provided),
        provider="OpenAI",
        choices=provided,
    )

    assert texts(parser.choices_for(response)) == list(provided)


def test_raw_text_responses_still_use_the_cascade(parser):
    response = AIResponse(
        segment_text="Luna met a wise owl.",
        choices_text="1. Wake the sleepy owl\n2. Follow the path further\n3. Pick some meadow flowers",
        provider="OVH",
    )

    assert texts(parser.choices_for(response)) == [
        "Wake the sleepy owl",
        "Follow the path further",
        "Pick some meadow flowers",
    ]
