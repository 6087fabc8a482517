import itertools

import pytest

from taleforge.common.errors import PromptBuildError
from taleforge.story_generation import Character, PromptBuilder, Segment, Story, TemplateContext
from taleforge.story_generation.prompting import (
    categorize_age,
    genre_guidance,
    system_prompt_for,
    validate_prompt,
    writing_constraints,
)


@pytest.fixture
def builder():
    return PromptBuilder()


def test_prompt_without_context_uses_defaults(builder):
    prompt = builder.build_prompt(Story(id="s1", genre="fantasy"))

    assert "focus on an adventure in a magical place" in prompt
    assert "Include the main characters: a brave main character." in prompt
    assert "Write exactly 125 words" in prompt
    assert validate_prompt(prompt).is_valid


@pytest.mark.parametrize(
    "use_template, use_characters, use_previous, use_choice",
    list(itertools.product([False, True], repeat=4)),
)
def test_prompt_never_leaves_placeholders(builder, use_template, use_characters, use_previous, use_choice):
    story = Story(id="s1", title="Stars over {city}", genre="sci-fi", target_age="10-12")
    template = (
        TemplateContext.from_mapping(
            {
                "theme": "teamwork",
                "setting_description": "a floating {island}",
                "characters": [{"name": "Zed", "description": "a robot", "role": "mentor"}],
                "quest": "fix the beacon",
            }
        )
        if use_template
        else None
    )
    characters = [Character(name="Ada", description="an engineer", role="protagonist")] if use_characters else None
    previous = Segment(id="p1", story_id="s1", content="The {ship} hummed.", position=1) if use_previous else None
    choice = "Open the {hatch}" if use_choice else None

    prompt = builder.build_prompt(story, previous, choice, characters, template)

    assert validate_prompt(prompt).leftover_placeholders == ()


def test_template_context_takes_precedence(builder):
    story = Story(id="s1", title="A Title", theme="story theme", setting="story setting", genre="adventure")
    template = TemplateContext.from_mapping(
        {
            "theme": "courage",
            "setting": "a windy harbour",
            "conflict": "a storm is coming",
            "moralLesson": "help each other",
            "characters": [{"name": "Pip", "description": "a small crab", "role": "protagonist"}],
        }
    )

    prompt = builder.build_prompt(
        story,
        characters=[Character(name="Ignored", description="unused")],
        template_context=template,
    )

    assert "focus on courage in a windy harbour" in prompt
    assert "Pip: a small crab (protagonist)" in prompt
    assert "Ignored" not in prompt
    assert "Story Conflict: a storm is coming" in prompt
    assert "Moral Lesson: help each other" in prompt
    assert "Main Quest" not in prompt


def test_story_fields_fill_in_when_template_is_silent(builder):
    story = Story(id="s1", description="A trip to the moon", story_mode="bedtime", quest="find the moon cat")

    prompt = builder.build_prompt(story, characters=[Character(name="Mo", description="a sleepy bear")])

    assert "focus on A trip to the moon in bedtime" in prompt
    assert "Mo: a sleepy bear (supporting)" in prompt
    assert "Main Quest: find the moon cat" in prompt


def test_previous_segment_precedes_user_choice(builder):
    previous = Segment(id="p1", story_id="s1", content="Mia reached the river.", position=1)

    prompt = builder.build_prompt(Story(id="s1"), previous_segment=previous, user_choice="Build a raft")

    continuation = prompt.index("Previous story segment: Mia reached the river.")
    decision = prompt.index("User chose: Build a raft")
    assert continuation < decision
    assert prompt.rstrip().endswith("User chose: Build a raft")


def test_user_text_braces_are_neutralized(builder):
    prompt = builder.build_prompt(Story(id="s1", title="{hero}'s Quest"))

    assert "(hero)'s Quest" in prompt


def test_leftover_placeholder_raises(builder, monkeypatch):
    monkeypatch.setattr(builder, "template_for", lambda story: "Write about {unknown} " * 5)

    with pytest.raises(PromptBuildError, match=r"\{unknown\}"):
        builder.build_prompt(Story(id="s1"))


@pytest.mark.parametrize(
    "level, words",
    [(1, 30), (5, 106), (10, 200)],
)
def test_level_controls_word_count(level, words):
    assert writing_constraints(Story(id="s1", template_level=level)).word_limit == words


def test_level_bands_choose_complexity():
    assert "very simple concepts" in writing_constraints(Story(id="s1", difficulty_level=3)).complexity
    assert "moderate concepts" in writing_constraints(Story(id="s1", difficulty_level=4)).complexity
    assert "advanced themes" in writing_constraints(Story(id="s1", difficulty_level=7)).complexity


def test_story_type_controls_word_count_without_level():
    assert writing_constraints(Story(id="s1", story_type="short")).word_limit == 60
    assert writing_constraints(Story(id="s1", story_type="long")).word_limit == 180
    assert writing_constraints(Story(id="s1")).word_limit == 125


def test_age_categories_and_guidance():
    assert categorize_age("3-4") == "young"
    assert categorize_age("4-6") == "young"
    assert categorize_age("7-9") == "middle"
    assert categorize_age("10-12") == "older"

    assert "gentle magic" in genre_guidance("fantasy", "4-6")
    assert "mythical creatures" in genre_guidance("Fantasy", "7-9")
    assert "science fiction" in genre_guidance("science fiction", "10-12")
    assert "positive values" in genre_guidance("western", "10-12")


def test_system_prompt_is_age_tuned():
    young = system_prompt_for("4-6")
    older = system_prompt_for("10-12")

    assert young.startswith("You are an expert children's story writer")
    assert "very simple" in young
    assert "responsibility and empathy" in older
