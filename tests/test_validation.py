import pytest

from taleforge.common.errors import ConfigurationError, RequestValidationError
from taleforge.pipeline import InboundRequest, ValidationGate
from taleforge.pipeline.validation import (
    BODY_NOT_OBJECT_ERROR,
    CHOICE_INDEX_ERROR,
    IMAGE_FIELDS_ERROR,
    MISSING_AUTH_ERROR,
    NO_PROVIDER_ERROR,
    STORY_ID_ERROR,
    TEMPLATE_CONTEXT_ERROR,
)

from conftest import make_provider, make_settings, segment_request

NO_PROVIDERS = {
    "primary": make_provider("primary", credential=None),
    "fallback": make_provider("fallback", credential="placeholder"),
}


@pytest.fixture
def gate(settings):
    return ValidationGate(settings)


def test_valid_request(gate):
    result = gate.validate_request(
        segment_request({"storyId": " s1 ", "choiceIndex": 0, "templateContext": {"theme": "hope"}})
    )

    assert result.is_valid
    assert result.story_id == "s1"
    assert result.choice_index == 0
    assert result.template_context == {"theme": "hope"}
    assert result.auth_header == "Bearer user-token"
    assert result.errors == ()


def test_all_request_errors_are_collected(gate):
    result = gate.validate_request(
        segment_request({"choiceIndex": -1, "templateContext": ["theme"]}, auth=None)
    )

    assert not result.is_valid
    assert result.errors == (
        MISSING_AUTH_ERROR,
        STORY_ID_ERROR,
        CHOICE_INDEX_ERROR,
        TEMPLATE_CONTEXT_ERROR,
    )


@pytest.mark.parametrize("choice_index", [True, False, 1.0, "1", -3])
def test_choice_index_must_be_a_non_negative_integer(gate, choice_index):
    result = gate.validate_request(segment_request({"storyId": "s1", "choiceIndex": choice_index}))

    assert result.errors == (CHOICE_INDEX_ERROR,)


@pytest.mark.parametrize("story_id", [None, "", "   ", 42])
def test_story_id_must_be_a_non_empty_string(gate, story_id):
    result = gate.validate_request(segment_request({"storyId": story_id}))

    assert result.errors == (STORY_ID_ERROR,)


def test_invalid_json_reports_reason(gate):
    result = gate.validate_request(segment_request(b'{"storyId": '))

    assert len(result.errors) == 1
    assert result.errors[0].startswith("Invalid JSON in request body: ")


@pytest.mark.parametrize("body", ["[1, 2]", "null", '"s1"'])
def test_body_must_be_an_object(gate, body):
    result = gate.validate_request(segment_request(body))

    assert result.errors == (BODY_NOT_OBJECT_ERROR,)


def test_header_lookup_is_case_insensitive():
    request = InboundRequest(method="POST", headers={"authorization": "Bearer x"})

    assert request.header("Authorization") == "Bearer x"
    assert request.header("X-Missing") is None


def test_environment_requires_persistence_and_a_provider():
    status = ValidationGate(make_settings(persistence_url=None, persistence_key=None, **NO_PROVIDERS)).validate_environment()

    assert not status.is_valid
    assert status.errors == (
        "Missing SUPABASE_URL environment variable",
        "Missing SUPABASE_SERVICE_ROLE_KEY environment variable",
        NO_PROVIDER_ERROR,
    )


def test_local_stores_skip_persistence_checks():
    gate = ValidationGate(make_settings(persistence_url=None, persistence_key=None), require_persistence=False)

    status = gate.validate_environment()
    assert status.is_valid
    assert status.has_persistence is False


def test_api_key_status_prefers_primary():
    assert ValidationGate(make_settings()).validate_api_keys().primary_provider == "OpenAI"

    fallback_only = ValidationGate(make_settings(primary=make_provider("primary", credential=None)))
    assert fallback_only.validate_api_keys().primary_provider == "OVH"

    neither = ValidationGate(make_settings(**NO_PROVIDERS)).validate_api_keys()
    assert (neither.has_primary, neither.has_fallback, neither.primary_provider) == (False, False, "None")


def test_report_status_codes(gate):
    ok = gate.validate_all_requirements(segment_request({"storyId": "s1"}))
    assert ok.is_valid and ok.status_code == 200
    ok.raise_for_status()

    bad_request = gate.validate_all_requirements(segment_request({}))
    assert bad_request.status_code == 400
    with pytest.raises(RequestValidationError) as excinfo:
        bad_request.raise_for_status()
    assert excinfo.value.as_dict()["details"] == [STORY_ID_ERROR]


def test_bad_request_is_reported_before_missing_configuration():
    gate = ValidationGate(make_settings(**NO_PROVIDERS))

    assert gate.validate_all_requirements(segment_request({})).status_code == 400

    report = gate.validate_all_requirements(segment_request({"storyId": "s1"}))
    assert report.status_code == 500
    with pytest.raises(ConfigurationError, match="No valid AI provider API keys found"):
        report.raise_for_status()


def test_validation_summary_states():
    assert ValidationGate(make_settings()).validation_summary()["status"] == "ready"

    degraded = ValidationGate(make_settings(fallback=make_provider("fallback", credential=None)))
    assert degraded.validation_summary()["status"] == "degraded"

    offline = ValidationGate(make_settings(**NO_PROVIDERS)).validation_summary()
    assert offline["status"] == "offline"
    assert offline["providers"]["primary_provider"] == "None"
    assert NO_PROVIDER_ERROR in offline["environment"]["errors"]


def test_image_request_validation(gate):
    segment_id, prompt, auth = gate.validate_image_request(
        segment_request({"segmentId": "seg-1", "imagePrompt": "A fox"})
    )
    assert (segment_id, prompt, auth) == ("seg-1", "A fox", "Bearer user-token")

    with pytest.raises(RequestValidationError) as excinfo:
        gate.validate_image_request(segment_request({"segmentId": "seg-1"}, auth=None))
    assert excinfo.value.errors == [MISSING_AUTH_ERROR, IMAGE_FIELDS_ERROR]
