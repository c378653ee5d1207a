import json

import pytest

from notebook_digitizer.processing import (
    CapabilityError,
    GeminiExtractionEngine,
    KnowledgeUnitType,
    MalformedExtractionError,
    parse_extraction,
    validate_extraction,
)

VALID = {
    "rawOcrText": "buy mlik\ncall mom",
    "cleanText": "Buy milk. Call mom.",
    "knowledgeUnits": [
        {"type": "task", "content": "Buy milk"},
        {"type": "action_item", "content": "Call mom", "metadata": {"due": "friday"}},
    ],
    "suggestedTags": ["errands", "family"],
}


def test_valid_payload_from_json_text():
    outcome = validate_extraction(json.dumps(VALID))

    assert outcome.ok and outcome.error is None
    result = outcome.result
    assert result.clean_text == "Buy milk. Call mom."
    assert [u.type for u in result.knowledge_units] == [KnowledgeUnitType.TASK, KnowledgeUnitType.ACTION_ITEM]
    assert result.knowledge_units[0].metadata == {}
    assert result.knowledge_units[1].metadata == {"due": "friday"}
    assert result.suggested_tags == ["errands", "family"]


def test_empty_collections_are_valid():
    result = parse_extraction({**VALID, "knowledgeUnits": [], "suggestedTags": []})
    assert result.knowledge_units == []
    assert result.suggested_tags == []


@pytest.mark.parametrize(
    "payload",
    [
        "not json",
        "[1, 2]",
        {k: v for k, v in VALID.items() if k != "cleanText"},
        {**VALID, "knowledgeUnits": [{"type": "reminder", "content": "x"}]},
        {**VALID, "knowledgeUnits": [{"type": "task"}]},
        {**VALID, "suggestedTags": "errands"},
        {**VALID, "rawOcrText": 42},
    ],
)
def test_invalid_payloads_are_rejected(payload):
    outcome = validate_extraction(payload)
    assert not outcome.ok
    assert outcome.error
    with pytest.raises(MalformedExtractionError):
        parse_extraction(payload)


def test_malformed_extraction_is_a_capability_error():
    assert issubclass(MalformedExtractionError, CapabilityError)


def test_gemini_engine_requires_api_key_at_extract_time():
    engine = GeminiExtractionEngine(api_key="")
    with pytest.raises(CapabilityError, match="GEMINI_API_KEY"):
        engine.extract(b"image", "image/png")
