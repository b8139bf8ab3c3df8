"""
Unit tests for response_parser module.

Covers the direct, repaired, corrected and heuristic stages.
"""

import json

import pytest

from src.response_parser import (
    PARSE_FAILED_DOCUMENT,
    ProviderCorrector,
    ResponseNormalizer,
    extract_json_object,
    repair_json_text,
)
from src.types import CompletionStatus, Confidence, ParseStage
from tests.helpers import GOOD_RESPONSE, ScriptedProvider


@pytest.fixture
def normalizer():
    return ResponseNormalizer()


class FixedCorrector:
    """Corrector fake returning a fixed reply."""

    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def correct(self, raw_text, problem):
        self.calls.append((raw_text, problem))
        if self.error:
            raise self.error
        return self.reply


class TestDirectParsing:
    """Tests for well-formed responses."""

    def test_valid_json(self, normalizer):
        """Valid responses parse directly with all fields."""
        result = normalizer.normalize(GOOD_RESPONSE, "Analyst")

        assert result.parse_stage == ParseStage.DIRECT
        assert result.metadata.role == "Analyst"
        assert result.status == CompletionStatus.COMPLETE
        assert result.metadata.confidence_level == Confidence.HIGH
        assert len(result.deliverables.recommendations) == 3
        assert result.memory_operations[0].operation == "create_entities"
        assert result.missing_sections == []
        assert result.raw_text == GOOD_RESPONSE

    def test_surrounding_prose_is_ignored(self, normalizer):
        """Text around the JSON object does not matter."""
        text = "Here is my answer:\n" + GOOD_RESPONSE + "\nLet me know if you need more."
        result = normalizer.normalize(text, "Analyst")

        assert result.parse_stage == ParseStage.DIRECT

    def test_result_round_trips(self, normalizer):
        """Serializing a result and parsing it again gives the same result."""
        first = normalizer.normalize(GOOD_RESPONSE, "Analyst")
        second = normalizer.normalize(first.to_json(), "Analyst")

        assert second.to_dict() == first.to_dict()

    def test_defaults_fill_missing_sections(self, normalizer):
        """Absent metadata and memory operations get defaults and are reported."""
        text = json.dumps({"deliverables": {"analysis": "Findings about the cache layer."}})
        result = normalizer.normalize(text, "Analyst")

        assert result.status == CompletionStatus.COMPLETE
        assert result.metadata.confidence_level == Confidence.MEDIUM
        assert result.metadata.processing_time == "unknown"
        assert result.memory_operations == []
        assert result.missing_sections == ["memory_operations", "metadata"]

    def test_flat_payload_is_accepted(self, normalizer):
        """Deliverable fields at the top level are still understood."""
        text = json.dumps({"analysis": "Flat analysis text", "recommendations": "One item"})
        result = normalizer.normalize(text, "Analyst")

        assert result.deliverables.analysis == "Flat analysis text"
        assert result.deliverables.recommendations == ["One item"]
        assert "deliverables" in result.missing_sections

    def test_unknown_enum_values_default(self, normalizer):
        """Unrecognized status and confidence fall back to defaults."""
        text = json.dumps({
            "deliverables": {"analysis": "x"},
            "metadata": {"task_completion_status": "done-ish", "confidence_level": "HIGH"},
        })
        result = normalizer.normalize(text, "Analyst")

        assert result.status == CompletionStatus.COMPLETE
        assert result.metadata.confidence_level == Confidence.HIGH


class TestRepair:
    """Tests for the repair stage."""

    def test_truncated_response_is_repaired(self, normalizer):
        """A response missing its final brace is closed and parsed."""
        result = normalizer.normalize(GOOD_RESPONSE[:-1], "Analyst")

        assert result.parse_stage == ParseStage.REPAIRED
        assert len(result.deliverables.recommendations) == 3

    def test_fenced_response_with_trailing_comma(self, normalizer):
        """Markdown fences and trailing commas are tolerated."""
        text = '```json\n{"deliverables": {"analysis": "ok", "recommendations": ["a",],},}\n```'
        result = normalizer.normalize(text, "Analyst")

        assert result.parse_stage == ParseStage.REPAIRED
        assert result.deliverables.recommendations == ["a"]

    def test_repair_closes_open_string(self):
        """Unterminated strings and objects are closed."""
        repaired = repair_json_text('{"deliverables": {"analysis": "cut off here')
        assert json.loads(repaired)["deliverables"]["analysis"] == "cut off here"

    def test_extract_requires_braces(self):
        """Text without braces has no JSON object."""
        with pytest.raises(ValueError):
            extract_json_object("no json here")


class TestHeuristic:
    """Tests for the heuristic fallback."""

    def test_plain_text_is_scraped(self, normalizer):
        """Prose becomes analysis and list items become recommendations."""
        text = (
            "The service has a slow startup path caused by eager loading.\n"
            "- Lazy-load the plugin registry on first use\n"
            "- Cache the parsed configuration between runs\n"
            "- ok\n"
        )
        result = normalizer.normalize(text, "Analyst")

        assert result.parse_stage == ParseStage.HEURISTIC
        assert result.status == CompletionStatus.PARTIAL
        assert result.metadata.confidence_level == Confidence.LOW
        assert "slow startup path" in result.deliverables.analysis
        assert result.deliverables.recommendations == [
            "Lazy-load the plugin registry on first use",
            "Cache the parsed configuration between runs",
        ]
        assert result.deliverables.documents == []

    def test_error_text_marks_failed(self, normalizer):
        """An error indicator in the text marks the result failed."""
        result = normalizer.normalize("Error: could not read the repository contents at all.", "Analyst")
        assert result.status == CompletionStatus.FAILED

    @pytest.mark.parametrize("text", ["", "   ", "{", "[1, 2]", "null", '{"deliverables": {}}'])
    def test_never_raises(self, normalizer, text):
        """Any input produces a result."""
        result = normalizer.normalize(text, "Analyst")

        assert result.parse_stage == ParseStage.HEURISTIC
        assert result.deliverables.has_content()

    def test_empty_text_keeps_marker_document(self, normalizer):
        """With nothing to scrape the result notes the parse failure."""
        result = normalizer.normalize("", "Analyst")
        assert result.deliverables.documents == [PARSE_FAILED_DOCUMENT]

    def test_stage_counts(self, normalizer):
        """Each stage outcome is counted."""
        normalizer.normalize(GOOD_RESPONSE, "Analyst")
        normalizer.normalize(GOOD_RESPONSE[:-1], "Analyst")
        normalizer.normalize("plain words only", "Analyst")

        assert normalizer.stage_counts[ParseStage.DIRECT] == 1
        assert normalizer.stage_counts[ParseStage.REPAIRED] == 1
        assert normalizer.stage_counts[ParseStage.HEURISTIC] == 1


class TestCorrection:
    """Tests for the corrector stage."""

    @pytest.mark.asyncio
    async def test_corrector_recovers(self, normalizer):
        """A corrector reply that parses yields a corrected result."""
        corrector = FixedCorrector(reply=GOOD_RESPONSE)
        result = await normalizer.normalize_with_correction("garbled output", "Analyst", corrector)

        assert result.parse_stage == ParseStage.CORRECTED
        assert result.raw_text == "garbled output"
        assert corrector.calls[0][0] == "garbled output"

    @pytest.mark.asyncio
    async def test_corrector_not_called_for_valid_json(self, normalizer):
        """Structured stages win before the corrector is asked."""
        corrector = FixedCorrector(reply=GOOD_RESPONSE)
        result = await normalizer.normalize_with_correction(GOOD_RESPONSE, "Analyst", corrector)

        assert result.parse_stage == ParseStage.DIRECT
        assert corrector.calls == []

    @pytest.mark.asyncio
    async def test_corrector_failure_falls_back(self, normalizer):
        """A failing corrector leads to the heuristic result."""
        corrector = FixedCorrector(error=RuntimeError("boom"))
        result = await normalizer.normalize_with_correction("garbled output", "Analyst", corrector)

        assert result.parse_stage == ParseStage.HEURISTIC

    @pytest.mark.asyncio
    async def test_correction_attempts_are_bounded(self):
        """The corrector is asked at most max_correction_attempts times."""
        normalizer = ResponseNormalizer(max_correction_attempts=2)
        corrector = FixedCorrector(reply="still not json")
        await normalizer.normalize_with_correction("garbled output", "Analyst", corrector)

        assert len(corrector.calls) == 2

    @pytest.mark.asyncio
    async def test_provider_corrector(self):
        """ProviderCorrector asks the provider for a JSON rewrite."""
        provider = ScriptedProvider([GOOD_RESPONSE])
        corrector = ProviderCorrector(provider)

        reply = await corrector.correct("garbled output", "no JSON object found")

        assert reply == GOOD_RESPONSE
        call = provider.calls[0]
        assert call["temperature"] == 0.0
        assert "garbled output" in call["messages"][1].content
        assert "no JSON object found" in call["messages"][1].content
