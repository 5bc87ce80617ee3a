"""
Tests for AI extraction.

Tests cover:
- Response sanitizing and parsing
- Record defaulting, confidence and validation
- The metadata fallback path
- The Gemini client wrapper
"""

import json
from unittest.mock import MagicMock, patch

import pytest

from oppscraper.ai import (
    FALLBACK_MODEL_VERSION,
    AIExtractor,
    GeminiClient,
    OpportunityRecord,
    build_extraction_prompt,
    calculate_confidence,
    fallback_record,
    parse_ai_response,
    sanitize_response,
    validate_record,
)
from oppscraper.errors import AIParseFailed, AIProviderError
from oppscraper.extraction import scraped_from_html

from conftest import AI_PAYLOAD, OPPORTUNITY_HTML, ScriptedAIClient


SOURCE_URL = "https://example.org/fellowship-2025"


class TestSanitizeResponse:
    """Tests for response sanitizing."""

    def test_strips_fences_and_chatter(self):
        """Test that leading text and markdown fences are removed before parsing."""
        text = "Sure! Here's the JSON: ```json\n" + json.dumps(AI_PAYLOAD) + "\n```"

        payload = parse_ai_response(text)

        assert payload["title"] == "Young Leaders Fellowship"

    def test_trailing_text(self):
        """Test that text after the object is ignored."""
        assert sanitize_response('{"a": 1} hope this helps') == '{"a": 1}'

    def test_no_object(self):
        """Test that a response without braces fails to parse."""
        with pytest.raises(AIParseFailed) as exc_info:
            sanitize_response("I could not find an opportunity.")

        assert exc_info.value.raw_response == "I could not find an opportunity."

    def test_invalid_json(self):
        """Test that malformed JSON raises AIParseFailed."""
        with pytest.raises(AIParseFailed):
            parse_ai_response('{"title": "x",}')

    def test_two_objects(self):
        """Test that two objects in one response do not parse."""
        with pytest.raises(AIParseFailed):
            parse_ai_response('{"a": 1} and {"b": 2}')


class TestOpportunityRecord:
    """Tests for OpportunityRecord.from_payload."""

    def test_url_forced_to_source(self):
        """Test that the model cannot choose the record URL."""
        record = OpportunityRecord.from_payload(AI_PAYLOAD, SOURCE_URL)

        assert record.url == SOURCE_URL

    def test_defaults_for_blank_values(self):
        """Test that blank enum-like fields get their defaults."""
        record = OpportunityRecord.from_payload(
            {"title": "T", "category": "", "fundingType": None, "eligibleCountries": "", "location": ""},
            SOURCE_URL,
        )

        assert record.category == "Misc"
        assert record.funding_type == "Variable Amount"
        assert record.eligible_countries == "Global"
        assert record.location == "Global"

    def test_key_mapping(self):
        """Test that camelCase keys land on their attributes."""
        record = OpportunityRecord.from_payload(AI_PAYLOAD, SOURCE_URL)

        assert record.about_opportunity == "A year-long leadership program."
        assert record.how_to_apply == "Online form"
        assert record.what_you_get == "Stipend and mentoring"

    def test_tags_list_and_featured_string(self):
        """Test that list tags are joined and string booleans are read."""
        record = OpportunityRecord.from_payload(
            {"tags": ["stem", " ", "women"], "featured": "true"}, SOURCE_URL)

        assert record.tags == "stem,women"
        assert record.featured is True


class TestCalculateConfidence:
    """Tests for the completeness score."""

    def test_empty_record(self):
        """Test that an empty record scores zero."""
        assert calculate_confidence(OpportunityRecord()) == 0.0

    def test_complete_record_is_capped(self):
        """Test that bonuses never push the score past one."""
        record = OpportunityRecord.from_payload(AI_PAYLOAD, SOURCE_URL)

        assert calculate_confidence(record) == 1.0

    def test_partial_record(self):
        """Test the score for two core fields and a deadline bonus."""
        record = OpportunityRecord(title="T", deadline="2025-01-01")

        assert calculate_confidence(record) == pytest.approx(2.5 / 7)

    def test_variable_amount_earns_nothing(self):
        """Test that the placeholder amount is not a bonus."""
        assert calculate_confidence(OpportunityRecord(amount="Variable")) == 0.0
        assert calculate_confidence(OpportunityRecord(amount="$10")) == pytest.approx(0.5 / 7)

    def test_adding_fields_never_lowers_score(self):
        """Test that filling more fields is monotonic."""
        record = OpportunityRecord()
        previous = calculate_confidence(record)
        for name in ("title", "organization", "description", "deadline", "contact_email",
                     "about_opportunity", "requirements", "how_to_apply", "amount"):
            setattr(record, name, "filled")
            score = calculate_confidence(record)
            assert score >= previous
            previous = score


class TestValidateRecord:
    """Tests for validate_record."""

    def test_valid_record(self):
        """Test that a complete record validates and lists its fields."""
        record = OpportunityRecord.from_payload(AI_PAYLOAD, SOURCE_URL)

        validation = validate_record(record)

        assert validation["is_valid"] is True
        assert validation["errors"] == []
        assert "title" in validation["extracted_fields"]
        assert "amount" in validation["extracted_fields"]
        assert "contact_email" not in validation["extracted_fields"]

    def test_missing_required(self):
        """Test that a missing organization invalidates the record."""
        validation = validate_record(OpportunityRecord(title="T"))

        assert validation["is_valid"] is False
        assert "Missing required field: organization" in validation["errors"]

    def test_enums_normalized(self):
        """Test that singular or differently cased enum values are normalized."""
        record = OpportunityRecord(title="T", organization="O", category="scholarship",
                                   funding_type="full funding")

        validate_record(record)

        assert record.category == "Scholarships"
        assert record.funding_type == "Full Funding"

    def test_invalid_enums_fall_back(self):
        """Test that unknown enum values are reset without invalidating."""
        record = OpportunityRecord(title="T", organization="O", category="Jobs", funding_type="Lots")

        validation = validate_record(record)

        assert validation["is_valid"] is True
        assert record.category == "Misc"
        assert record.funding_type == "Variable Amount"
        assert "Invalid category: Jobs" in validation["errors"]


class TestFallbackRecord:
    """Tests for the metadata fallback."""

    def test_uses_scraped_metadata(self):
        """Test that the fallback is built from page metadata."""
        scraped = scraped_from_html(SOURCE_URL, OPPORTUNITY_HTML)

        record = fallback_record(scraped)

        assert record.title == "Young Leaders Fellowship"
        assert record.organization.startswith("Global Youth Foundation")
        assert record.amount == "$5,000"
        assert record.description == scraped.content[:200]
        assert record.url == SOURCE_URL

    def test_defaults_without_metadata(self):
        """Test that unknown organization and amount use placeholders."""
        scraped = scraped_from_html(SOURCE_URL, "<title>Bare</title><body><p>Nothing here</p></body>")

        record = fallback_record(scraped)

        assert record.organization == "Unknown"
        assert record.amount == "Variable"
        assert record.location == "Global"


class TestAIExtractor:
    """Tests for AIExtractor."""

    def test_extract_success(self):
        """Test a successful extraction."""
        client = ScriptedAIClient(json.dumps(AI_PAYLOAD))
        extractor = AIExtractor(client, model_version="test-model")

        result = extractor.extract("Young Leaders Fellowship", "Some content", SOURCE_URL)

        assert result.success is True
        assert result.confidence == 1.0
        assert result.model_version == "test-model"
        assert result.data.url == SOURCE_URL
        assert result.fallback is False
        assert SOURCE_URL in client.prompts[0]

    def test_extract_parse_failure(self):
        """Test that an unparseable response reports failure."""
        extractor = AIExtractor(ScriptedAIClient("no json at all"))

        result = extractor.extract("T", "C", SOURCE_URL)

        assert result.success is False
        assert result.data is None
        assert "No JSON object" in result.error

    def test_extract_provider_failure(self):
        """Test that client exceptions are wrapped, not raised."""
        extractor = AIExtractor(ScriptedAIClient(RuntimeError("quota exceeded")))

        result = extractor.extract("T", "C", SOURCE_URL)

        assert result.success is False
        assert "quota exceeded" in result.error

    def test_process_falls_back(self):
        """Test that an unusable model response falls back to metadata."""
        scraped = scraped_from_html(SOURCE_URL, OPPORTUNITY_HTML)
        extractor = AIExtractor(ScriptedAIClient("```json\n{broken\n```"))

        result = extractor.process_scraped_content(scraped)

        assert result.success is True
        assert result.fallback is True
        assert result.model_version == FALLBACK_MODEL_VERSION
        assert result.data.organization.startswith("Global Youth Foundation")
        assert result.error

    def test_process_without_client(self):
        """Test that a missing client goes straight to the fallback."""
        scraped = scraped_from_html(SOURCE_URL, OPPORTUNITY_HTML)

        result = AIExtractor(None).process_scraped_content(scraped)

        assert result.fallback is True
        assert result.error == "No AI client configured"

    def test_prompt_lists_categories(self):
        """Test that the prompt enumerates allowed categories."""
        prompt = build_extraction_prompt("T", "C", SOURCE_URL)

        assert "Scholarships|Fellowships|Grants" in prompt
        assert f'"url": "{SOURCE_URL}"' in prompt


class TestGeminiClient:
    """Tests for the Gemini wrapper."""

    @patch("google.genai.Client")
    def test_generate(self, mock_client_cls):
        """Test that generate calls the SDK with the configured model."""
        mock_models = mock_client_cls.return_value.models
        mock_models.generate_content.return_value = MagicMock(text='{"title": "x"}')

        client = GeminiClient("key", model="gemini-test", temperature=0.2)
        text = client.generate("prompt")

        assert text == '{"title": "x"}'
        mock_client_cls.assert_called_once_with(api_key="key")
        kwargs = mock_models.generate_content.call_args.kwargs
        assert kwargs["model"] == "gemini-test"
        assert kwargs["contents"] == "prompt"
        assert kwargs["config"].temperature == 0.2

    @patch("google.genai.Client")
    def test_generate_wraps_errors(self, mock_client_cls):
        """Test that SDK errors become AIProviderError."""
        mock_client_cls.return_value.models.generate_content.side_effect = RuntimeError("boom")

        with pytest.raises(AIProviderError, match="boom"):
            GeminiClient("key").generate("prompt")

    @patch("google.genai.Client")
    def test_empty_text(self, mock_client_cls):
        """Test that a response without text yields an empty string."""
        mock_client_cls.return_value.models.generate_content.return_value = MagicMock(text=None)

        assert GeminiClient("key").generate("prompt") == ""
