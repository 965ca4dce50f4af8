"""
Tests for prompt construction and model response parsing.
"""

import json

import pytest

from callsheet.extract.errors import ResponseParseError
from callsheet.extract.prompts import (
    VALIDATION_MAX_CONTACTS,
    build_chunk_prompt,
    build_validation_prompt,
    parse_contacts_response,
    parse_json_object,
    parse_validation_response,
    strip_code_fences,
)
from callsheet.extract.schemas import AIContact, ContactCandidate, ContactSource
from callsheet.parse.models import DocumentType


class TestChunkPrompt:
    """Tests for build_chunk_prompt()."""

    def test_single_chunk(self):
        """Single-call prompts carry no position or context lines."""
        prompt = build_chunk_prompt("PHOTOGRAPHER: Jane Doe")
        assert "PHOTOGRAPHER: Jane Doe" in prompt
        assert "This is part" not in prompt
        assert "previous part" not in prompt

    def test_position_and_context(self):
        """Chunked prompts give the position and the carried-over section."""
        prompt = build_chunk_prompt("Sam Lee 555", chunk_index=1, total_chunks=4, context_section="HAIR")
        assert "part 2 of 4" in prompt
        assert 'ended in the "HAIR" section' in prompt

    def test_role_preferences(self):
        """Preferred roles are named in the prompt."""
        prompt = build_chunk_prompt("text", role_preferences=["MAKEUP", "STYLIST"])
        assert "MAKEUP, STYLIST" in prompt

    def test_document_type_guidance(self):
        """A known document type adds its guidance line."""
        prompt = build_chunk_prompt("text", document_type=DocumentType.TALENT_SHEET)
        assert "This is a talent sheet" in prompt
        assert prompt.index("talent sheet") < prompt.index("TEXT:")

    def test_no_guidance_when_unclassified(self):
        """Unknown or missing types leave the prompt unchanged."""
        plain = build_chunk_prompt("text")
        assert build_chunk_prompt("text", document_type=DocumentType.UNKNOWN) == plain
        assert "This is a" not in plain


class TestValidationPrompt:
    """Tests for build_validation_prompt()."""

    def test_excerpt_and_contact_limit(self):
        """Only a short excerpt and the first few contacts are sent."""
        contacts = [
            ContactCandidate(name=f"Person {i}", phone=f"555-000-{i:04d}") for i in range(15)
        ]
        prompt = build_validation_prompt("x" * 1000, contacts)
        assert "x" * 500 in prompt
        assert "x" * 501 not in prompt
        assert prompt.count('"name"') == VALIDATION_MAX_CONTACTS


class TestParseJson:
    """Tests for parse_json_object() and strip_code_fences()."""

    def test_plain(self):
        """Plain JSON objects parse directly."""
        assert parse_json_object('{"contacts": []}') == {"contacts": []}

    def test_code_fence(self):
        """Markdown code fences are tolerated."""
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert parse_json_object('```json\n{"contacts": []}\n```') == {"contacts": []}

    def test_surrounding_prose(self):
        """The outermost {...} is recovered from chatty responses."""
        assert parse_json_object('Here you go: {"contacts": []} Thanks!') == {"contacts": []}

    def test_failures(self):
        """Empty, non-JSON and non-object responses raise ResponseParseError."""
        for content in (None, "", "   ", "not json", "{broken", "[1, 2]"):
            with pytest.raises(ResponseParseError):
                parse_json_object(content)


class TestParseContacts:
    """Tests for parse_contacts_response()."""

    def test_items(self):
        """Contacts are parsed into AIContact items."""
        content = json.dumps({"contacts": [
            {"name": "Jane Doe", "role": "PHOTOGRAPHER", "email": "jane@x.com", "phone": None, "confidence": 0.9},
        ]})
        items = parse_contacts_response(content)
        assert len(items) == 1
        assert items[0].name == "Jane Doe"
        assert items[0].confidence == 0.9

    def test_malformed_items_skipped(self):
        """Non-object or badly typed items are skipped, the rest kept."""
        content = json.dumps({"contacts": [
            {"name": "Jane Doe", "phone": "555-123-4567"},
            "junk",
            {"name": {"first": "Sam"}},
        ]})
        items = parse_contacts_response(content)
        assert [i.name for i in items] == ["Jane Doe"]

    def test_missing_array(self):
        """A response without a contacts array is a parse error."""
        with pytest.raises(ResponseParseError):
            parse_contacts_response('{"people": []}')
        with pytest.raises(ResponseParseError):
            parse_contacts_response('{"contacts": "none"}')

    def test_null_like_strings(self):
        """Placeholder strings are treated as missing."""
        item = AIContact.model_validate({"name": "Jane Doe", "email": "N/A", "phone": "null", "role": ""})
        assert item.email is None
        assert item.phone is None
        assert item.role is None

    def test_numeric_phone(self):
        """Numeric phone values are coerced to text."""
        assert AIContact.model_validate({"name": "Jo", "phone": 5551234567}).phone == "5551234567"

    def test_confidence_clamped(self):
        """Confidence is clamped to [0, 1]; junk becomes None."""
        assert AIContact.model_validate({"confidence": 5}).confidence == 1.0
        assert AIContact.model_validate({"confidence": "-1"}).confidence == 0.0
        assert AIContact.model_validate({"confidence": "high"}).confidence is None

    def test_heuristic_confidence(self):
        """Missing confidence is derived from field coverage."""
        item = AIContact(name="Jane Doe", email="jane@x.com", phone="555-123-4567")
        candidate = item.to_candidate(section="CREW")
        assert candidate.confidence == pytest.approx(0.8)
        assert candidate.source_strategy == ContactSource.AI
        assert candidate.section == "CREW"


class TestParseValidation:
    """Tests for parse_validation_response()."""

    def test_contacts_and_confidence(self):
        """Confirmed contacts and the overall confidence are returned."""
        contacts, confidence = parse_validation_response(
            '{"contacts": [{"name": "Jane Doe", "email": "jane@x.com"}], "confidence": 0.85}'
        )
        assert [c.name for c in contacts] == ["Jane Doe"]
        assert confidence == 0.85

    def test_missing_confidence(self):
        """Confidence is optional."""
        contacts, confidence = parse_validation_response('{"contacts": []}')
        assert contacts == []
        assert confidence is None
