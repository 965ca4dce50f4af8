"""
End-to-end tests for ContactExtractionEngine.

Tests cover:
1. Pattern-only extraction and normalization
2. Input validation (the only failure surfaced to the caller)
3. Strategy paths: fast path with AI validation, AI primary, chunked, hybrid
4. Fallbacks: zero-contact fallback, auth failure, admission rejection
5. Metadata, decision trace and caching
6. Document type classification carried into prompts and metadata
"""

import json

import pytest

from callsheet.extract.engine import ContactExtractionEngine, create_engine
from callsheet.extract.errors import ProviderAuthError
from callsheet.extract.schemas import ContactSource, ExtractionRequest, Strategy
from callsheet.parse.models import RawDocument
from callsheet.service.admission import AdmissionController
from callsheet.service.cache import ExtractionCache
from callsheet.service.config import EngineConfig, ExtractionOptions, ProviderSettings


# ─── Test Data ───

SIMPLE_SHEET = "PHOTOGRAPHER: Jane Doe / 555-123-4567 / jane@x.com\nMUA: Sam Lee / 555-987-6543"

CREW_LIST_SHEET = (
    "CREW LIST\nDepartment: Camera\n"
    "PHOTOGRAPHER: Jane Doe / 555-123-4567\n"
    "STYLIST: Bo Chan / 555-444-5555\n"
    "MUA: Sam Lee / 555-987-6543"
)

THREE_SECTIONS = (
    "CREW\nJane Doe 555-123-4567\n"
    "HAIR\nSam Lee\nArrives at nine\n"
    "MAKEUP\nAnn Bell\nArrives at 10\n"
)

FIVE_SECTIONS = (
    "CREW\nJane Doe 555-123-4567\n"
    "HAIR\nSam Lee 555-987-6543\n"
    "MAKEUP\nAnn Bell 555-222-3333\n"
    "STYLIST\nBo Chan 555-444-5555\n"
    "CATERING\nCy Dunn 555-666-7777"
)

TABLE_ROWS = [
    ("PHOTOGRAPHER", "Jane Doe", "555-123-4561", "jane@x.com"),
    ("STYLIST", "Sam Lee", "555-123-4562", "sam@x.com"),
    ("HAIR", "Ann Bell", "555-123-4563", "ann@x.com"),
    ("MAKEUP", "Bo Chan", "555-123-4564", "bo@x.com"),
    ("PRODUCER", "Cy Dunn", "555-123-4565", "cy@x.com"),
    ("DIGITECH", "Di Ross", "555-123-4566", "di@x.com"),
    ("ASSISTANT", "Ed Park", "555-123-4567", "ed@x.com"),
    ("CATERING", "Flo King", "555-123-4568", "flo@x.com"),
]


def _table(rows) -> str:
    return "\n".join(f"{role}: {name} | {phone} | {email}" for role, name, phone, email in rows)


def _contacts_json(*contacts) -> str:
    return json.dumps({"contacts": list(contacts)})


def _engine(clock, provider=None, config=None, **kwargs) -> ContactExtractionEngine:
    return ContactExtractionEngine(
        config=config or EngineConfig(),
        provider=provider,
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


def _layers(result) -> list[str]:
    return [d["layer_name"] for d in result.metadata.decisions]


class TestPatternOnly:
    """Extraction without an AI provider."""

    def test_simple_sheet(self, clock):
        """Inline roles are extracted, normalized and scored."""
        result = _engine(clock).extract(SIMPLE_SHEET)
        assert result.success
        assert result.metadata.strategy == Strategy.PATTERN_FAST_PATH
        assert len(result.contacts) == 2

        jane, sam = result.contacts
        assert jane.name == "Jane Doe"
        assert jane.role == "PHOTOGRAPHER"
        assert jane.phone == "+1 (555) 123-4567"
        assert jane.email == "jane@x.com"
        assert jane.confidence == 1.0
        assert sam.role == "MAKEUP"
        assert sam.confidence == pytest.approx(0.75)

    def test_metadata(self, clock):
        """Pattern-only metadata carries no AI fields."""
        result = _engine(clock).extract(SIMPLE_SHEET)
        meta = result.metadata
        assert meta.tokens_used is None
        assert meta.ai_contacts is None
        assert meta.chunks_processed is None
        assert meta.pattern_matches is None
        assert not meta.ai_validated
        assert meta.structure_score is not None
        # 1.0 validity, 0.5 completeness, neutral pattern term
        assert meta.quality_score == pytest.approx(0.7)
        assert meta.confidence == pytest.approx(0.7)

    def test_duplicates_merged(self, clock):
        """The same person listed twice comes out once."""
        result = _engine(clock).extract(
            "PHOTOGRAPHER: Jane Doe / 555-123-4567 / jane@x.com\nJ. Doe / (555) 123-4567"
        )
        assert len(result.contacts) == 1
        assert result.contacts[0].name == "Jane Doe"

    def test_names_only(self, clock):
        """Text with names but no contact details succeeds with no contacts."""
        result = _engine(clock).extract("Jane Doe\nSam Lee\nAnn Bell")
        assert result.success
        assert result.contacts == []
        assert result.metadata.confidence == 0.0

    def test_role_preferences(self, clock):
        """Preferred roles are listed first."""
        request = ExtractionRequest(text=SIMPLE_SHEET, role_preferences=["mua"])
        result = _engine(clock).extract(request)
        assert [c.role for c in result.contacts] == ["MAKEUP", "PHOTOGRAPHER"]

    def test_raw_document(self, clock):
        """RawDocument input is accepted."""
        document = RawDocument.from_text(SIMPLE_SHEET, file_name_hint="sheet.txt")
        assert len(_engine(clock).extract(document).contacts) == 2

    def test_every_contact_valid(self, clock):
        """Every returned contact has a name and an email or phone."""
        result = _engine(clock).extract(FIVE_SECTIONS + "\nNOTES\nParking on 5th\nJo Ng")
        assert result.contacts
        assert all(c.is_valid() for c in result.contacts)

    def test_trace(self, clock):
        """Each stage leaves a decision in the trace."""
        result = _engine(clock).extract(SIMPLE_SHEET)
        layers = _layers(result)
        for layer in ("preprocess", "pattern_engine", "strategy", "normalization"):
            assert layer in layers


class TestInputValidation:
    """Unusable input is the one failure reported as success=False."""

    def test_empty(self, clock):
        """Empty and whitespace-only text fail."""
        for text in ("", "  \n\n\t  "):
            result = _engine(clock).extract(text)
            assert not result.success
            assert "empty" in result.error
            assert result.contacts == []

    def test_too_long(self, clock):
        """Text over max_input_chars fails."""
        config = EngineConfig(extraction=ExtractionOptions(max_input_chars=100))
        result = _engine(clock, config=config).extract("x" * 101)
        assert not result.success
        assert "limit" in result.error


class TestFastPath:
    """Tabular sheets with confident pattern results."""

    def test_validation_adjusts_confidence(self, clock, make_provider):
        """AI validation confirms some contacts; the rest are discounted."""
        confirmed = [{"name": name, "email": email} for _, name, _, email in TABLE_ROWS[:6]]
        provider = make_provider([json.dumps({"contacts": confirmed, "confidence": 0.8})])

        result = _engine(clock, provider).extract(_table(TABLE_ROWS))
        meta = result.metadata
        assert meta.strategy == Strategy.PATTERN_FAST_PATH
        assert len(provider.calls) == 1
        assert meta.ai_validated
        assert meta.confidence == pytest.approx(0.8)
        assert meta.pattern_matches == 6
        assert meta.tokens_used == 150
        assert len(result.contacts) == 8
        assert [c.confidence for c in result.contacts] == [1.0] * 6 + [0.85] * 2

    def test_validation_disabled(self, clock, make_provider):
        """With sanity validation off the fast path makes no AI call."""
        provider = make_provider()
        config = EngineConfig(extraction=ExtractionOptions(ai_sanity_validation=False))
        result = _engine(clock, provider, config).extract(_table(TABLE_ROWS))
        assert result.metadata.strategy == Strategy.PATTERN_FAST_PATH
        assert provider.calls == []
        assert len(result.contacts) == 8

    def test_validation_failure_keeps_pattern_result(self, clock, make_provider):
        """A failed validation call leaves the pattern result untouched."""
        provider = make_provider(["not json"])
        result = _engine(clock, provider).extract(_table(TABLE_ROWS))
        assert result.success
        assert not result.metadata.ai_validated
        assert all(c.confidence == 1.0 for c in result.contacts)


    def test_validation_crash_keeps_pattern_result(self, clock, make_provider):
        """An unexpected provider exception during validation is contained."""
        provider = make_provider([RuntimeError("sdk blew up")])
        result = _engine(clock, provider).extract(_table(TABLE_ROWS))
        assert result.success
        assert result.metadata.strategy == Strategy.PATTERN_FAST_PATH
        assert len(result.contacts) == 8
        assert not result.metadata.ai_validated
        assert all(c.confidence == 1.0 for c in result.contacts)


class TestAIPaths:
    """Strategies that run AI extraction."""

    def test_ai_primary(self, clock, make_provider):
        """Short free-form sheets go to a single AI call, reconciled with patterns."""
        provider = make_provider([_contacts_json(
            {"name": "Jane Doe", "role": "PHOTOGRAPHER", "email": "jane@x.com", "phone": "555-123-4567"},
            {"name": "Sam Lee", "role": "MUA", "phone": "555-987-6543"},
        )])
        result = _engine(clock, provider).extract(SIMPLE_SHEET)
        meta = result.metadata
        assert meta.strategy == Strategy.AI_PRIMARY
        assert len(provider.calls) == 1
        assert len(result.contacts) == 2
        assert meta.pattern_matches == 2
        assert meta.discrepancies == 0
        assert meta.ai_contacts == 2
        assert meta.chunks_processed == 1
        assert result.contacts[0].source_strategy == ContactSource.HYBRID
        # all matched: 1.0 * 0.4 + 0.5 * 0.3 + 1.0 * 0.3, plus agreement bonus
        assert meta.quality_score == pytest.approx(0.85)
        assert meta.confidence == pytest.approx(0.95)

    def test_chunked_with_failed_chunks(self, clock, make_provider):
        """Unparseable chunks contribute nothing; good chunks are still used."""
        provider = make_provider([
            "not json",
            "{broken",
            _contacts_json(
                {"name": "Sam Lee", "role": "HAIR", "phone": "555-987-6543"},
                {"name": "Ann Bell", "role": "MAKEUP", "email": "ann@x.com"},
            ),
        ])
        config = EngineConfig(
            provider=ProviderSettings(single_call_max_tokens=10),
            extraction=ExtractionOptions(chunk_size_chars=30, max_processing_time_ms=120000),
        )
        result = _engine(clock, provider, config).extract(THREE_SECTIONS)
        meta = result.metadata
        assert result.success
        assert meta.strategy == Strategy.CHUNKED
        assert meta.chunks_total == 3
        assert meta.chunks_processed == 3
        assert meta.failed_chunks == 2
        assert {c.name for c in result.contacts} == {"Jane Doe", "Sam Lee", "Ann Bell"}

    def test_chunked_timeout(self, clock, make_provider):
        """Chunks past the deadline are abandoned and partial results returned."""
        provider = make_provider([
            _contacts_json({"name": "Jane Doe", "phone": "555-123-4567"}),
            _contacts_json({"name": "Sam Lee", "phone": "555-987-6543"}),
            _contacts_json({"name": "Ann Bell", "phone": "555-222-3333"}),
        ])
        config = EngineConfig(
            provider=ProviderSettings(single_call_max_tokens=10),
            extraction=ExtractionOptions(chunk_size_chars=40, max_processing_time_ms=50000),
        )
        result = _engine(clock, provider, config).extract(FIVE_SECTIONS)
        meta = result.metadata
        assert result.success
        assert meta.timed_out
        assert meta.chunks_processed == 3
        assert meta.chunks_total == 5
        assert len(provider.calls) == 3
        # pattern engine still covers the sections AI never saw
        assert len(result.contacts) == 5

    def test_hybrid(self, clock, make_provider):
        """Tabular sheets with weak pattern confidence run AI as well."""
        rows = TABLE_ROWS[:3]
        provider = make_provider([_contacts_json(
            *[{"name": name, "role": role, "phone": phone, "email": email} for role, name, phone, email in rows]
        )])
        result = _engine(clock, provider).extract(_table(rows))
        assert result.metadata.strategy == Strategy.HYBRID
        assert len(provider.calls) == 1
        assert result.metadata.pattern_matches == 3
        assert len(result.contacts) == 3


class TestDocumentType:
    """Document classification through the pipeline."""

    def test_metadata_and_trace(self, clock):
        """The classified type is reported in metadata and the preprocess decision."""
        result = _engine(clock).extract(CREW_LIST_SHEET)
        assert result.metadata.document_type == "crew_list"
        preprocess = [d for d in result.metadata.decisions if d["layer_name"] == "preprocess"]
        assert "type=crew_list" in preprocess[0]["evidence"]

    def test_unclassified(self, clock):
        """Sheets without indicator phrases report unknown."""
        result = _engine(clock).extract(SIMPLE_SHEET)
        assert result.metadata.document_type == "unknown"

    def test_guidance_reaches_ai_prompt(self, clock, make_provider):
        """AI extraction prompts carry the guidance for the classified type."""
        provider = make_provider([_contacts_json(
            {"name": "Jane Doe", "role": "PHOTOGRAPHER", "phone": "555-123-4567"},
            {"name": "Bo Chan", "role": "STYLIST", "phone": "555-444-5555"},
            {"name": "Sam Lee", "role": "MUA", "phone": "555-987-6543"},
        )])
        result = _engine(clock, provider).extract(CREW_LIST_SHEET)
        assert result.metadata.strategy != Strategy.PATTERN_FAST_PATH
        assert "This is a crew list" in provider.calls[0]["user_prompt"]


class TestFallbacks:
    """Strategy fallbacks."""

    def test_zero_contact_fallback(self, clock, make_provider):
        """AI finding nothing while patterns did switches to pattern-primary."""
        provider = make_provider()
        result = _engine(clock, provider).extract(SIMPLE_SHEET)
        meta = result.metadata
        assert meta.strategy == Strategy.PATTERN_PRIMARY_WITH_AI_SUPPLEMENT
        assert "ai_found_no_contacts_in_first_1_chunks" in meta.fallback_reason
        assert len(result.contacts) == 2

    def test_auth_failure(self, clock, make_provider):
        """Rejected credentials fall back to pattern only."""
        provider = make_provider([ProviderAuthError("invalid api key")])
        result = _engine(clock, provider).extract(SIMPLE_SHEET)
        meta = result.metadata
        assert result.success
        assert meta.strategy == Strategy.PATTERN_FAST_PATH
        assert meta.fallback_reason == "ai_auth_failed"
        assert len(provider.calls) == 1
        assert len(result.contacts) == 2

    def test_admission_rejected(self, clock, make_provider):
        """A full admission queue degrades to pattern only without AI calls."""
        provider = make_provider()
        admission = AdmissionController(global_limit=1, per_user_limit=1, max_queue_depth=0)
        held = admission.acquire("alice")
        try:
            result = _engine(clock, provider, admission=admission).extract(SIMPLE_SHEET, user_id="alice")
        finally:
            held.release()
        meta = result.metadata
        assert result.success
        assert meta.strategy == Strategy.PATTERN_FAST_PATH
        assert meta.fallback_reason == "admission_rejected"
        assert provider.calls == []
        assert len(result.contacts) == 2

    def test_permit_released(self, clock, make_provider):
        """The admission permit is returned after the request."""
        admission = AdmissionController(global_limit=1, per_user_limit=1, max_queue_depth=0)
        engine = _engine(clock, make_provider(), admission=admission)
        engine.extract(SIMPLE_SHEET, user_id="alice")
        assert admission.stats().global_active == 0
        engine.extract(SIMPLE_SHEET, user_id="alice")
        assert admission.stats().global_active == 0


class TestCaching:
    """Result cache wiring."""

    def test_hit(self, clock, make_provider):
        """A repeated request is served from cache without AI calls."""
        provider = make_provider()
        cache = ExtractionCache()
        engine = _engine(clock, provider, cache=cache)
        first = engine.extract(SIMPLE_SHEET)
        calls = len(provider.calls)
        second = engine.extract(SIMPLE_SHEET)
        assert second.metadata.cached
        assert not first.metadata.cached
        assert second.contacts == first.contacts
        assert len(provider.calls) == calls
        assert cache.hits == 1

    def test_options_change_key(self, clock):
        """Different request options are cached separately."""
        cache = ExtractionCache()
        engine = _engine(clock, cache=cache)
        engine.extract(SIMPLE_SHEET)
        result = engine.extract(ExtractionRequest(text=SIMPLE_SHEET, role_preferences=["MUA"]))
        assert not result.metadata.cached
        assert len(cache) == 2

    def test_failures_not_cached(self, clock):
        """Failed results are not stored."""
        cache = ExtractionCache()
        _engine(clock, cache=cache).extract("")
        assert len(cache) == 0


class TestCreateEngine:
    """Tests for create_engine()."""

    def test_pattern_only(self):
        """pattern_only skips the provider and still wires services."""
        engine = create_engine(pattern_only=True)
        assert not engine.ai_available
        assert engine.admission is not None
        assert engine.cache is not None

    def test_no_key(self, monkeypatch):
        """Without an API key the engine runs pattern only."""
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        engine = create_engine(EngineConfig())
        assert not engine.ai_available
        assert engine.extract(SIMPLE_SHEET).success
